from typing import Dict, List, Optional

import requests
from loguru import logger

from .config import LLMSettings
from .errors import CollaboratorError, ConfigurationError
from .json_recovery import parse_json_object


class LLMClient:
    """Chat-completions client (Azure OpenAI deployment URL scheme)."""

    def __init__(self, settings: LLMSettings):
        self.settings = settings
        self.headers = {
            "api-key": settings.api_key,
            "Content-Type": "application/json",
        }

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def chat(
        self,
        messages: List[Dict],
        *,
        temperature: float = 0,
        max_tokens: int = 800,
        json_mode: bool = False,
    ) -> str:
        """Send ``messages`` and return the first choice's content string."""
        url = self.settings.chat_url()
        payload = {
            "messages": messages,
            "temperature": temperature,
            "top_p": 0,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = requests.post(url, headers=self.headers, json=payload, timeout=self.settings.timeout)
        except requests.exceptions.RequestException as e:
            raise CollaboratorError(f"LLM request failed: {e}") from e
        if response.status_code >= 400:
            raise CollaboratorError(f"LLM error {response.status_code}: {response.text[:500]}")

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CollaboratorError(f"Unexpected LLM response shape: {e}") from e

    def chat_json(self, system: str, user: str, *, max_tokens: int = 800) -> Optional[Dict]:
        """One system+user exchange that must come back as a JSON object.

        Returns None when the collaborator is not configured, fails, or replies
        with something that does not parse.
        """
        if not self.configured:
            return None
        try:
            content = self.chat(
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                max_tokens=max_tokens,
                json_mode=True,
            )
        except (CollaboratorError, ConfigurationError) as e:
            logger.warning(f"LLM call failed: {e}")
            return None
        parsed = parse_json_object(content)
        if parsed is None:
            logger.warning(f"LLM returned non-JSON content: {content[:200]!r}")
        return parsed
