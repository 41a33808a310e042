import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()


def _env(*names: str, default: str = "") -> str:
    """First non-empty value among several accepted variable names."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def normalize_endpoint(endpoint: str) -> str:
    endpoint = (endpoint or "").strip()
    if not endpoint:
        return endpoint
    if not endpoint.startswith("http://") and not endpoint.startswith("https://"):
        endpoint = "https://" + endpoint
    return endpoint.rstrip("/")


@dataclass
class LLMSettings:
    endpoint: str = ""
    api_key: str = ""
    deployment: str = "gpt-4o"
    api_version: str = "2024-04-01-preview"
    timeout: float = 120.0

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key and self.deployment)

    def chat_url(self) -> str:
        if not self.configured:
            raise ConfigurationError("LLM endpoint, key and deployment must be set")
        if "/openai/" in self.endpoint.lower():
            raise ConfigurationError(
                "LLM endpoint must be the resource base URL "
                "(e.g. https://<resource>.openai.azure.com), not a full /openai/deployments/... path"
            )
        return (
            f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions"
            f"?api-version={self.api_version}"
        )


@dataclass
class DISettings:
    endpoint: str = ""
    api_key: str = ""
    api_version: str = "2024-07-31"
    model: str = "auto"
    poll_interval: float = 1.0
    max_attempts: int = 30
    timeout: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def public_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "model": self.model,
            "apiVersion": self.api_version,
            "hasKey": bool(self.api_key),
        }


@dataclass
class Settings:
    llm: LLMSettings = field(default_factory=LLMSettings)
    di: DISettings = field(default_factory=DISettings)
    upload_dir: Path = Path("uploads")
    config_file: Path = Path("data") / "config-store.json"
    max_upload_bytes: int = 20 * 1024 * 1024
    max_files_per_ingest: int = 10
    tesseract_enabled: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        llm = LLMSettings(
            endpoint=normalize_endpoint(_env("AZURE_OPENAI_ENDPOINT", "AZURE_AI_ENDPOINT")),
            api_key=_env("AZURE_OPENAI_API_KEY", "AZURE_OPENAI_KEY", "OPENAI_API_KEY"),
            deployment=_env("AZURE_OPENAI_DEPLOYMENT", default="gpt-4o"),
            api_version=_env("AZURE_OPENAI_API_VERSION", default="2024-04-01-preview"),
            timeout=_env_float("LLM_TIMEOUT_SECONDS", 120.0),
        )
        di = DISettings(
            endpoint=normalize_endpoint(_env("DOC_INTEL_ENDPOINT", "AZURE_DI_ENDPOINT")),
            api_key=_env("DOC_INTEL_KEY", "AZURE_DI_KEY"),
            api_version=_env("DOC_INTEL_API_VERSION", default="2024-07-31"),
            model=_env("DOC_INTEL_MODEL", default="auto"),
            # the analyze service rejects polling faster than once a second
            poll_interval=max(1.0, _env_float("DOC_INTEL_POLL_INTERVAL", 1.0)),
            max_attempts=_env_int("DOC_INTEL_MAX_ATTEMPTS", 30),
            timeout=_env_float("DOC_INTEL_TIMEOUT_SECONDS", 60.0),
        )
        return cls(
            llm=llm,
            di=di,
            upload_dir=Path(_env("UPLOAD_DIR", default="uploads")),
            config_file=Path(_env("FAR_AUDIT_CONFIG_FILE", default=str(Path("data") / "config-store.json"))),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 20 * 1024 * 1024),
            max_files_per_ingest=_env_int("MAX_FILES_PER_INGEST", 10),
            tesseract_enabled=_env_bool("TESSERACT_ENABLED", True),
            log_level=_env("LOG_LEVEL", default="INFO"),
            log_file=_env("LOG_FILE") or None,
            host=_env("HOST", default="0.0.0.0"),
            port=_env_int("PORT", 8000),
        )
