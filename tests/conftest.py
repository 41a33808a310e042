import os
import sys

import pytest

# src layout: make the package importable without an install
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from far_audit.config import DISettings, LLMSettings, Settings  # noqa: E402
from far_audit.config_loader import DEFAULTS  # noqa: E402


@pytest.fixture
def matching_cfg():
    return DEFAULTS


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("FAR_AUDIT_DB", raising=False)
    monkeypatch.delenv("SQLITE_PATH", raising=False)
    return Settings(
        llm=LLMSettings(),
        di=DISettings(),
        upload_dir=tmp_path / "uploads",
        config_file=tmp_path / "config-store.json",
        tesseract_enabled=False,
    )


class FakeLLM:
    """Scripted stand-in for LLMClient: replies are consumed in order."""

    def __init__(self, replies=None, json_replies=None, configured=True):
        self.replies = list(replies or [])
        self.json_replies = list(json_replies or [])
        self.configured = configured
        self.calls = []

    def chat(self, messages, *, temperature=0, max_tokens=800, json_mode=False):
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def chat_json(self, system, user, *, max_tokens=800):
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        return self.json_replies.pop(0) if self.json_replies else None


@pytest.fixture
def fake_llm():
    return FakeLLM
