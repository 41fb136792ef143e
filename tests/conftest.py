"""Pytest configuration - loads .env for integration tests and provides a scripted client."""

import json
from pathlib import Path
from typing import Any

import pytest
from dotenv import load_dotenv

from atl_cli.core.client import APIClient, TransportError
from atl_cli.core.types import RawResponse

# Load .env from project root
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)


def response(status: int = 200, body: Any = None, headers: dict[str, str] | None = None) -> RawResponse:
    """Build a RawResponse; dict/list bodies are JSON-encoded."""
    text = body if isinstance(body, str) else ("" if body is None else json.dumps(body))
    return RawResponse(status=status, text=text, headers=headers or {})


class ScriptedClient(APIClient):
    """
    APIClient whose transport replays canned responses.

    ``script`` is either a list consumed in order, or a callable
    ``(method, path, body) -> RawResponse | Exception``.
    """

    def __init__(self, script: Any = None):
        self.sleeps: list[float] = []
        super().__init__("https://example.atlassian.net", "dXNlcjp0b2tlbg==", sleep=self.sleeps.append)
        self.script = script if script is not None else []
        self.calls: list[dict[str, Any]] = []

    def send(self, method, path, body=None, headers=None):
        decoded = None
        if body is not None:
            try:
                decoded = json.loads(body)
            except (UnicodeDecodeError, json.JSONDecodeError):
                decoded = body
        self.calls.append({"method": method, "path": path, "body": decoded, "headers": headers or {}})

        if callable(self.script):
            result = self.script(method, path, decoded)
        else:
            if not self.script:
                raise AssertionError(f"Unexpected request: {method} {path}")
            result = self.script.pop(0)

        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def scripted():
    """Factory for ScriptedClient."""
    return ScriptedClient


@pytest.fixture
def connection_refused():
    return TransportError("Connection error: [Errno 111] Connection refused", cause=ConnectionRefusedError(111))
