"""
Shared pytest fixtures for lifelog tests.

Provides scripted providers and clients so nothing touches the network.
"""

from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from lifelog.config import AnalysisConfig, Flags, StoreConfig
from lifelog.store import LifelogStore
from lifelog.types import FetchPage


_ENV_VARS = (
    "LIMITLESS_API_KEY",
    "DISABLE_LIMITLESS_SYNC",
    "DISABLE_INFERENCE",
    "DISABLE_WORKERS_AI",
    "LIFELOG_FULL_REFRESH",
    "SLACK_BOT_TOKEN",
    "SLACK_CHANNEL",
    "CLOUDFLARE_ACCOUNT_ID",
    "CLOUDFLARE_API_TOKEN",
    "OPENAI_API_KEY",
    "LIFELOG_OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "LIFELOG_VERBOSE",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep credentials and the error log out of the developer's environment."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LIFELOG_STORE_PATH", str(tmp_path / "store"))


class FakeResponse:
    """Minimal httpx.Response stand-in."""

    def __init__(self, status_code=200, json_data=None, text="", headers=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"{self.status_code}",
                request=httpx.Request("GET", "http://test"),
                response=self,
            )


class ScriptedProvider:
    """
    Inference provider that replays canned responses in order.

    Each response is returned as-is, or raised if it's an exception.
    """

    def __init__(self, model: str, responses: list[Any]):
        self.model = model
        self._responses = list(responses)
        self.calls: list[tuple[str, Optional[dict]]] = []

    def generate(self, prompt: str, *, schema: Optional[dict] = None) -> Any:
        self.calls.append((prompt, schema))
        if not self._responses:
            raise AssertionError(f"{self.model}: no scripted response left")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class StubLimitlessClient:
    """Provider client that serves pages keyed by the cursor it is sent."""

    def __init__(self, pages: dict[Optional[str], FetchPage]):
        self._pages = pages
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def fetch_page(self, cursor=None, start=None, end=None, limit=100) -> FetchPage:
        self.calls.append({"cursor": cursor, "start": start, "end": end, "limit": limit})
        return self._pages[cursor]

    def close(self):
        self.closed = True


class RecordingAlerter:
    def __init__(self, result: bool = True):
        self.messages: list[str] = []
        self._result = result

    def post_message(self, text: str) -> bool:
        self.messages.append(text)
        return self._result


def make_lifelog(
    id: str,
    *,
    updated_at: str = "2024-05-01T10:30:00Z",
    start_time: str = "2024-05-01T09:00:00Z",
    end_time: str = "2024-05-01T10:00:00Z",
    title: str = "Morning standup",
    contents: Optional[list[dict]] = None,
) -> dict[str, Any]:
    """A provider lifelog as returned by GET /lifelogs."""
    if contents is None:
        contents = [
            {
                "type": "heading1",
                "content": title,
                "children": [
                    {
                        "type": "blockquote",
                        "content": "Let's go over the release.",
                        "speakerName": "Alex",
                        "startTime": start_time,
                        "endTime": start_time,
                        "startOffsetMs": 0,
                        "endOffsetMs": 1500,
                    },
                ],
            },
        ]
    return {
        "id": id,
        "title": title,
        "markdown": f"# {title}\n",
        "startTime": start_time,
        "endTime": end_time,
        "updatedAt": updated_at,
        "isStarred": False,
        "contents": contents,
    }


@pytest.fixture
def store(tmp_path):
    """Initialized store in a temp directory."""
    s = LifelogStore(tmp_path / "lifelog.db")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def store_config(tmp_path):
    """Config with a dummy API key and no delay between analysis calls."""
    return StoreConfig(
        path=tmp_path,
        analysis=AnalysisConfig(call_delay=0),
        flags=Flags(limitless_api_key="test-key"),
    )


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def stub_client():
    return StubLimitlessClient


@pytest.fixture
def lifelog_factory():
    return make_lifelog
