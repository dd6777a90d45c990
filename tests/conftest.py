"""
Pytest configuration and shared fixtures for apl_daily tests.

Services are wired against an in-memory store, a mock HTTP transport standing
in for users' notification endpoints, and a stub webhook verifier.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from apl_daily.catalog import PatternCatalog, load_catalog
from apl_daily.config import DEFAULT_PATTERNS_PATH, Settings
from apl_daily.errors import WebhookVerificationError
from apl_daily.logs import EventLog
from apl_daily.main import Services, build_services, create_app
from apl_daily.store import MemoryStateStore
from apl_daily.verify import VerifiedEvent

# 2026-10-19 is day 20745 since the epoch; with the bundled catalog that is
# index 9 of the permutation, pattern 14.
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
TODAY_PATTERN_ID = 14
BUNDLED_PERMUTATION = [180, 1, 36, 88, 38, 30, 100, 39, 37, 14, 106, 159]


class NotificationEndpoint:
    """Records pushed notifications and answers with a configurable handler."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responders: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def respond(self, url: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.responders[url] = responder

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.responders.get(str(request.url))
        if responder is not None:
            return responder(request)
        return ok_response(request)


def ok_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"result": {"successfulTokens": ["t"], "invalidTokens": [], "rateLimitedTokens": []}},
    )


class StubVerifier:
    """Returns the queued event for the next verify call, or raises the queued error."""

    def __init__(self) -> None:
        self.result: Optional[Any] = None
        self.calls: List[Any] = []

    def accept(self, fid: int, event: dict) -> None:
        self.result = VerifiedEvent(fid=fid, event=event, app_key="0x" + "ab" * 32)

    def reject(self, error: WebhookVerificationError) -> None:
        self.result = error

    async def verify(self, body: Any) -> VerifiedEvent:
        self.calls.append(body)
        if isinstance(self.result, Exception):
            raise self.result
        if self.result is None:
            raise AssertionError("no webhook result queued")
        return self.result


@pytest.fixture
def settings() -> Settings:
    return Settings(app_url="https://frame.example", app_env="development", notification_concurrency=4)


@pytest.fixture
def catalog() -> PatternCatalog:
    return load_catalog(DEFAULT_PATTERNS_PATH)


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def events() -> List[dict]:
    return []


@pytest.fixture
def event_log(events: List[dict]) -> EventLog:
    return EventLog(sinks=[events.append])


@pytest.fixture
def endpoint() -> NotificationEndpoint:
    return NotificationEndpoint()


@pytest.fixture
async def http_client(endpoint: NotificationEndpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(endpoint), timeout=5.0) as client:
        yield client


@pytest.fixture
def verifier() -> StubVerifier:
    return StubVerifier()


@pytest.fixture
async def services(settings, store, http_client, verifier, catalog, event_log) -> Services:
    return await build_services(
        settings,
        store=store,
        http_client=http_client,
        verifier=verifier,
        catalog=catalog,
        clock=lambda: FIXED_NOW,
        log=event_log,
    )


@pytest.fixture
async def client(services: Services):
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
