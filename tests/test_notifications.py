"""Tests for the notification dispatcher.

Outbound POSTs go through httpx.MockTransport; each test configures how the
fake endpoints answer.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from apl_daily.errors import StoreError
from apl_daily.notifications import (
    DeliveryState,
    Notification,
    NotificationDispatcher,
    summarize,
)
from apl_daily.store import StoreKeys
from apl_daily.subscriptions import NotificationSubscription, SubscriptionRegistry


@pytest.fixture
def registry(store, event_log) -> SubscriptionRegistry:
    return SubscriptionRegistry(store, StoreKeys("apl-daily"), event_log)


@pytest.fixture
def dispatcher(registry, http_client, event_log) -> NotificationDispatcher:
    return NotificationDispatcher(registry, http_client, concurrency=4, log=event_log)


@pytest.fixture
def note() -> Notification:
    return Notification(
        title="House Cluster",
        body="Check out Pattern! 37",
        target_url="https://frame.example/frames/pattern/37",
        notification_id="pattern-37-2026-10-19",
    )


class TestNotification:
    def test_platform_limits_are_applied(self) -> None:
        n = Notification(title="T" * 50, body="B" * 200, target_url="https://x", notification_id="i" * 200)

        assert len(n.title) == 32
        assert len(n.body) == 128
        assert len(n.notification_id) == 128

    def test_generated_ids_are_unique(self) -> None:
        a = Notification(title="a", body="b", target_url="https://x")
        b = Notification(title="a", body="b", target_url="https://x")
        assert a.notification_id != b.notification_id


class TestSend:
    async def test_no_subscription_means_no_token_and_no_request(self, dispatcher, note, endpoint) -> None:
        outcome = await dispatcher.send(42, note)

        assert outcome.state is DeliveryState.NO_TOKEN
        assert endpoint.requests == []

    async def test_success_posts_request_with_bearer_token(self, dispatcher, registry, note, endpoint) -> None:
        await registry.save(42, NotificationSubscription("https://x/ep", "abc"))

        outcome = await dispatcher.send(42, note)

        assert outcome.state is DeliveryState.SUCCESS
        request = endpoint.requests[0]
        assert str(request.url) == "https://x/ep"
        assert request.headers["Authorization"] == "Bearer abc"
        assert json.loads(request.content) == {
            "notificationId": "pattern-37-2026-10-19",
            "title": "House Cluster",
            "body": "Check out Pattern! 37",
            "targetUrl": "https://frame.example/frames/pattern/37",
            "tokens": ["abc"],
        }

    async def test_rate_limited(self, dispatcher, note, endpoint) -> None:
        endpoint.respond(
            "https://x/ep",
            lambda r: httpx.Response(
                200,
                json={"result": {"successfulTokens": [], "invalidTokens": [], "rateLimitedTokens": ["abc"]}},
            ),
        )

        outcome = await dispatcher.send(42, note, NotificationSubscription("https://x/ep", "abc"))

        assert outcome.state is DeliveryState.RATE_LIMITED

    async def test_non_200_is_error_with_body(self, dispatcher, note, endpoint) -> None:
        endpoint.respond("https://x/ep", lambda r: httpx.Response(500, json={"message": "boom"}))

        outcome = await dispatcher.send(42, note, NotificationSubscription("https://x/ep", "abc"))

        assert outcome.state is DeliveryState.ERROR
        assert outcome.error == {"status": 500, "body": {"message": "boom"}}

    async def test_malformed_200_is_error(self, dispatcher, note, endpoint) -> None:
        endpoint.respond("https://x/ep", lambda r: httpx.Response(200, json={"ok": True}))

        outcome = await dispatcher.send(42, note, NotificationSubscription("https://x/ep", "abc"))

        assert outcome.state is DeliveryState.ERROR

    async def test_timeout_is_error(self, dispatcher, note, endpoint) -> None:
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        endpoint.respond("https://x/ep", slow)

        outcome = await dispatcher.send(42, note, NotificationSubscription("https://x/ep", "abc"))

        assert outcome.state is DeliveryState.ERROR
        assert "ReadTimeout" in outcome.error

    async def test_unparseable_endpoint_url_is_error(self, dispatcher, note, endpoint) -> None:
        outcome = await dispatcher.send(9, note, NotificationSubscription("http://[::1", "t"))

        assert outcome.state is DeliveryState.ERROR
        assert "InvalidURL" in outcome.error
        assert endpoint.requests == []

    async def test_store_failure_during_lookup_is_error(self, dispatcher, note, monkeypatch) -> None:
        async def broken_get(user_id):
            raise StoreError("get", "apl-daily:user:42", ConnectionError("down"))

        monkeypatch.setattr(dispatcher.subscriptions, "get", broken_get)

        outcome = await dispatcher.send(42, note)

        assert outcome.state is DeliveryState.ERROR


class TestBroadcast:
    async def test_failure_of_one_user_does_not_stop_the_rest(self, dispatcher, registry, note, endpoint) -> None:
        await registry.save(1, NotificationSubscription("https://a/ep", "t1"))
        await registry.save(2, NotificationSubscription("https://b/ep", "t2"))
        await registry.save(3, NotificationSubscription("https://c/ep", "t3"))

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        endpoint.respond("https://b/ep", refuse)

        outcomes = await dispatcher.broadcast(note)

        assert [(o.user_id, o.state) for o in outcomes] == [
            (1, DeliveryState.SUCCESS),
            (2, DeliveryState.ERROR),
            (3, DeliveryState.SUCCESS),
        ]
        assert sorted(endpoint.urls()) == ["https://a/ep", "https://b/ep", "https://c/ep"]

    async def test_explicit_recipients_with_missing_subscription(self, dispatcher, note) -> None:
        outcomes = await dispatcher.broadcast(
            note,
            recipients=[(1, NotificationSubscription("https://a/ep", "t1")), (2, None)],
        )

        assert summarize(outcomes) == {"success": 1, "no_token": 1, "rate_limited": 0, "error": 0}

    async def test_unexpected_exception_is_isolated(self, dispatcher, note, endpoint) -> None:
        def explode(request):
            raise RuntimeError("bug in endpoint fake")

        endpoint.respond("https://a/ep", explode)

        outcomes = await dispatcher.broadcast(
            note,
            recipients=[
                (1, NotificationSubscription("https://a/ep", "t1")),
                (2, NotificationSubscription("https://b/ep", "t2")),
            ],
        )

        assert [o.state for o in outcomes] == [DeliveryState.ERROR, DeliveryState.SUCCESS]

    async def test_fan_out_is_bounded(self, registry, event_log, note) -> None:
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200, json={"result": {"rateLimitedTokens": []}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(registry, client, concurrency=2, log=event_log)
            recipients = [(i, NotificationSubscription(f"https://u{i}/ep", f"t{i}")) for i in range(6)]

            outcomes = await dispatcher.broadcast(note, recipients=recipients)

        assert len(outcomes) == 6
        assert all(o.state is DeliveryState.SUCCESS for o in outcomes)
        assert 1 < peak <= 2
