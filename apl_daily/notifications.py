from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from apl_daily.errors import StoreError
from apl_daily.logs import EventLog, default_event_log
from apl_daily.subscriptions import NotificationSubscription, SubscriptionRegistry

MAX_TITLE_LENGTH = 32
MAX_BODY_LENGTH = 128
MAX_NOTIFICATION_ID_LENGTH = 128


class DeliveryState(str, Enum):
    SUCCESS = "success"
    NO_TOKEN = "no_token"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class DeliveryOutcome:
    user_id: int
    state: DeliveryState
    error: Optional[Any] = None

    def to_dict(self) -> dict:
        payload: Dict[str, Any] = {"user_id": self.user_id, "state": self.state.value}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class Notification:
    title: str
    body: str
    target_url: str
    notification_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.title = self.title[:MAX_TITLE_LENGTH]
        self.body = self.body[:MAX_BODY_LENGTH]
        self.notification_id = self.notification_id[:MAX_NOTIFICATION_ID_LENGTH]

    def request_body(self, token: str) -> dict:
        return {
            "notificationId": self.notification_id,
            "title": self.title,
            "body": self.body,
            "targetUrl": self.target_url,
            "tokens": [token],
        }


def summarize(outcomes: Sequence[DeliveryOutcome]) -> Dict[str, int]:
    counts = {state.value: 0 for state in DeliveryState}
    for outcome in outcomes:
        counts[outcome.state.value] += 1
    return counts


def _response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _rate_limited_tokens(payload: Any) -> Optional[List[str]]:
    # Expected shape: {"result": {"successfulTokens": [], "invalidTokens": [], "rateLimitedTokens": []}}
    if not isinstance(payload, dict):
        return None
    result = payload.get("result")
    if not isinstance(result, dict):
        return None
    limited = result.get("rateLimitedTokens", [])
    if not isinstance(limited, list):
        return None
    return limited


class NotificationDispatcher:
    """Best-effort push delivery to subscribed users' notification endpoints."""

    def __init__(
        self,
        subscriptions: SubscriptionRegistry,
        client: httpx.AsyncClient,
        concurrency: int = 16,
        log: Optional[EventLog] = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.client = client
        self.concurrency = max(1, concurrency)
        self.log = log or default_event_log

    async def send(
        self,
        user_id: int,
        notification: Notification,
        subscription: Optional[NotificationSubscription] = None,
    ) -> DeliveryOutcome:
        if subscription is None:
            try:
                subscription = await self.subscriptions.get(user_id)
            except StoreError as ex:
                self.log.error("notification_lookup_failed", user_id=user_id, error=str(ex))
                return DeliveryOutcome(user_id, DeliveryState.ERROR, str(ex))
        if subscription is None:
            self.log.emit("notification_no_token", user_id=user_id)
            return DeliveryOutcome(user_id, DeliveryState.NO_TOKEN)

        try:
            response = await self.client.post(
                subscription.endpoint_url,
                json=notification.request_body(subscription.auth_token),
                headers={"Authorization": f"Bearer {subscription.auth_token}"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as ex:
            self.log.error(
                "notification_send_failed",
                user_id=user_id,
                endpoint=subscription.endpoint_url,
                error=f"{type(ex).__name__}: {ex}",
            )
            return DeliveryOutcome(user_id, DeliveryState.ERROR, f"{type(ex).__name__}: {ex}")

        payload = _response_json(response)
        if response.status_code != 200:
            self.log.error(
                "notification_rejected",
                user_id=user_id,
                status=response.status_code,
                response=payload,
            )
            return DeliveryOutcome(user_id, DeliveryState.ERROR, {"status": response.status_code, "body": payload})

        limited = _rate_limited_tokens(payload)
        if limited is None:
            self.log.error("notification_malformed_response", user_id=user_id, response=payload)
            return DeliveryOutcome(user_id, DeliveryState.ERROR, {"malformed_response": payload})
        if limited:
            self.log.emit("notification_rate_limited", user_id=user_id)
            return DeliveryOutcome(user_id, DeliveryState.RATE_LIMITED)

        self.log.emit("notification_sent", user_id=user_id, notification_id=notification.notification_id)
        return DeliveryOutcome(user_id, DeliveryState.SUCCESS)

    async def broadcast(
        self,
        notification: Notification,
        recipients: Optional[Sequence[Tuple[int, Optional[NotificationSubscription]]]] = None,
    ) -> List[DeliveryOutcome]:
        if recipients is None:
            recipients = await self.subscriptions.all()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def deliver(user_id: int, subscription: Optional[NotificationSubscription]) -> DeliveryOutcome:
            async with semaphore:
                try:
                    return await self.send(user_id, notification, subscription)
                except Exception as ex:
                    self.log.error("notification_unexpected_error", user_id=user_id, error=repr(ex))
                    return DeliveryOutcome(user_id, DeliveryState.ERROR, repr(ex))

        outcomes = await asyncio.gather(*(deliver(uid, sub) for uid, sub in recipients))
        self.log.emit(
            "notification_broadcast_finished",
            notification_id=notification.notification_id,
            recipients=len(outcomes),
            **summarize(outcomes),
        )
        return list(outcomes)


def build_http_client(timeout_seconds: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
