from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from apl_daily.errors import InvalidEventDataError
from apl_daily.logs import EventLog, default_event_log
from apl_daily.notifications import Notification, NotificationDispatcher
from apl_daily.subscriptions import NotificationSubscription, SubscriptionRegistry, parse_endpoint_url
from apl_daily.verify import EventVerifier

EVENT_ALIASES = {
    "miniapp_added": "frame_added",
    "miniapp_removed": "frame_removed",
}
KNOWN_EVENTS = {"frame_added", "frame_removed", "notifications_enabled", "notifications_disabled"}

WELCOME_TITLE = "Frame Added"
WELCOME_BODY = "Your frame has been successfully added!"
ENABLED_TITLE = "Notifications Enabled"
ENABLED_BODY = "You will now receive notifications for this frame"


@dataclass
class WebhookResult:
    fid: int
    event: str
    action: str

    def to_dict(self) -> dict:
        return {"fid": self.fid, "event": self.event, "action": self.action}


def _delivery_details(event: dict) -> Optional[NotificationSubscription]:
    details = event.get("notificationDetails")
    if not details:
        return None
    if not isinstance(details, dict) or not details.get("url") or not details.get("token"):
        raise InvalidEventDataError("notificationDetails needs url and token")
    try:
        url = parse_endpoint_url(str(details["url"]))
    except ValueError as ex:
        raise InvalidEventDataError(str(ex)) from ex
    return NotificationSubscription(endpoint_url=url, auth_token=str(details["token"]))


class WebhookIngest:
    def __init__(
        self,
        verifier: EventVerifier,
        subscriptions: SubscriptionRegistry,
        dispatcher: NotificationDispatcher,
        app_url: str,
        log: Optional[EventLog] = None,
    ) -> None:
        self.verifier = verifier
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher
        self.app_url = app_url
        self.log = log or default_event_log

    async def handle(self, body: Any) -> WebhookResult:
        # Verification errors propagate before any state is touched.
        verified = await self.verifier.verify(body)
        fid = verified.fid
        name = EVENT_ALIASES.get(verified.event.get("event"), verified.event.get("event"))
        if name not in KNOWN_EVENTS:
            raise InvalidEventDataError(f"unknown event {name!r}")
        details = _delivery_details(verified.event)
        self.log.emit("webhook_event", fid=fid, event_name=name, has_details=details is not None)

        if name == "frame_added":
            if details is None:
                await self.subscriptions.delete(fid)
                return WebhookResult(fid, name, "unsubscribed")
            await self.subscriptions.save(fid, details)
            await self._greet(fid, details, WELCOME_TITLE, WELCOME_BODY)
            return WebhookResult(fid, name, "subscribed")

        if name == "notifications_enabled":
            if details is None:
                return WebhookResult(fid, name, "ignored")
            await self.subscriptions.save(fid, details)
            await self._greet(fid, details, ENABLED_TITLE, ENABLED_BODY)
            return WebhookResult(fid, name, "subscribed")

        # frame_removed, notifications_disabled
        await self.subscriptions.delete(fid)
        return WebhookResult(fid, name, "unsubscribed")

    async def _greet(self, fid: int, subscription: NotificationSubscription, title: str, body: str) -> None:
        outcome = await self.dispatcher.send(
            fid,
            Notification(title=title, body=body, target_url=self.app_url),
            subscription,
        )
        self.log.emit("webhook_greeting_sent", fid=fid, state=outcome.state.value)
