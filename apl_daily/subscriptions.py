from __future__ import annotations

import json
from dataclasses import dataclass
from typing import List, Optional, Tuple

import httpx

from apl_daily.errors import StoreError
from apl_daily.logs import EventLog, default_event_log
from apl_daily.store import StateStore, StoreKeys


def parse_endpoint_url(value: str) -> str:
    """Return ``value`` if it is an absolute http(s) URL, else raise ValueError."""
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as ex:
        raise ValueError(f"invalid endpoint url: {ex}") from ex
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError("endpoint url must be an absolute http(s) url")
    return value


@dataclass(frozen=True)
class NotificationSubscription:
    endpoint_url: str
    auth_token: str

    def to_json(self) -> str:
        return json.dumps({"endpointUrl": self.endpoint_url, "authToken": self.auth_token})

    @classmethod
    def from_json(cls, raw: str) -> "NotificationSubscription":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("subscription record must be an object")
        # Platform payloads use url/token.
        url = data.get("endpointUrl") or data.get("url")
        token = data.get("authToken") or data.get("token")
        if not url or not token:
            raise ValueError("subscription record needs an endpoint url and a token")
        return cls(endpoint_url=str(url), auth_token=str(token))


class SubscriptionRegistry:
    def __init__(self, store: StateStore, keys: StoreKeys, log: Optional[EventLog] = None) -> None:
        self.store = store
        self.keys = keys
        self.log = log or default_event_log

    async def get(self, user_id: int) -> Optional[NotificationSubscription]:
        key = self.keys.user(user_id)
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return NotificationSubscription.from_json(raw)
        except ValueError as ex:
            self.log.error("subscription_record_invalid", user_id=user_id, error=str(ex))
            return None

    async def save(self, user_id: int, subscription: NotificationSubscription) -> None:
        await self.store.set(self.keys.user(user_id), subscription.to_json())
        self.log.emit("subscription_saved", user_id=user_id, endpoint=subscription.endpoint_url)

    async def delete(self, user_id: int) -> None:
        await self.store.delete(self.keys.user(user_id))
        self.log.emit("subscription_deleted", user_id=user_id)

    async def all(self) -> List[Tuple[int, NotificationSubscription]]:
        result: List[Tuple[int, NotificationSubscription]] = []
        for key in await self.store.keys_matching(self.keys.users_prefix()):
            user_id = self.keys.user_id_from_key(key)
            if user_id is None:
                continue
            try:
                subscription = await self.get(user_id)
            except StoreError as ex:
                self.log.error("subscription_read_failed", user_id=user_id, error=str(ex))
                continue
            if subscription is not None:
                result.append((user_id, subscription))
        return sorted(result, key=lambda item: item[0])
