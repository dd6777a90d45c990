"""Verification of signed platform webhook events.

Events arrive as a JSON signature envelope ``{"header", "payload", "signature"}``
whose members are base64url strings. The header names the user's fid and the
ed25519 app key that signed ``"<header>.<payload>"``; the app key must also be
registered to that fid on the hub.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from apl_daily.errors import InvalidAppKeyError, InvalidEventDataError, VerifyAppKeyError

AppKeyCheck = Callable[[int, str], Awaitable[bool]]


@dataclass(frozen=True)
class VerifiedEvent:
    fid: int
    event: dict
    app_key: str


class EventVerifier(Protocol):
    async def verify(self, body: Any) -> VerifiedEvent: ...


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_json_part(name: str, value: Any) -> dict:
    if not isinstance(value, str) or not value:
        raise InvalidEventDataError(f"missing {name}")
    try:
        data = json.loads(b64url_decode(value))
    except (binascii.Error, UnicodeDecodeError, ValueError) as ex:
        raise InvalidEventDataError(f"invalid {name} encoding: {ex}") from ex
    if not isinstance(data, dict):
        raise InvalidEventDataError(f"{name} must be a JSON object")
    return data


def _public_key_bytes(key: Any) -> bytes:
    if not isinstance(key, str) or not key.startswith("0x"):
        raise InvalidEventDataError("header key must be a 0x-prefixed hex string")
    try:
        raw = bytes.fromhex(key[2:])
    except ValueError as ex:
        raise InvalidEventDataError("header key is not valid hex") from ex
    if len(raw) != 32:
        raise InvalidEventDataError("header key must be a 32-byte ed25519 public key")
    return raw


def verify_envelope(body: Any) -> VerifiedEvent:
    """Check the envelope shape and its ed25519 signature, without the hub lookup."""
    if not isinstance(body, dict):
        raise InvalidEventDataError("event body must be a JSON object")
    header_raw = body.get("header")
    payload_raw = body.get("payload")
    header = _decode_json_part("header", header_raw)
    event = _decode_json_part("payload", payload_raw)

    fid = header.get("fid")
    if not isinstance(fid, int) or isinstance(fid, bool) or fid <= 0:
        raise InvalidEventDataError("header fid must be a positive integer")
    if header.get("type") != "app_key":
        raise InvalidEventDataError(f"unsupported signer type {header.get('type')!r}")
    key = header.get("key")
    public_key = Ed25519PublicKey.from_public_bytes(_public_key_bytes(key))

    signature_raw = body.get("signature")
    if not isinstance(signature_raw, str) or not signature_raw:
        raise InvalidEventDataError("missing signature")
    try:
        signature = b64url_decode(signature_raw)
    except (binascii.Error, ValueError) as ex:
        raise InvalidEventDataError("invalid signature encoding") from ex
    try:
        public_key.verify(signature, f"{header_raw}.{payload_raw}".encode("utf-8"))
    except InvalidSignature as ex:
        raise InvalidEventDataError("invalid event signature") from ex

    if not isinstance(event.get("event"), str):
        raise InvalidEventDataError("payload has no event name")
    return VerifiedEvent(fid=fid, event=event, app_key=key.lower())


class HubAppKeyCheck:
    """Asks the hub whether ``key`` is one of the fid's on-chain signers."""

    def __init__(self, client: httpx.AsyncClient, hub_url: str, api_key: str) -> None:
        self.client = client
        self.hub_url = hub_url.rstrip("/")
        self.api_key = api_key

    async def __call__(self, fid: int, key: str) -> bool:
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            response = await self.client.get(
                f"{self.hub_url}/v1/onChainSignersByFid",
                params={"fid": fid},
                headers=headers,
            )
        except httpx.HTTPError as ex:
            raise VerifyAppKeyError(f"hub request failed: {ex}") from ex
        if response.status_code != 200:
            raise VerifyAppKeyError(f"hub returned status {response.status_code}")
        try:
            events = response.json().get("events", [])
        except (ValueError, AttributeError) as ex:
            raise VerifyAppKeyError("hub returned an unreadable signer list") from ex
        wanted = key.lower()
        for event in events or []:
            body = event.get("signerEventBody") if isinstance(event, dict) else None
            if isinstance(body, dict) and str(body.get("key", "")).lower() == wanted:
                return True
        return False


class SignedEventVerifier:
    def __init__(self, app_key_check: AppKeyCheck) -> None:
        self.app_key_check = app_key_check

    async def verify(self, body: Any) -> VerifiedEvent:
        verified = verify_envelope(body)
        if not await self.app_key_check(verified.fid, verified.app_key):
            raise InvalidAppKeyError(f"app key is not registered to fid {verified.fid}")
        return verified


def build_verifier(client: httpx.AsyncClient, hub_url: str, api_key: Optional[str]) -> SignedEventVerifier:
    return SignedEventVerifier(HubAppKeyCheck(client, hub_url, api_key or ""))
