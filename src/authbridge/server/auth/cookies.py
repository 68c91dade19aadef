"""Tamper-evident signed values for cookies, forms and ``state``.

A signed value is ``base64url(payload) "." base64url(HMAC-SHA256(payload))``
where the payload is the record serialized as JSON with sorted keys and no
whitespace, so the MAC is reproducible. Each codec derives its own key from
the server secret and a *purpose* string, so a value signed for one purpose
(e.g. an approval cookie) never verifies for another (e.g. upstream state).

Codecs are pure: no network or storage access. :class:`CookiePolicy` only
reads request cookies and mutates response headers.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Iterable
from typing import Generic, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_serializer,
)
from starlette.requests import Request
from starlette.responses import Response

from authbridge.exceptions import InvalidSignature, SignatureExpired
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)

# Records issued this far in the future are still accepted
CLOCK_SKEW_SECONDS = 60


def _now() -> int:
    return int(time.time())


class SignedRecord(BaseModel):
    """Base for every record carried by a :class:`CookieCodec`."""

    model_config = ConfigDict(frozen=True)

    issued_at: int = Field(default_factory=_now)


class ApprovalRecord(SignedRecord):
    """A user's consent for a client, cached in the approval cookie."""

    client_id: str
    approved_scopes: frozenset[str] = frozenset()

    @field_serializer("approved_scopes")
    def _serialize_scopes(self, scopes: frozenset[str]) -> list[str]:
        return sorted(scopes)

    def covers(self, client_id: str, scopes: Iterable[str]) -> bool:
        """True if this approval is for ``client_id`` and includes all ``scopes``."""
        return hmac.compare_digest(
            self.client_id.encode(), client_id.encode()
        ) and set(scopes) <= self.approved_scopes


RecordT = TypeVar("RecordT", bound=SignedRecord)


def b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def _secret_bytes(secret: str | bytes | SecretStr) -> bytes:
    if isinstance(secret, SecretStr):
        secret = secret.get_secret_value()
    if isinstance(secret, str):
        secret = secret.encode()
    if not secret:
        raise ValueError("Signing secret must not be empty")
    return secret


class CookieCodec(Generic[RecordT]):
    """Signs and verifies records of one model type for one purpose.

    Args:
        secret: Server signing key. Rotating it invalidates every value
            signed with the previous key.
        model: The record type to (de)serialize.
        purpose: Domain separation label; part of the derived MAC key.
        max_age: Reject records whose ``issued_at`` is older than this many
            seconds. ``None`` disables the expiry check.
    """

    def __init__(
        self,
        secret: str | bytes | SecretStr,
        model: type[RecordT],
        *,
        purpose: str,
        max_age: int | None = None,
    ):
        self._key = hmac.new(
            _secret_bytes(secret), f"authbridge:{purpose}".encode(), hashlib.sha256
        ).digest()
        self.model = model
        self.purpose = purpose
        self.max_age = max_age

    def _tag(self, payload_b64: str) -> str:
        mac = hmac.new(self._key, payload_b64.encode("ascii"), hashlib.sha256)
        return b64encode(mac.digest())

    def sign(self, record: RecordT) -> str:
        """Serialize ``record`` deterministically and append its MAC."""
        payload = json.dumps(
            record.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode()
        payload_b64 = b64encode(payload)
        return f"{payload_b64}.{self._tag(payload_b64)}"

    def verify(self, value: str | None) -> RecordT:
        """Return the record carried by ``value``.

        Raises:
            InvalidSignature: missing, truncated, undecodable or MAC mismatch.
            SignatureExpired: valid MAC but older than ``max_age``.
        """
        if not value or not value.isascii():
            raise InvalidSignature(f"Missing or malformed {self.purpose} value")

        parts = value.split(".")
        if len(parts) != 2 or not all(parts):
            raise InvalidSignature(f"Malformed {self.purpose} value")
        payload_b64, tag = parts

        if not hmac.compare_digest(self._tag(payload_b64), tag):
            raise InvalidSignature(f"{self.purpose} signature mismatch")

        try:
            data = json.loads(b64decode(payload_b64))
            record = self.model.model_validate(data)
        except (binascii.Error, ValueError, ValidationError) as e:
            raise InvalidSignature(f"Undecodable {self.purpose} payload") from e

        now = _now()
        if record.issued_at > now + CLOCK_SKEW_SECONDS:
            raise InvalidSignature(f"{self.purpose} issued in the future")
        if self.max_age is not None and now - record.issued_at > self.max_age:
            raise SignatureExpired(f"{self.purpose} older than {self.max_age}s")

        return record


class CookiePolicy:
    """Names and attributes for the bridge's browser cookies.

    Over HTTPS cookies use the ``__Host-`` prefix and are ``Secure``; for
    plain-HTTP development a ``__`` prefix is used instead.
    """

    def __init__(self, *, is_https: bool):
        self.is_https = is_https

    def name(self, base_name: str) -> str:
        if self.is_https:
            return f"__Host-{base_name}"
        return f"__{base_name}"

    def get(self, request: Request, base_name: str) -> str | None:
        return request.cookies.get(self.name(base_name))

    def set(self, response: Response, base_name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            self.name(base_name),
            value,
            max_age=max_age,
            secure=self.is_https,
            httponly=True,
            samesite="lax",
            path="/",
        )

    def clear(self, response: Response, base_name: str) -> None:
        response.delete_cookie(
            self.name(base_name),
            path="/",
            secure=self.is_https,
            httponly=True,
            samesite="lax",
        )
