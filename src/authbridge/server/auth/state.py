"""Self-describing signed state for browser round trips.

The bridge keeps no session store. Whatever it needs after a round trip
through the browser (the consent form post, the upstream callback) travels
with the browser as a signed :class:`FlowState`. A random nonce in the state
is mirrored into a short-lived cookie; on return the two must match, which
binds the round trip to the browser that started it.
"""

from __future__ import annotations

import hmac
import secrets

from pydantic import Field, SecretStr

from authbridge.exceptions import (
    InvalidSignature,
    SignatureExpired,
    StateExpired,
    StateTampered,
)
from authbridge.server.auth.cookies import CookieCodec, SignedRecord
from authbridge.server.auth.models import AuthorizationRequest
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)


def _new_nonce() -> str:
    return secrets.token_urlsafe(24)


class FlowState(SignedRecord):
    """An authorization request in flight, plus its browser-binding nonce."""

    request: AuthorizationRequest
    nonce: str = Field(default_factory=_new_nonce)


class StateCodec:
    """Issues and opens :class:`FlowState` tokens for one kind of round trip.

    Args:
        secret: Server signing key.
        purpose: Round-trip label (e.g. ``"upstream-state"``, ``"consent"``).
        max_age: Seconds a round trip may take before it is rejected.
    """

    def __init__(self, secret: str | bytes | SecretStr, *, purpose: str, max_age: int):
        self._codec = CookieCodec(
            secret, FlowState, purpose=purpose, max_age=max_age
        )
        self.purpose = purpose
        self.max_age = max_age

    def issue(self, request: AuthorizationRequest) -> tuple[str, FlowState]:
        """Return the signed token and the flow it carries (for its nonce)."""
        flow = FlowState(request=request)
        return self._codec.sign(flow), flow

    def open(self, token: str | None, marker: str | None) -> AuthorizationRequest:
        """Verify ``token`` and its browser marker and return the original request.

        Raises:
            StateTampered: unparseable, bad MAC, or no matching pending flow.
            StateExpired: the round trip is older than ``max_age``.
        """
        try:
            flow = self._codec.verify(token)
        except SignatureExpired as e:
            raise StateExpired(f"The {self.purpose} round trip expired") from e
        except InvalidSignature as e:
            raise StateTampered(f"The {self.purpose} value failed verification") from e

        if not marker or not hmac.compare_digest(
            flow.nonce.encode(), marker.encode()
        ):
            logger.warning(
                "%s for client %s does not match a pending flow in this browser",
                self.purpose,
                flow.request.client_id,
            )
            raise StateTampered(f"The {self.purpose} value matches no pending flow")

        return flow.request
