"""Downstream access tokens with Props sealed inside.

Tokens are Fernet tokens (AES-CBC + HMAC) so the upstream access token in
Props is never visible to the downstream client. Nothing is stored: a
protected call reconstructs Props by unsealing the bearer token.
"""

from __future__ import annotations

import base64
import time

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, SecretStr, ValidationError

from authbridge.server.auth.models import Props
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)


def derive_fernet_key(secret: str | SecretStr, *, salt: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from the server secret."""
    if isinstance(secret, SecretStr):
        secret = secret.get_secret_value()
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        info=b"authbridge",
    ).derive(secret.encode())
    return base64.urlsafe_b64encode(key)


class SealedToken(BaseModel):
    """Claims carried inside a downstream access token."""

    client_id: str
    scopes: list[str]
    props: Props
    expires_at: int
    resource: str | None = None


class TokenSealer:
    """Seals and unseals :class:`SealedToken` claims."""

    def __init__(self, secret: str | SecretStr):
        self._fernet = Fernet(derive_fernet_key(secret, salt="authbridge-access-token"))

    def seal(self, claims: SealedToken) -> str:
        return self._fernet.encrypt(claims.model_dump_json().encode()).decode()

    def unseal(self, token: str) -> SealedToken | None:
        """Return the claims, or ``None`` for a forged, foreign or expired token."""
        try:
            claims = SealedToken.model_validate_json(self._fernet.decrypt(token.encode()))
        except (InvalidToken, ValidationError, UnicodeEncodeError):
            logger.debug("Rejected access token that failed to unseal")
            return None
        if claims.expires_at < time.time():
            logger.debug("Rejected expired access token for client %s", claims.client_id)
            return None
        return claims
