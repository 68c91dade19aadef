"""Bearer authentication for the protected API with actionable error messages."""

from __future__ import annotations

import json

from mcp.server.auth.middleware.bearer_auth import (
    RequireAuthMiddleware as SDKRequireAuthMiddleware,
)
from starlette.types import Send

from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)


class RequireAuthMiddleware(SDKRequireAuthMiddleware):
    """SDK ``RequireAuthMiddleware`` that explains how to recover from a 401.

    Access tokens are sealed with a key derived from the cookie-signing key,
    so rotating that key or letting a token expire both surface here.
    """

    async def _send_auth_error(
        self, send: Send, status_code: int, error: str, description: str
    ) -> None:
        """Send a JSON error and ``WWW-Authenticate`` header.

        Args:
            send: ASGI send callable
            status_code: HTTP status code (401 or 403)
            error: OAuth error code
            description: Base error description
        """
        if error == "invalid_token" and status_code == 401:
            description = (
                "Authentication failed. The bearer token is missing, expired, or was "
                "sealed with a signing key this server no longer uses. "
                "Re-authenticate by starting a new authorization flow at /authorize."
            )

        www_auth_parts = [
            f'error="{error}"',
            f'error_description="{description}"',
        ]
        if self.resource_metadata_url:
            www_auth_parts.append(f'resource_metadata="{self.resource_metadata_url}"')
        www_authenticate = f"Bearer {', '.join(www_auth_parts)}"

        body_bytes = json.dumps(
            {"error": error, "error_description": description}
        ).encode()

        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body_bytes)).encode()),
                    (b"www-authenticate", www_authenticate.encode()),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body_bytes})

        logger.info("Auth error response: %s (status=%d)", error, status_code)
