"""OAuth client side of the bridge: talks to the upstream identity provider.

Defaults target GitHub. Only two outbound calls are made per login: the
server-to-server code exchange and the identity fetch (plus an optional
secondary lookup of the primary email). Neither is retried: an upstream
authorization code is single-use, so a failed exchange fails the login.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final
from urllib.parse import parse_qs, urlencode

import httpx
from pydantic import SecretStr

from authbridge.exceptions import UpstreamError
from authbridge.server.auth.models import AuthorizationRequest, Identity, UpstreamToken
from authbridge.server.auth.state import StateCodec
from authbridge.settings import (
    GITHUB_API_BASE_URL,
    GITHUB_AUTHORIZATION_ENDPOINT,
    GITHUB_TOKEN_ENDPOINT,
)
from authbridge.utilities.logging import get_logger, redact

logger = get_logger(__name__)

USER_AGENT: Final[str] = "authbridge"
HTTP_TIMEOUT_SECONDS: Final[float] = 10.0


@dataclass(frozen=True)
class UpstreamRedirect:
    """Where to send the browser, and the nonce to pin in the flow cookie."""

    url: str
    flow_nonce: str


class UpstreamExchangeClient:
    """OAuth client for the upstream provider.

    Args:
        client_id: Client ID registered with the upstream provider
        client_secret: Client secret registered with the upstream provider
        redirect_uri: The bridge's callback URL registered upstream
        state_codec: Codec producing the self-describing ``state``
        authorization_endpoint: Upstream authorize URL
        token_endpoint: Upstream token URL
        api_base_url: Base URL of the upstream user API
        scopes: Scopes requested from the upstream provider
        timeout_seconds: Timeout for each outbound request
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | SecretStr,
        redirect_uri: str,
        state_codec: StateCodec,
        authorization_endpoint: str = GITHUB_AUTHORIZATION_ENDPOINT,
        token_endpoint: str = GITHUB_TOKEN_ENDPOINT,
        api_base_url: str = GITHUB_API_BASE_URL,
        scopes: list[str] | None = None,
        timeout_seconds: float = HTTP_TIMEOUT_SECONDS,
    ):
        if isinstance(client_secret, str):
            client_secret = SecretStr(client_secret)
        self._client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._state_codec = state_codec
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.api_base_url = api_base_url.rstrip("/")
        self.scopes = list(scopes or [])
        self.timeout_seconds = timeout_seconds

    # -------------------------------------------------------------------------
    # Authorization redirect
    # -------------------------------------------------------------------------

    def build_authorize_url(self, request: AuthorizationRequest) -> UpstreamRedirect:
        """Build the upstream authorization URL for ``request``.

        A fresh signed ``state`` embeds the original request so the callback
        can recover it without server-side storage.
        """
        state, flow = self._state_codec.issue(request)
        query_params: dict[str, Any] = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        if self.scopes:
            query_params["scope"] = " ".join(self.scopes)

        separator = "&" if "?" in self.authorization_endpoint else "?"
        url = f"{self.authorization_endpoint}{separator}{urlencode(query_params)}"

        logger.debug(
            "Built upstream authorization URL for client %s (flow %s)",
            request.client_id,
            redact(flow.nonce),
        )
        return UpstreamRedirect(url=url, flow_nonce=flow.nonce)

    # -------------------------------------------------------------------------
    # Code exchange
    # -------------------------------------------------------------------------

    async def exchange_code(self, code: str) -> UpstreamToken:
        """Exchange an upstream authorization code for an access token.

        Raises:
            UpstreamError: transport failure, non-success status, an OAuth
                error body, or a body without an access token.
        """
        token_data = {
            "grant_type": "authorization_code",
            "client_id": self._client_id,
            "client_secret": self._client_secret.get_secret_value(),
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        logger.debug("Exchanging upstream code %s", redact(code))

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as http_client:
            try:
                response = await http_client.post(
                    self.token_endpoint,
                    data=token_data,
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                )
            except httpx.RequestError as e:
                logger.error("Failed to connect to upstream token endpoint: %s", e)
                raise UpstreamError("Unable to connect to the identity provider") from e

        if response.status_code >= 400:
            logger.error(
                "Upstream token exchange failed: %d - %s",
                response.status_code,
                response.text[:200],
            )
            raise UpstreamError(
                f"Token exchange failed with status {response.status_code}",
                status_code=response.status_code,
            )

        token_response = self._parse_token_response(response)

        # GitHub answers 200 with an error body for bad or reused codes
        if "error" in token_response:
            logger.error(
                "Upstream token exchange returned error: %s - %s",
                token_response.get("error"),
                token_response.get("error_description"),
            )
            raise UpstreamError(
                f"Token exchange rejected: {token_response.get('error')}",
                status_code=response.status_code,
            )

        access_token = token_response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise UpstreamError("Token response did not contain an access token")

        expires_at = None
        if expires_in := token_response.get("expires_in"):
            try:
                expires_at = int(time.time() + int(expires_in))
            except (TypeError, ValueError) as e:
                raise UpstreamError("Token response has an invalid expires_in") from e

        logger.info("Exchanged upstream authorization code for an access token")
        return UpstreamToken(
            access_token=access_token,
            token_type=str(token_response.get("token_type") or "bearer"),
            scope=str(token_response.get("scope") or ""),
            expires_at=expires_at,
        )

    def _parse_token_response(self, response: httpx.Response) -> Mapping[str, Any]:
        content_type = response.headers.get("content-type", "").lower()
        if "application/x-www-form-urlencoded" in content_type:
            # GitHub-style form-encoded response
            parsed = parse_qs(response.text)
            return {key: values[0] for key, values in parsed.items() if values}
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError("Malformed token response from the identity provider") from e
        if not isinstance(body, dict):
            raise UpstreamError("Malformed token response from the identity provider")
        return body

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def _api_headers(self, token: UpstreamToken) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token.access_token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }

    async def fetch_identity(self, token: UpstreamToken) -> Identity:
        """Fetch the account the access token belongs to.

        Raises:
            UpstreamError: transport failure, non-200 status, or a body
                without a numeric ``id`` and a ``login``.
        """
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as http_client:
            try:
                response = await http_client.get(
                    f"{self.api_base_url}/user", headers=self._api_headers(token)
                )
            except httpx.RequestError as e:
                logger.error("Failed to fetch upstream identity: %s", e)
                raise UpstreamError("Unable to connect to the identity provider") from e

            if response.status_code != 200:
                logger.error(
                    "Upstream identity fetch failed: %d - %s",
                    response.status_code,
                    response.text[:200],
                )
                raise UpstreamError(
                    f"Identity fetch failed with status {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                user_data = response.json()
                identity = Identity(
                    provider_id=int(user_data["id"]),
                    login_name=str(user_data["login"]),
                    display_name=user_data.get("name"),
                    email=user_data.get("email"),
                    avatar_url=user_data.get("avatar_url"),
                    bio=user_data.get("bio"),
                )
            except (ValueError, TypeError, KeyError) as e:
                raise UpstreamError("Malformed identity from the identity provider") from e

            if identity.email is None:
                email = await self._fetch_primary_email(http_client, token)
                if email:
                    identity = identity.model_copy(update={"email": email})

        logger.info(
            "Fetched upstream identity %s (%d)", identity.login_name, identity.provider_id
        )
        return identity

    async def _fetch_primary_email(
        self, http_client: httpx.AsyncClient, token: UpstreamToken
    ) -> str | None:
        """Primary verified address from ``/user/emails``; ``None`` if unavailable."""
        try:
            response = await http_client.get(
                f"{self.api_base_url}/user/emails", headers=self._api_headers(token)
            )
            if response.status_code != 200:
                logger.debug(
                    "Upstream email lookup returned %d; continuing without email",
                    response.status_code,
                )
                return None
            emails = response.json()
        except (httpx.RequestError, ValueError) as e:
            logger.debug("Upstream email lookup failed: %s", e)
            return None

        if not isinstance(emails, list):
            return None
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return entry.get("email")
        return None
