"""Client registry and one-time downstream grants.

Clients are registered once (dynamic client registration) and never change
afterwards. Grants live in an encrypted key-value collection keyed by their
authorization code; the store's TTL expires unused codes and redeeming a
code deletes it.
"""

from __future__ import annotations

import secrets
import time
from urllib.parse import urlencode, urlsplit, urlunsplit

from key_value.aio.adapters.pydantic import PydanticAdapter
from key_value.aio.protocols import AsyncKeyValue
from mcp.shared.auth import OAuthClientInformationFull

from authbridge.exceptions import InvalidClient, RedirectMismatch
from authbridge.server.auth.models import AuthorizationRequest, Grant, Props
from authbridge.utilities.logging import get_logger, redact

logger = get_logger(__name__)

DEFAULT_AUTH_CODE_EXPIRY_SECONDS = 5 * 60


def add_query_params(url: str, params: dict[str, str | None]) -> str:
    """Append ``params`` to ``url``, keeping any query it already has."""
    parts = urlsplit(url)
    extra = urlencode({k: v for k, v in params.items() if v is not None})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class ClientRegistry:
    """Registered downstream clients, backed by a key-value store."""

    def __init__(self, key_value: AsyncKeyValue):
        self._store: PydanticAdapter[OAuthClientInformationFull] = PydanticAdapter[
            OAuthClientInformationFull
        ](
            key_value=key_value,
            pydantic_model=OAuthClientInformationFull,
            default_collection="authbridge-clients",
            raise_on_validation_error=True,
        )

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        return await self._store.get(key=client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        """Store a new client. Registrations are immutable once made."""
        if client_info.client_id is None:
            raise ValueError("client_id is required to register a client")
        if await self._store.get(key=client_info.client_id) is not None:
            raise ValueError(f"Client {client_info.client_id} is already registered")
        await self._store.put(key=client_info.client_id, value=client_info)
        logger.info(
            "Registered client %s with %d redirect URI(s)",
            client_info.client_id,
            len(client_info.redirect_uris or []),
        )

    async def require_client(self, client_id: str | None) -> OAuthClientInformationFull:
        if not client_id or (client := await self.get_client(client_id)) is None:
            raise InvalidClient(f"Unknown client_id: {client_id!r}")
        return client

    @staticmethod
    def validate_redirect_uri(
        client: OAuthClientInformationFull, redirect_uri: str | None
    ) -> str:
        """Return ``redirect_uri`` if it exactly matches one the client registered.

        The comparison is on the raw string: no case folding, port or path
        normalization.

        A missing ``redirect_uri`` is accepted only when the client registered
        exactly one.
        """
        registered = [str(uri) for uri in client.redirect_uris or []]
        if redirect_uri is None:
            if len(registered) == 1:
                return registered[0]
            raise RedirectMismatch(
                "redirect_uri is required when the client registered several"
            )
        if redirect_uri not in registered:
            raise RedirectMismatch(
                f"redirect_uri {redirect_uri!r} is not registered for client {client.client_id}"
            )
        return redirect_uri


class GrantStore:
    """One-time grants keyed by authorization code."""

    def __init__(self, key_value: AsyncKeyValue):
        self._store: PydanticAdapter[Grant] = PydanticAdapter[Grant](
            key_value=key_value,
            pydantic_model=Grant,
            default_collection="authbridge-grants",
            raise_on_validation_error=True,
        )

    async def put(self, grant: Grant) -> None:
        ttl = max(1, int(grant.expires_at - time.time()))
        await self._store.put(key=grant.code, value=grant, ttl=ttl)

    async def get(self, code: str) -> Grant | None:
        grant = await self._store.get(key=code)
        if grant is not None and grant.expires_at < time.time():
            await self._store.delete(key=code)
            return None
        return grant

    async def take(self, code: str) -> bool:
        """Delete the grant; ``False`` if it was already gone (redeemed or expired)."""
        return await self._store.delete(key=code)


class GrantIssuer:
    """Creates downstream grants and the redirect carrying their code.

    Args:
        clients: Registry used to re-check the redirect URI before issuing.
        grants: Where grants are stored until redeemed.
        code_expiry_seconds: Lifetime of an unredeemed authorization code.
    """

    def __init__(
        self,
        clients: ClientRegistry,
        grants: GrantStore,
        *,
        code_expiry_seconds: int = DEFAULT_AUTH_CODE_EXPIRY_SECONDS,
    ):
        self.clients = clients
        self.grants = grants
        self.code_expiry_seconds = code_expiry_seconds

    async def complete_authorization(
        self, request: AuthorizationRequest, props: Props
    ) -> str:
        """Issue a grant for ``request`` and return the client redirect URL.

        Raises:
            InvalidClient: the client is no longer registered.
            RedirectMismatch: the redirect URI is not registered.
            ValueError: ``request`` carries no PKCE challenge.
        """
        client = await self.clients.require_client(request.client_id)
        redirect_uri = self.clients.validate_redirect_uri(client, request.redirect_uri)
        if not request.code_challenge:
            raise ValueError("Authorization request has no code_challenge")

        code = secrets.token_urlsafe(32)
        grant = Grant(
            code=code,
            client_id=request.client_id,
            redirect_uri=redirect_uri,
            redirect_uri_provided_explicitly=request.redirect_uri_provided_explicitly,
            scopes=list(request.scopes),
            code_challenge=request.code_challenge,
            resource=request.resource,
            props=props,
            expires_at=time.time() + self.code_expiry_seconds,
        )
        await self.grants.put(grant)

        logger.info(
            "Issued authorization code %s to client %s for user %s",
            redact(code),
            request.client_id,
            props.internal_user_id,
        )
        return add_query_params(redirect_uri, {"code": code, "state": request.state})
