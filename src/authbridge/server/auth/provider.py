"""Token issuance for downstream clients.

:class:`BridgeProvider` plugs the bridge into the MCP SDK's authorization
server: the SDK serves metadata, ``/register`` and ``/token`` (including
PKCE verification), while ``/authorize`` is replaced by the bridge's consent
and upstream-login endpoint and ``/callback`` is added.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from mcp.server.auth.provider import (
    AccessToken,
    AuthorizationCode,
    AuthorizationParams,
    OAuthAuthorizationServerProvider,
    RefreshToken,
    RegistrationError,
    TokenError,
)
from mcp.server.auth.routes import create_auth_routes
from mcp.server.auth.settings import ClientRegistrationOptions, RevocationOptions
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import AnyHttpUrl, AnyUrl
from starlette.routing import Route

from authbridge.server.auth.grants import ClientRegistry, GrantStore
from authbridge.server.auth.models import Props
from authbridge.server.auth.tokens import SealedToken, TokenSealer
from authbridge.utilities.logging import get_logger, redact

if TYPE_CHECKING:
    from starlette.routing import BaseRoute

    from authbridge.server.auth.handlers import AuthorizeEndpoint, CallbackEndpoint

logger = get_logger(__name__)

DEFAULT_ACCESS_TOKEN_EXPIRY_SECONDS = 60 * 60


class BridgeAuthorizationCode(AuthorizationCode):
    """Authorization code loaded from a grant, carrying its Props."""

    props: Props


class BridgeAccessToken(AccessToken):
    """Verified access token with the Props it was issued for."""

    props: Props


class BridgeProvider(
    OAuthAuthorizationServerProvider[
        BridgeAuthorizationCode, RefreshToken, BridgeAccessToken
    ]
):
    """Authorization server side of the bridge.

    Args:
        issuer_url: Public URL of the bridge (OAuth issuer).
        clients: Registered downstream clients.
        grants: Store of unredeemed authorization codes.
        sealer: Seals Props into access tokens.
        authorize_endpoint: Handler for ``GET/POST /authorize``.
        callback_endpoint: Handler for ``GET /callback``.
        access_token_expiry_seconds: Lifetime of issued access tokens.
        service_documentation_url: Optional documentation link for metadata.
    """

    def __init__(
        self,
        *,
        issuer_url: AnyHttpUrl | str,
        clients: ClientRegistry,
        grants: GrantStore,
        sealer: TokenSealer,
        authorize_endpoint: AuthorizeEndpoint,
        callback_endpoint: CallbackEndpoint,
        access_token_expiry_seconds: int = DEFAULT_ACCESS_TOKEN_EXPIRY_SECONDS,
        service_documentation_url: AnyHttpUrl | str | None = None,
    ):
        if isinstance(issuer_url, str):
            issuer_url = AnyHttpUrl(issuer_url)
        if isinstance(service_documentation_url, str):
            service_documentation_url = AnyHttpUrl(service_documentation_url)

        self.issuer_url = issuer_url
        self.service_documentation_url = service_documentation_url
        self.clients = clients
        self.grants = grants
        self.sealer = sealer
        self.authorize_endpoint = authorize_endpoint
        self.callback_endpoint = callback_endpoint
        self.access_token_expiry_seconds = access_token_expiry_seconds

        self.client_registration_options = ClientRegistrationOptions(enabled=True)
        self.revocation_options = RevocationOptions(enabled=False)

    # -------------------------------------------------------------------------
    # Client Registration
    # -------------------------------------------------------------------------

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        return await self.clients.get_client(client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        try:
            await self.clients.register_client(client_info)
        except ValueError as e:
            raise RegistrationError(
                error="invalid_client_metadata", error_description=str(e)
            ) from e

    async def authorize(
        self, client: OAuthClientInformationFull, params: AuthorizationParams
    ) -> str:
        """Not used: ``/authorize`` is served by :class:`AuthorizeEndpoint`."""
        raise NotImplementedError("/authorize is handled by the bridge endpoint")

    # -------------------------------------------------------------------------
    # Authorization Code Handling
    # -------------------------------------------------------------------------

    async def load_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: str
    ) -> BridgeAuthorizationCode | None:
        grant = await self.grants.get(authorization_code)
        if grant is None:
            logger.debug("Unknown or expired authorization code %s", redact(authorization_code))
            return None
        if grant.client_id != client.client_id:
            logger.warning(
                "Client %s presented a code issued to %s",
                client.client_id,
                grant.client_id,
            )
            return None

        return BridgeAuthorizationCode(
            code=grant.code,
            scopes=grant.scopes,
            expires_at=grant.expires_at,
            client_id=grant.client_id,
            code_challenge=grant.code_challenge,
            redirect_uri=AnyUrl(grant.redirect_uri),
            redirect_uri_provided_explicitly=grant.redirect_uri_provided_explicitly,
            resource=grant.resource,
            props=grant.props,
        )

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: BridgeAuthorizationCode,
    ) -> OAuthToken:
        """Redeem a code for an access token. Each code is redeemable once."""
        if not await self.grants.take(authorization_code.code):
            logger.warning(
                "Authorization code %s for client %s was already redeemed",
                redact(authorization_code.code),
                client.client_id,
            )
            raise TokenError("invalid_grant", "Authorization code has already been used")

        expires_at = int(time.time() + self.access_token_expiry_seconds)
        access_token = self.sealer.seal(
            SealedToken(
                client_id=authorization_code.client_id,
                scopes=authorization_code.scopes,
                props=authorization_code.props,
                expires_at=expires_at,
                resource=authorization_code.resource,
            )
        )

        logger.info(
            "Issued access token to client %s for user %s",
            authorization_code.client_id,
            authorization_code.props.internal_user_id,
        )
        return OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self.access_token_expiry_seconds,
            scope=" ".join(authorization_code.scopes) or None,
        )

    # -------------------------------------------------------------------------
    # Refresh Tokens (not issued)
    # -------------------------------------------------------------------------

    async def load_refresh_token(
        self, client: OAuthClientInformationFull, refresh_token: str
    ) -> RefreshToken | None:
        return None

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: RefreshToken,
        scopes: list[str],
    ) -> OAuthToken:
        raise TokenError("unsupported_grant_type", "Refresh tokens are not issued")

    # -------------------------------------------------------------------------
    # Token Validation
    # -------------------------------------------------------------------------

    async def load_access_token(self, token: str) -> BridgeAccessToken | None:
        claims = self.sealer.unseal(token)
        if claims is None:
            return None
        return BridgeAccessToken(
            token=token,
            client_id=claims.client_id,
            scopes=claims.scopes,
            expires_at=claims.expires_at,
            resource=claims.resource,
            props=claims.props,
        )

    async def verify_token(self, token: str) -> BridgeAccessToken | None:
        """Token verifier protocol used by the bearer auth backend."""
        return await self.load_access_token(token)

    async def revoke_token(self, token: BridgeAccessToken | RefreshToken) -> None:
        # Sealed tokens are self-contained; they lapse at expiry
        logger.debug("Ignoring revocation request for client %s", token.client_id)

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    def get_routes(self) -> list[BaseRoute]:
        """SDK authorization server routes with the bridge's ``/authorize``.

        The SDK's authorize handler is swapped for :class:`AuthorizeEndpoint`
        and ``/callback`` is appended for the upstream redirect.
        """
        routes = create_auth_routes(
            provider=self,
            issuer_url=self.issuer_url,
            service_documentation_url=self.service_documentation_url,
            client_registration_options=self.client_registration_options,
            revocation_options=self.revocation_options,
        )

        custom_routes: list[BaseRoute] = []
        for route in routes:
            if isinstance(route, Route) and route.path == "/authorize":
                continue
            custom_routes.append(route)

        custom_routes.append(
            Route(
                path="/authorize",
                endpoint=self.authorize_endpoint.handle,
                methods=["GET", "POST"],
            )
        )
        custom_routes.append(
            Route(
                path="/callback",
                endpoint=self.callback_endpoint.handle,
                methods=["GET"],
            )
        )

        logger.debug("Authorization server routes: %d", len(custom_routes))
        return custom_routes
