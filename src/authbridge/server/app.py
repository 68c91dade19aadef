"""Application wiring."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from cryptography.fernet import Fernet
from key_value.aio.protocols import AsyncKeyValue
from key_value.aio.stores.memory import MemoryStore
from key_value.aio.wrappers.encryption import FernetEncryptionWrapper
from mcp.server.auth.middleware.bearer_auth import BearerAuthBackend
from pydantic import SecretStr
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

import authbridge
from authbridge.exceptions import ConfigurationError
from authbridge.server.api import ProtectedOperations, create_api_app
from authbridge.server.auth.callback import CallbackBinder
from authbridge.server.auth.consent import ApprovalGate
from authbridge.server.auth.cookies import ApprovalRecord, CookieCodec, CookiePolicy
from authbridge.server.auth.grants import ClientRegistry, GrantIssuer, GrantStore
from authbridge.server.auth.handlers import AuthorizeEndpoint, CallbackEndpoint
from authbridge.server.auth.middleware import RequireAuthMiddleware
from authbridge.server.auth.provider import BridgeProvider
from authbridge.server.auth.state import StateCodec
from authbridge.server.auth.tokens import TokenSealer, derive_fernet_key
from authbridge.server.auth.upstream import UpstreamExchangeClient
from authbridge.server.images import ImageGenerator
from authbridge.server.tools import MCPEndpoint, create_tool_server
from authbridge.settings import Settings
from authbridge.storage.users import SQLiteUserStore, UserStore
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credentials:
    """The secrets the bridge cannot start without."""

    upstream_client_id: str
    upstream_client_secret: SecretStr
    signing_key: SecretStr


def require_credentials(settings: Settings) -> Credentials:
    """Return the required secrets from ``settings``. Has no side effects.

    Raises:
        ConfigurationError: upstream credentials or the signing key are missing.
    """
    client_id = settings.upstream_client_id
    client_secret = settings.upstream_client_secret
    signing_key = settings.cookie_signing_key
    if not client_id or not client_secret or not signing_key:
        missing = [
            name
            for name, value in (
                ("upstream_client_id", client_id),
                ("upstream_client_secret", client_secret),
                ("cookie_signing_key", signing_key),
            )
            if not value
        ]
        raise ConfigurationError(
            f"Missing required settings: {', '.join(missing)} "
            "(set AUTHBRIDGE_<NAME> in the environment)"
        )
    return Credentials(
        upstream_client_id=client_id,
        upstream_client_secret=client_secret,
        signing_key=signing_key,
    )


def create_app(
    settings: Settings | None = None,
    *,
    user_store: UserStore | None = None,
    key_value: AsyncKeyValue | None = None,
) -> Starlette:
    """Build the bridge as a Starlette application.

    Args:
        settings: Defaults to the global ``authbridge.settings``.
        user_store: Defaults to a :class:`SQLiteUserStore` at
            ``settings.resolved_database_path``.
        key_value: Backing store for client registrations and grants.
            Defaults to an in-memory store; grants are always encrypted.

    Raises:
        ConfigurationError: upstream credentials or the signing key are missing.
    """
    settings = settings or authbridge.settings
    credentials = require_credentials(settings)
    secret = credentials.signing_key

    base_url = str(settings.base_url).rstrip("/")
    is_https = base_url.startswith("https://")
    if not is_https:
        logger.warning(
            "Using non-secure cookies for development; deploy with HTTPS for production."
        )

    if key_value is None:
        key_value = MemoryStore()
    if user_store is None:
        user_store = SQLiteUserStore(settings.resolved_database_path)

    cookies = CookiePolicy(is_https=is_https)
    upstream_state = StateCodec(
        secret, purpose="upstream-state", max_age=settings.state_max_age
    )
    consent_codec = StateCodec(secret, purpose="consent", max_age=settings.state_max_age)

    upstream = UpstreamExchangeClient(
        client_id=credentials.upstream_client_id,
        client_secret=credentials.upstream_client_secret,
        redirect_uri=f"{base_url}/callback",
        state_codec=upstream_state,
        authorization_endpoint=settings.upstream_authorization_endpoint,
        token_endpoint=settings.upstream_token_endpoint,
        api_base_url=settings.upstream_api_base_url,
        scopes=settings.upstream_scopes,
        timeout_seconds=settings.http_timeout_seconds,
    )

    gate = ApprovalGate(
        CookieCodec(
            secret,
            ApprovalRecord,
            purpose="approval",
            max_age=settings.approval_cookie_max_age,
        ),
        cookies=cookies,
        max_age=settings.approval_cookie_max_age,
        server_name=settings.server_name,
    )

    clients = ClientRegistry(key_value)
    grants = GrantStore(
        FernetEncryptionWrapper(
            key_value=key_value,
            fernet=Fernet(derive_fernet_key(secret, salt="authbridge-grant-storage")),
        )
    )
    issuer = GrantIssuer(
        clients, grants, code_expiry_seconds=settings.auth_code_expiry_seconds
    )

    provider = BridgeProvider(
        issuer_url=base_url,
        clients=clients,
        grants=grants,
        sealer=TokenSealer(secret),
        authorize_endpoint=AuthorizeEndpoint(
            clients=clients,
            gate=gate,
            consent_codec=consent_codec,
            upstream=upstream,
            cookies=cookies,
            state_max_age=settings.state_max_age,
        ),
        callback_endpoint=CallbackEndpoint(
            binder=CallbackBinder(
                state_codec=upstream_state,
                upstream=upstream,
                users=user_store,
                issuer=issuer,
            ),
            cookies=cookies,
        ),
        access_token_expiry_seconds=settings.access_token_expiry_seconds,
    )

    images: ImageGenerator | None = None
    if settings.image_api_url and settings.image_api_token:
        images = ImageGenerator(
            endpoint=settings.image_api_url, api_token=settings.image_api_token
        )

    operations = ProtectedOperations(
        users=user_store,
        upstream=upstream,
        privileged_logins=settings.privileged_logins,
        images=images,
    )
    mcp_endpoint = MCPEndpoint(
        create_tool_server(operations, name=settings.server_name)
    )

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "server": settings.server_name})

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with mcp_endpoint.session_manager.run():
            yield

    routes = [
        *provider.get_routes(),
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/mcp", endpoint=RequireAuthMiddleware(mcp_endpoint, [])),
        Mount("/api", app=create_api_app(operations)),
    ]

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(AuthenticationMiddleware, backend=BearerAuthBackend(provider)),
        ],
        lifespan=lifespan,
    )
    app.state.provider = provider
    app.state.settings = settings

    logger.info(
        "Authorization bridge ready at %s (upstream %s)",
        base_url,
        settings.upstream_authorization_endpoint,
    )
    return app
