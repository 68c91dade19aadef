"""Operations available to an authorized downstream client.

Every operation receives a :class:`UserContext` rebuilt from the bearer
token's Props. Which operations a user sees is decided per request from
``privileged_logins``; there is no global allow-list.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp.server.auth.middleware.bearer_auth import AuthenticatedUser
from pydantic import BaseModel, EmailStr, ValidationError, field_validator
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from authbridge.exceptions import UpstreamError, UserConflict
from authbridge.server.auth.middleware import RequireAuthMiddleware
from authbridge.server.auth.models import Props, UpstreamToken
from authbridge.server.auth.provider import BridgeAccessToken
from authbridge.server.auth.upstream import UpstreamExchangeClient
from authbridge.server.images import MAX_STEPS, MIN_STEPS, ImageGenerator
from authbridge.storage.users import UserStore
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)

BASE_OPERATIONS = ["me", "get_user", "update_user", "upstream_user", "add"]
PRIVILEGED_OPERATIONS = ["generate_image"]


@dataclass(frozen=True)
class UserContext:
    """The authenticated caller of a protected operation."""

    props: Props
    client_id: str
    scopes: list[str]
    is_privileged: bool = False


class ApiError(Exception):
    def __init__(self, status_code: int, error: str, description: str):
        super().__init__(description)
        self.status_code = status_code
        self.error = error
        self.description = description


class UserUpdate(BaseModel):
    """Profile fields a user may change. Blank values count as absent."""

    name: str | None = None
    username: str | None = None
    email: EmailStr | None = None

    @field_validator("name", "username", "email", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return f"{field}: {first['msg']}" if field else first["msg"]


def access_token_of(scope_user: Any) -> BridgeAccessToken | None:
    """The bridge token behind an authenticated request, if there is one."""
    if isinstance(scope_user, AuthenticatedUser) and isinstance(
        scope_user.access_token, BridgeAccessToken
    ):
        return scope_user.access_token
    return None


class ProtectedOperations:
    """``UserContext -> result`` operations backed by the user store.

    Args:
        users: Persistence collaborator.
        upstream: Used to call the upstream API with the user's token.
        privileged_logins: Upstream logins allowed to use privileged operations.
        images: Image model for ``generate_image``; ``None`` if not configured.
    """

    def __init__(
        self,
        *,
        users: UserStore,
        upstream: UpstreamExchangeClient,
        privileged_logins: set[str] | frozenset[str] = frozenset(),
        images: ImageGenerator | None = None,
    ):
        self.users = users
        self.upstream = upstream
        self.privileged_logins = frozenset(privileged_logins)
        self.images = images

    def context_for(self, access_token: BridgeAccessToken) -> UserContext:
        return UserContext(
            props=access_token.props,
            client_id=access_token.client_id,
            scopes=list(access_token.scopes),
            is_privileged=access_token.props.provider_login in self.privileged_logins,
        )

    async def me(self, ctx: UserContext) -> dict[str, Any]:
        return ctx.props.public_view()

    async def get_user(self, ctx: UserContext) -> dict[str, Any]:
        user = await self.users.get_user(ctx.props.internal_user_id)
        if user is None:
            raise ApiError(404, "not_found", "User not found")
        return user.model_dump()

    async def update_user(
        self,
        ctx: UserContext,
        *,
        name: Any = None,
        username: Any = None,
        email: Any = None,
    ) -> dict[str, Any]:
        """Update profile fields. Blank values are ignored; the email must be valid."""
        try:
            update = UserUpdate(name=name, username=username, email=email)
        except ValidationError as e:
            raise ApiError(400, "invalid_request", _describe(e)) from e

        fields = update.model_dump(exclude_none=True)
        if not fields:
            raise ApiError(
                400,
                "invalid_request",
                "No fields to update. Provide at least one of name, username or email.",
            )
        try:
            user = await self.users.update_user_info(ctx.props.internal_user_id, **fields)
        except UserConflict as e:
            raise ApiError(409, "conflict", str(e)) from e
        except LookupError as e:
            raise ApiError(404, "not_found", "User not found") from e
        return user.model_dump()

    async def upstream_user(self, ctx: UserContext) -> dict[str, Any]:
        """The caller's account as the upstream provider currently reports it."""
        token = UpstreamToken(access_token=ctx.props.provider_access_token)
        try:
            identity = await self.upstream.fetch_identity(token)
        except UpstreamError as e:
            raise ApiError(502, "upstream_error", str(e)) from e
        return identity.model_dump()

    async def add(self, ctx: UserContext, a: float, b: float) -> dict[str, Any]:
        result = a + b
        if not all(math.isfinite(value) for value in (a, b, result)):
            raise ApiError(400, "invalid_request", "a and b must be finite numbers")
        return {"result": result}

    async def generate_image(
        self, ctx: UserContext, prompt: str, steps: int = MIN_STEPS
    ) -> bytes:
        """JPEG bytes for ``prompt``. Only for ``privileged_logins``."""
        if not ctx.is_privileged:
            logger.warning(
                "Refused generate_image for %s: not a privileged login",
                ctx.props.provider_login,
            )
            raise ApiError(
                403, "access_denied", "Image generation is not enabled for this account"
            )
        if not prompt.strip():
            raise ApiError(400, "invalid_request", "prompt must not be empty")
        if not MIN_STEPS <= steps <= MAX_STEPS:
            raise ApiError(
                400,
                "invalid_request",
                f"steps must be between {MIN_STEPS} and {MAX_STEPS}",
            )
        if self.images is None:
            raise ApiError(503, "not_configured", "Image generation is not configured")

        try:
            return await self.images.generate(prompt, steps)
        except UpstreamError as e:
            raise ApiError(502, "upstream_error", str(e)) from e

    async def capabilities(self, ctx: UserContext) -> dict[str, Any]:
        operations = list(BASE_OPERATIONS)
        if ctx.is_privileged:
            operations.extend(PRIVILEGED_OPERATIONS)
        return {"operations": operations}


def _error(e: ApiError) -> JSONResponse:
    return JSONResponse(
        {"error": e.error, "error_description": e.description}, status_code=e.status_code
    )


def create_api_app(operations: ProtectedOperations) -> RequireAuthMiddleware:
    """ASGI app serving :class:`ProtectedOperations`, requiring a bearer token.

    Expects ``AuthenticationMiddleware`` with the bearer backend upstream of it.
    """

    def endpoint(
        handler: Callable[[Request, UserContext], Awaitable[Any]],
    ) -> Callable[[Request], Awaitable[Response]]:
        async def wrapped(request: Request) -> Response:
            try:
                access_token = access_token_of(request.scope.get("user"))
                if access_token is None:
                    raise ApiError(401, "invalid_token", "Authentication required")
                result = await handler(request, operations.context_for(access_token))
            except ApiError as e:
                return _error(e)
            if isinstance(result, Response):
                return result
            return JSONResponse(result)

        return wrapped

    async def me(request: Request, ctx: UserContext) -> dict[str, Any]:
        return await operations.me(ctx)

    async def capabilities(request: Request, ctx: UserContext) -> dict[str, Any]:
        return await operations.capabilities(ctx)

    async def upstream_user(request: Request, ctx: UserContext) -> dict[str, Any]:
        return await operations.upstream_user(ctx)

    async def user(request: Request, ctx: UserContext) -> dict[str, Any]:
        if request.method != "POST":
            return await operations.get_user(ctx)
        body = await _json_object(request)
        return await operations.update_user(
            ctx,
            name=body.get("name"),
            username=body.get("username"),
            email=body.get("email"),
        )

    async def add(request: Request, ctx: UserContext) -> dict[str, Any]:
        try:
            a = float(request.query_params["a"])
            b = float(request.query_params["b"])
        except (KeyError, ValueError) as e:
            raise ApiError(400, "invalid_request", "a and b must be numbers") from e
        return await operations.add(ctx, a, b)

    async def generate_image(request: Request, ctx: UserContext) -> Response:
        body = await _json_object(request)
        prompt = body.get("prompt")
        steps = body.get("steps", MIN_STEPS)
        if not isinstance(prompt, str) or type(steps) is not int:
            raise ApiError(
                400, "invalid_request", "prompt must be a string and steps an integer"
            )
        image = await operations.generate_image(ctx, prompt, steps)
        return Response(image, media_type="image/jpeg")

    app = Starlette(
        routes=[
            Route("/me", endpoint=endpoint(me), methods=["GET"]),
            Route("/user", endpoint=endpoint(user), methods=["GET", "POST"]),
            Route("/upstream-user", endpoint=endpoint(upstream_user), methods=["GET"]),
            Route("/add", endpoint=endpoint(add), methods=["GET"]),
            Route("/capabilities", endpoint=endpoint(capabilities), methods=["GET"]),
            Route(
                "/generate-image", endpoint=endpoint(generate_image), methods=["POST"]
            ),
        ]
    )
    return RequireAuthMiddleware(app, [])


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise ApiError(400, "invalid_request", "Expected a JSON object")
    return body
