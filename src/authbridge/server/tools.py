"""The protected operations as MCP tools.

Served over Streamable HTTP at ``/mcp`` behind the same bearer
authentication as ``/api``. A tool call rebuilds the caller's
:class:`UserContext` from the token on the HTTP request that carried it.
"""

from collections.abc import Awaitable
from typing import Any, TypeVar

from mcp.server.fastmcp import Context, FastMCP, Image
from mcp.server.fastmcp.exceptions import ToolError
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.types import Receive, Scope, Send

from authbridge.server.api import (
    ApiError,
    ProtectedOperations,
    UserContext,
    access_token_of,
)
from authbridge.server.images import MIN_STEPS
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def _run(operation: Awaitable[T]) -> T:
    try:
        return await operation
    except ApiError as e:
        raise ToolError(e.description) from e


def create_tool_server(operations: ProtectedOperations, *, name: str) -> FastMCP:
    """Register every protected operation as a tool on a new MCP server."""
    server = FastMCP(name=name)

    def user_context(ctx: Context) -> UserContext:
        request = ctx.request_context.request
        access_token = (
            access_token_of(request.scope.get("user")) if request is not None else None
        )
        if access_token is None:
            raise ToolError("Authentication required")
        return operations.context_for(access_token)

    @server.tool(
        name="userInfo",
        description="Get the signed-in user's context from the access token",
    )
    async def user_info(ctx: Context) -> dict[str, Any]:
        return await _run(operations.me(user_context(ctx)))

    @server.tool(name="add", description="Add two numbers")
    async def add(a: float, b: float, ctx: Context) -> dict[str, Any]:
        return await _run(operations.add(user_context(ctx), a, b))

    @server.tool(
        name="userInfoOctokit",
        description="Get the user's account from the identity provider",
    )
    async def upstream_user(ctx: Context) -> dict[str, Any]:
        return await _run(operations.upstream_user(user_context(ctx)))

    @server.tool(name="userGet", description="Get the user's stored record")
    async def get_user(ctx: Context) -> dict[str, Any]:
        return await _run(operations.get_user(user_context(ctx)))

    @server.tool(
        name="userUpdateInfo",
        description=(
            "Update the user's name, username, or email. "
            "Provide only the fields you want to update."
        ),
    )
    async def update_user_info(
        ctx: Context,
        name: str | None = None,
        username: str | None = None,
        email: str | None = None,
    ) -> dict[str, Any]:
        return await _run(
            operations.update_user(
                user_context(ctx), name=name, username=username, email=email
            )
        )

    @server.tool(
        name="generateImage",
        description=(
            "Generate an image using the flux-1-schnell model. Works best with 8 "
            "steps. Only available to privileged accounts."
        ),
        structured_output=False,
    )
    async def generate_image(prompt: str, ctx: Context, steps: int = MIN_STEPS) -> Image:
        data = await _run(operations.generate_image(user_context(ctx), prompt, steps))
        return Image(data=data, format="jpeg")

    logger.debug("Registered MCP tools on %r", name)
    return server


class MCPEndpoint:
    """ASGI endpoint serving ``server`` over stateless Streamable HTTP.

    ``session_manager.run()`` must be active (the app lifespan) while
    requests are served.
    """

    def __init__(self, server: FastMCP):
        self.session_manager = StreamableHTTPSessionManager(
            app=server._mcp_server,
            json_response=True,
            stateless=True,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_request(scope, receive, send)
