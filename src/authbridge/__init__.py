"""OAuth authorization bridge for MCP servers."""

from importlib.metadata import PackageNotFoundError, version as _version

from authbridge.settings import Settings

settings = Settings()

try:
    __version__ = _version("mcp-auth-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0"

from authbridge.server.app import create_app  # noqa: E402

__all__ = ["Settings", "create_app", "settings"]
