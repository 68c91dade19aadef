"""Settings for the authorization bridge.

All values can be provided through environment variables prefixed with
``AUTHBRIDGE_`` or through a ``.env`` file, e.g.::

    AUTHBRIDGE_UPSTREAM_CLIENT_ID=Ov23li...
    AUTHBRIDGE_UPSTREAM_CLIENT_SECRET=...
    AUTHBRIDGE_COOKIE_SIGNING_KEY=...
    AUTHBRIDGE_PRIVILEGED_LOGINS='["octocat"]'
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVEL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

GITHUB_AUTHORIZATION_ENDPOINT = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_ENDPOINT = "https://github.com/login/oauth/access_token"
GITHUB_API_BASE_URL = "https://api.github.com"


class Settings(BaseSettings):
    """Authorization bridge settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHBRIDGE_",
        env_file=".env",
        extra="ignore",
        validate_assignment=True,
    )

    home: Path = Path.home() / ".authbridge"

    log_enabled: bool = True
    log_level: LOG_LEVEL = "INFO"
    enable_rich_tracebacks: bool = True

    base_url: AnyHttpUrl = Field(
        default=AnyHttpUrl("http://localhost:8000"),
        description="Public URL of the bridge, used for the upstream callback and cookies.",
    )
    server_name: str = "DnD MCP Server"

    # Upstream identity provider
    upstream_client_id: str | None = None
    upstream_client_secret: SecretStr | None = None
    upstream_authorization_endpoint: str = GITHUB_AUTHORIZATION_ENDPOINT
    upstream_token_endpoint: str = GITHUB_TOKEN_ENDPOINT
    upstream_api_base_url: str = GITHUB_API_BASE_URL
    upstream_scopes: list[str] = Field(
        default_factory=lambda: ["read:user", "user:email"]
    )
    http_timeout_seconds: float = 10.0

    # Signing and lifetimes
    cookie_signing_key: SecretStr | None = None
    approval_cookie_max_age: int = Field(
        default=30 * 24 * 60 * 60,
        description="Lifetime of the consent approval cookie in seconds.",
    )
    state_max_age: int = Field(
        default=10 * 60,
        description="Maximum age of an upstream round trip or consent form in seconds.",
    )
    auth_code_expiry_seconds: int = 5 * 60
    access_token_expiry_seconds: int = 60 * 60

    # Persistence
    database_path: Path | None = Field(
        default=None,
        description="SQLite database for user records. Defaults to <home>/users.db.",
    )

    # Upstream login names allowed to use privileged operations
    privileged_logins: set[str] = Field(default_factory=set)

    # Image model behind the privileged generate_image operation
    image_api_url: str | None = Field(
        default=None,
        description="Run URL of a hosted flux-1-schnell model (Workers AI REST API).",
    )
    image_api_token: SecretStr | None = None

    @property
    def resolved_database_path(self) -> Path:
        return self.database_path or self.home / "users.db"
