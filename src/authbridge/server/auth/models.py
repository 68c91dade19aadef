"""Data models that flow through the authorization bridge."""

from __future__ import annotations

import time
import uuid

from pydantic import BaseModel, ConfigDict, Field


class AuthorizationRequest(BaseModel):
    """An inbound ``/authorize`` call from a downstream client.

    Never stored server-side; it travels inside the signed consent form
    and the signed upstream ``state``.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    scopes: list[str] = Field(default_factory=list)
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    resource: str | None = None


class UpstreamToken(BaseModel):
    """Access token returned by the upstream provider. Held in memory only."""

    access_token: str = Field(repr=False)
    token_type: str = "bearer"
    scope: str = ""
    expires_at: int | None = None


class Identity(BaseModel):
    """The upstream account that just logged in."""

    provider_id: int
    login_name: str
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    bio: str | None = None


class UserRecord(BaseModel):
    """Canonical local user, owned by the user store."""

    internal_id: str
    provider_id: int
    login_name: str
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    username: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class Props(BaseModel):
    """Authenticated context bound to a downstream grant.

    Built by :meth:`from_login` right after a successful upstream identity
    fetch and user upsert, sealed inside the downstream access token and
    reconstructed on every protected call.
    """

    model_config = ConfigDict(frozen=True)

    internal_user_id: str
    provider_login: str
    provider_access_token: str = Field(repr=False)
    display_name: str | None = None
    email: str | None = None

    @classmethod
    def from_login(cls, user: UserRecord, token: UpstreamToken) -> Props:
        return cls(
            internal_user_id=user.internal_id,
            provider_login=user.login_name,
            provider_access_token=token.access_token,
            display_name=user.display_name,
            email=user.email,
        )

    def public_view(self) -> dict[str, str | None]:
        """Props without the upstream access token."""
        return self.model_dump(exclude={"provider_access_token"})


class Grant(BaseModel):
    """One-time record linking a downstream authorization code to Props."""

    grant_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    code: str
    client_id: str
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    scopes: list[str] = Field(default_factory=list)
    code_challenge: str
    resource: str | None = None
    props: Props
    created_at: float = Field(default_factory=time.time)
    expires_at: float
