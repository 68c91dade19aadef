"""Turns an upstream callback into a downstream grant."""

from __future__ import annotations

from typing import TYPE_CHECKING

from authbridge.server.auth.grants import GrantIssuer
from authbridge.server.auth.models import Props
from authbridge.server.auth.state import StateCodec
from authbridge.server.auth.upstream import UpstreamExchangeClient
from authbridge.utilities.logging import get_logger

if TYPE_CHECKING:
    from authbridge.storage.users import UserStore

logger = get_logger(__name__)


class CallbackBinder:
    """Runs the callback steps in order; the first failure ends the flow.

    1. open the signed ``state`` and check it against the flow marker
    2. exchange the upstream code for an access token
    3. fetch the upstream identity
    4. upsert the local user
    5. build Props from the user and the upstream token
    6. issue the downstream grant for the original request

    Nothing is written before step 4, and no grant exists unless every step
    succeeded. Errors propagate unchanged for the endpoint to render.
    """

    def __init__(
        self,
        *,
        state_codec: StateCodec,
        upstream: UpstreamExchangeClient,
        users: UserStore,
        issuer: GrantIssuer,
    ):
        self.state_codec = state_codec
        self.upstream = upstream
        self.users = users
        self.issuer = issuer

    async def bind(self, *, code: str, state: str | None, flow_marker: str | None) -> str:
        """Complete the login and return the downstream client redirect URL.

        Raises:
            StateTampered, StateExpired: ``state`` is unusable.
            UpstreamError: the code exchange or identity fetch failed.
            UpsertFailure: the user record could not be written.
            InvalidClient, RedirectMismatch: the client registration changed.
        """
        request = self.state_codec.open(state, flow_marker)

        token = await self.upstream.exchange_code(code)
        identity = await self.upstream.fetch_identity(token)
        user = await self.users.upsert_user(identity)

        props = Props.from_login(user, token)
        redirect_url = await self.issuer.complete_authorization(request, props)

        logger.info(
            "Authorized %s for client %s", user.login_name, request.client_id
        )
        return redirect_url
