"""HTTP endpoints for the browser side of the bridge.

``GET /authorize`` validates the client, then either skips straight to the
upstream provider (valid approval cookie) or shows the consent page.
``POST /authorize`` receives the consent decision. ``GET /callback`` is
where the upstream provider sends the browser back.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mcp.shared.auth import OAuthClientInformationFull
from starlette.datastructures import QueryParams
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from authbridge.exceptions import (
    AuthorizationRequestError,
    InvalidClient,
    RedirectMismatch,
    StateError,
    StorageError,
    UpstreamError,
)
from authbridge.server.auth.consent import (
    ApprovalGate,
    consent_csp_policy,
    create_error_html,
)
from authbridge.server.auth.cookies import CookiePolicy
from authbridge.server.auth.grants import ClientRegistry, add_query_params
from authbridge.server.auth.models import AuthorizationRequest
from authbridge.server.auth.state import StateCodec
from authbridge.server.auth.upstream import UpstreamExchangeClient
from authbridge.utilities.logging import get_logger
from authbridge.utilities.ui import create_secure_html_response

if TYPE_CHECKING:
    from authbridge.server.auth.callback import CallbackBinder

logger = get_logger(__name__)

CONSENT_COOKIE = "authbridge_consent"
FLOW_COOKIE = "authbridge_flow"


def error_response(
    title: str,
    message: str,
    status_code: int,
    details: dict[str, str] | None = None,
) -> Response:
    return create_secure_html_response(
        create_error_html(title, message, details), status_code=status_code
    )


def _form_value(form, name: str) -> str | None:
    value = form.get(name)
    return value if isinstance(value, str) else None


class AuthorizeEndpoint:
    """``/authorize``: consent check and hand-off to the upstream provider.

    Args:
        clients: Registered downstream clients.
        gate: Approval cookie checks and consent rendering.
        consent_codec: Signs the request carried through the consent form.
        upstream: Builds the upstream authorization redirect.
        cookies: Cookie naming/attribute policy.
        state_max_age: Lifetime of the consent and flow marker cookies.
    """

    def __init__(
        self,
        *,
        clients: ClientRegistry,
        gate: ApprovalGate,
        consent_codec: StateCodec,
        upstream: UpstreamExchangeClient,
        cookies: CookiePolicy,
        state_max_age: int,
    ):
        self.clients = clients
        self.gate = gate
        self.consent_codec = consent_codec
        self.upstream = upstream
        self.cookies = cookies
        self.state_max_age = state_max_age

    async def handle(self, request: Request) -> Response:
        if request.method == "POST":
            return await self.handle_consent(request)
        return await self.handle_authorize(request)

    # -------------------------------------------------------------------------
    # GET /authorize
    # -------------------------------------------------------------------------

    async def handle_authorize(self, request: Request) -> Response:
        params = request.query_params
        try:
            client = await self.clients.require_client(params.get("client_id"))
            redirect_uri = self.clients.validate_redirect_uri(
                client, params.get("redirect_uri")
            )
        except (InvalidClient, RedirectMismatch) as e:
            logger.warning("Rejected authorization request: %s", e)
            return error_response(
                "Invalid Authorization Request",
                "This application is not allowed to sign in here. "
                "Check that it is registered and uses a registered redirect URI.",
                status_code=400,
            )

        try:
            auth_request = self._parse_request(params, client, redirect_uri)
        except AuthorizationRequestError as e:
            logger.info("Authorization request error for %s: %s", client.client_id, e)
            return RedirectResponse(
                add_query_params(
                    redirect_uri,
                    {
                        "error": e.error,
                        "error_description": e.description,
                        "state": params.get("state"),
                    },
                ),
                status_code=302,
            )

        if self.gate.is_approved(
            auth_request.client_id, self.gate.read_cookie(request), auth_request.scopes
        ):
            logger.info(
                "Client %s already approved in this browser; skipping consent",
                auth_request.client_id,
            )
            return self._redirect_upstream(auth_request)

        form_token, flow = self.consent_codec.issue(auth_request)
        html = self.gate.render_consent(auth_request, client, form_token=form_token)
        response = create_secure_html_response(
            html, csp_policy=consent_csp_policy(auth_request.redirect_uri)
        )
        self.cookies.set(response, CONSENT_COOKIE, flow.nonce, max_age=self.state_max_age)
        return response

    def _parse_request(
        self,
        params: QueryParams,
        client: OAuthClientInformationFull,
        redirect_uri: str,
    ) -> AuthorizationRequest:
        if params.get("response_type", "code") != "code":
            raise AuthorizationRequestError(
                "unsupported_response_type", "Only response_type=code is supported"
            )

        code_challenge = params.get("code_challenge")
        if not code_challenge:
            raise AuthorizationRequestError(
                "invalid_request", "code_challenge is required (PKCE)"
            )
        code_challenge_method = params.get("code_challenge_method", "S256")
        if code_challenge_method != "S256":
            raise AuthorizationRequestError(
                "invalid_request", "code_challenge_method must be S256"
            )

        scope = params.get("scope")
        if scope is None:
            scope = client.scope or ""
        scopes = scope.split()
        if client.scope is not None:
            allowed = set(client.scope.split())
            if disallowed := [s for s in scopes if s not in allowed]:
                raise AuthorizationRequestError(
                    "invalid_scope",
                    f"Client was not registered with scope {disallowed[0]}",
                )

        return AuthorizationRequest(
            client_id=client.client_id or "",
            redirect_uri=redirect_uri,
            redirect_uri_provided_explicitly=params.get("redirect_uri") is not None,
            scopes=scopes,
            state=params.get("state"),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            resource=params.get("resource"),
        )

    def _redirect_upstream(self, auth_request: AuthorizationRequest) -> Response:
        redirect = self.upstream.build_authorize_url(auth_request)
        response = RedirectResponse(redirect.url, status_code=302)
        self.cookies.set(
            response, FLOW_COOKIE, redirect.flow_nonce, max_age=self.state_max_age
        )
        return response

    # -------------------------------------------------------------------------
    # POST /authorize
    # -------------------------------------------------------------------------

    async def handle_consent(self, request: Request) -> Response:
        form = await request.form()
        action = _form_value(form, "action")

        try:
            auth_request = self.consent_codec.open(
                _form_value(form, "request_token"),
                self.cookies.get(request, CONSENT_COOKIE),
            )
            client = await self.clients.require_client(auth_request.client_id)
            self.clients.validate_redirect_uri(client, auth_request.redirect_uri)
        except (StateError, InvalidClient, RedirectMismatch) as e:
            logger.warning("Rejected consent submission: %s", e)
            return error_response(
                "Consent Expired",
                "This consent form is invalid or has expired. "
                "Return to the application and start the sign-in again.",
                status_code=400,
            )

        if action == "approve":
            response = self._redirect_upstream(auth_request)
            cookie_value = self.gate.record_approval(
                auth_request.client_id,
                auth_request.scopes,
                previous_cookie=self.gate.read_cookie(request),
            )
            self.gate.set_approval_cookie(response, cookie_value)
        elif action == "deny":
            logger.info("User denied access to client %s", auth_request.client_id)
            response = RedirectResponse(
                add_query_params(
                    auth_request.redirect_uri,
                    {
                        "error": "access_denied",
                        "error_description": "The user denied the request",
                        "state": auth_request.state,
                    },
                ),
                status_code=302,
            )
        else:
            return error_response(
                "Invalid Request", "Unknown consent action.", status_code=400
            )

        self.cookies.clear(response, CONSENT_COOKIE)
        return response


class CallbackEndpoint:
    """``/callback``: the upstream provider's redirect back to the bridge."""

    def __init__(self, *, binder: CallbackBinder, cookies: CookiePolicy):
        self.binder = binder
        self.cookies = cookies

    async def handle(self, request: Request) -> Response:
        response = await self._complete(request)
        self.cookies.clear(response, FLOW_COOKIE)
        return response

    async def _complete(self, request: Request) -> Response:
        params = request.query_params

        if error := params.get("error"):
            logger.warning(
                "Upstream authorization error: %s - %s",
                error,
                params.get("error_description", ""),
            )
            return error_response(
                "Sign-in Failed",
                "The identity provider did not complete the sign-in.",
                status_code=400,
                details={"Error Code": error},
            )

        code = params.get("code")
        if not code:
            return error_response(
                "Sign-in Failed",
                "The identity provider returned no authorization code.",
                status_code=400,
            )

        try:
            redirect_url = await self.binder.bind(
                code=code,
                state=params.get("state"),
                flow_marker=self.cookies.get(request, FLOW_COOKIE),
            )
        except StateError as e:
            logger.warning("Rejected callback state: %s", e)
            return error_response(
                "Sign-in Failed",
                "This sign-in attempt is invalid or has expired. "
                "Return to the application and start again.",
                status_code=400,
                details={"Error Code": "invalid_state"},
            )
        except (InvalidClient, RedirectMismatch) as e:
            logger.warning("Client registration no longer matches flow: %s", e)
            return error_response(
                "Sign-in Failed",
                "The application is no longer allowed to sign in here.",
                status_code=400,
            )
        except UpstreamError as e:
            logger.error("Upstream failure during callback: %s", e)
            return error_response(
                "Sign-in Failed",
                "Could not complete sign-in with the identity provider. Please try again.",
                status_code=502,
            )
        except StorageError as e:
            logger.error("Storage failure during callback: %s", e)
            return error_response(
                "Sign-in Failed",
                "Your account could not be saved. Please try again later.",
                status_code=500,
            )
        except Exception:
            logger.exception("Unexpected error during callback")
            return error_response(
                "Sign-in Failed", "An unexpected error occurred.", status_code=500
            )

        return RedirectResponse(redirect_url, status_code=302)
