"""Consent for downstream clients.

The :class:`ApprovalGate` decides whether a browser already approved a
client for the requested scopes (via the signed approval cookie), renders
the consent page when it has not, and mints a new approval cookie when the
user agrees. No server-side state is written.
"""

from __future__ import annotations

import html as html_module
from collections.abc import Iterable
from urllib.parse import urlparse

from mcp.shared.auth import OAuthClientInformationFull
from starlette.requests import Request
from starlette.responses import Response

from authbridge.exceptions import AuthFailure
from authbridge.server.auth.cookies import ApprovalRecord, CookieCodec, CookiePolicy
from authbridge.server.auth.models import AuthorizationRequest
from authbridge.utilities.logging import get_logger
from authbridge.utilities.ui import (
    BUTTON_STYLES,
    DETAIL_BOX_STYLES,
    INFO_BOX_STYLES,
    REDIRECT_SECTION_STYLES,
    create_page,
)

logger = get_logger(__name__)

APPROVAL_COOKIE = "authbridge_approval"


class ApprovalGate:
    """Consent decisions cached in a signed approval cookie.

    Args:
        codec: Codec for :class:`ApprovalRecord`; its ``max_age`` is the
            approval expiry policy.
        cookies: Cookie naming/attribute policy.
        max_age: ``Max-Age`` of the approval cookie in seconds.
        server_name: Name of this server shown on the consent page.
    """

    def __init__(
        self,
        codec: CookieCodec[ApprovalRecord],
        *,
        cookies: CookiePolicy,
        max_age: int,
        server_name: str | None = None,
    ):
        self._codec = codec
        self._cookies = cookies
        self.max_age = max_age
        self.server_name = server_name

    def read_cookie(self, request: Request) -> str | None:
        return self._cookies.get(request, APPROVAL_COOKIE)

    def is_approved(
        self, client_id: str, cookie_value: str | None, scopes: Iterable[str] = ()
    ) -> bool:
        """True only for a valid cookie approving ``client_id`` for all ``scopes``.

        A cookie that fails verification is treated as "not approved"; why
        it failed is not surfaced.
        """
        if not cookie_value:
            return False
        try:
            record = self._codec.verify(cookie_value)
        except AuthFailure as e:
            logger.debug("Ignoring approval cookie: %s", e)
            return False
        return record.covers(client_id, scopes)

    def record_approval(
        self,
        client_id: str,
        scopes: Iterable[str],
        previous_cookie: str | None = None,
    ) -> str:
        """Sign a fresh approval for ``client_id``.

        Scopes from a still-valid approval of the same client are kept.
        """
        approved = set(scopes)
        if previous_cookie:
            try:
                previous = self._codec.verify(previous_cookie)
            except AuthFailure:
                previous = None
            if previous is not None and previous.client_id == client_id:
                approved |= previous.approved_scopes

        record = ApprovalRecord(client_id=client_id, approved_scopes=frozenset(approved))
        logger.info(
            "Recorded consent for client %s (scopes: %s)",
            client_id,
            sorted(approved) or "none",
        )
        return self._codec.sign(record)

    def set_approval_cookie(self, response: Response, cookie_value: str) -> None:
        self._cookies.set(response, APPROVAL_COOKIE, cookie_value, max_age=self.max_age)

    def render_consent(
        self,
        request: AuthorizationRequest,
        client: OAuthClientInformationFull,
        *,
        form_token: str,
    ) -> str:
        """Render the consent page. Pure; no side effects."""
        return create_consent_html(
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            scopes=request.scopes,
            form_token=form_token,
            client_name=client.client_name,
            client_website_url=str(client.client_uri) if client.client_uri else None,
            server_name=self.server_name,
        )


def create_consent_html(
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    form_token: str,
    client_name: str | None = None,
    client_website_url: str | None = None,
    server_name: str | None = None,
) -> str:
    """Create the HTML consent page for an authorization request."""
    client_display = html_module.escape(client_name or client_id)
    server_display = html_module.escape(server_name or "this server")
    redirect_uri_escaped = html_module.escape(redirect_uri)

    intro_box = f"""
        <div class="info-box">
            <p>The application <strong>{client_display}</strong> wants to access <strong>{server_display}</strong> on your behalf. Only continue if you recognize the callback address below.</p>
        </div>
    """

    redirect_section = f"""
        <div class="redirect-section">
            <span class="label">Credentials will be sent to:</span>
            <div class="value">{redirect_uri_escaped}</div>
        </div>
    """

    detail_rows = [
        ("Application Name", client_display),
        ("Application Website", html_module.escape(client_website_url or "N/A")),
        ("Application ID", html_module.escape(client_id)),
        ("Redirect URI", redirect_uri_escaped),
        (
            "Requested Scopes",
            ", ".join(html_module.escape(s) for s in scopes) if scopes else "None",
        ),
    ]
    detail_rows_html = "\n".join(
        f"""
            <div class="detail-row">
                <div class="detail-label">{label}:</div>
                <div class="detail-value">{value}</div>
            </div>
        """
        for label, value in detail_rows
    )

    form = f"""
        <form id="consentForm" method="POST" action="">
            <input type="hidden" name="request_token" value="{html_module.escape(form_token)}" />
            <div class="button-group">
                <button type="submit" name="action" value="approve" class="btn-approve">Allow Access</button>
                <button type="submit" name="action" value="deny" class="btn-deny">Deny</button>
            </div>
        </form>
    """

    content = f"""
        <div class="container">
            <h1>Application Access Request</h1>
            {intro_box}
            {redirect_section}
            <div class="detail-box">
                {detail_rows_html}
            </div>
            {form}
        </div>
    """

    return create_page(
        content=content,
        title="Application Access Request",
        additional_styles=INFO_BOX_STYLES
        + REDIRECT_SECTION_STYLES
        + DETAIL_BOX_STYLES
        + BUTTON_STYLES,
        csp_policy=consent_csp_policy(redirect_uri),
    )


def consent_csp_policy(redirect_uri: str) -> str:
    """CSP for the consent page; the form post may end at ``redirect_uri``."""
    # Chrome checks form-action against every hop of the redirect chain,
    # so custom schemes (cursor://, vscode://) must be listed explicitly
    form_action_schemes = ["https:", "http:"]
    redirect_scheme = urlparse(redirect_uri).scheme.lower()
    if redirect_scheme and redirect_scheme not in ("http", "https"):
        form_action_schemes.append(f"{redirect_scheme}:")
    return (
        "default-src 'none'; style-src 'unsafe-inline'; img-src https: data:; "
        f"base-uri 'none'; form-action 'self' {' '.join(form_action_schemes)}"
    )


def create_error_html(
    error_title: str,
    error_message: str,
    error_details: dict[str, str] | None = None,
) -> str:
    """Create the HTML page shown when a flow fails.

    Args:
        error_title: The error title (e.g., "Authorization Failed")
        error_message: The main error message to display
        error_details: Optional details to show (e.g., {"Error Code": "invalid_state"})

    Returns:
        Complete HTML page as a string
    """
    error_box = f"""
        <div class="info-box error">
            <p>{html_module.escape(error_message)}</p>
        </div>
    """

    details_section = ""
    if error_details:
        detail_rows_html = "\n".join(
            f"""
            <div class="detail-row">
                <div class="detail-label">{html_module.escape(label)}:</div>
                <div class="detail-value">{html_module.escape(value)}</div>
            </div>
            """
            for label, value in error_details.items()
        )
        details_section = f'<div class="detail-box">{detail_rows_html}</div>'

    content = f"""
        <div class="container">
            <h1>{html_module.escape(error_title)}</h1>
            {error_box}
            {details_section}
        </div>
    """

    return create_page(
        content=content,
        title=error_title,
        additional_styles=INFO_BOX_STYLES + DETAIL_BOX_STYLES,
    )
