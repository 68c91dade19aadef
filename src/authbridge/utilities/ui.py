"""Shared HTML page shell for the consent and error pages."""

from __future__ import annotations

import html

from starlette.responses import HTMLResponse

DEFAULT_CSP_POLICY = (
    "default-src 'none'; style-src 'unsafe-inline'; img-src https: data:; "
    "base-uri 'none'"
)

BASE_STYLES = """
    body {
        font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
        background: #f9fafb;
        color: #111827;
        display: flex;
        justify-content: center;
        padding: 48px 16px;
        margin: 0;
    }
    .container {
        background: #ffffff;
        border: 1px solid #e5e7eb;
        border-radius: 12px;
        max-width: 520px;
        width: 100%;
        padding: 32px;
    }
    h1 { font-size: 1.4rem; margin: 0 0 16px 0; }
"""

INFO_BOX_STYLES = """
    .info-box {
        background: #eff6ff;
        border: 1px solid #bfdbfe;
        border-radius: 8px;
        padding: 12px 16px;
        margin-bottom: 16px;
    }
    .info-box.error { background: #fef2f2; border-color: #fecaca; }
"""

REDIRECT_SECTION_STYLES = """
    .redirect-section {
        background: #fffbeb;
        border: 1px solid #fde68a;
        border-radius: 8px;
        padding: 12px 16px;
        margin-bottom: 16px;
        text-align: center;
    }
    .redirect-section .value { font-family: monospace; word-break: break-all; }
"""

DETAIL_BOX_STYLES = """
    .detail-row { display: flex; gap: 8px; margin: 4px 0; }
    .detail-label { font-weight: 600; min-width: 140px; }
    .detail-value { font-family: monospace; word-break: break-all; }
"""

BUTTON_STYLES = """
    .button-group { display: flex; gap: 12px; margin-top: 24px; }
    .button-group button {
        flex: 1;
        padding: 10px 16px;
        border-radius: 8px;
        border: 1px solid #d1d5db;
        font-size: 1rem;
        cursor: pointer;
    }
    .btn-approve { background: #111827; color: #ffffff; }
    .btn-deny { background: #ffffff; color: #111827; }
"""


def create_page(
    content: str,
    title: str,
    additional_styles: str = "",
    csp_policy: str = DEFAULT_CSP_POLICY,
) -> str:
    """Wrap ``content`` in a complete HTML document.

    Args:
        content: Body markup (already escaped where needed)
        title: Document title (escaped here)
        additional_styles: Extra CSS appended to the base styles
        csp_policy: Content-Security-Policy repeated in a meta tag

    Returns:
        Complete HTML page as a string
    """
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <meta http-equiv="Content-Security-Policy" content="{html.escape(csp_policy)}">
    <title>{html.escape(title)}</title>
    <style>{BASE_STYLES}{additional_styles}</style>
</head>
<body>
{content}
</body>
</html>
"""


def create_secure_html_response(
    html_content: str,
    status_code: int = 200,
    csp_policy: str = DEFAULT_CSP_POLICY,
) -> HTMLResponse:
    """HTML response that cannot be framed, sniffed or cached."""
    return HTMLResponse(
        content=html_content,
        status_code=status_code,
        headers={
            "Content-Security-Policy": f"{csp_policy}; frame-ancestors 'none'",
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "no-store",
            "Referrer-Policy": "no-referrer",
        },
    )
