"""HTML templates for the OAuth callback pages.

All values substituted into these templates must be HTML-escaped by the
caller (see render_error_page / render_success_page).

Colors:
- Background: #FAF9F7 (warm cream)
- Primary: #D97756 (terracotta)
- Text: #1A1915 (dark charcoal)
- Secondary text: #6B6860
- Border: #E5E4E0
"""

import html

_STYLE = """
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #FAF9F7;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 480px; border: 1px solid #E5E4E0; }}
        h1 {{ margin: 0 0 8px; color: #1A1915; font-size: 24px; font-weight: 600; }}
        p {{ color: #6B6860; margin: 0 0 16px; }}
        code, pre {{ background: #F5F5F0; padding: 2px 6px; border-radius: 4px; font-size: 14px; word-break: break-all; }}
        pre {{ padding: 12px; white-space: pre-wrap; }}
        .error {{ background: #FEF2F2; color: #B91C1C; padding: 12px; border-radius: 8px; margin-bottom: 20px; border: 1px solid #FECACA; }}
        .success {{ background: #D1FAE5; color: #065F46; padding: 12px; border-radius: 8px; margin-bottom: 20px; border: 1px solid #A7F3D0; }}
        .info {{ background: #F5F5F0; color: #6B6860; padding: 12px; border-radius: 8px; margin-bottom: 20px; font-size: 14px; }}
        a {{ color: #D97756; text-decoration: none; font-weight: 500; }}
    </style>
"""

SUCCESS_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authentication Successful</title>
""" + _STYLE + """
</head>
<body>
    <div class="container">
        <h1>Authentication Successful!</h1>
        <div class="success">Access token has been stored and will be used for MCP requests.</div>
        <p>Session ID: <code>{session_id}</code></p>
        <p>This window closes automatically. You can return to your editor.</p>
    </div>
    <script>
        setTimeout(function () {{ window.close(); }}, {close_after_ms});
    </script>
</body>
</html>
"""

ERROR_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
""" + _STYLE + """
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <div class="error">{message}</div>
        {details}
        {guidance}
        <p>You can close this window.</p>
    </div>
</body>
</html>
"""


def render_success_page(session_id: str, close_after_ms: int = 2000) -> str:
    return SUCCESS_PAGE.format(session_id=html.escape(session_id), close_after_ms=int(close_after_ms))


def render_error_page(title: str, message: str, details: str = "", restart_login: bool = False) -> str:
    details_html = f"<pre>{html.escape(details)}</pre>" if details else ""
    guidance_html = (
        '<div class="info">Please restart the login flow: <a href="/authorize">sign in again</a>.</div>'
        if restart_login else ""
    )
    return ERROR_PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
        details=details_html,
        guidance=guidance_html,
    )
