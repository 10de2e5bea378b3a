"""HTML templates for the OAuth consent flow.

Templates are filled with str.format(); every value that came from the
request must go through html.escape() first (see render_consent_page).

Colors:
- Background: #FAF9F7 (warm cream)
- Primary: #D97756 (terracotta)
- Primary hover: #C4684A
- Text: #1A1915 (dark charcoal)
- Secondary text: #6B6860
- Border: #E5E4E0, #D9D8D4
"""

import html

BASE_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #FAF9F7;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 420px; border: 1px solid #E5E4E0; }}
        h1 {{ margin: 0 0 8px; color: #1A1915; font-size: 24px; font-weight: 600; }}
        p {{ color: #6B6860; margin: 0 0 24px; }}
"""

CONSENT_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorize - YouTube MCP</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>""" + BASE_STYLE + """
        .scope {{ display: flex; align-items: center; gap: 10px; padding: 12px; background: #F5F5F0;
                 border-radius: 8px; margin-bottom: 20px; }}
        .scope-icon {{ color: #D97756; font-weight: bold; }}
        .form-group {{ margin-bottom: 20px; }}
        label {{ display: block; margin-bottom: 8px; color: #1A1915; font-weight: 500; font-size: 14px; }}
        input[type="password"] {{
            width: 100%; padding: 12px 14px; border: 1px solid #D9D8D4; border-radius: 8px;
            font-size: 15px; box-sizing: border-box; background: #FAF9F7; }}
        input:focus {{ outline: none; border-color: #D97756; box-shadow: 0 0 0 3px rgba(217,119,86,0.1); }}
        button {{ width: 100%; padding: 14px; background: #D97756;
                 color: white; border: none; border-radius: 8px; font-size: 15px; font-weight: 600;
                 cursor: pointer; }}
        button:hover {{ background: #C4684A; }}
        .client {{ color: #6B6860; font-size: 13px; word-break: break-all; margin-bottom: 20px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorize Access</h1>
        <p>An MCP client is requesting access to the YouTube tools on this server.</p>
        <div class="scope">
            <span class="scope-icon">&#10003;</span>
            <span>Fetch video metadata, transcripts and playlists</span>
        </div>
        <div class="client">Redirects to: {redirect_uri}</div>
        <form method="POST" action="/authorize/approve">
            <input type="hidden" name="client_id" value="{client_id}">
            <input type="hidden" name="redirect_uri" value="{redirect_uri}">
            <input type="hidden" name="code_challenge" value="{code_challenge}">
            <input type="hidden" name="code_challenge_method" value="{code_challenge_method}">
            <input type="hidden" name="state" value="{state}">
            <div class="form-group">
                <label for="password">Password</label>
                <input type="password" id="password" name="password" required autocomplete="current-password"
                       placeholder="Server password">
            </div>
            <button type="submit">Approve</button>
        </form>
    </div>
</body>
</html>
"""

ERROR_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>{title} - YouTube MCP</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>""" + BASE_STYLE + """
        .error {{ background: #FEF2F2; color: #B91C1C; padding: 12px; border-radius: 8px; border: 1px solid #FECACA; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <div class="error">{message}</div>
    </div>
</body>
</html>
"""


def render_consent_page(
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    code_challenge_method: str,
    state: str,
) -> str:
    return CONSENT_PAGE.format(
        client_id=html.escape(client_id, quote=True),
        redirect_uri=html.escape(redirect_uri, quote=True),
        code_challenge=html.escape(code_challenge, quote=True),
        code_challenge_method=html.escape(code_challenge_method, quote=True),
        state=html.escape(state, quote=True),
    )


def render_error_page(title: str, message: str) -> str:
    return ERROR_PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
    )
