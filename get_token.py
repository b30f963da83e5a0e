"""One-time Google OAuth helper.

Run it, open http://localhost:3000/ and authorize; the tokens end up in
``tokens.json`` and the process exits.
"""
import html
import json
import logging
import os
import sys
import threading
import webbrowser
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv
from flask import Flask, request


PORT = 3000
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]
DEFAULT_REDIRECT_URI = f"http://localhost:{PORT}/oauth2callback"
TOKEN_PATH = "tokens.json"
EXIT_DELAY_SECONDS = 1.0

LOGGER = logging.getLogger("poster_gallery.oauth")


def build_auth_url(client_id, redirect_uri):
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "scope": " ".join(SCOPES),
    }
    return f"{AUTH_URL}?{urlencode(params)}"


def exchange_code(code, client_id, client_secret, redirect_uri):
    resp = requests.post(
        TOKEN_URL,
        data={
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout=15,
    )
    if resp.status_code >= 300:
        raise RuntimeError(f"token endpoint returned {resp.status_code}: {resp.text}")
    return resp.json()


def _exit_soon():
    timer = threading.Timer(EXIT_DELAY_SECONDS, os._exit, args=(0,))
    timer.daemon = True
    timer.start()


def create_app(client_id, client_secret, redirect_uri=DEFAULT_REDIRECT_URI, token_path=TOKEN_PATH, on_success=_exit_soon):
    app = Flask(__name__)

    @app.get("/")
    def index():
        auth_url = html.escape(build_auth_url(client_id, redirect_uri))
        return (
            "<h2>Google OAuth Helper</h2>"
            "<p>Open the auth URL to continue:</p>"
            f'<a href="{auth_url}" target="_blank">Authorize Google Drive</a>'
            "<p>After consenting, Google will redirect to "
            f"<code>{html.escape(redirect_uri)}</code>.</p>"
        )

    @app.get("/oauth2callback")
    def oauth2callback():
        code = request.args.get("code")
        if not code:
            return "No code found in query params", 400
        try:
            tokens = exchange_code(code, client_id, client_secret, redirect_uri)
        except (requests.RequestException, RuntimeError, ValueError) as e:
            LOGGER.exception("oauth.exchange_failed")
            return f"Error exchanging code for tokens: {html.escape(str(e))}", 500
        with open(token_path, "w", encoding="utf-8") as f:
            json.dump(tokens, f, indent=2)
        LOGGER.info("Tokens saved to %s", token_path)
        on_success()
        return f"<h3>Success</h3><p>Tokens saved to <code>{html.escape(token_path)}</code>. You can close this window.</p>"

    return app


def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    client_id = os.environ.get("GOOGLE_CLIENT_ID")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET")
    redirect_uri = os.environ.get("GOOGLE_REDIRECT_URI") or DEFAULT_REDIRECT_URI
    if not client_id or not client_secret:
        LOGGER.error("Missing GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET in .env")
        sys.exit(1)
    app = create_app(client_id, client_secret, redirect_uri)
    url = f"http://localhost:{PORT}/"
    LOGGER.info("Visit this URL to authorize the app: %s", url)
    threading.Timer(0.5, webbrowser.open, args=(url,)).start()
    app.run(host="127.0.0.1", port=PORT)


if __name__ == "__main__":
    main()
