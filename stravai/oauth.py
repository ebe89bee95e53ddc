"""One-off browser authorisation that yields the refresh token the sync needs.

Run ``python -m stravai.oauth`` once, approve the app in the browser and copy
the refresh token into ``REFRESH_TOKEN``. The scope includes
``activity:write`` because reports and the cache record are written back.
"""

from __future__ import annotations

import argparse
import logging
import secrets
import socket
import threading
import time
import urllib.parse
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import Flask, abort, request
from flask.typing import ResponseReturnValue
import requests
from werkzeug.serving import BaseWSGIServer, make_server

from .config import CLIENT_ID, CLIENT_SECRET, REQUEST_TIMEOUT, STRAVA_OAUTH_URL
from .utils import mask_tail

LOGGER = logging.getLogger(__name__)

OAUTH_PORT = 5000
REDIRECT_URI = f"http://localhost:{OAUTH_PORT}/callback"
AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
SCOPE = "read,activity:read_all,activity:write"


@dataclass
class OAuthSession:
    """Mutable state of one authorisation flow."""

    expected_state: str = field(default_factory=lambda: secrets.token_urlsafe(16))
    auth_code: Optional[str] = None
    auth_event: threading.Event = field(default_factory=threading.Event)
    server: Optional[BaseWSGIServer] = None

    def reset(self) -> None:
        self.expected_state = secrets.token_urlsafe(16)
        self.auth_code = None
        self.auth_event.clear()
        self.server = None


_session = OAuthSession()

app = Flask(__name__)


@app.route("/callback")
def callback() -> ResponseReturnValue:
    state = request.args.get("state")
    if not state or state != _session.expected_state:
        LOGGER.error("Invalid OAuth state received; possible CSRF. Aborting.")
        abort(400, description="Invalid state")
    scope = request.args.get("scope", "")
    if "activity:write" not in scope:
        LOGGER.warning(
            "Granted scope %r lacks activity:write; reports cannot be written back",
            scope,
        )
    _session.auth_code = request.args.get("code")
    LOGGER.info("Authorisation code received via callback.")
    _session.auth_event.set()
    return "StravAI authorised. You can close this window now."


def build_auth_url(state: str, client_id: str = CLIENT_ID) -> str:
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "scope": SCOPE,
        "approval_prompt": "force",
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


def wait_for_port(port: int, host: str = "localhost", timeout: int = 10) -> bool:
    """Return True once ``host:port`` accepts TCP connections or timeout elapses."""

    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(0.1)
    return False


def exchange_code(code: str, *, session: Any = requests) -> Dict[str, Any]:
    """Trade an authorisation code for the token payload.

    Raises ``requests.HTTPError`` on rejection and ``ValueError`` when the
    body is not the expected token document.
    """

    response = session.post(
        STRAVA_OAUTH_URL,
        data={
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": REDIRECT_URI,
        },
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    tokens = response.json()
    missing = [k for k in ("access_token", "refresh_token", "expires_at") if k not in tokens]
    if missing:
        raise ValueError(f"Token response missing keys: {', '.join(missing)}")
    return tokens


def log_tokens(tokens: Dict[str, Any], *, print_tokens: bool) -> None:
    access_token = str(tokens.get("access_token") or "")
    refresh_token = str(tokens.get("refresh_token") or "")
    if print_tokens:
        LOGGER.warning("Printing raw Strava tokens. Handle with care!")
        LOGGER.info("Refresh Token (set REFRESH_TOKEN): %s", refresh_token)
        LOGGER.info("Access Token: %s", access_token)
    else:
        LOGGER.info(
            "Token exchange succeeded: access_token=%s refresh_token=%s expires_at=%s",
            mask_tail(access_token),
            mask_tail(refresh_token),
            tokens.get("expires_at"),
        )


def _run_flask() -> None:
    _session.server = make_server("localhost", OAUTH_PORT, app)
    _session.server.serve_forever()


def _shutdown_server(flask_thread: threading.Thread) -> None:
    if _session.server:
        _session.server.shutdown()
    flask_thread.join(timeout=5)


def start_oauth_flow(*, print_tokens: bool, wait_timeout: int = 60) -> None:
    """Run the flow end-to-end, exiting with status 1 on any failure."""

    _session.reset()
    flask_thread = threading.Thread(target=_run_flask, daemon=True)
    flask_thread.start()

    if not wait_for_port(OAUTH_PORT):
        LOGGER.error("Callback server did not start on port %s", OAUTH_PORT)
        _shutdown_server(flask_thread)
        raise SystemExit(1)

    LOGGER.info("Opening browser for authorisation...")
    webbrowser.open(build_auth_url(_session.expected_state))

    if not _session.auth_event.wait(timeout=wait_timeout) or not _session.auth_code:
        LOGGER.error("No authorisation code received within %ss.", wait_timeout)
        _shutdown_server(flask_thread)
        raise SystemExit(1)

    try:
        tokens = exchange_code(_session.auth_code)
    except (requests.RequestException, ValueError) as exc:
        LOGGER.error("Failed to exchange code for tokens: %s", exc)
        raise SystemExit(1) from exc
    else:
        log_tokens(tokens, print_tokens=print_tokens)
    finally:
        _shutdown_server(flask_thread)


def main() -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.INFO, format="[%(asctime)s] %(levelname)s: %(message)s"
        )
    parser = argparse.ArgumentParser(description="StravAI Strava authorisation helper")
    parser.add_argument(
        "--print-tokens",
        action="store_true",
        help="Print raw tokens once exchanged (defaults to masked logging)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=60,
        help="Seconds to wait for browser authorisation before exiting",
    )
    args = parser.parse_args()
    start_oauth_flow(print_tokens=args.print_tokens, wait_timeout=args.timeout)


if __name__ == "__main__":  # pragma: no cover - CLI helper
    main()
