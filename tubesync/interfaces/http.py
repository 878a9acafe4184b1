import logging
import secrets
import threading
import webbrowser
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from tubesync.domain.entities import Credential
from tubesync.domain.errors import AuthError
from tubesync.infrastructure.oauth import ProviderConfig, TokenEndpoint

logger = logging.getLogger(__name__)

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization complete</title><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">
<h1>Authorization complete</h1>
<p>You can close this page and return to the terminal.</p>
</body>
</html>
"""


@dataclass
class CallbackResult:
    """What the provider sent to the redirect URI."""

    code: Optional[str] = None
    error: Optional[str] = None


def create_callback_app(path: str, expected_state: str,
                        on_result: Callable[[CallbackResult], None]) -> Flask:
    """Create a Flask app that receives one OAuth redirect.

    Args:
        path: Callback path of the redirect URI
        expected_state: Anti-forgery state sent with the authorization request
        on_result: Called once with the code, or with the provider's error
    """
    app = Flask(__name__)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.now().isoformat()
        }), 200

    @app.route(path or '/', methods=['GET'])
    def oauth_callback():
        """OAuth callback endpoint."""
        error = request.args.get('error')
        if error:
            logger.error(f"OAuth error: {error}")
            on_result(CallbackResult(error=error))
            return jsonify({
                'error': 'OAuth authorization failed',
                'details': error
            }), 400

        if request.args.get('state') != expected_state:
            # Not ours; keep waiting for the real redirect
            logger.warning("OAuth callback with unexpected state ignored")
            return jsonify({
                'error': 'State mismatch'
            }), 400

        code = request.args.get('code')
        if not code:
            return jsonify({
                'error': 'Missing authorization code'
            }), 400

        on_result(CallbackResult(code=code))
        return SUCCESS_PAGE, 200, {'Content-Type': 'text/html; charset=utf-8'}

    return app


class LocalCallbackAuthorizer:
    """Interactive authorization-code flow with a one-shot local listener.

    Opens the provider's consent page in a browser, serves the redirect URI on
    the local machine until the code arrives, then exchanges it at the token
    endpoint.
    """

    def __init__(self,
                 timeout_sec: float = 300.0,
                 host: Optional[str] = None,
                 open_browser: Callable[[str], bool] = webbrowser.open,
                 server_factory=make_server,
                 http: Optional[requests.Session] = None):
        """Initialize the authorizer.

        Args:
            timeout_sec: How long to wait for the redirect
            host: Interface to listen on (defaults to the redirect URI host)
            open_browser: Opens a URL for the user
            server_factory: werkzeug make_server compatible factory
            http: HTTP session for the code exchange
        """
        self.timeout_sec = timeout_sec
        self.host = host
        self._open_browser = open_browser
        self._server_factory = server_factory
        self._http = http

    def authorize(self, provider: ProviderConfig) -> Credential:
        """Run the flow for one provider.

        Raises:
            AuthError: on timeout, provider error or failed code exchange
        """
        redirect = urlparse(provider.redirect_uri)
        if not redirect.port:
            raise AuthError(f"{provider.provider_id} redirect URI {provider.redirect_uri} must include a port")
        host = self.host or redirect.hostname or '127.0.0.1'

        state = secrets.token_urlsafe(24)
        received = threading.Event()
        result = CallbackResult()

        def on_result(callback: CallbackResult) -> None:
            if received.is_set():
                return
            result.code = callback.code
            result.error = callback.error
            received.set()

        app = create_callback_app(redirect.path or '/', state, on_result)
        try:
            server = self._server_factory(host, redirect.port, app)
        except OSError as e:
            raise AuthError(f"Cannot listen on {host}:{redirect.port} for the {provider.provider_id} callback: {e}")

        thread = threading.Thread(target=server.serve_forever, name=f"{provider.provider_id}-oauth-callback")
        thread.daemon = True
        thread.start()
        try:
            url = provider.authorization_url(state)
            logger.info(f"Open this URL to authorize {provider.provider_id}: {url}")
            self._open_browser(url)

            if not received.wait(self.timeout_sec):
                raise AuthError(f"Timed out after {self.timeout_sec:.0f}s waiting for {provider.provider_id} authorization")
        finally:
            server.shutdown()
            thread.join(timeout=5)

        if result.error:
            raise AuthError(f"{provider.provider_id} authorization was denied: {result.error}")

        endpoint = TokenEndpoint(provider, http=self._http)
        credential = endpoint.exchange_code(result.code)
        logger.info(f"{provider.provider_id} authorization complete")
        return credential
