import json
import threading
from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import Mock

from tubesync.domain.errors import AuthError
from tubesync.infrastructure.oauth import spotify_provider
from tubesync.interfaces.http import CallbackResult, LocalCallbackAuthorizer, create_callback_app


class _Resp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.headers = {}
        self.text = json.dumps(payload if payload is not None else {})
        self.content = self.text.encode('utf-8')

    def json(self):
        return json.loads(self.text)


class FakeServer:
    """Stands in for a werkzeug server; serve_forever blocks until shutdown."""

    def __init__(self, host, port, app):
        self.host = host
        self.port = port
        self.app = app
        self._stopped = threading.Event()

    def serve_forever(self):
        self._stopped.wait(5)

    def shutdown(self):
        self._stopped.set()


class TestCallbackApp:
    """Tests for the Flask callback app."""

    def setup_method(self):
        self.results = []
        self.app = create_callback_app('/callback', 'expected-state', self.results.append)
        self.client = self.app.test_client()

    def test_health(self):
        response = self.client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_valid_callback(self):
        response = self.client.get('/callback?code=abc&state=expected-state')

        assert response.status_code == 200
        assert self.results == [CallbackResult(code='abc')]

    def test_state_mismatch_is_rejected(self):
        response = self.client.get('/callback?code=abc&state=forged')

        assert response.status_code == 400
        assert self.results == []

    def test_missing_code_is_rejected(self):
        response = self.client.get('/callback?state=expected-state')

        assert response.status_code == 400
        assert self.results == []

    def test_provider_error_is_reported(self):
        response = self.client.get('/callback?error=access_denied&state=expected-state')

        assert response.status_code == 400
        assert self.results == [CallbackResult(error='access_denied')]


class TestLocalCallbackAuthorizer:
    """Tests for the interactive authorization flow."""

    def setup_method(self):
        self.provider = spotify_provider('cid', 'secret', 'http://127.0.0.1:8888/callback')
        self.servers = []
        self.http = Mock()
        self.http.request.return_value = _Resp(200, {
            'access_token': 'acc', 'refresh_token': 'ref', 'expires_in': 3600,
        })

    def _factory(self, host, port, app):
        server = FakeServer(host, port, app)
        self.servers.append(server)
        return server

    def _browser(self, query):
        def open_browser(url):
            state = parse_qs(urlparse(url).query)['state'][0]
            self.servers[-1].app.test_client().get(f"/callback?{query}&state={state}")
            return True
        return open_browser

    def test_authorize_exchanges_code(self):
        authorizer = LocalCallbackAuthorizer(timeout_sec=2, open_browser=self._browser('code=the-code'),
                                             server_factory=self._factory, http=self.http)

        credential = authorizer.authorize(self.provider)

        assert credential.access_token == 'acc'
        assert credential.refresh_token == 'ref'
        assert (self.servers[0].host, self.servers[0].port) == ('127.0.0.1', 8888)
        assert self.servers[0]._stopped.is_set()
        assert self.http.request.call_args[1]['data']['code'] == 'the-code'

    def test_denied_authorization(self):
        authorizer = LocalCallbackAuthorizer(timeout_sec=2, open_browser=self._browser('error=access_denied'),
                                             server_factory=self._factory, http=self.http)

        with pytest.raises(AuthError):
            authorizer.authorize(self.provider)
        self.http.request.assert_not_called()

    def test_timeout(self):
        authorizer = LocalCallbackAuthorizer(timeout_sec=0.05, open_browser=lambda url: True,
                                             server_factory=self._factory, http=self.http)

        with pytest.raises(AuthError):
            authorizer.authorize(self.provider)
        assert self.servers[0]._stopped.is_set()

    def test_redirect_uri_without_port(self):
        provider = spotify_provider('cid', 'secret', 'https://example.com/callback')
        authorizer = LocalCallbackAuthorizer(server_factory=self._factory, http=self.http)

        with pytest.raises(AuthError):
            authorizer.authorize(provider)

    def test_port_in_use(self):
        def busy(host, port, app):
            raise OSError('Address already in use')

        authorizer = LocalCallbackAuthorizer(server_factory=busy, http=self.http)

        with pytest.raises(AuthError):
            authorizer.authorize(self.provider)
