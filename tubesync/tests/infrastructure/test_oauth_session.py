import json
import threading
import time
from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import Mock

from tubesync.application.retry import RetryPolicy
from tubesync.domain.entities import Credential
from tubesync.domain.errors import AuthError, InvalidTokenError, TransientNetworkError
from tubesync.infrastructure.oauth import (
    OAuthSession, SessionState, TokenEndpoint, spotify_provider, youtube_provider
)
from tubesync.infrastructure.token_store import TokenStore

NOW = 1000.0


class _Resp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.headers = {}
        self.text = json.dumps(payload if payload is not None else {})
        self.content = self.text.encode('utf-8')

    def json(self):
        return json.loads(self.text)


def _credential(access_token, expiry=5000.0, refresh_token='refresh-1', provider_id='spotify'):
    return Credential(provider_id=provider_id, access_token=access_token,
                      refresh_token=refresh_token, expiry_timestamp=expiry)


class TestProviderConfig:
    """Tests for provider definitions."""

    def test_spotify_authorization_url(self):
        provider = spotify_provider('cid', 'secret', 'http://127.0.0.1:8888/callback')

        query = parse_qs(urlparse(provider.authorization_url('st4te')).query)
        assert query['client_id'] == ['cid']
        assert query['response_type'] == ['code']
        assert query['state'] == ['st4te']
        assert query['redirect_uri'] == ['http://127.0.0.1:8888/callback']
        assert query['scope'] == ['playlist-read-private playlist-read-collaborative']

    def test_youtube_requests_offline_access(self):
        provider = youtube_provider('cid', 'secret', 'http://127.0.0.1:8889/callback')

        query = parse_qs(urlparse(provider.authorization_url('s')).query)
        assert query['access_type'] == ['offline']
        assert query['prompt'] == ['consent']
        assert query['scope'] == ['https://www.googleapis.com/auth/youtube']


class TestTokenEndpoint:
    """Tests for TokenEndpoint."""

    def setup_method(self):
        self.provider = youtube_provider('cid', 'secret', 'http://127.0.0.1:8889/callback')
        self.http = Mock()
        self.endpoint = TokenEndpoint(self.provider, http=self.http, clock=lambda: NOW)

    def test_exchange_code(self):
        self.http.request.return_value = _Resp(200, {
            'access_token': 'acc', 'refresh_token': 'ref', 'expires_in': 3600, 'scope': 'yt',
        })

        credential = self.endpoint.exchange_code('the-code')

        assert credential == Credential('youtube', 'acc', 'ref', NOW + 3600, 'yt')
        args, kwargs = self.http.request.call_args
        assert args == ('POST', 'https://oauth2.googleapis.com/token')
        assert kwargs['data'] == {
            'grant_type': 'authorization_code',
            'code': 'the-code',
            'redirect_uri': 'http://127.0.0.1:8889/callback',
            'client_id': 'cid',
            'client_secret': 'secret',
        }

    def test_refresh_keeps_refresh_token_and_scope_when_omitted(self):
        self.http.request.return_value = _Resp(200, {'access_token': 'acc-2', 'expires_in': 60})
        old = Credential('youtube', 'acc-1', 'ref-1', 0.0, 'yt')

        refreshed = self.endpoint.refresh(old)

        assert refreshed.access_token == 'acc-2'
        assert refreshed.refresh_token == 'ref-1'
        assert refreshed.scope == 'yt'
        assert self.http.request.call_args[1]['data']['grant_type'] == 'refresh_token'

    def test_refresh_without_refresh_token_fails(self):
        with pytest.raises(AuthError):
            self.endpoint.refresh(Credential('youtube', 'acc-1'))

    def test_rejected_refresh_is_auth_error(self):
        self.http.request.return_value = _Resp(400, {'error': 'invalid_grant'})

        with pytest.raises(AuthError):
            self.endpoint.refresh(Credential('youtube', 'acc-1', 'ref-1'))

    def test_token_endpoint_outage_stays_transient(self):
        self.http.request.return_value = _Resp(503, {})

        with pytest.raises(TransientNetworkError):
            self.endpoint.refresh(Credential('youtube', 'acc-1', 'ref-1'))


class TestOAuthSession:
    """Tests for OAuthSession."""

    def setup_method(self):
        self.provider = spotify_provider('cid', 'secret', 'http://127.0.0.1:8888/callback')
        self.token_endpoint = Mock()
        self.authorizer = Mock()
        self.sleeps = []

    def _session(self, tmp_path, stored=None, authorizer=True):
        store = TokenStore(tmp_path)
        if stored is not None:
            store.save(stored)
        session = OAuthSession(
            self.provider, store,
            authorizer=self.authorizer if authorizer else None,
            token_endpoint=self.token_endpoint,
            retry_policy=RetryPolicy(sleep=self.sleeps.append),
            clock=lambda: NOW,
        )
        return session, store

    def test_uses_stored_credential(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('stored'))

        assert session.ensure_authenticated().access_token == 'stored'
        assert session.state == SessionState.AUTHENTICATED
        self.token_endpoint.refresh.assert_not_called()
        self.authorizer.authorize.assert_not_called()

    def test_expired_credential_is_refreshed_and_saved(self, tmp_path):
        session, store = self._session(tmp_path, stored=_credential('old', expiry=500.0))
        self.token_endpoint.refresh.return_value = _credential('new')

        assert session.ensure_authenticated().access_token == 'new'
        assert store.load('spotify').access_token == 'new'
        self.authorizer.authorize.assert_not_called()

    def test_token_inside_expiry_margin_is_refreshed(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old', expiry=NOW + 30))
        self.token_endpoint.refresh.return_value = _credential('new')

        assert session.ensure_authenticated().access_token == 'new'

    def test_failed_refresh_falls_back_to_authorizer(self, tmp_path):
        session, store = self._session(tmp_path, stored=_credential('old', expiry=500.0))
        self.token_endpoint.refresh.side_effect = AuthError('invalid_grant')
        self.authorizer.authorize.return_value = _credential('interactive')

        assert session.ensure_authenticated().access_token == 'interactive'
        self.authorizer.authorize.assert_called_once_with(self.provider)
        assert store.load('spotify').access_token == 'interactive'
        assert self.token_endpoint.refresh.call_count == 1

    def test_transient_refresh_failure_is_retried(self, tmp_path):
        session, store = self._session(tmp_path, stored=_credential('old', expiry=500.0))
        self.token_endpoint.refresh.side_effect = [
            TransientNetworkError('token endpoint 503'),
            _credential('new'),
        ]

        assert session.ensure_authenticated().access_token == 'new'
        assert self.token_endpoint.refresh.call_count == 2
        assert self.sleeps == [1.0]
        self.authorizer.authorize.assert_not_called()
        assert store.load('spotify').access_token == 'new'

    def test_refresh_outage_falls_back_to_authorizer_after_retries(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old', expiry=500.0))
        self.token_endpoint.refresh.side_effect = TransientNetworkError('token endpoint 503')
        self.authorizer.authorize.return_value = _credential('interactive')

        assert session.ensure_authenticated().access_token == 'interactive'
        assert self.token_endpoint.refresh.call_count == 3
        assert self.sleeps == [1.0, 2.0]
        self.authorizer.authorize.assert_called_once_with(self.provider)

    def test_malformed_token_file_triggers_authorization(self, tmp_path):
        session, store = self._session(tmp_path)
        store.path_for('spotify').write_text('garbage')
        self.authorizer.authorize.return_value = _credential('interactive')

        assert session.ensure_authenticated().access_token == 'interactive'

    def test_without_authorizer_missing_credential_is_auth_error(self, tmp_path):
        session, _ = self._session(tmp_path, authorizer=False)

        with pytest.raises(AuthError):
            session.ensure_authenticated()
        assert session.state == SessionState.UNAUTHENTICATED

    def test_call_retries_once_after_401(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old'))
        self.token_endpoint.refresh.return_value = _credential('new')
        seen = []

        def operation(token):
            seen.append(token)
            if token == 'old':
                raise InvalidTokenError('401')
            return 'ok'

        assert session.call(operation) == 'ok'
        assert seen == ['old', 'new']
        self.token_endpoint.refresh.assert_called_once()

    def test_call_gives_up_after_second_401(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old'))
        self.token_endpoint.refresh.return_value = _credential('new')
        operation = Mock(side_effect=InvalidTokenError('401'))

        with pytest.raises(AuthError):
            session.call(operation)
        assert operation.call_count == 2

    def test_concurrent_callers_share_one_refresh(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old', expiry=500.0))

        def slow_refresh(credential):
            time.sleep(0.05)
            return _credential('new')

        self.token_endpoint.refresh.side_effect = slow_refresh
        results = []

        def worker():
            results.append(session.ensure_authenticated().access_token)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == ['new'] * 5
        assert self.token_endpoint.refresh.call_count == 1

    def test_stale_invalidation_does_not_discard_new_token(self, tmp_path):
        session, _ = self._session(tmp_path, stored=_credential('old'))
        session.ensure_authenticated()
        session.invalidate('old')
        self.token_endpoint.refresh.return_value = _credential('new')
        session.ensure_authenticated()

        # A second caller reporting the already replaced token changes nothing
        session.invalidate('old')

        assert session.state == SessionState.AUTHENTICATED
        assert session.ensure_authenticated().access_token == 'new'
        assert self.token_endpoint.refresh.call_count == 1
