import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import urlencode

import requests

from tubesync.application.retry import RetryPolicy
from tubesync.domain.entities import Credential
from tubesync.domain.errors import ApiError, AuthError, InvalidTokenError, SyncError
from tubesync.domain.ports import Authorizer
from tubesync.infrastructure.http import send
from tubesync.infrastructure.token_store import TokenStore

logger = logging.getLogger(__name__)

T = TypeVar('T')

SPOTIFY_AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
SPOTIFY_SCOPES = ('playlist-read-private', 'playlist-read-collaborative')

GOOGLE_AUTHORIZE_URL = 'https://accounts.google.com/o/oauth2/auth'
GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
YOUTUBE_SCOPES = ('https://www.googleapis.com/auth/youtube',)


@dataclass(frozen=True)
class ProviderConfig:
    """Static OAuth2 description of one provider."""

    provider_id: str
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: Tuple[str, ...] = ()
    extra_authorize_params: Dict[str, str] = field(default_factory=dict)

    @property
    def scope_string(self) -> str:
        return ' '.join(self.scopes)

    def authorization_url(self, state: str) -> str:
        """Build the consent URL the user opens in a browser."""
        params = {
            'client_id': self.client_id,
            'response_type': 'code',
            'redirect_uri': self.redirect_uri,
            'scope': self.scope_string,
            'state': state,
        }
        params.update(self.extra_authorize_params)
        return f"{self.authorize_url}?{urlencode(params)}"


def spotify_provider(client_id: str, client_secret: str, redirect_uri: str) -> ProviderConfig:
    return ProviderConfig(
        provider_id='spotify',
        authorize_url=SPOTIFY_AUTHORIZE_URL,
        token_url=SPOTIFY_TOKEN_URL,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=SPOTIFY_SCOPES,
    )


def youtube_provider(client_id: str, client_secret: str, redirect_uri: str) -> ProviderConfig:
    # offline + consent makes Google issue a refresh token on every grant
    return ProviderConfig(
        provider_id='youtube',
        authorize_url=GOOGLE_AUTHORIZE_URL,
        token_url=GOOGLE_TOKEN_URL,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=YOUTUBE_SCOPES,
        extra_authorize_params={'access_type': 'offline', 'prompt': 'consent'},
    )


class TokenEndpoint:
    """Client for a provider's OAuth2 token endpoint."""

    def __init__(self, provider: ProviderConfig, http: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.provider = provider
        self._http = http or requests.Session()
        self._clock = clock

    def _post(self, data: Dict[str, str], operation: str) -> Dict:
        payload = dict(data)
        payload['client_id'] = self.provider.client_id
        payload['client_secret'] = self.provider.client_secret
        try:
            return send(
                self._http, 'POST', self.provider.token_url, operation,
                data=payload,
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
            )
        except (InvalidTokenError, ApiError) as e:
            # 400 invalid_grant and 401 both mean the grant is unusable
            raise AuthError(str(e)) from e

    def exchange_code(self, code: str) -> Credential:
        """Exchange an authorization code for a credential."""
        logger.info(f"Exchanging {self.provider.provider_id} authorization code for tokens")
        response = self._post({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.provider.redirect_uri,
        }, f"{self.provider.provider_id} code exchange")
        try:
            return Credential.from_token_response(self.provider.provider_id, response, now=self._clock())
        except ValueError as e:
            raise AuthError(f"{self.provider.provider_id} code exchange: {e}") from e

    def refresh(self, credential: Credential) -> Credential:
        """Trade the refresh token for a new access token.

        Providers that do not rotate refresh tokens omit it from the response;
        the previous one is kept in that case.
        """
        if not credential.refresh_token:
            raise AuthError(f"{self.provider.provider_id} credential has no refresh token")

        logger.info(f"Refreshing {self.provider.provider_id} access token")
        response = self._post({
            'grant_type': 'refresh_token',
            'refresh_token': credential.refresh_token,
        }, f"{self.provider.provider_id} token refresh")
        try:
            refreshed = Credential.from_token_response(
                self.provider.provider_id, response,
                previous_refresh_token=credential.refresh_token,
                now=self._clock(),
            )
        except ValueError as e:
            raise AuthError(f"{self.provider.provider_id} token refresh: {e}") from e
        if refreshed.scope is None and credential.scope:
            refreshed = Credential(
                provider_id=refreshed.provider_id,
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token,
                expiry_timestamp=refreshed.expiry_timestamp,
                scope=credential.scope,
                token_type=refreshed.token_type,
            )
        return refreshed


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class OAuthSession:
    """Owns the credential of one provider for the duration of a run.

    All outbound API calls go through call(), which authenticates first and
    retries once after re-authentication if the provider rejects the token.
    Authentication is serialized by a lock so that concurrent callers share a
    single refresh instead of racing (providers may invalidate a refresh token
    on reuse).
    """

    def __init__(self,
                 provider: ProviderConfig,
                 token_store: TokenStore,
                 authorizer: Optional[Authorizer] = None,
                 token_endpoint: Optional[TokenEndpoint] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time,
                 expiry_margin_sec: float = 60.0):
        """Initialize a session.

        Args:
            provider: OAuth2 description of the provider
            token_store: Durable credential storage
            authorizer: Interactive flow used when no usable credential exists
            token_endpoint: Token endpoint client (built from provider if omitted)
            retry_policy: Retry policy for refresh requests (transient failures only)
            clock: Time source, epoch seconds
            expiry_margin_sec: Treat tokens expiring within this window as expired
        """
        self.provider = provider
        self._token_store = token_store
        self._authorizer = authorizer
        self._token_endpoint = token_endpoint or TokenEndpoint(provider, clock=clock)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._expiry_margin_sec = expiry_margin_sec

        self._lock = threading.RLock()
        self._state = SessionState.UNAUTHENTICATED
        self._credential: Optional[Credential] = None
        self._rejected_token: Optional[str] = None

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def _usable(self, credential: Optional[Credential]) -> bool:
        if credential is None:
            return False
        if credential.access_token == self._rejected_token:
            return False
        return not credential.is_expired(now=self._clock(), margin_sec=self._expiry_margin_sec)

    def ensure_authenticated(self) -> Credential:
        """Return a usable credential, refreshing or re-authorizing as needed.

        Raises:
            AuthError: if neither refresh nor interactive authorization succeeds
        """
        with self._lock:
            if self._state == SessionState.AUTHENTICATED and self._usable(self._credential):
                return self._credential

            previous_state = self._state
            self._state = SessionState.AUTHENTICATING
            try:
                credential = self._acquire()
            except BaseException:
                self._state = SessionState.EXPIRED if self._credential else previous_state
                raise

            self._credential = credential
            self._rejected_token = None
            self._state = SessionState.AUTHENTICATED
            return credential

    def _acquire(self) -> Credential:
        credential = self._credential or self._token_store.load(self.provider_id)
        if self._usable(credential):
            logger.debug(f"Using stored {self.provider_id} credential")
            return credential

        if credential is not None and credential.refresh_token:
            try:
                refreshed = self._retry_policy.run(
                    lambda: self._token_endpoint.refresh(credential),
                    description=f"refresh {self.provider_id} token",
                )
            except SyncError as e:
                logger.warning(f"{self.provider_id} token refresh failed, re-authorization required: {e}")
            else:
                self._token_store.save(refreshed)
                return refreshed

        if self._authorizer is None:
            raise AuthError(f"No usable {self.provider_id} credential and no interactive authorizer configured")

        logger.info(f"Starting interactive {self.provider_id} authorization")
        authorized = self._authorizer.authorize(self.provider)
        if authorized is None or not authorized.access_token:
            raise AuthError(f"{self.provider_id} authorization did not yield a credential")
        self._token_store.save(authorized)
        return authorized

    def invalidate(self, rejected_access_token: Optional[str] = None) -> None:
        """Mark the session expired after the provider rejected a token.

        When several callers report the same rejected token, only the first
        one changes state; later ones see the replacement credential.
        """
        with self._lock:
            if self._credential is None:
                return
            if rejected_access_token is not None and rejected_access_token != self._credential.access_token:
                return
            self._rejected_token = self._credential.access_token
            self._state = SessionState.EXPIRED

    def call(self, operation: Callable[[str], T]) -> T:
        """Run operation(access_token), re-authenticating once on a 401.

        Raises:
            AuthError: if the provider rejects the re-issued token as well
        """
        credential = self.ensure_authenticated()
        try:
            return operation(credential.access_token)
        except InvalidTokenError as e:
            logger.warning(f"{self.provider_id} rejected access token, re-authenticating: {e}")
            self.invalidate(credential.access_token)

        credential = self.ensure_authenticated()
        try:
            return operation(credential.access_token)
        except InvalidTokenError as e:
            self.invalidate(credential.access_token)
            raise AuthError(f"{self.provider_id} rejected a freshly issued token: {e}") from e
