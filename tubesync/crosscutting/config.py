import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values

from tubesync.application.matching import STRATEGIES, STRATEGY_FIRST
from tubesync.infrastructure.oauth import ProviderConfig, spotify_provider, youtube_provider
from tubesync.infrastructure.providers.youtube import PRIVACY_STATUSES

DEFAULT_STATE_DIR = Path.home() / '.tubesync'
DEFAULT_SPOTIFY_REDIRECT_URI = 'http://127.0.0.1:8888/callback'
DEFAULT_YOUTUBE_REDIRECT_URI = 'http://127.0.0.1:8889/callback'


class ConfigError(Exception):
    """Configuration error."""
    pass


def _read_client_secrets(path: str) -> Tuple[str, str]:
    """Read client id and secret from a Google OAuth client secrets file."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read YouTube client secrets file {path}: {e}")

    section = data.get('installed') or data.get('web') if isinstance(data, dict) else None
    if not isinstance(section, dict) or not section.get('client_id') or not section.get('client_secret'):
        raise ConfigError(f"{path} is not a Google OAuth client secrets file")
    return section['client_id'], section['client_secret']


def _int(values: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = values.get(key)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(values: Mapping[str, str], key: str, default: float, minimum: float = 0.0) -> float:
    raw = values.get(key)
    if raw in (None, ''):
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _choice(values: Mapping[str, str], key: str, default: str, choices: Tuple[str, ...]) -> str:
    value = (values.get(key) or default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


@dataclass
class Settings:
    """Runtime configuration, read from the environment and .env files."""

    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: str = DEFAULT_SPOTIFY_REDIRECT_URI
    youtube_client_id: Optional[str] = None
    youtube_client_secret: Optional[str] = None
    youtube_redirect_uri: str = DEFAULT_YOUTUBE_REDIRECT_URI
    state_dir: Path = DEFAULT_STATE_DIR
    item_delay_ms: int = 500
    page_concurrency: int = 4
    max_attempts: int = 3
    backoff_base_sec: float = 1.0
    auth_timeout_sec: float = 300.0
    match_strategy: str = STRATEGY_FIRST
    search_candidates: int = 5
    min_match_score: float = 0.6
    privacy: str = 'private'

    @classmethod
    def from_env(cls, env_file: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Load settings.

        Values come from the process environment, falling back to the given
        .env file, or to ./.env and <state dir>/.env when none is given.

        Raises:
            ConfigError: if a value is invalid or env_file does not exist
        """
        environ = dict(os.environ if environ is None else environ)

        file_values: Dict[str, str] = {}
        if env_file:
            if not Path(env_file).exists():
                raise ConfigError(f".env file {env_file} does not exist")
            file_values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
        else:
            state_dir = Path(environ.get('TUBESYNC_STATE_DIR') or DEFAULT_STATE_DIR).expanduser()
            for candidate in (state_dir / '.env', Path.cwd() / '.env'):
                if candidate.exists():
                    file_values.update({k: v for k, v in dotenv_values(candidate).items() if v is not None})

        values = {**file_values, **environ}

        youtube_client_id = values.get('YOUTUBE_CLIENT_ID')
        youtube_client_secret = values.get('YOUTUBE_CLIENT_SECRET')
        secrets_file = values.get('YOUTUBE_CLIENT_SECRETS_FILE')
        if secrets_file and not (youtube_client_id and youtube_client_secret):
            youtube_client_id, youtube_client_secret = _read_client_secrets(secrets_file)

        return cls(
            spotify_client_id=values.get('SPOTIFY_CLIENT_ID') or None,
            spotify_client_secret=values.get('SPOTIFY_CLIENT_SECRET') or None,
            spotify_redirect_uri=values.get('SPOTIFY_REDIRECT_URI') or DEFAULT_SPOTIFY_REDIRECT_URI,
            youtube_client_id=youtube_client_id or None,
            youtube_client_secret=youtube_client_secret or None,
            youtube_redirect_uri=values.get('YOUTUBE_REDIRECT_URI') or DEFAULT_YOUTUBE_REDIRECT_URI,
            state_dir=Path(values.get('TUBESYNC_STATE_DIR') or DEFAULT_STATE_DIR).expanduser(),
            item_delay_ms=_int(values, 'TUBESYNC_ITEM_DELAY_MS', 500),
            page_concurrency=_int(values, 'TUBESYNC_PAGE_CONCURRENCY', 4, minimum=1),
            max_attempts=_int(values, 'TUBESYNC_MAX_ATTEMPTS', 3, minimum=1),
            backoff_base_sec=_float(values, 'TUBESYNC_BACKOFF_BASE_SEC', 1.0),
            auth_timeout_sec=_float(values, 'TUBESYNC_AUTH_TIMEOUT_SEC', 300.0, minimum=1.0),
            match_strategy=_choice(values, 'TUBESYNC_MATCH_STRATEGY', STRATEGY_FIRST, STRATEGIES),
            search_candidates=_int(values, 'TUBESYNC_SEARCH_CANDIDATES', 5, minimum=1),
            min_match_score=_float(values, 'TUBESYNC_MIN_MATCH_SCORE', 0.6),
            privacy=_choice(values, 'TUBESYNC_PRIVACY', 'private', PRIVACY_STATUSES),
        )

    @property
    def tokens_dir(self) -> Path:
        return self.state_dir / 'tokens'

    @property
    def ledgers_dir(self) -> Path:
        return self.state_dir / 'ledgers'

    @property
    def reports_dir(self) -> Path:
        return self.state_dir / 'reports'

    def validate(self) -> Dict[str, bool]:
        """Report which required values are present."""
        return {
            'spotify_client_id': bool(self.spotify_client_id),
            'spotify_client_secret': bool(self.spotify_client_secret),
            'youtube_client_id': bool(self.youtube_client_id),
            'youtube_client_secret': bool(self.youtube_client_secret),
        }

    def missing(self, provider_id: Optional[str] = None) -> list:
        """Names of missing settings, optionally for one provider only."""
        return [
            name.upper() for name, present in self.validate().items()
            if not present and (provider_id is None or name.startswith(provider_id))
        ]

    def spotify_provider_config(self) -> ProviderConfig:
        missing = self.missing('spotify')
        if missing:
            raise ConfigError(f"Spotify is not configured, missing: {', '.join(missing)}")
        return spotify_provider(self.spotify_client_id, self.spotify_client_secret, self.spotify_redirect_uri)

    def youtube_provider_config(self) -> ProviderConfig:
        missing = self.missing('youtube')
        if missing:
            raise ConfigError(f"YouTube is not configured, missing: {', '.join(missing)} "
                              f"(or set YOUTUBE_CLIENT_SECRETS_FILE)")
        return youtube_provider(self.youtube_client_id, self.youtube_client_secret, self.youtube_redirect_uri)

    def summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'state_dir': str(self.state_dir),
            'tokens_dir': str(self.tokens_dir),
            'ledgers_dir': str(self.ledgers_dir),
            'reports_dir': str(self.reports_dir),
            'spotify_redirect_uri': self.spotify_redirect_uri,
            'youtube_redirect_uri': self.youtube_redirect_uri,
            'item_delay_ms': self.item_delay_ms,
            'page_concurrency': self.page_concurrency,
            'max_attempts': self.max_attempts,
            'backoff_base_sec': self.backoff_base_sec,
            'auth_timeout_sec': self.auth_timeout_sec,
            'match_strategy': self.match_strategy,
            'search_candidates': self.search_candidates,
            'min_match_score': self.min_match_score,
            'privacy': self.privacy,
            'validation': self.validate(),
        }
