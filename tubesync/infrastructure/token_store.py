import logging
import re
from pathlib import Path
from typing import Optional, Union

from tubesync.domain.entities import Credential
from tubesync.infrastructure.storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class TokenStore:
    """Stores one OAuth credential file per provider."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, provider_id: str) -> Path:
        return self.directory / f"{_SAFE_NAME.sub('_', provider_id)}_token.json"

    def load(self, provider_id: str) -> Optional[Credential]:
        """Return the stored credential, or None when missing or unreadable.

        A malformed file triggers re-authentication instead of failing the run.
        """
        path = self.path_for(provider_id)
        if not path.exists():
            return None

        try:
            data = read_json(path)
            credential = Credential.from_json(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable token file {path}: {e}")
            return None

        if credential.provider_id != provider_id:
            logger.warning(f"Token file {path} belongs to {credential.provider_id}, ignoring")
            return None
        return credential

    def save(self, credential: Credential) -> None:
        """Persist a credential atomically with owner-only permissions."""
        path = self.path_for(credential.provider_id)
        atomic_write_json(path, credential.to_json(), mode=0o600)
        logger.debug(f"Saved {credential.provider_id} token to {path}")

    def clear(self, provider_id: str) -> bool:
        """Delete a stored credential. Returns True if a file was removed."""
        path = self.path_for(provider_id)
        if path.exists():
            path.unlink()
            return True
        return False
