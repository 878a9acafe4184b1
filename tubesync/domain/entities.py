from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


@dataclass(frozen=True)
class Credential:
    """OAuth2 token pair plus expiry metadata for one provider."""

    provider_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expiry_timestamp: Optional[float] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    def is_expired(self, now: Optional[float] = None, margin_sec: float = 0.0) -> bool:
        """Return True when the access token should no longer be used.

        A credential without expiry information is considered valid; the
        provider's 401 answer is what invalidates it in that case.
        """
        if self.expiry_timestamp is None:
            return False
        current = time.time() if now is None else now
        return self.expiry_timestamp - margin_sec <= current

    def to_json(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry_timestamp": self.expiry_timestamp,
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Credential":
        """Deserialize a stored credential. Raises KeyError/TypeError/ValueError on bad shape."""
        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token must be a non-empty string")
        expiry = data.get("expiry_timestamp")
        return cls(
            provider_id=str(data["provider_id"]),
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expiry_timestamp=float(expiry) if expiry is not None else None,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )

    @classmethod
    def from_token_response(
        cls,
        provider_id: str,
        payload: Dict[str, Any],
        previous_refresh_token: Optional[str] = None,
        now: Optional[float] = None,
    ) -> "Credential":
        """Build a credential from an OAuth2 token endpoint response."""
        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("token response does not contain an access_token")
        expires_in = payload.get("expires_in")
        issued_at = time.time() if now is None else now
        return cls(
            provider_id=provider_id,
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expiry_timestamp=issued_at + float(expires_in) if expires_in is not None else None,
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
        )


@dataclass(frozen=True)
class TrackDescriptor:
    """A source track, normalized into the unit of work of a sync run."""

    source_item_id: str
    title: str
    artist_names: List[str] = field(default_factory=list)
    duration_hint_ms: Optional[int] = None
    album: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "sourceItemId": self.source_item_id,
            "title": self.title,
            "artists": list(self.artist_names),
            "durationMs": self.duration_hint_ms,
            "album": self.album,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrackDescriptor":
        return cls(
            source_item_id=data["sourceItemId"],
            title=data.get("title", ""),
            artist_names=list(data.get("artists") or []),
            duration_hint_ms=data.get("durationMs"),
            album=data.get("album"),
        )


@dataclass(frozen=True)
class MatchCandidate:
    """Search result from the target catalog."""

    target_item_id: str
    title: str
    score: float
    # Optional metadata used by scored selection and diagnostics
    channel_title: Optional[str] = None
    rank: Optional[int] = None


class LedgerStatus(str, Enum):
    """Resolution outcome of a source item."""

    PENDING = "pending"
    MATCHED = "matched"
    NOT_FOUND = "not_found"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Matched and NotFound are final; Failed and Pending are retried."""
        return self in (LedgerStatus.MATCHED, LedgerStatus.NOT_FOUND)


@dataclass(frozen=True)
class LedgerEntry:
    """Durable record of one source item's resolution."""

    source_item_id: str
    status: LedgerStatus = LedgerStatus.PENDING
    target_item_id: Optional[str] = None
    reason: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.status == LedgerStatus.MATCHED and not self.target_item_id:
            raise ValueError("a matched ledger entry requires a target_item_id")

    @classmethod
    def pending(cls, source_item_id: str) -> "LedgerEntry":
        return cls(source_item_id=source_item_id)

    @classmethod
    def matched(cls, source_item_id: str, target_item_id: str) -> "LedgerEntry":
        return cls(source_item_id=source_item_id, status=LedgerStatus.MATCHED, target_item_id=target_item_id)

    @classmethod
    def not_found(cls, source_item_id: str) -> "LedgerEntry":
        return cls(source_item_id=source_item_id, status=LedgerStatus.NOT_FOUND)

    @classmethod
    def failed(cls, source_item_id: str, reason: str) -> "LedgerEntry":
        return cls(source_item_id=source_item_id, status=LedgerStatus.FAILED, reason=reason)

    def to_json(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "targetItemId": self.target_item_id,
            "reason": self.reason,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_json(cls, source_item_id: str, data: Dict[str, Any]) -> "LedgerEntry":
        updated_at = data.get("updatedAt")
        return cls(
            source_item_id=source_item_id,
            status=LedgerStatus(data["status"]),
            target_item_id=data.get("targetItemId"),
            reason=data.get("reason"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else datetime.utcnow(),
        )


@dataclass
class TargetPlaylist:
    """Playlist on the target catalog. Only ever appended to."""

    target_playlist_id: str
    name: str
    member_item_ids: Set[str] = field(default_factory=set)

    def contains(self, item_id: str) -> bool:
        return item_id in self.member_item_ids


@dataclass(frozen=True)
class Page:
    """One page of a source collection."""

    items: List[TrackDescriptor]
    total: int
    limit: int
    offset: int
    # Raw items returned by the API, including ones that could not be described
    received: int = 0
