from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from tubesync.domain.entities import LedgerStatus, TrackDescriptor
from tubesync.domain.normalization import build_search_query
from tubesync.infrastructure.storage import atomic_write_json, read_json


@dataclass
class ReportHeader:
    """Header information for a sync report."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    source: str = "spotify"
    target: str = "youtube"
    source_playlist_id: str = ""
    target_playlist_id: Optional[str] = None
    dry_run: bool = False

    def to_json(self) -> Dict[str, Any]:
        """Serialize header to JSON."""
        return {
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "source": self.source,
            "target": self.target,
            "sourcePlaylistId": self.source_playlist_id,
            "targetPlaylistId": self.target_playlist_id,
            "dryRun": self.dry_run,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ReportHeader":
        """Deserialize header from JSON."""
        return cls(
            run_id=data["runId"],
            started_at=datetime.fromisoformat(data["startedAt"]),
            finished_at=datetime.fromisoformat(data["finishedAt"]) if data.get("finishedAt") else None,
            source=data.get("source", "spotify"),
            target=data.get("target", "youtube"),
            source_playlist_id=data.get("sourcePlaylistId", ""),
            target_playlist_id=data.get("targetPlaylistId"),
            dry_run=data.get("dryRun", False),
        )


@dataclass
class UnresolvedItem:
    """A source track that has no match in the target playlist."""

    track: TrackDescriptor
    status: LedgerStatus
    reason: Optional[str] = None

    @property
    def query(self) -> str:
        return build_search_query(self.track)

    def to_json(self) -> Dict[str, Any]:
        data = self.track.to_json()
        data.update({
            "status": self.status.value,
            "reason": self.reason,
            "query": self.query,
        })
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "UnresolvedItem":
        return cls(
            track=TrackDescriptor.from_json(data),
            status=LedgerStatus(data["status"]),
            reason=data.get("reason"),
        )


@dataclass
class SyncSummary:
    """Counts of a finished run. Totals cover the whole playlist; appended/processed cover this run."""

    total: int = 0
    matched: int = 0
    not_found: int = 0
    failed: int = 0
    appended: int = 0
    processed: int = 0
    skipped: int = 0
    target_playlist_id: Optional[str] = None
    report_path: Optional[str] = None
    unresolved: List[UnresolvedItem] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "matched": self.matched,
            "notFound": self.not_found,
            "failed": self.failed,
            "appended": self.appended,
            "processed": self.processed,
            "skipped": self.skipped,
        }


@dataclass
class SyncReport:
    """Human-readable, re-runnable record of what a run could not resolve."""

    header: ReportHeader
    totals: Dict[str, int]
    unresolved: List[UnresolvedItem]

    def to_json(self) -> Dict[str, Any]:
        """Serialize report to JSON."""
        return {
            "header": self.header.to_json(),
            "totals": dict(self.totals),
            "unresolved": [item.to_json() for item in self.unresolved],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SyncReport":
        """Deserialize report from JSON."""
        return cls(
            header=ReportHeader.from_json(data["header"]),
            totals=dict(data.get("totals", {})),
            unresolved=[UnresolvedItem.from_json(item) for item in data.get("unresolved", [])],
        )


def create_report_header(
    run_id: str,
    source_playlist_id: str,
    target_playlist_id: Optional[str] = None,
    dry_run: bool = False,
) -> ReportHeader:
    """Create a new report header."""
    return ReportHeader(
        run_id=run_id,
        started_at=datetime.utcnow(),
        source_playlist_id=source_playlist_id,
        target_playlist_id=target_playlist_id,
        dry_run=dry_run,
    )


def write_report(path: Union[str, Path], report: SyncReport) -> Path:
    """Write the report atomically and return its path."""
    target = Path(path)
    atomic_write_json(target, report.to_json())
    return target


def load_report(path: Union[str, Path]) -> SyncReport:
    return SyncReport.from_json(read_json(path))
