"""
Recovery Log

Append-only structured log of every decision the self-healing controller
makes: what failed, how it was diagnosed, what (if anything) was changed,
and how it turned out.  It is both the audit trail read by operational
dashboards and the only loop-prevention mechanism: before resetting an item
the hooks and sweeps ask it whether that item was already recovered inside
the trailing window.

Entries are written immediately (no buffering, a dedup query must see the
entry that was just written) to daily JSON files::

    data/recovery_log/YYYY-MM-DD.json

Writes are best-effort.  A failure to persist an entry is logged and
swallowed; losing a log line must never fail the caller.

Usage:
    from autoheal.recovery_log import RecoveryLog, EventType, Outcome

    log = RecoveryLog(data_dir / "recovery_log")
    log.record(
        event_type=EventType.AUTO_RECOVERY,
        source="content-builder",
        target="draft-42",
        failure_description="Draft rejected at drafting",
        diagnosis="Malformed JSON",
        error_category=ErrorCategory.JSON_PARSE,
        fix_applied='Reset to "drafting"',
        reactivated_at=now_iso(),
        outcome=Outcome.RECOVERED,
    )
    log.was_recently_recovered("draft-42")
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from autoheal.classifier import ErrorCategory, category_from_value
from autoheal.utils import load_json, now_iso, now_utc, parse_iso, save_json

logger = logging.getLogger("autoheal.recovery_log")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_LOOP_GUARD_WINDOW = timedelta(hours=2)
DEFAULT_SEARCH_LIMIT = 100
DEFAULT_RETENTION_DAYS = 90


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """What kind of event produced the entry."""
    PIPELINE_FAILURE = "pipeline_failure"
    CRON_FAILURE = "cron_failure"
    PROMOTION_FAILURE = "promotion_failure"
    AUTO_RECOVERY = "auto_recovery"
    TARGETED_SWEEP = "targeted_sweep"
    TOPIC_BACKLOG_ALERT = "topic_backlog_alert"


class Outcome(str, Enum):
    """How the decision turned out."""
    RECOVERED = "recovered"
    WILL_RETRY = "will_retry"
    NOT_RECOVERABLE = "not_recoverable"
    LOGGED = "logged"
    CRITICAL_ALERT = "critical_alert"


_OUTCOME_LEVELS = {
    Outcome.RECOVERED: logging.INFO,
    Outcome.WILL_RETRY: logging.INFO,
    Outcome.LOGGED: logging.WARNING,
    Outcome.NOT_RECOVERABLE: logging.ERROR,
    Outcome.CRITICAL_ALERT: logging.CRITICAL,
}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class RecoveryLogEntry:
    """One recovery decision.  Created once, never mutated."""
    event_type: EventType
    source: str
    target: str
    failure_description: str
    diagnosis: str
    error_category: ErrorCategory
    outcome: Outcome
    fix_applied: Optional[str] = None
    reactivated_at: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    detected_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["event_type"] = EventType(self.event_type).value
        d["error_category"] = ErrorCategory(self.error_category).value
        d["outcome"] = Outcome(self.outcome).value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RecoveryLogEntry:
        try:
            event_type = EventType(d.get("event_type", "pipeline_failure"))
        except ValueError:
            event_type = EventType.PIPELINE_FAILURE
        try:
            outcome = Outcome(d.get("outcome", "logged"))
        except ValueError:
            outcome = Outcome.LOGGED

        return cls(
            id=d.get("id") or str(uuid.uuid4()),
            detected_at=d.get("detected_at") or now_iso(),
            event_type=event_type,
            source=d.get("source", "unknown"),
            target=d.get("target", "unknown"),
            failure_description=d.get("failure_description", ""),
            diagnosis=d.get("diagnosis", ""),
            error_category=category_from_value(d.get("error_category")),
            fix_applied=d.get("fix_applied"),
            reactivated_at=d.get("reactivated_at"),
            outcome=outcome,
            context=d.get("context") or {},
        )

    def matches(
        self,
        event_type: Optional[EventType] = None,
        outcome: Optional[Outcome] = None,
        target: Optional[str] = None,
        source: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> bool:
        """Return True if this entry matches all provided filters.

        ``target`` is compared exactly: it is the key loop prevention relies on.
        """
        if event_type is not None and self.event_type != event_type:
            return False
        if outcome is not None and self.outcome != outcome:
            return False
        if target is not None and self.target != target:
            return False
        if source is not None and source.lower() not in self.source.lower():
            return False
        if start_time is not None or end_time is not None:
            detected = parse_iso(self.detected_at)
            if detected is None:
                return False
            if start_time is not None and detected < start_time:
                return False
            if end_time is not None and detected > end_time:
                return False
        return True


# ===================================================================
# RECOVERY LOG
# ===================================================================


class RecoveryLog:
    """Append-only recovery log with daily file rotation and search."""

    def __init__(self, data_dir: Path, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        self._data_dir = Path(data_dir)
        self._retention_days = retention_days
        self._total_recorded = 0
        self._total_dropped = 0

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    # -------------------------------------------------------------------
    # Daily file helpers
    # -------------------------------------------------------------------

    def _daily_file(self, date_str: str) -> Path:
        return self._data_dir / f"{date_str}.json"

    def _load_daily(self, date_str: str) -> List[RecoveryLogEntry]:
        raw = load_json(self._daily_file(date_str), default=[])
        if not isinstance(raw, list):
            logger.warning("Corrupt recovery log file for %s: expected list", date_str)
            return []
        entries: List[RecoveryLogEntry] = []
        for item in raw:
            if isinstance(item, dict):
                entries.append(RecoveryLogEntry.from_dict(item))
        return entries

    def _list_daily_files(self) -> List[Tuple[str, Path]]:
        """All (date_str, path) pairs, newest first."""
        files: List[Tuple[str, Path]] = []
        if not self._data_dir.is_dir():
            return files
        for p in self._data_dir.glob("*.json"):
            try:
                datetime.strptime(p.stem, "%Y-%m-%d")
            except ValueError:
                continue
            files.append((p.stem, p))
        files.sort(key=lambda x: x[0], reverse=True)
        return files

    # -------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------

    def append(self, entry: RecoveryLogEntry) -> bool:
        """Persist *entry*.  Returns False (never raises) if the write failed."""
        self._echo(entry)
        try:
            detected = parse_iso(entry.detected_at) or now_utc()
            date_str = detected.strftime("%Y-%m-%d")
            path = self._daily_file(date_str)
            raw = load_json(path, default=[])
            if not isinstance(raw, list):
                raw = []
            raw.append(entry.to_dict())
            save_json(path, raw)
        except Exception as exc:
            self._total_dropped += 1
            logger.warning("Recovery log write failed for %s (%s): %s", entry.target, entry.event_type, exc)
            return False
        self._total_recorded += 1
        return True

    def record(
        self,
        event_type: EventType,
        source: str,
        target: str,
        failure_description: str,
        diagnosis: str,
        error_category: ErrorCategory,
        outcome: Outcome,
        fix_applied: Optional[str] = None,
        reactivated_at: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RecoveryLogEntry:
        """Build and append an entry.  Best-effort: always returns the entry."""
        entry = RecoveryLogEntry(
            event_type=event_type,
            source=source,
            target=target,
            failure_description=failure_description,
            diagnosis=diagnosis,
            error_category=error_category,
            outcome=outcome,
            fix_applied=fix_applied,
            reactivated_at=reactivated_at,
            context={k: v for k, v in (context or {}).items() if v is not None},
        )
        self.append(entry)
        return entry

    @staticmethod
    def _echo(entry: RecoveryLogEntry) -> None:
        level = _OUTCOME_LEVELS.get(Outcome(entry.outcome), logging.INFO)
        logger.log(
            level,
            "[RECOVERY] %s/%s target=%s category=%s -- %s%s",
            EventType(entry.event_type).value,
            Outcome(entry.outcome).value,
            entry.target,
            ErrorCategory(entry.error_category).value,
            entry.diagnosis,
            f" [fix: {entry.fix_applied}]" if entry.fix_applied else "",
        )

    # -------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------

    def search(
        self,
        event_type: Optional[EventType] = None,
        outcome: Optional[Outcome] = None,
        target: Optional[str] = None,
        source: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = DEFAULT_SEARCH_LIMIT,
    ) -> List[RecoveryLogEntry]:
        """Search entries, newest first.  Date range narrows the files scanned; ``limit=None`` returns all."""
        start_date = start_time.strftime("%Y-%m-%d") if start_time else None
        end_date = end_time.strftime("%Y-%m-%d") if end_time else None

        results: List[RecoveryLogEntry] = []
        for date_str, _path in self._list_daily_files():
            if start_date and date_str < start_date:
                continue
            if end_date and date_str > end_date:
                continue
            for entry in reversed(self._load_daily(date_str)):
                if entry.matches(
                    event_type=event_type, outcome=outcome, target=target,
                    source=source, start_time=start_time, end_time=end_time,
                ):
                    results.append(entry)
                    if limit is not None and len(results) >= limit:
                        return results
        return results

    def recent(self, hours: float = 24.0, **filters: Any) -> List[RecoveryLogEntry]:
        """Entries from the trailing *hours*, newest first."""
        return self.search(start_time=now_utc() - timedelta(hours=hours), **filters)

    # -------------------------------------------------------------------
    # Loop guard queries
    # -------------------------------------------------------------------

    def was_recently_recovered(
        self,
        target: str,
        window: timedelta = DEFAULT_LOOP_GUARD_WINDOW,
    ) -> bool:
        """True if *target* has a ``recovered`` entry inside the trailing window."""
        hits = self.search(
            outcome=Outcome.RECOVERED,
            target=target,
            start_time=now_utc() - window,
            limit=1,
        )
        return bool(hits)

    def recently_recovered_ids(
        self,
        window: timedelta = DEFAULT_LOOP_GUARD_WINDOW,
    ) -> Set[str]:
        """Targets of every ``recovered`` entry inside the trailing window."""
        entries = self.search(
            outcome=Outcome.RECOVERED,
            start_time=now_utc() - window,
            limit=None,
        )
        return {e.target for e in entries}

    # -------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------

    def summary(self, hours: float = 24.0) -> Dict[str, Any]:
        """Counts by event type, outcome and category for the trailing window."""
        entries = self.recent(hours=hours, limit=None)
        by_event: Counter = Counter(EventType(e.event_type).value for e in entries)
        by_outcome: Counter = Counter(Outcome(e.outcome).value for e in entries)
        by_category: Counter = Counter(ErrorCategory(e.error_category).value for e in entries)
        recovered_targets = {e.target for e in entries if e.outcome == Outcome.RECOVERED}
        return {
            "period_hours": hours,
            "total_entries": len(entries),
            "by_event_type": dict(by_event),
            "by_outcome": dict(by_outcome),
            "by_category": dict(by_category),
            "recovered_targets": len(recovered_targets),
            "critical_alerts": by_outcome.get(Outcome.CRITICAL_ALERT.value, 0),
            "computed_at": now_iso(),
        }

    def stats(self) -> Dict[str, Any]:
        files = self._list_daily_files()
        return {
            "data_dir": str(self._data_dir),
            "daily_files": len(files),
            "oldest": files[-1][0] if files else None,
            "newest": files[0][0] if files else None,
            "recorded_this_session": self._total_recorded,
            "dropped_this_session": self._total_dropped,
        }

    def expired_files(self, days: Optional[int] = None) -> List[Path]:
        """Daily files older than the retention period, newest first."""
        keep_days = days if days is not None else self._retention_days
        cutoff = (now_utc() - timedelta(days=keep_days)).strftime("%Y-%m-%d")
        return [path for date_str, path in self._list_daily_files() if date_str < cutoff]

    def purge_old(self, days: Optional[int] = None) -> int:
        """Delete daily files older than the retention period.  Returns files removed."""
        keep_days = days if days is not None else self._retention_days
        removed = 0
        for path in self.expired_files(keep_days):
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not purge %s: %s", path, exc)
        if removed:
            logger.info("Purged %d recovery log file(s) older than %d days", removed, keep_days)
        return removed
