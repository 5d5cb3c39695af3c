"""
Sweepers -- scheduled safety nets behind the reactive failure hooks.

TargetedSweeper
    Small and bounded: at most 5 recently rejected items (last 6 hours) per
    call, each reset at the phase named in its rejection text.  Run by the
    cron failure hook after a content job crashes and on a fixed schedule.

SweeperAgent
    The wider scheduled pass: rejected items from the last 24 hours, items
    stuck in a working phase with no update for 2 hours, and items sitting
    at max attempts that were never moved to ``rejected``.  Capped at 10
    recoveries per run.

Both read the recovery log before acting and write one ``recovered`` entry
per item they reset, so neither can recover an item the hooks (or each
other) already recovered inside the loop-guard window.

Usage:
    sweeper = TargetedSweeper(store, log)
    recovered = await sweeper.sweep(site_id="yalla-london")

CLI:
    python -m autoheal sweep --site yalla-london
    python -m autoheal sweeper
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from autoheal.classifier import ErrorCategory, classify, diagnose, extract_phase, is_retryable
from autoheal.config import HealerConfig
from autoheal.phases import FORWARD_PHASES, Phase
from autoheal.recovery import LoopGuard, RecoveryStrategy, reset_item
from autoheal.recovery_log import EventType, Outcome, RecoveryLog
from autoheal.store import ItemStore
from autoheal.utils import now_iso, now_utc, run_sync, setup_logger, truncate

logger = setup_logger("autoheal.sweeper")

TARGETED_SWEEP_SOURCE = "targeted-sweep"
SWEEPER_AGENT_SOURCE = "sweeper-agent"


# ---------------------------------------------------------------------------
# Targeted sweep
# ---------------------------------------------------------------------------


class TargetedSweeper:
    """Bounded re-activation of recently rejected items."""

    def __init__(
        self,
        store: ItemStore,
        log: RecoveryLog,
        config: Optional[HealerConfig] = None,
        guard: Optional[LoopGuard] = None,
    ) -> None:
        self._store = store
        self._log = log
        self._config = config or HealerConfig()
        self._guard = guard or LoopGuard(log, self._config.loop_guard_window)

    async def sweep(self, site_id: Optional[str] = None) -> int:
        """Reset retryable rejected items.  Returns how many were reset; never raises."""
        recovered = 0
        try:
            already = self._guard.recently_recovered_ids()
            cutoff = now_utc() - self._config.targeted_sweep_window
            candidates = self._store.list_items(
                phases=[Phase.REJECTED],
                site_id=site_id,
                completed_since=cutoff,
                has_rejection_reason=True,
                order_by="completed_at",
                descending=True,
                limit=self._config.targeted_sweep_limit,
            )

            for item in candidates:
                if item.id in already:
                    logger.info("Skipping item %s: already recovered recently", item.id)
                    continue

                reason = item.rejection_reason or ""
                category = classify(reason)
                if not is_retryable(category):
                    logger.debug("Item %s not retryable (%s)", item.id, category.value)
                    continue

                phase = extract_phase(reason)
                if not reset_item(self._store, item.id, phase, RecoveryStrategy.RETRY):
                    continue

                recovered += 1
                already.add(item.id)
                self._log.record(
                    event_type=EventType.TARGETED_SWEEP,
                    source=TARGETED_SWEEP_SOURCE,
                    target=item.id,
                    failure_description=(
                        f'Item "{item.keyword or item.id}" ({item.locale or "en"}) rejected: '
                        f"{truncate(reason, 150)}"
                    ),
                    diagnosis=f"Retryable rejection ({category.value}) found by targeted sweep.",
                    error_category=category,
                    fix_applied=f'Reset to "{phase.value}" with fresh attempt counter (strategy: retry)',
                    reactivated_at=now_iso(),
                    outcome=Outcome.RECOVERED,
                    context={
                        "phase": phase.value,
                        "site_id": item.site_id,
                        "locale": item.locale,
                        "keyword": item.keyword,
                        "strategy": RecoveryStrategy.RETRY.value,
                    },
                )
        except Exception:
            logger.exception("Targeted sweep failed (site=%s)", site_id or "all")
        return recovered

    def sweep_sync(self, site_id: Optional[str] = None) -> int:
        """Synchronous wrapper for :meth:`sweep`."""
        return run_sync(self.sweep(site_id))

    async def run_scheduled_sweep(self, site_id: Optional[str] = None) -> int:
        """Scheduled entry point: sweep, then write one summary entry."""
        count = await self.sweep(site_id)
        self._log.record(
            event_type=EventType.TARGETED_SWEEP,
            source=TARGETED_SWEEP_SOURCE,
            target=TARGETED_SWEEP_SOURCE,
            failure_description=f"Scheduled targeted sweep (site={site_id or 'all'})",
            diagnosis=(
                f"Recovered {count} rejected item(s)"
                if count else "No recoverable rejected items found"
            ),
            error_category=ErrorCategory.UNKNOWN,
            fix_applied=f"Targeted sweep recovered {count} item(s)" if count else None,
            outcome=Outcome.RECOVERED if count else Outcome.LOGGED,
            context={"site_id": site_id, "items_recovered": count},
        )
        return count


# ---------------------------------------------------------------------------
# Sweeper agent
# ---------------------------------------------------------------------------


@dataclass
class SweeperAction:
    """One item the agent touched."""
    item_id: str
    keyword: str
    locale: str
    problem: str
    diagnosis: str
    fix: str
    previous_phase: str
    new_phase: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SweeperResult:
    success: bool
    message: str = ""
    recovered: List[SweeperAction] = field(default_factory=list)
    skipped: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "recovered": [a.to_dict() for a in self.recovered],
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 1),
        }


class SweeperAgent:
    """Scheduled full pass over rejected, stuck and failing items."""

    def __init__(
        self,
        store: ItemStore,
        log: RecoveryLog,
        config: Optional[HealerConfig] = None,
        guard: Optional[LoopGuard] = None,
    ) -> None:
        self._store = store
        self._log = log
        self._config = config or HealerConfig()
        self._guard = guard or LoopGuard(log, self._config.loop_guard_window)

    def _full(self, result: SweeperResult) -> bool:
        return len(result.recovered) >= self._config.agent_max_recoveries

    async def run(self) -> SweeperResult:
        """Run all three scans.  Never raises."""
        start = time.monotonic()
        result = SweeperResult(success=True)
        checked = {"rejected": 0, "stuck": 0, "failing": 0}
        try:
            already = self._guard.recently_recovered_ids()
            checked["rejected"] = self._sweep_rejected(result, already)
            checked["stuck"] = self._sweep_stuck(result)
            checked["failing"] = self._sweep_failing(result, already)
        except Exception as exc:
            logger.exception("Sweeper agent failed")
            result.success = False
            result.message = f"Sweeper failed: {exc}"

        result.duration_ms = (time.monotonic() - start) * 1000
        if result.success:
            if result.recovered:
                result.message = f"Recovered {len(result.recovered)} item(s), skipped {result.skipped}"
            else:
                result.message = (
                    f"No recoverable failures found (checked {checked['rejected']} rejected, "
                    f"{checked['stuck']} stuck, {checked['failing']} failing)"
                )

        self._log.record(
            event_type=EventType.TARGETED_SWEEP,
            source=SWEEPER_AGENT_SOURCE,
            target=SWEEPER_AGENT_SOURCE,
            failure_description="Scheduled sweeper agent run",
            diagnosis=result.message,
            error_category=ErrorCategory.UNKNOWN,
            fix_applied="; ".join(f"{a.item_id}: {a.fix}" for a in result.recovered) or None,
            outcome=Outcome.RECOVERED if result.recovered else Outcome.LOGGED,
            context={
                "recovered": len(result.recovered),
                "skipped": result.skipped,
                "duration_ms": round(result.duration_ms, 1),
                **checked,
            },
        )
        return result

    def run_sync(self) -> SweeperResult:
        """Synchronous wrapper for :meth:`run`."""
        return run_sync(self.run())

    # -------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------

    def _sweep_rejected(self, result: SweeperResult, already: set) -> int:
        cutoff = now_utc() - self._config.agent_sweep_window
        rejected = self._store.list_items(
            phases=[Phase.REJECTED],
            completed_since=cutoff,
            has_rejection_reason=True,
            order_by="completed_at",
            descending=True,
            limit=self._config.agent_max_recoveries * 2,
        )
        for item in rejected:
            if self._full(result):
                break
            if item.id in already:
                result.skipped += 1
                continue
            diagnosis = diagnose(item.rejection_reason or "")
            if not diagnosis.retryable:
                result.skipped += 1
                continue
            if not reset_item(self._store, item.id, diagnosis.reset_phase, RecoveryStrategy.RETRY):
                result.skipped += 1
                continue
            already.add(item.id)
            action = SweeperAction(
                item_id=item.id,
                keyword=item.keyword or "unknown",
                locale=item.locale or "en",
                problem=truncate(item.rejection_reason, 150),
                diagnosis=diagnosis.explanation,
                fix=diagnosis.fix_description,
                previous_phase=Phase.REJECTED.value,
                new_phase=diagnosis.reset_phase.value,
            )
            result.recovered.append(action)
            self._record_item(action, diagnosis.category, reset=True)
        return len(rejected)

    def _sweep_stuck(self, result: SweeperResult) -> int:
        cutoff = now_utc() - self._config.stuck_threshold
        stuck = self._store.list_items(
            phases=FORWARD_PHASES,
            updated_before=cutoff,
            max_attempts=self._config.max_phase_attempts,
            limit=self._config.agent_max_recoveries,
        )
        for item in stuck:
            if self._full(result):
                break
            updated = item.updated_at_dt()
            hours_stuck = round((now_utc() - updated).total_seconds() / 3600) if updated else 0
            try:
                self._store.update(item.id, _refresh_phase_timer)
            except Exception as exc:
                logger.warning("Could not unstick item %s: %s", item.id, exc)
                result.skipped += 1
                continue
            action = SweeperAction(
                item_id=item.id,
                keyword=item.keyword or "unknown",
                locale=item.locale or "en",
                problem=f'Stuck in "{item.current_phase}" for {hours_stuck}h with no progress',
                diagnosis="Item appears abandoned by its phase worker. Timer reset.",
                fix="Reset phase timer; the phase worker picks it up on its next run",
                previous_phase=item.current_phase,
                new_phase=item.current_phase,
            )
            result.recovered.append(action)
            self._record_item(action, ErrorCategory.TIMEOUT, reset=False)
        return len(stuck)

    def _sweep_failing(self, result: SweeperResult, already: set) -> int:
        failing = self._store.list_items(
            phases=FORWARD_PHASES,
            min_attempts=self._config.max_phase_attempts,
            limit=self._config.agent_max_recoveries,
        )
        for item in failing:
            if self._full(result):
                break
            if item.id in already:
                result.skipped += 1
                continue
            last_error = item.last_error or ""
            diagnosis = diagnose(
                last_error or f'Phase "{item.current_phase}" failed {item.phase_attempts} times',
                default_phase=item.phase,
            )
            if not diagnosis.retryable:
                result.skipped += 1
                continue
            if not reset_item(self._store, item.id, diagnosis.reset_phase, RecoveryStrategy.RETRY):
                result.skipped += 1
                continue
            already.add(item.id)
            action = SweeperAction(
                item_id=item.id,
                keyword=item.keyword or "unknown",
                locale=item.locale or "en",
                problem=f'Failed {item.phase_attempts}x at "{item.current_phase}": {truncate(last_error, 100)}',
                diagnosis=diagnosis.explanation,
                fix=diagnosis.fix_description,
                previous_phase=item.current_phase,
                new_phase=diagnosis.reset_phase.value,
            )
            result.recovered.append(action)
            self._record_item(action, diagnosis.category, reset=True)
        return len(failing)

    def _record_item(self, action: SweeperAction, category: ErrorCategory, reset: bool) -> None:
        self._log.record(
            event_type=EventType.AUTO_RECOVERY,
            source=SWEEPER_AGENT_SOURCE,
            target=action.item_id,
            failure_description=action.problem,
            diagnosis=action.diagnosis,
            error_category=category,
            fix_applied=action.fix,
            reactivated_at=now_iso() if reset else None,
            # Timer refreshes are not resets; keep them out of the loop guard.
            outcome=Outcome.RECOVERED if reset else Outcome.WILL_RETRY,
            context={
                "keyword": action.keyword,
                "locale": action.locale,
                "previous_phase": action.previous_phase,
                "new_phase": action.new_phase,
            },
        )


def _refresh_phase_timer(item) -> None:
    now = now_iso()
    item.phase_started_at = now
    item.updated_at = now
    item.last_error = None
