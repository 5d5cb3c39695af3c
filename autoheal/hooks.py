"""
Failure Hooks -- immediate recovery on every failure.

Instead of waiting for the scheduled sweep, these hooks run the moment a
phase, a scheduled job, or a promotion fails:

    on_pipeline_failure   a phase worker's generation call failed
    on_cron_failure       a whole scheduled job crashed
    on_promotion_failure  a finished item could not be published

Each hook classifies the failure, consults the recovery log so it never
recovers the same item twice inside the loop-guard window, resets the item
when that is safe, and records exactly what it decided.  None of them ever
raises: any internal error is logged and swallowed so the hook can never be
the reason a calling job fails.

Usage:
    from autoheal.hooks import get_hooks

    hooks = get_hooks()
    await hooks.on_pipeline_failure(
        "draft-42", "drafting", "Unterminated string in JSON at position 42",
        attempt_number=3, was_rejected=True, keyword="london rooftop bars",
    )

    # From synchronous job runners
    hooks.on_cron_failure_sync("content-builder", exc, site_id="yalla-london")
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from autoheal.alerts import AlertNotifier
from autoheal.classifier import (
    HUMAN_ONLY_CATEGORIES,
    ErrorCategory,
    classify,
    is_duplicate_violation,
    is_retryable,
)
from autoheal.config import HealerConfig, JobFamily, JobRegistry, load_job_registry
from autoheal.phases import Phase
from autoheal.recovery import LoopGuard, RecoveryStrategy, reset_item, resolve_reset_phase
from autoheal.recovery_log import EventType, Outcome, RecoveryLog
from autoheal.store import ItemStore, TopicStore
from autoheal.sweeper import SweeperAgent, TargetedSweeper
from autoheal.utils import now_iso, run_sync, setup_logger, truncate

logger = setup_logger("autoheal.hooks")

PIPELINE_SOURCE = "content-builder"
PROMOTION_SOURCE = "content-selector"
RECOVERY_LOG_DIRNAME = "recovery_log"

# Promotion happens from the reservoir, right after scoring.
PROMOTION_FAILED_PHASE = Phase.SCORING

_HUMAN_ONLY_DIAGNOSIS = {
    ErrorCategory.AUTH: "Generation provider authentication failed. Needs a valid API key.",
    ErrorCategory.QUALITY: "Content did not pass the quality gate. Needs editorial review, not a retry.",
}


def _error_message(error: Any) -> str:
    if error is None:
        return "Unknown"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


class FailureHooks:
    """Reactive recovery for pipeline, job, and promotion failures."""

    def __init__(
        self,
        store: ItemStore,
        log: RecoveryLog,
        topics: Optional[TopicStore] = None,
        config: Optional[HealerConfig] = None,
        registry: Optional[JobRegistry] = None,
        sweeper: Optional[TargetedSweeper] = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> None:
        self._config = config or HealerConfig()
        self._store = store
        self._log = log
        self._topics = topics
        self._registry = registry or JobRegistry()
        self._guard = LoopGuard(log, self._config.loop_guard_window)
        self._sweeper = sweeper or TargetedSweeper(store, log, self._config, self._guard)
        self._notifier = notifier or AlertNotifier(self._config.alert_webhook_url)

    # -------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------

    @property
    def store(self) -> ItemStore:
        return self._store

    @property
    def log(self) -> RecoveryLog:
        return self._log

    @property
    def topics(self) -> Optional[TopicStore]:
        return self._topics

    @property
    def config(self) -> HealerConfig:
        return self._config

    @property
    def sweeper(self) -> TargetedSweeper:
        return self._sweeper

    @property
    def guard(self) -> LoopGuard:
        return self._guard

    def _excerpt(self, text: str) -> str:
        return (text or "")[: self._config.error_excerpt_length]

    # -------------------------------------------------------------------
    # Pipeline failure
    # -------------------------------------------------------------------

    async def on_pipeline_failure(
        self,
        item_id: str,
        phase: Union[Phase, str],
        error_text: str,
        attempt_number: Optional[int] = None,
        was_rejected: bool = False,
        *,
        locale: Optional[str] = None,
        keyword: Optional[str] = None,
        site_id: Optional[str] = None,
        source: str = PIPELINE_SOURCE,
    ) -> None:
        """A phase failed for one item.  Never raises."""
        try:
            phase_name = phase.value if isinstance(phase, Phase) else str(phase)
            error_text = _error_message(error_text)
            category = classify(error_text)
            label = f'Item "{keyword or item_id}" ({locale or "en"})'
            context: Dict[str, Any] = {
                "phase": phase_name,
                "locale": locale,
                "keyword": keyword,
                "site_id": site_id,
                "attempt_number": attempt_number,
                "error": self._excerpt(error_text),
            }

            if category in HUMAN_ONLY_CATEGORIES:
                logger.error(
                    "%s error for item %s at %s: needs an operator", category.value.upper(), item_id, phase_name,
                )
                self._log.record(
                    event_type=EventType.PIPELINE_FAILURE,
                    source=source,
                    target=item_id,
                    failure_description=f'{label} failed at "{phase_name}" ({category.value} error)',
                    diagnosis=_HUMAN_ONLY_DIAGNOSIS[category],
                    error_category=category,
                    outcome=Outcome.NOT_RECOVERABLE,
                    context=context,
                )
                return

            if was_rejected and is_retryable(category):
                if self._guard.was_recently_recovered(item_id):
                    logger.info("Item %s already recovered recently; skipping to prevent a loop", item_id)
                    self._log.record(
                        event_type=EventType.PIPELINE_FAILURE,
                        source=source,
                        target=item_id,
                        failure_description=f'{label} rejected again at "{phase_name}"; already recovered once',
                        diagnosis=f"Error: {category.value}. Already recovered recently, not retrying again.",
                        error_category=category,
                        outcome=Outcome.LOGGED,
                        context={**context, "reason": "already_recovered_recently"},
                    )
                    return

                strategy = (
                    RecoveryStrategy.JSON_REPAIR
                    if category == ErrorCategory.JSON_PARSE
                    else RecoveryStrategy.RETRY
                )
                diagnosis = (
                    "Provider returned malformed JSON; retrying with JSON repair."
                    if strategy == RecoveryStrategy.JSON_REPAIR
                    else "Transient error; retrying with fresh attempts."
                )
                self._recover_and_record(
                    item_id, phase_name, strategy, category, source,
                    failure_description=f'{label} rejected at "{phase_name}" after {attempt_number or "max"} attempts',
                    diagnosis=f"Error category: {category.value}. {diagnosis}",
                    context=context,
                )
                return

            if not was_rejected and (attempt_number or 0) < self._config.max_phase_attempts:
                logger.info(
                    'Item %s failed at "%s" (attempt %s/%d); will auto-retry',
                    item_id, phase_name, attempt_number or "?", self._config.max_phase_attempts,
                )
                self._log.record(
                    event_type=EventType.PIPELINE_FAILURE,
                    source=source,
                    target=item_id,
                    failure_description=(
                        f'{label} failed at "{phase_name}" '
                        f"(attempt {attempt_number or '?'}/{self._config.max_phase_attempts})"
                    ),
                    diagnosis=f"Error category: {category.value}. The phase worker retries on its next run.",
                    error_category=category,
                    fix_applied="No intervention; auto-retry on next run",
                    outcome=Outcome.WILL_RETRY,
                    context=context,
                )
                return

            if was_rejected:
                # Rejected with a category that has no dedicated strategy.
                if self._guard.was_recently_recovered(item_id):
                    self._log.record(
                        event_type=EventType.PIPELINE_FAILURE,
                        source=source,
                        target=item_id,
                        failure_description=f'{label} rejected again at "{phase_name}"; already recovered once',
                        diagnosis=f"Error: {category.value}. Already recovered recently, not retrying again.",
                        error_category=category,
                        outcome=Outcome.LOGGED,
                        context={**context, "reason": "already_recovered_recently"},
                    )
                    return
                self._recover_and_record(
                    item_id, phase_name, RecoveryStrategy.RETRY, category, source,
                    failure_description=f'{label} rejected at "{phase_name}" ({category.value})',
                    diagnosis=f"No dedicated strategy for {category.value}. Giving it one more chance.",
                    context=context,
                )
                return

            self._log.record(
                event_type=EventType.PIPELINE_FAILURE,
                source=source,
                target=item_id,
                failure_description=(
                    f'{label} reported attempt {attempt_number} at "{phase_name}" without being rejected'
                ),
                diagnosis=f"Error category: {category.value}. Inconsistent failure report; no action taken.",
                error_category=category,
                outcome=Outcome.LOGGED,
                context=context,
            )
        except Exception:
            logger.exception("Pipeline failure hook error (non-fatal) for item %s", item_id)

    def _recover_and_record(
        self,
        item_id: str,
        failed_phase: str,
        strategy: RecoveryStrategy,
        category: ErrorCategory,
        source: str,
        failure_description: str,
        diagnosis: str,
        context: Dict[str, Any],
        event_type: EventType = EventType.AUTO_RECOVERY,
    ) -> bool:
        recovered = reset_item(self._store, item_id, failed_phase, strategy)
        if recovered:
            target = resolve_reset_phase(failed_phase, strategy)
            fix = f'Reset to "{target.value}" with fresh attempt counter (strategy: {strategy.value})'
        else:
            fix = f"Recovery failed; could not update item (strategy: {strategy.value})"
        self._log.record(
            event_type=event_type,
            source=source,
            target=item_id,
            failure_description=failure_description,
            diagnosis=diagnosis,
            error_category=category,
            fix_applied=fix,
            reactivated_at=now_iso() if recovered else None,
            outcome=Outcome.RECOVERED if recovered else Outcome.LOGGED,
            context={**context, "strategy": strategy.value},
        )
        return recovered

    # -------------------------------------------------------------------
    # Promotion failure
    # -------------------------------------------------------------------

    async def on_promotion_failure(
        self,
        item_id: str,
        error_text: str,
        *,
        keyword: Optional[str] = None,
        site_id: Optional[str] = None,
        source: str = PROMOTION_SOURCE,
    ) -> None:
        """A finished item could not be published.  Never raises."""
        try:
            error_text = _error_message(error_text)
            category = classify(error_text)
            label = f'Item "{keyword or item_id}"'
            context: Dict[str, Any] = {
                "keyword": keyword,
                "site_id": site_id,
                "error": self._excerpt(error_text),
            }
            logger.warning("Promotion failed for item %s: %s", item_id, truncate(error_text, 200))

            if category == ErrorCategory.DATA_INTEGRITY and is_duplicate_violation(error_text):
                self._log.record(
                    event_type=EventType.PROMOTION_FAILURE,
                    source=source,
                    target=item_id,
                    failure_description=f"{label} promotion failed: duplicate slug",
                    diagnosis="Uniqueness violation. The promotion step generates a unique slug on its next attempt.",
                    error_category=category,
                    fix_applied="No intervention; promotion regenerates a unique slug on retry",
                    outcome=Outcome.WILL_RETRY,
                    context=context,
                )
                return

            if category == ErrorCategory.DATA_INTEGRITY:
                if self._guard.was_recently_recovered(item_id):
                    self._log.record(
                        event_type=EventType.PROMOTION_FAILURE,
                        source=source,
                        target=item_id,
                        failure_description=f"{label} promotion failed again: data integrity issue",
                        diagnosis="Already recovered recently, not reprocessing again.",
                        error_category=category,
                        outcome=Outcome.LOGGED,
                        context={**context, "reason": "already_recovered_recently"},
                    )
                    return
                self._recover_and_record(
                    item_id, PROMOTION_FAILED_PHASE.value, RecoveryStrategy.REPROCESS, category, source,
                    failure_description=f"{label} promotion failed: data integrity issue",
                    diagnosis="Missing required field or relation. Regenerating from the phase before scoring.",
                    context=context,
                    event_type=EventType.PROMOTION_FAILURE,
                )
                return

            self._log.record(
                event_type=EventType.PROMOTION_FAILURE,
                source=source,
                target=item_id,
                failure_description=f"{label} promotion failed: {truncate(error_text, 150)}",
                diagnosis=f"Promotion error ({category.value}).",
                error_category=category,
                outcome=Outcome.LOGGED,
                context=context,
            )
        except Exception:
            logger.exception("Promotion failure hook error (non-fatal) for item %s", item_id)

    # -------------------------------------------------------------------
    # Cron / job failure
    # -------------------------------------------------------------------

    async def on_cron_failure(
        self,
        job_name: str,
        error: Any,
        site_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """A scheduled job crashed.  Never raises."""
        try:
            error_msg = _error_message(error)
            category = classify(error_msg)
            family = self._registry.family_of(job_name)
            logger.error('Job "%s" failed: %s', job_name, truncate(error_msg, 200))

            if family == JobFamily.CONTENT:
                logger.info('Content job "%s" failed; running targeted sweep', job_name)
                count = await self._sweeper.sweep(site_id)
                self._log.record(
                    event_type=EventType.CRON_FAILURE,
                    source=job_name,
                    target=job_name,
                    failure_description=f'Job "{job_name}" crashed: {truncate(error_msg, 200)}',
                    diagnosis=f"Content pipeline job failed ({category.value}). Ran targeted sweep for stuck items.",
                    error_category=category,
                    fix_applied=(
                        f"Targeted sweep recovered {count} item(s)"
                        if count else "Targeted sweep found no recoverable items"
                    ),
                    reactivated_at=now_iso() if count else None,
                    outcome=Outcome.RECOVERED if count else Outcome.LOGGED,
                    context={
                        "job_name": job_name,
                        "site_id": site_id,
                        "error": self._excerpt(error_msg),
                        "items_recovered": count,
                    },
                )
                return

            if family == JobFamily.OPTIMIZATION:
                self._log.record(
                    event_type=EventType.CRON_FAILURE,
                    source=job_name,
                    target=job_name,
                    failure_description=f'Optimization job "{job_name}" failed: {truncate(error_msg, 200)}',
                    diagnosis=f"Optimization/audit failure ({category.value}). Non-critical; runs several times a day.",
                    error_category=category,
                    fix_applied="No intervention; retries on its next scheduled run",
                    outcome=Outcome.WILL_RETRY,
                    context={"job_name": job_name, "site_id": site_id, "error": self._excerpt(error_msg)},
                )
                return

            if family == JobFamily.TOPIC:
                await self._handle_topic_failure(job_name, error_msg, category, site_id)
                return

            self._log.record(
                event_type=EventType.CRON_FAILURE,
                source=job_name,
                target=job_name,
                failure_description=f'Job "{job_name}" failed: {truncate(error_msg, 200)}',
                diagnosis=f"General job failure ({category.value}).",
                error_category=category,
                outcome=Outcome.LOGGED,
                context={
                    "job_name": job_name,
                    "site_id": site_id,
                    "error": self._excerpt(error_msg),
                    **(details or {}),
                },
            )
        except Exception:
            logger.exception('Cron failure hook error (non-fatal) for job "%s"', job_name)

    async def _handle_topic_failure(
        self,
        job_name: str,
        error_msg: str,
        category: ErrorCategory,
        site_id: Optional[str],
    ) -> None:
        if self._topics is None:
            self._log.record(
                event_type=EventType.TOPIC_BACKLOG_ALERT,
                source=job_name,
                target=job_name,
                failure_description=f"Topic generation failed: {truncate(error_msg, 200)}",
                diagnosis="Topic backlog store not configured; backlog size unknown.",
                error_category=category,
                outcome=Outcome.LOGGED,
                context={"error": self._excerpt(error_msg)},
            )
            return

        pending = self._topics.count_pending()
        low_water = self._config.topic_low_water_mark
        critical = pending < low_water
        entry = self._log.record(
            event_type=EventType.TOPIC_BACKLOG_ALERT,
            source=job_name,
            target=job_name,
            failure_description=f"Topic generation failed: {truncate(error_msg, 200)}",
            diagnosis=(
                f"CRITICAL: topic generation failed and only {pending} topic(s) remain. "
                "The pipeline will stall soon."
                if critical
                else f"Topic generation failed but the backlog is OK ({pending} topics). Retries on next schedule."
            ),
            error_category=category,
            outcome=Outcome.CRITICAL_ALERT if critical else Outcome.WILL_RETRY,
            context={
                "pending_topics": pending,
                "low_water_mark": low_water,
                "site_id": site_id,
                "error": self._excerpt(error_msg),
            },
        )
        if critical:
            await self._notifier.notify(entry)

    # -------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------

    async def sweep(self, site_id: Optional[str] = None) -> int:
        """Scheduled targeted sweep (logs one summary entry)."""
        return await self._sweeper.run_scheduled_sweep(site_id)

    def agent(self) -> SweeperAgent:
        return SweeperAgent(self._store, self._log, self._config, self._guard)

    # -------------------------------------------------------------------
    # Sync wrappers
    # -------------------------------------------------------------------

    def on_pipeline_failure_sync(self, *args: Any, **kwargs: Any) -> None:
        """Synchronous wrapper for :meth:`on_pipeline_failure`."""
        run_sync(self.on_pipeline_failure(*args, **kwargs))

    def on_promotion_failure_sync(self, *args: Any, **kwargs: Any) -> None:
        """Synchronous wrapper for :meth:`on_promotion_failure`."""
        run_sync(self.on_promotion_failure(*args, **kwargs))

    def on_cron_failure_sync(self, *args: Any, **kwargs: Any) -> None:
        """Synchronous wrapper for :meth:`on_cron_failure`."""
        run_sync(self.on_cron_failure(*args, **kwargs))

    def sweep_sync(self, site_id: Optional[str] = None) -> int:
        """Synchronous wrapper for :meth:`sweep`."""
        return run_sync(self.sweep(site_id))


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_hooks: Optional[FailureHooks] = None


def build_hooks(config: Optional[HealerConfig] = None) -> FailureHooks:
    """Wire stores, log, registry and notifier from *config*."""
    config = config or HealerConfig.from_env()
    data_dir = config.data_path
    log = RecoveryLog(data_dir / RECOVERY_LOG_DIRNAME, retention_days=config.log_retention_days)
    return FailureHooks(
        store=ItemStore(data_dir),
        log=log,
        topics=TopicStore(data_dir),
        config=config,
        registry=load_job_registry(),
        notifier=AlertNotifier(config.alert_webhook_url),
    )


def get_hooks() -> FailureHooks:
    """Get or create the singleton FailureHooks instance."""
    global _hooks
    if _hooks is None:
        _hooks = build_hooks()
    return _hooks


def reset_hooks() -> None:
    """Drop the singleton (tests, config reloads)."""
    global _hooks
    _hooks = None
