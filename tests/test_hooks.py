"""Test hooks -- pipeline, promotion and cron failure handling."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from autoheal.classifier import ErrorCategory
from autoheal.config import HealerConfig
from autoheal.hooks import FailureHooks, get_hooks, reset_hooks
from autoheal.phases import Phase
from autoheal.recovery_log import EventType, Outcome

JSON_ERROR = "Unterminated string in JSON at position 42"
AUTH_ERROR = "403 Forbidden: invalid api key"


def _entries(hooks: FailureHooks, target: str):
    return hooks.log.search(target=target)


# ===================================================================
# Pipeline failure
# ===================================================================

class TestPipelineFailure:

    @pytest.mark.asyncio
    async def test_json_error_resets_at_failed_phase(self, hooks, make_rejected):
        make_rejected("a", Phase.DRAFTING, error=JSON_ERROR)
        await hooks.on_pipeline_failure(
            "a", "drafting", JSON_ERROR, attempt_number=3, was_rejected=True,
            keyword="london rooftop bars", locale="en",
        )

        item = hooks.store.require("a")
        assert item.phase == Phase.DRAFTING
        assert item.phase_attempts == 0
        assert item.rejection_reason is None

        [entry] = _entries(hooks, "a")
        assert entry.event_type == EventType.AUTO_RECOVERY
        assert entry.outcome == Outcome.RECOVERED
        assert entry.error_category == ErrorCategory.JSON_PARSE
        assert "json_repair" in entry.fix_applied
        assert entry.reactivated_at is not None
        assert entry.context["strategy"] == "json_repair"

    @pytest.mark.asyncio
    async def test_timeout_uses_retry_strategy(self, hooks, make_rejected):
        make_rejected("a", Phase.IMAGES, error="Request timed out")
        await hooks.on_pipeline_failure("a", Phase.IMAGES, "Request timed out", 3, True)
        assert hooks.store.require("a").phase == Phase.IMAGES
        assert _entries(hooks, "a")[0].context["strategy"] == "retry"

    @pytest.mark.asyncio
    async def test_auth_is_terminal(self, hooks, make_rejected):
        before = make_rejected("a", Phase.DRAFTING, error=AUTH_ERROR)
        await hooks.on_pipeline_failure("a", "drafting", AUTH_ERROR, 3, True)

        assert hooks.store.require("a") == before
        [entry] = _entries(hooks, "a")
        assert entry.outcome == Outcome.NOT_RECOVERABLE
        assert entry.error_category == ErrorCategory.AUTH
        assert entry.reactivated_at is None

    @pytest.mark.asyncio
    async def test_quality_is_terminal(self, hooks, make_item):
        make_item("a", Phase.REJECTED, rejection_reason="Quality score below threshold")
        await hooks.on_pipeline_failure("a", "scoring", "Quality score below threshold", 1, True)
        assert hooks.store.require("a").is_rejected
        assert _entries(hooks, "a")[0].outcome == Outcome.NOT_RECOVERABLE

    @pytest.mark.asyncio
    async def test_second_rejection_within_window_is_not_recovered(self, hooks, make_rejected):
        make_rejected("a", Phase.DRAFTING, error=JSON_ERROR)
        await hooks.on_pipeline_failure("a", "drafting", JSON_ERROR, 3, True)

        # Phase worker fails three more times and rejects it again.
        make_rejected("a", Phase.DRAFTING, error=JSON_ERROR)
        await hooks.on_pipeline_failure("a", "drafting", JSON_ERROR, 3, True)

        assert hooks.store.require("a").is_rejected
        latest, first = _entries(hooks, "a")
        assert first.outcome == Outcome.RECOVERED
        assert latest.outcome == Outcome.LOGGED
        assert latest.context["reason"] == "already_recovered_recently"

    @pytest.mark.asyncio
    async def test_old_recovery_does_not_block(self, hooks, make_rejected, add_recovered_entry):
        add_recovered_entry("a", hours_ago=3)
        make_rejected("a", Phase.DRAFTING, error=JSON_ERROR)
        await hooks.on_pipeline_failure("a", "drafting", JSON_ERROR, 3, True)
        assert hooks.store.require("a").phase == Phase.DRAFTING

    @pytest.mark.asyncio
    async def test_attempt_below_max_will_retry(self, hooks, make_item):
        before = make_item("a", Phase.OUTLINE, phase_attempts=1, last_error="socket hang up")
        await hooks.on_pipeline_failure("a", "outline", "socket hang up", attempt_number=1)
        assert hooks.store.require("a") == before
        [entry] = _entries(hooks, "a")
        assert entry.outcome == Outcome.WILL_RETRY
        assert entry.error_category == ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_inconsistent_report_is_logged(self, hooks, make_item):
        make_item("a", Phase.OUTLINE, phase_attempts=3)
        await hooks.on_pipeline_failure("a", "outline", "socket hang up", attempt_number=3)
        assert _entries(hooks, "a")[0].outcome == Outcome.LOGGED

    @pytest.mark.asyncio
    async def test_rejected_data_integrity_gets_one_retry(self, hooks, make_rejected):
        error = "Argument `title` is required"
        make_rejected("a", Phase.ASSEMBLY, error=error)
        await hooks.on_pipeline_failure("a", "assembly", error, 3, True)
        assert hooks.store.require("a").phase == Phase.ASSEMBLY
        entry = _entries(hooks, "a")[0]
        assert entry.outcome == Outcome.RECOVERED
        assert entry.error_category == ErrorCategory.DATA_INTEGRITY

    @pytest.mark.asyncio
    async def test_missing_item_is_logged_not_raised(self, hooks):
        await hooks.on_pipeline_failure("ghost", "drafting", JSON_ERROR, 3, True)
        [entry] = _entries(hooks, "ghost")
        assert entry.outcome == Outcome.LOGGED
        assert entry.fix_applied.startswith("Recovery failed")
        assert entry.reactivated_at is None

    @pytest.mark.asyncio
    async def test_never_raises(self, hooks, make_rejected, monkeypatch):
        make_rejected("a")
        monkeypatch.setattr(hooks.log, "record", MagicMock(side_effect=RuntimeError("disk gone")))
        await hooks.on_pipeline_failure("a", "drafting", JSON_ERROR, 3, True)

        item = hooks.store.require("a")
        assert item.phase == Phase.DRAFTING
        assert item.phase_attempts == 0

    @pytest.mark.asyncio
    async def test_log_failure_leaves_auth_item_untouched(self, hooks, make_rejected, monkeypatch):
        before = make_rejected("a", Phase.SEO, error=AUTH_ERROR)
        monkeypatch.setattr(hooks.log, "record", MagicMock(side_effect=RuntimeError("disk gone")))
        await hooks.on_pipeline_failure("a", "seo", AUTH_ERROR, 3, True)

        assert hooks.store.require("a") == before

    @pytest.mark.asyncio
    async def test_error_excerpt_is_truncated(self, hooks, make_item):
        make_item("a", Phase.OUTLINE)
        await hooks.on_pipeline_failure("a", "outline", "x" * 1000, attempt_number=1)
        assert len(_entries(hooks, "a")[0].context["error"]) == 300


# ===================================================================
# Promotion failure
# ===================================================================

class TestPromotionFailure:

    @pytest.mark.asyncio
    async def test_duplicate_slug_will_retry(self, hooks, make_item):
        before = make_item("a", Phase.RESERVOIR)
        await hooks.on_promotion_failure("a", "Unique constraint failed on the fields: (`slug`)")
        assert hooks.store.require("a") == before
        [entry] = _entries(hooks, "a")
        assert entry.event_type == EventType.PROMOTION_FAILURE
        assert entry.outcome == Outcome.WILL_RETRY

    @pytest.mark.asyncio
    async def test_data_integrity_reprocesses_from_seo(self, hooks, make_item):
        make_item("a", Phase.RESERVOIR, completed_at="2026-01-01T00:00:00+00:00")
        await hooks.on_promotion_failure("a", "Foreign key constraint failed on author_id")

        item = hooks.store.require("a")
        assert item.phase == Phase.SEO
        assert item.phase_attempts == 0
        assert item.completed_at is None
        [entry] = _entries(hooks, "a")
        assert entry.event_type == EventType.PROMOTION_FAILURE
        assert entry.outcome == Outcome.RECOVERED
        assert entry.context["strategy"] == "reprocess"

    @pytest.mark.asyncio
    async def test_data_integrity_respects_loop_guard(self, hooks, make_item, add_recovered_entry):
        add_recovered_entry("a", hours_ago=0.5)
        make_item("a", Phase.RESERVOIR)
        await hooks.on_promotion_failure("a", "Foreign key constraint failed on author_id")
        assert hooks.store.require("a").phase == Phase.RESERVOIR
        assert _entries(hooks, "a")[0].outcome == Outcome.LOGGED

    @pytest.mark.asyncio
    async def test_other_errors_logged(self, hooks, make_item):
        make_item("a", Phase.RESERVOIR)
        await hooks.on_promotion_failure("a", "fetch failed")
        assert hooks.store.require("a").phase == Phase.RESERVOIR
        assert _entries(hooks, "a")[0].outcome == Outcome.LOGGED


# ===================================================================
# Cron failure
# ===================================================================

class TestCronFailure:

    @pytest.mark.asyncio
    async def test_content_job_runs_targeted_sweep(self, hooks, make_rejected):
        make_rejected("a", Phase.DRAFTING, error="Request timed out")
        await hooks.on_cron_failure("content-builder", RuntimeError("worker crashed"), site_id="yalla-london")

        assert hooks.store.require("a").phase == Phase.DRAFTING
        [entry] = hooks.log.search(event_type=EventType.CRON_FAILURE)
        assert entry.outcome == Outcome.RECOVERED
        assert entry.context["items_recovered"] == 1
        assert hooks.log.search(event_type=EventType.TARGETED_SWEEP, target="a")

    @pytest.mark.asyncio
    async def test_content_job_nothing_to_recover(self, hooks):
        await hooks.on_cron_failure("daily-content-generate", "boom")
        [entry] = hooks.log.search(event_type=EventType.CRON_FAILURE)
        assert entry.outcome == Outcome.LOGGED
        assert entry.reactivated_at is None

    @pytest.mark.asyncio
    async def test_optimization_job_will_retry(self, hooks):
        await hooks.on_cron_failure("seo-agent", "socket hang up")
        [entry] = _entries(hooks, "seo-agent")
        assert entry.outcome == Outcome.WILL_RETRY
        assert entry.error_category == ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_topic_job_low_backlog_alerts(self, hooks, add_topics, notifier):
        add_topics(2)
        await hooks.on_cron_failure("weekly-topics", "Request timed out")
        [entry] = _entries(hooks, "weekly-topics")
        assert entry.event_type == EventType.TOPIC_BACKLOG_ALERT
        assert entry.outcome == Outcome.CRITICAL_ALERT
        assert entry.context["pending_topics"] == 2
        notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_topic_job_healthy_backlog(self, hooks, add_topics, notifier):
        add_topics(8)
        add_topics(3, status="used")
        await hooks.on_cron_failure("weekly-topics", "Request timed out")
        [entry] = _entries(hooks, "weekly-topics")
        assert entry.outcome == Outcome.WILL_RETRY
        assert entry.context["pending_topics"] == 8
        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_topic_job_without_topic_store(self, store, log, config):
        hooks = FailureHooks(store=store, log=log, config=config)
        await hooks.on_cron_failure("weekly-topics", "boom")
        assert _entries(hooks, "weekly-topics")[0].outcome == Outcome.LOGGED

    @pytest.mark.asyncio
    async def test_other_job_logged_with_details(self, hooks):
        await hooks.on_cron_failure("backup-db", "boom", details={"exit_code": 2})
        [entry] = _entries(hooks, "backup-db")
        assert entry.outcome == Outcome.LOGGED
        assert entry.context["exit_code"] == 2

    @pytest.mark.asyncio
    async def test_suffixed_job_names_match_family(self, hooks):
        await hooks.on_cron_failure("seo-agent-ar", "boom")
        assert _entries(hooks, "seo-agent-ar")[0].outcome == Outcome.WILL_RETRY


# ===================================================================
# Sync wrappers & singleton
# ===================================================================

class TestSyncAndSingleton:

    def test_sync_wrapper(self, hooks):
        hooks.on_cron_failure_sync("seo-agent", "boom")
        assert _entries(hooks, "seo-agent")[0].outcome == Outcome.WILL_RETRY

    def test_sweep_sync_writes_summary(self, hooks):
        assert hooks.sweep_sync() == 0
        [entry] = _entries(hooks, "targeted-sweep")
        assert entry.outcome == Outcome.LOGGED

    def test_get_hooks_uses_env(self, tmp_path):
        hooks = get_hooks()
        assert hooks is get_hooks()
        assert hooks.config.data_path == tmp_path / "data"
        reset_hooks()
        assert get_hooks() is not hooks

    def test_config_is_used(self, store, log):
        hooks = FailureHooks(store=store, log=log, config=HealerConfig(max_phase_attempts=5))
        assert hooks.config.max_phase_attempts == 5
        assert hooks.guard.window.total_seconds() == 2 * 3600
