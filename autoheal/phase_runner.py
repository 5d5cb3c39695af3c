"""
Phase Runner -- the seam between phase workers and the recovery core.

Phase workers do the generation work; this module persists what happened
and fires the matching failure hook.  A failed attempt increments the
item's counter and, on the third consecutive failure at the same phase,
moves it to ``rejected`` before the pipeline failure hook is told
``was_rejected=True``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Union

from autoheal.hooks import FailureHooks
from autoheal.phases import (
    Phase,
    ProductionItem,
    advance,
    mark_published,
    record_failure,
    reject_for_quality,
    to_phase,
)
from autoheal.utils import now_iso, run_sync

logger = logging.getLogger("autoheal.phase_runner")


class PhaseRunner:
    """Persist phase outcomes and route failures to the hooks."""

    def __init__(self, hooks: FailureHooks) -> None:
        self._hooks = hooks
        self._store = hooks.store

    def start_item(
        self,
        keyword: str,
        site_id: str,
        locale: str = "en",
        item_id: Optional[str] = None,
    ) -> ProductionItem:
        """Create a new item at the first phase."""
        item = ProductionItem(
            id=item_id or str(uuid.uuid4()),
            current_phase=Phase.RESEARCH.value,
            keyword=keyword,
            site_id=site_id,
            locale=locale,
            phase_started_at=now_iso(),
        )
        self._store.save(item)
        logger.info("Started item %s (%s, %s/%s)", item.id, keyword, site_id, locale)
        return item

    async def complete_phase(self, item_id: str, next_phase: Union[Phase, str]) -> ProductionItem:
        """The current phase succeeded; move the item forward."""
        target = to_phase(next_phase)
        item = self._store.update(item_id, lambda i: advance(i, target))
        logger.info("Item %s advanced to %s", item_id, target.value)
        return item

    async def fail_phase(self, item_id: str, error: str) -> ProductionItem:
        """The current phase failed.  Returns the item as it stands after the hook ran."""
        outcome = {}

        def _fail(i: ProductionItem) -> None:
            outcome["phase"] = i.phase
            outcome["rejected"] = record_failure(i, error, self._hooks.config.max_phase_attempts)

        item = self._store.update(item_id, _fail)
        failed_phase = outcome["phase"]
        was_rejected = outcome["rejected"]

        await self._hooks.on_pipeline_failure(
            item.id,
            failed_phase,
            item.last_error or error,
            attempt_number=item.phase_attempts,
            was_rejected=was_rejected,
            locale=item.locale,
            keyword=item.keyword,
            site_id=item.site_id,
        )
        return self._store.require(item_id)

    async def reject_for_quality(self, item_id: str) -> ProductionItem:
        """Scoring decided the article is not good enough."""
        item = self._store.update(item_id, reject_for_quality)
        logger.info("Item %s rejected by the quality gate", item_id)
        return item

    async def promote(self, item_id: str) -> ProductionItem:
        """Promotion to the published state succeeded."""
        item = self._store.update(item_id, mark_published)
        logger.info("Item %s published", item_id)
        return item

    async def fail_promotion(self, item_id: str, error: str) -> ProductionItem:
        """Promotion failed; let the promotion hook decide what to do."""
        item = self._store.require(item_id)
        await self._hooks.on_promotion_failure(
            item.id, error, keyword=item.keyword, site_id=item.site_id,
        )
        return self._store.require(item_id)

    # -------------------------------------------------------------------
    # Sync wrappers
    # -------------------------------------------------------------------

    def fail_phase_sync(self, item_id: str, error: str) -> ProductionItem:
        return run_sync(self.fail_phase(item_id, error))

    def fail_promotion_sync(self, item_id: str, error: str) -> ProductionItem:
        return run_sync(self.fail_promotion(item_id, error))
