"""
Recovery primitives shared by the failure hooks and the sweepers:

- ``resolve_reset_phase`` / ``reset_item``: put an item back to a valid
  working phase with a clean failure state.
- ``LoopGuard``: refuses a second recovery of the same item inside the
  trailing window, whichever component attempts it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Set, Union

from autoheal.phases import Phase, apply_reset, previous_phase, to_phase
from autoheal.recovery_log import DEFAULT_LOOP_GUARD_WINDOW, RecoveryLog
from autoheal.store import ItemStore

logger = logging.getLogger("autoheal.recovery")


class RecoveryStrategy(str, Enum):
    """How a reset should be carried out by the downstream phase worker."""
    RETRY = "retry"
    JSON_REPAIR = "json_repair"
    REPROCESS = "reprocess"


def resolve_reset_phase(failed_phase: Union[Phase, str], strategy: RecoveryStrategy) -> Phase:
    """``reprocess`` steps one phase back (clamped); other strategies stay put."""
    phase = to_phase(failed_phase)
    if strategy == RecoveryStrategy.REPROCESS:
        return previous_phase(phase)
    return phase


def reset_item(
    store: ItemStore,
    item_id: str,
    failed_phase: Union[Phase, str],
    strategy: RecoveryStrategy,
) -> bool:
    """Reset *item_id* for another pass.  Never raises; False on any failure."""
    try:
        target = resolve_reset_phase(failed_phase, strategy)
        store.update(item_id, lambda item: apply_reset(item, target))
    except Exception as exc:
        logger.error("Failed to recover item %s: %s", item_id, exc)
        return False
    logger.info(
        'Recovered item %s: reset to "%s" (strategy: %s)',
        item_id, target.value, RecoveryStrategy(strategy).value,
    )
    return True


class LoopGuard:
    """Log-backed dedup so an item is auto-recovered at most once per window."""

    def __init__(self, log: RecoveryLog, window: timedelta = DEFAULT_LOOP_GUARD_WINDOW) -> None:
        self._log = log
        self._window = window

    @property
    def window(self) -> timedelta:
        return self._window

    def was_recently_recovered(self, item_id: str) -> bool:
        try:
            return self._log.was_recently_recovered(item_id, self._window)
        except Exception as exc:
            # Unreadable log: allow the recovery.
            logger.warning("Loop guard lookup failed for %s: %s", item_id, exc)
            return False

    def recently_recovered_ids(self) -> Set[str]:
        """Batch form, built once per sweep."""
        try:
            return self._log.recently_recovered_ids(self._window)
        except Exception as exc:
            logger.warning("Loop guard batch lookup failed: %s", exc)
            return set()
