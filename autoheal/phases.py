"""
Production phases and the per-item state machine.

Forward order (index 0 = earliest):

    research -> outline -> drafting -> assembly -> images -> seo -> scoring -> reservoir

Two pseudo-phases sit outside the chain: ``published`` (terminal success,
reached only through promotion) and ``rejected`` (terminal failure that the
recovery engine may revoke).

The transition helpers here are pure: they mutate a ``ProductionItem`` in
memory and never touch storage.  Persisting the result is the caller's job.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from autoheal.utils import now_iso, parse_iso

MAX_PHASE_ATTEMPTS = 3
QUALITY_REJECTION_REASON = "Quality score below threshold"


class Phase(str, Enum):
    """Production phases plus the two terminal pseudo-phases."""
    RESEARCH = "research"
    OUTLINE = "outline"
    DRAFTING = "drafting"
    ASSEMBLY = "assembly"
    IMAGES = "images"
    SEO = "seo"
    SCORING = "scoring"
    RESERVOIR = "reservoir"
    PUBLISHED = "published"
    REJECTED = "rejected"


# Canonical forward order
PHASE_ORDER: List[Phase] = [
    Phase.RESEARCH,
    Phase.OUTLINE,
    Phase.DRAFTING,
    Phase.ASSEMBLY,
    Phase.IMAGES,
    Phase.SEO,
    Phase.SCORING,
    Phase.RESERVOIR,
]

# Phases a phase worker actively runs (reservoir is a holding state).
FORWARD_PHASES: List[Phase] = PHASE_ORDER[:-1]

TERMINAL_PHASES = frozenset({Phase.PUBLISHED, Phase.REJECTED})


class InvalidTransitionError(ValueError):
    """Raised when a transition is not allowed from the item's current phase."""


def to_phase(value: Any) -> Phase:
    """Coerce a string or Phase to Phase.  Raises ValueError when unknown."""
    if isinstance(value, Phase):
        return value
    return Phase(str(value).strip().lower())


def phase_index(phase: Phase) -> int:
    """Index in PHASE_ORDER, or -1 for the pseudo-phases."""
    try:
        return PHASE_ORDER.index(phase)
    except ValueError:
        return -1


def previous_phase(phase: Phase) -> Phase:
    """One step back in the canonical order, floor-clamped to the first phase.

    Pseudo-phases have no position in the chain, so they map to the first
    phase as well.
    """
    idx = phase_index(phase)
    return PHASE_ORDER[max(0, idx - 1)]


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class ProductionItem:
    """A single article moving through the pipeline."""
    id: str
    current_phase: str = Phase.RESEARCH.value
    phase_attempts: int = 0
    last_error: Optional[str] = None
    rejection_reason: Optional[str] = None
    phase_started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # Tenant / content context (read-only for the recovery core)
    site_id: str = ""
    locale: str = "en"
    keyword: str = ""

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProductionItem:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @property
    def phase(self) -> Phase:
        return to_phase(self.current_phase)

    @property
    def is_rejected(self) -> bool:
        return self.current_phase == Phase.REJECTED.value

    def updated_at_dt(self) -> Optional[datetime]:
        return parse_iso(self.updated_at)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def advance(item: ProductionItem, next_phase: Phase) -> ProductionItem:
    """Record a successful phase: move forward and clear the failure state."""
    current = item.phase
    if current in TERMINAL_PHASES:
        raise InvalidTransitionError(f"Item {item.id} is {current.value}; cannot advance")
    if next_phase == Phase.PUBLISHED:
        raise InvalidTransitionError("Only promotion may publish an item")
    if next_phase != Phase.REJECTED and phase_index(next_phase) <= phase_index(current):
        raise InvalidTransitionError(
            f"Cannot advance item {item.id} from {current.value} to {next_phase.value}"
        )

    now = now_iso()
    item.current_phase = next_phase.value
    item.phase_attempts = 0
    item.last_error = None
    item.phase_started_at = now
    if next_phase in (Phase.RESERVOIR, Phase.REJECTED):
        item.completed_at = now
    item.updated_at = now
    return item


def record_failure(
    item: ProductionItem,
    error: str,
    max_attempts: int = MAX_PHASE_ATTEMPTS,
) -> bool:
    """Count a failed attempt at the current phase.

    Returns True when this failure exhausted the attempts and the item was
    moved to ``rejected``.
    """
    current = item.phase
    if current in TERMINAL_PHASES or current == Phase.RESERVOIR:
        raise InvalidTransitionError(f"Item {item.id} is not in a working phase ({current.value})")

    now = now_iso()
    phase_error = error or f'Phase "{current.value}" returned failure with no error details'
    item.phase_attempts = (item.phase_attempts or 0) + 1
    item.last_error = phase_error
    item.updated_at = now

    was_rejected = item.phase_attempts >= max_attempts
    if was_rejected:
        item.current_phase = Phase.REJECTED.value
        item.rejection_reason = (
            f'Phase "{current.value}" failed after {max_attempts} attempts: {phase_error}'
        )
        item.completed_at = now
    return was_rejected


def reject_for_quality(item: ProductionItem) -> ProductionItem:
    """Quality gate failure: straight to ``rejected``."""
    advance(item, Phase.REJECTED)
    item.rejection_reason = QUALITY_REJECTION_REASON
    return item


def mark_published(item: ProductionItem) -> ProductionItem:
    """Promotion succeeded.  Only reservoir items can be published."""
    if item.phase != Phase.RESERVOIR:
        raise InvalidTransitionError(
            f"Item {item.id} is {item.current_phase}; only reservoir items can be published"
        )
    now = now_iso()
    item.current_phase = Phase.PUBLISHED.value
    item.phase_started_at = now
    item.completed_at = now
    item.updated_at = now
    return item


def apply_reset(item: ProductionItem, target: Phase) -> ProductionItem:
    """Put the item back to *target* with a clean failure state."""
    now = now_iso()
    item.current_phase = target.value
    item.phase_attempts = 0
    item.last_error = None
    item.rejection_reason = None
    item.completed_at = None
    item.phase_started_at = now
    item.updated_at = now
    return item
