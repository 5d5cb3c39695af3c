"""
Error Classifier

Turns raw failure text coming back from a phase worker, job runner, or
promotion step into one of a closed set of error categories.  Matching is
case-insensitive substring search over an ordered signature table; the first
category whose signature appears wins, and anything unmatched is ``unknown``.

The module also carries the diagnosis engine used by the sweeper agent:
given the stored rejection text it decides whether the item is worth
resurrecting and at which phase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from autoheal.phases import FORWARD_PHASES, Phase


class ErrorCategory(str, Enum):
    """Closed set of failure categories."""
    JSON_PARSE = "json_parse"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    AUTH = "auth"
    DATA_INTEGRITY = "data_integrity"
    QUALITY = "quality"
    UNKNOWN = "unknown"


# Priority order matters: "json 429" is a JSON failure, not a rate limit.
CATEGORY_SIGNATURES: List[Tuple[ErrorCategory, Tuple[str, ...]]] = [
    (ErrorCategory.JSON_PARSE, ("json", "unterminated string", "unexpected token", "unexpected end")),
    (ErrorCategory.TIMEOUT, ("timeout", "budget", "timed out", "aborted")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "429", "too many requests")),
    (ErrorCategory.NETWORK, ("network", "econnrefused", "fetch failed", "socket")),
    (ErrorCategory.AUTH, ("api key", "unauthorized", "401", "403")),
    (ErrorCategory.DATA_INTEGRITY, ("required", "not null", "foreign key", "unique constraint", "duplicate")),
    (ErrorCategory.QUALITY, ("quality score", "below threshold")),
]

RETRYABLE_CATEGORIES: FrozenSet[ErrorCategory] = frozenset({
    ErrorCategory.JSON_PARSE,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.NETWORK,
    ErrorCategory.UNKNOWN,
})

# Require a human: bad credentials or content that failed the quality gate.
HUMAN_ONLY_CATEGORIES: FrozenSet[ErrorCategory] = frozenset({
    ErrorCategory.AUTH,
    ErrorCategory.QUALITY,
})

DEFAULT_RESET_PHASE = Phase.OUTLINE

_PHASE_IN_TEXT = re.compile(r'phase\s+"(\w+)"')


def _as_text(error_text: object) -> str:
    if error_text is None:
        return ""
    if isinstance(error_text, BaseException):
        return str(error_text) or type(error_text).__name__
    return str(error_text)


def classify(error_text: object) -> ErrorCategory:
    """Classify failure text.  Total: never raises, any input is accepted."""
    try:
        lower = _as_text(error_text).lower()
    except Exception:
        return ErrorCategory.UNKNOWN
    for category, signatures in CATEGORY_SIGNATURES:
        if any(sig in lower for sig in signatures):
            return category
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    return category in RETRYABLE_CATEGORIES


def is_duplicate_violation(error_text: object) -> bool:
    """True when the text reads like a uniqueness violation (slug collision)."""
    lower = _as_text(error_text).lower()
    return "unique" in lower or "duplicate" in lower


def extract_phase(error_text: object, default: Phase = DEFAULT_RESET_PHASE) -> Phase:
    """Find the forward phase named in a stored rejection/error text.

    Recognises ``Phase "drafting" failed ...`` as well as a bare quoted
    phase name.  Falls back to *default* when nothing usable is found.
    """
    lower = _as_text(error_text).lower()
    match = _PHASE_IN_TEXT.search(lower)
    if match:
        name = match.group(1)
        for phase in FORWARD_PHASES:
            if phase.value == name:
                return phase
    for phase in FORWARD_PHASES:
        if f'"{phase.value}"' in lower:
            return phase
    return default


# ---------------------------------------------------------------------------
# Diagnosis
# ---------------------------------------------------------------------------


@dataclass
class Diagnosis:
    """What went wrong and what a sweep should do about it."""
    category: ErrorCategory
    retryable: bool
    reset_phase: Phase
    explanation: str
    fix_description: str


_EXPLANATIONS = {
    ErrorCategory.JSON_PARSE: "Generation provider returned malformed JSON. This is intermittent; a retry usually succeeds with JSON repair.",
    ErrorCategory.TIMEOUT: "Request timed out or ran out of budget. The provider was likely under load.",
    ErrorCategory.RATE_LIMIT: "Provider rate limit hit. The limit resets on its own.",
    ErrorCategory.NETWORK: "Network connection to the provider failed. Likely temporary.",
    ErrorCategory.AUTH: "Provider authentication failed. A valid API key must be configured.",
    ErrorCategory.DATA_INTEGRITY: "Missing required field, broken relation, or duplicate value.",
    ErrorCategory.QUALITY: "Article did not meet the quality gate. The rejection is intentional.",
    ErrorCategory.UNKNOWN: "Unknown error. Giving it one more chance with fresh attempts.",
}


def diagnose(error_text: object, default_phase: Phase = DEFAULT_RESET_PHASE) -> Diagnosis:
    """Classify *error_text* and describe the recovery a sweep would apply."""
    category = classify(error_text)
    explanation = _EXPLANATIONS[category]

    if category in HUMAN_ONLY_CATEGORIES:
        return Diagnosis(
            category=category,
            retryable=False,
            reset_phase=Phase.RESEARCH,
            explanation=explanation,
            fix_description=f"Not auto-retryable ({category.value}), needs an operator",
        )

    phase = extract_phase(error_text, default_phase)
    if category == ErrorCategory.DATA_INTEGRITY:
        return Diagnosis(
            category=category,
            retryable=False,
            reset_phase=phase,
            explanation=explanation,
            fix_description="Handled by the promotion hook, not by sweeps",
        )

    return Diagnosis(
        category=category,
        retryable=True,
        reset_phase=phase,
        explanation=explanation,
        fix_description=f'Reset to "{phase.value}" phase with fresh attempt counter',
    )


def category_from_value(value: Optional[str]) -> ErrorCategory:
    """Parse a stored category string, tolerating unknown values."""
    try:
        return ErrorCategory(value)
    except ValueError:
        return ErrorCategory.UNKNOWN
