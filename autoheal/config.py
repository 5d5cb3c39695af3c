"""
Configuration for the self-healing controller.

Values come from ``AUTOHEAL_*`` environment variables with the defaults
below.  The job registry (which job names belong to which failure family)
is plain read-only data handed to the cron hook; it can be loaded from a
JSON file shaped like::

    {
        "content_jobs": ["content-builder", "daily-content-generate"],
        "optimization_jobs": ["seo-agent"],
        "topic_jobs": ["weekly-topics", "topic"]
    }
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from autoheal.utils import load_json

logger = logging.getLogger("autoheal.config")

# ---------------------------------------------------------------------------
# Paths & Defaults
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"
JOB_REGISTRY_PATH = BASE_DIR / "configs" / "job-registry.json"

LOOP_GUARD_WINDOW_HOURS = 2.0
TARGETED_SWEEP_WINDOW_HOURS = 6.0
TARGETED_SWEEP_LIMIT = 5
AGENT_SWEEP_WINDOW_HOURS = 24.0
AGENT_MAX_RECOVERIES = 10
STUCK_THRESHOLD_HOURS = 2.0
MAX_PHASE_ATTEMPTS = 3
TOPIC_LOW_WATER_MARK = 5
ERROR_EXCERPT_LENGTH = 300
LOG_RETENTION_DAYS = 90

DEFAULT_CONTENT_JOBS: Tuple[str, ...] = (
    "content-builder", "daily-content-generate", "content-selector", "content-publish",
)
DEFAULT_OPTIMIZATION_JOBS: Tuple[str, ...] = (
    "seo-agent", "seo-cron", "seo-orchestrator", "seo-deep-review", "content-auto-fix",
)
DEFAULT_TOPIC_JOBS: Tuple[str, ...] = ("weekly-topics", "topic")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass
class HealerConfig:
    """Tunables for hooks, loop guard, and sweeps."""
    data_dir: str = str(DEFAULT_DATA_DIR)

    loop_guard_window_hours: float = LOOP_GUARD_WINDOW_HOURS
    targeted_sweep_window_hours: float = TARGETED_SWEEP_WINDOW_HOURS
    targeted_sweep_limit: int = TARGETED_SWEEP_LIMIT
    agent_sweep_window_hours: float = AGENT_SWEEP_WINDOW_HOURS
    agent_max_recoveries: int = AGENT_MAX_RECOVERIES
    stuck_threshold_hours: float = STUCK_THRESHOLD_HOURS

    max_phase_attempts: int = MAX_PHASE_ATTEMPTS
    topic_low_water_mark: int = TOPIC_LOW_WATER_MARK
    error_excerpt_length: int = ERROR_EXCERPT_LENGTH
    log_retention_days: int = LOG_RETENTION_DAYS

    # Critical alerts are POSTed here when set
    alert_webhook_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HealerConfig:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @classmethod
    def from_env(cls) -> HealerConfig:
        """Build a config from ``AUTOHEAL_*`` environment variables."""
        return cls(
            data_dir=os.getenv("AUTOHEAL_DATA_DIR", str(DEFAULT_DATA_DIR)),
            loop_guard_window_hours=_env_float("AUTOHEAL_LOOP_GUARD_HOURS", LOOP_GUARD_WINDOW_HOURS),
            targeted_sweep_window_hours=_env_float("AUTOHEAL_SWEEP_WINDOW_HOURS", TARGETED_SWEEP_WINDOW_HOURS),
            targeted_sweep_limit=_env_int("AUTOHEAL_SWEEP_LIMIT", TARGETED_SWEEP_LIMIT),
            agent_sweep_window_hours=_env_float("AUTOHEAL_AGENT_WINDOW_HOURS", AGENT_SWEEP_WINDOW_HOURS),
            agent_max_recoveries=_env_int("AUTOHEAL_AGENT_MAX_RECOVERIES", AGENT_MAX_RECOVERIES),
            stuck_threshold_hours=_env_float("AUTOHEAL_STUCK_HOURS", STUCK_THRESHOLD_HOURS),
            max_phase_attempts=_env_int("AUTOHEAL_MAX_PHASE_ATTEMPTS", MAX_PHASE_ATTEMPTS),
            topic_low_water_mark=_env_int("AUTOHEAL_TOPIC_LOW_WATER_MARK", TOPIC_LOW_WATER_MARK),
            error_excerpt_length=_env_int("AUTOHEAL_ERROR_EXCERPT", ERROR_EXCERPT_LENGTH),
            log_retention_days=_env_int("AUTOHEAL_LOG_RETENTION_DAYS", LOG_RETENTION_DAYS),
            alert_webhook_url=os.getenv("AUTOHEAL_ALERT_WEBHOOK_URL", ""),
        )

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def loop_guard_window(self) -> timedelta:
        return timedelta(hours=self.loop_guard_window_hours)

    @property
    def targeted_sweep_window(self) -> timedelta:
        return timedelta(hours=self.targeted_sweep_window_hours)

    @property
    def agent_sweep_window(self) -> timedelta:
        return timedelta(hours=self.agent_sweep_window_hours)

    @property
    def stuck_threshold(self) -> timedelta:
        return timedelta(hours=self.stuck_threshold_hours)


# ---------------------------------------------------------------------------
# Job registry
# ---------------------------------------------------------------------------


class JobFamily:
    CONTENT = "content"
    OPTIMIZATION = "optimization"
    TOPIC = "topic"
    OTHER = "other"


@dataclass(frozen=True)
class JobRegistry:
    """Which scheduled jobs belong to which failure-handling family.

    Matching is by substring so suffixed names (``content-builder-ar``)
    fall into the same family.
    """
    content_jobs: Tuple[str, ...] = DEFAULT_CONTENT_JOBS
    optimization_jobs: Tuple[str, ...] = DEFAULT_OPTIMIZATION_JOBS
    topic_jobs: Tuple[str, ...] = DEFAULT_TOPIC_JOBS

    def family_of(self, job_name: str) -> str:
        name = (job_name or "").lower()
        if any(j in name for j in self.content_jobs):
            return JobFamily.CONTENT
        if any(j in name for j in self.optimization_jobs):
            return JobFamily.OPTIMIZATION
        if any(j in name for j in self.topic_jobs):
            return JobFamily.TOPIC
        return JobFamily.OTHER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_jobs": list(self.content_jobs),
            "optimization_jobs": list(self.optimization_jobs),
            "topic_jobs": list(self.topic_jobs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobRegistry:
        def _names(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
            raw = data.get(key)
            if not isinstance(raw, list):
                return default
            return tuple(str(n).lower() for n in raw if n)

        return cls(
            content_jobs=_names("content_jobs", DEFAULT_CONTENT_JOBS),
            optimization_jobs=_names("optimization_jobs", DEFAULT_OPTIMIZATION_JOBS),
            topic_jobs=_names("topic_jobs", DEFAULT_TOPIC_JOBS),
        )


def load_job_registry(path: Optional[Path] = None) -> JobRegistry:
    """Load the job registry from JSON, falling back to the built-in table."""
    raw = load_json(path or JOB_REGISTRY_PATH, default={})
    if not isinstance(raw, dict) or not raw:
        return JobRegistry()
    return JobRegistry.from_dict(raw)
