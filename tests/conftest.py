"""
Shared fixtures for the autoheal test suite.

Every fixture writes under pytest's ``tmp_path`` so no test touches the real
data directory, and no test reaches the network.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoheal.config import HealerConfig
from autoheal.hooks import FailureHooks, RECOVERY_LOG_DIRNAME, reset_hooks
from autoheal.phases import Phase, ProductionItem
from autoheal.recovery_log import EventType, Outcome, RecoveryLog, RecoveryLogEntry
from autoheal.classifier import ErrorCategory
from autoheal.store import ItemStore, TopicProposal, TopicStore
from autoheal.utils import now_utc


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """Point every AUTOHEAL_* location at the temp dir and drop singletons."""
    monkeypatch.setenv("AUTOHEAL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("AUTOHEAL_ALERT_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("AUTOHEAL_LOG_DIR", raising=False)
    reset_hooks()
    yield
    reset_hooks()


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def config(data_dir):
    return HealerConfig(data_dir=str(data_dir))


@pytest.fixture
def store(data_dir):
    return ItemStore(data_dir)


@pytest.fixture
def log(data_dir):
    return RecoveryLog(data_dir / RECOVERY_LOG_DIRNAME)


@pytest.fixture
def topics(data_dir):
    return TopicStore(data_dir)


@pytest.fixture
def notifier():
    """Alert notifier double; ``notify`` is awaited by the topic hook."""
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def hooks(store, log, topics, config, notifier):
    return FailureHooks(store=store, log=log, topics=topics, config=config, notifier=notifier)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def iso_ago():
    """Return an ISO timestamp *hours* in the past."""
    def _ago(hours: float = 0.0, minutes: float = 0.0) -> str:
        return (now_utc() - timedelta(hours=hours, minutes=minutes)).isoformat()
    return _ago


@pytest.fixture
def make_item(store):
    """Create and persist a ProductionItem.  Keyword arguments override fields."""
    def _make(item_id: str, phase: Phase = Phase.RESEARCH, **fields) -> ProductionItem:
        item = ProductionItem(
            id=item_id,
            current_phase=phase.value,
            keyword=fields.pop("keyword", f"keyword {item_id}"),
            site_id=fields.pop("site_id", "yalla-london"),
            **fields,
        )
        store.save(item)
        return item
    return _make


@pytest.fixture
def make_rejected(make_item, iso_ago):
    """Create an item rejected after exhausting its attempts at *phase*."""
    def _make(item_id: str, phase: Phase = Phase.DRAFTING, error: str = "Request timed out",
              hours_ago: float = 0.5, **fields) -> ProductionItem:
        return make_item(
            item_id,
            Phase.REJECTED,
            phase_attempts=3,
            last_error=error,
            rejection_reason=f'Phase "{phase.value}" failed after 3 attempts: {error}',
            completed_at=iso_ago(hours_ago),
            **fields,
        )
    return _make


@pytest.fixture
def add_recovered_entry(log, iso_ago):
    """Append a ``recovered`` entry for *target* detected *hours_ago*."""
    def _add(target: str, hours_ago: float = 0.5, outcome: Outcome = Outcome.RECOVERED) -> RecoveryLogEntry:
        entry = RecoveryLogEntry(
            event_type=EventType.AUTO_RECOVERY,
            source="content-builder",
            target=target,
            failure_description="Earlier failure",
            diagnosis="Earlier recovery",
            error_category=ErrorCategory.TIMEOUT,
            outcome=outcome,
            detected_at=iso_ago(hours_ago),
        )
        log.append(entry)
        return entry
    return _add


@pytest.fixture
def add_topics(topics):
    def _add(count: int, status: str = "ready", site_id: str = "yalla-london") -> None:
        for i in range(count):
            topics.add(TopicProposal(keyword=f"topic {i}", status=status, site_id=site_id))
    return _add
