"""Test alerts -- critical alert webhook delivery."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from autoheal.alerts import AlertNotifier
from autoheal.classifier import ErrorCategory
from autoheal.recovery_log import EventType, Outcome, RecoveryLogEntry

WEBHOOK = "http://n8n.local/webhook/autoheal"


def _entry(outcome: Outcome = Outcome.CRITICAL_ALERT) -> RecoveryLogEntry:
    return RecoveryLogEntry(
        event_type=EventType.TOPIC_BACKLOG_ALERT,
        source="weekly-topics",
        target="weekly-topics",
        failure_description="Topic generation failed",
        diagnosis="Only 2 topics remain",
        error_category=ErrorCategory.TIMEOUT,
        outcome=outcome,
    )


def _mock_session(status: int = 200, text: str = "", post_error: Exception = None):
    """Build a ClientSession double: ``async with session.post(...) as resp``."""
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)

    ctx = MagicMock()
    if post_error is not None:
        ctx.__aenter__ = AsyncMock(side_effect=post_error)
    else:
        ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


class TestAlertNotifier:

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        notifier = AlertNotifier()
        assert notifier.enabled is False
        assert await notifier.notify(_entry()) is False

    @pytest.mark.asyncio
    async def test_only_critical_alerts_sent(self):
        notifier = AlertNotifier(WEBHOOK)
        with patch("aiohttp.ClientSession") as mock_cs:
            assert await notifier.notify(_entry(Outcome.WILL_RETRY)) is False
            mock_cs.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivers_payload(self):
        notifier = AlertNotifier(WEBHOOK)
        session = _mock_session(200)
        with patch("aiohttp.ClientSession", return_value=session):
            assert await notifier.notify(_entry()) is True

        args, kwargs = session.post.call_args
        assert args[0] == WEBHOOK
        assert kwargs["json"]["type"] == "autoheal_alert"
        assert kwargs["json"]["entry"]["outcome"] == "critical_alert"
        assert notifier.sent == 1

    @pytest.mark.asyncio
    async def test_http_error(self):
        notifier = AlertNotifier(WEBHOOK)
        with patch("aiohttp.ClientSession", return_value=_mock_session(500, "boom")):
            assert await notifier.notify(_entry()) is False
        assert notifier.failed == 1

    @pytest.mark.asyncio
    async def test_connection_error_swallowed(self):
        notifier = AlertNotifier(WEBHOOK)
        session = _mock_session(post_error=aiohttp.ClientConnectionError("refused"))
        with patch("aiohttp.ClientSession", return_value=session):
            assert await notifier.notify(_entry()) is False
        assert notifier.failed == 1

    @pytest.mark.asyncio
    async def test_timeout_swallowed(self):
        notifier = AlertNotifier(WEBHOOK, timeout=1)
        session = _mock_session(post_error=asyncio.TimeoutError())
        with patch("aiohttp.ClientSession", return_value=session):
            assert await notifier.notify(_entry()) is False
        assert notifier.failed == 1
