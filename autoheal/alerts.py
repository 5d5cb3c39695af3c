"""
Alert Notifier

Pushes ``critical_alert`` recovery decisions (for example a stalled topic
backlog) to an operator webhook such as an n8n workflow trigger.  Delivery
is a single bounded POST with no retry loop; any failure is logged and
swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import time

import aiohttp

from autoheal.recovery_log import Outcome, RecoveryLogEntry

logger = logging.getLogger("autoheal.alerts")

ALERT_TIMEOUT = 10  # seconds


class AlertNotifier:
    """Best-effort webhook delivery for critical recovery entries."""

    def __init__(self, webhook_url: str = "", timeout: int = ALERT_TIMEOUT) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self.sent = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def notify(self, entry: RecoveryLogEntry) -> bool:
        """POST *entry* when it is a critical alert.  Returns True if delivered."""
        if not self.enabled or entry.outcome != Outcome.CRITICAL_ALERT:
            return False

        payload = {"type": "autoheal_alert", "entry": entry.to_dict()}
        start = time.monotonic()
        try:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._webhook_url, json=payload) as resp:
                    elapsed_ms = (time.monotonic() - start) * 1000
                    if 200 <= resp.status < 300:
                        self.sent += 1
                        logger.info(
                            "Alert delivered for %s (%.0fms)", entry.target, elapsed_ms,
                        )
                        return True
                    body = await resp.text()
                    self.failed += 1
                    logger.warning(
                        "Alert webhook returned HTTP %d for %s: %s",
                        resp.status, entry.target, body[:200],
                    )
                    return False
        except asyncio.TimeoutError:
            self.failed += 1
            logger.warning("Alert webhook timed out after %ss for %s", self._timeout, entry.target)
        except aiohttp.ClientError as exc:
            self.failed += 1
            logger.warning("Alert webhook connection error for %s: %s", entry.target, exc)
        return False
