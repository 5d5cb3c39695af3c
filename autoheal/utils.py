"""
Shared utilities: logging setup, timestamps, atomic JSON persistence,
and the async/sync bridge used by every ``*_sync`` wrapper.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine, Optional

# ─────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a logger that writes to console, and to a daily file when
    ``AUTOHEAL_LOG_DIR`` is set."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(ch)

        log_dir = os.getenv("AUTOHEAL_LOG_DIR", "")
        if log_dir:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            log_file = path / f"{name}_{datetime.now().strftime('%Y%m%d')}.log"
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(fh)

    return logger


# ─────────────────────────────────────────────
# TIME
# ─────────────────────────────────────────────

def now_utc() -> datetime:
    """Return the current time in UTC, timezone-aware."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return current UTC time as an ISO-8601 string."""
    return now_utc().isoformat()


def parse_iso(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime, None on failure."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def truncate(text: Optional[str], max_len: int = 200) -> str:
    """Truncate text for logging."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


# ─────────────────────────────────────────────
# JSON (atomic writes)
# ─────────────────────────────────────────────

def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError):
        return default


def save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to .tmp then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
        os.replace(tmp, path)
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


# ─────────────────────────────────────────────
# ASYNC BRIDGE
# ─────────────────────────────────────────────

def run_sync(coro: Coroutine) -> Any:
    """Run an async coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Inside an existing event loop, so run on a worker thread.
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)
