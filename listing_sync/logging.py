"""Loguru setup and structured event helpers for sync passes."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from listing_sync.state import SyncStats


def configure_logger(log_file: str = "listing_sync.log", level: str = "INFO") -> None:
    """Configure loguru sinks for the whole package."""
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    # Remove default handler to avoid duplicate logs
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
    )

    logger.add(
        log_dir / log_file,
        rotation="10 MB",
        retention="10 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} | {extra}",
        backtrace=True,
        diagnose=False,
    )


_configured = False


def setup_default_logging(level: str | None = None, log_file: str | None = None) -> None:
    global _configured
    if _configured:
        return
    from listing_sync.config import load_settings

    settings = load_settings()
    configure_logger(
        log_file=log_file or settings.log_file,
        level=level or settings.log_level,
    )
    _configured = True


def bind_context(**kwargs: Any):
    """Return a logger with bound contextual fields (source/run/address)."""
    return logger.bind(**{k: v for k, v in kwargs.items() if v is not None})


def pass_started(source: str, run_id: str | None = None) -> None:
    bind_context(source=source, run_id=run_id).info("sync_pass_start")


def pass_finished(source: str, stats: SyncStats, run_id: str | None = None) -> None:
    bind_context(source=source, run_id=run_id).info(
        "sync_pass_end scraped={} added={} updated={} removed={} unchanged={} failed={} ({}s)",
        stats.scraped,
        stats.added,
        stats.updated,
        stats.removed,
        stats.unchanged,
        stats.failed,
        stats.duration_seconds,
    )
