"""Periodic housekeeping: grant expiry write-back and stale state cleanup.

Reads never depend on this sweep (expiry is evaluated lazily); it keeps stored
status current and bounds the growth of session and idempotency state.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from medvault.api.deps import Services

__all__ = ["run_periodic", "sweep"]

logger = logging.getLogger(__name__)


async def _step(name: str, func: Callable[[], int]) -> int:
    try:
        return await asyncio.to_thread(func)
    except Exception:
        logger.warning("Maintenance step %s failed", name, exc_info=True)
        return 0


async def sweep(services: Services, now: datetime | None = None) -> dict[str, int]:
    """Run every housekeeping step once; a failing step does not stop the rest."""
    counts = {
        "grants_expired": await _step(
            "expire_overdue", lambda: services.grants.expire_overdue(now)
        ),
        "sessions_removed": await _step("session_cleanup", services.sessions.cleanup),
        "idempotency_pruned": await _step("idempotency_prune", services.idempotency.prune),
    }
    if any(counts.values()):
        logger.info("Maintenance sweep: %s", counts)
    return counts


async def run_periodic(services: Services, interval: float) -> None:
    """Sweep every *interval* seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        await sweep(services)
