"""
Active Job Reconciler -- Periodic Maintenance Job.

This module provides a periodic job that:

1. Clears ``active_job_id`` on providers whose job is terminal, missing, or
   assigned to somebody else, so they become eligible again.
2. Purges expired rows from the ephemeral store (idempotency keys, OTPs).

Completion and cancellation already release the provider in the same
transaction; this sweep only repairs markers left behind by crashes or
manual data fixes.

Usage with a simple cron runner::

    python -m src.jobs.activeJobReconciler
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.timeutils import utcnow
from src.services.assignmentArbiter import reconcile_active_jobs
from src.services.ephemeralStore import purge_expired

logger = logging.getLogger(__name__)


async def run_reconciliation(
    db: AsyncSession,
    tenant_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Run one reconciliation pass.

    Args:
        db: Async database session.
        tenant_code: Limit the provider sweep to one tenant.
        now: Reference time for ephemeral expiry (for testing).

    Returns:
        Counts of released providers and purged ephemeral entries.
    """
    now = now or utcnow()
    logger.info("Starting active job reconciliation (tenant=%s)", tenant_code or "all")

    released = await reconcile_active_jobs(db, tenant_code)
    purged = await purge_expired(db, now)

    logger.info(
        "Reconciliation completed. Providers released: %d. Ephemeral entries purged: %d.",
        released,
        purged,
    )
    return {"providers_released": released, "ephemeral_purged": purged}


# ---------------------------------------------------------------------------
# CLI entry point (for manual runs / simple cron)
# ---------------------------------------------------------------------------

async def _cli_main() -> None:
    """Entry point for running the reconciler from the command line.

    Creates its own database session via the application session factory.
    """
    from src.api.deps import async_session_factory

    async with async_session_factory() as session:
        try:
            result = await run_reconciliation(session)
            await session.commit()
            print(f"Reconciliation completed: {result}")  # noqa: T201
        except Exception:
            await session.rollback()
            logger.exception("Reconciliation failed")
            raise
        finally:
            await session.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_cli_main())
