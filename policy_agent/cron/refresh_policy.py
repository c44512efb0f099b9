from __future__ import annotations

"""Cron job: run a single policy refresh tick and exit.

For hosts that schedule the agent externally (systemd timers, cron) instead
of running the long-lived app::

    python -m policy_agent.cron.refresh_policy

The cached snapshot is written only when the fetched policy differs from the
one already on disk.  Exits non-zero when the refresh failed *and* there is
no cached snapshot to fall back on.
"""

import asyncio
import sys

from policy_agent.models import TickResult
from policy_agent.settings import load_settings
from policy_agent.utils.dependencies import build_policy_poller
from policy_agent.utils.logger import configure_logging, logger


async def _run() -> int:
    settings = load_settings()
    poller = build_policy_poller(settings)
    result = await poller.refresh()

    logger.info("policy.refresh", extra={"result": result.value, "cache_file": settings.cache_file})
    if result is TickResult.failed and poller.snapshot is None:
        return 1
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(_run()))
