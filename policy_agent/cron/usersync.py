from __future__ import annotations

"""Cron job: read the user/group source once and push it to a sink.

    python -m policy_agent.cron.usersync [path-or-url]

The source defaults to ``POLICY_AGENT_USERGROUP_FILE``.  The bundled sink only
logs each user with its groups, which makes this a dry run of what a real
sink would receive.
"""

import sys
from typing import List, Optional

from policy_agent.errors import ConfigurationError
from policy_agent.models import UserGroupSink
from policy_agent.settings import load_settings
from policy_agent.utils.dependencies import LoggingSink
from policy_agent.utils.logger import configure_logging, logger
from policy_agent.utils.source_reader import UserGroupSourceReader


def run(argv: List[str], sink: Optional[UserGroupSink] = None) -> int:
    settings = load_settings(usergroup_file=argv[0] if argv else None)
    if not settings.usergroup_file:
        raise ConfigurationError(
            "User/group source file is not configured; set POLICY_AGENT_USERGROUP_FILE "
            "or pass it as the first argument"
        )

    sink = sink or LoggingSink()
    logger.info(f"initializing sink: {type(sink).__name__}")

    reader = UserGroupSourceReader(delimiter=settings.usergroup_delimiter, timeout=settings.http_timeout)
    count = reader.update_sink(settings.usergroup_file, sink)
    logger.info(f"Synced {count} users from {settings.usergroup_file}")
    return count


if __name__ == "__main__":
    configure_logging()
    try:
        run(sys.argv[1:])
    except ConfigurationError as exc:
        logger.error(exc.message)
        sys.exit(2)
