"""Top-level package for the policy agent: TLS channel, poller and local cache."""

__all__ = [
    "APP_ENV",
    "CACHE_DIR_DEFAULT",
]

from dotenv import load_dotenv
import os
load_dotenv()

# Environment variables
APP_ENV = os.getenv("APP_ENV", "production")

# Default location for the last-known-good policy cache when none is configured
CACHE_DIR_DEFAULT = os.getenv("POLICY_AGENT_CACHE_DIR", os.path.join(os.path.expanduser("~"), ".policy_agent"))
