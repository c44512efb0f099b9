from __future__ import annotations

"""Agent configuration (env → settings model).

Every knob is read from a ``POLICY_AGENT_*`` environment variable (a ``.env``
file is honoured, see ``policy_agent/__init__.py``).  Passwords are *never*
configured here – only the credential-store locators the secret resolver
understands.
"""

import math
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from policy_agent import CACHE_DIR_DEFAULT
from policy_agent.errors import ConfigurationError
from policy_agent.models import KEYSTORE_ALIAS, TRUSTSTORE_ALIAS, SecureChannelConfig
from policy_agent.utils.utils import get_env

__all__ = ["AgentSettings", "load_settings", "ENV_PREFIX"]

ENV_PREFIX = "POLICY_AGENT_"

DEFAULT_POLL_SECONDS = 30.0


class AgentSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy_url: Optional[str] = None
    poll_seconds: float = DEFAULT_POLL_SECONDS
    http_timeout: float = Field(10.0, gt=0, allow_inf_nan=False)
    cache_file: str = os.path.join(CACHE_DIR_DEFAULT, "policy-cache.json")

    keystore: Optional[str] = None
    keystore_type: str = "pkcs12"
    keystore_credential: Optional[str] = None
    truststore: Optional[str] = None
    truststore_type: str = "pkcs12"
    truststore_credential: Optional[str] = None

    usergroup_file: Optional[str] = None
    usergroup_delimiter: str = ","

    @field_validator("poll_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("poll interval must be finite and strictly positive")
        return value

    @field_validator("usergroup_delimiter")
    @classmethod
    def _single_char(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("delimiter must be exactly one character")
        return value

    def channel_config(self) -> SecureChannelConfig:
        return SecureChannelConfig(
            keystore_path=self.keystore,
            keystore_type=self.keystore_type,
            keystore_credential=self.keystore_credential,
            keystore_alias=KEYSTORE_ALIAS,
            truststore_path=self.truststore,
            truststore_type=self.truststore_type,
            truststore_credential=self.truststore_credential,
            truststore_alias=TRUSTSTORE_ALIAS,
        )


def load_settings(**overrides) -> AgentSettings:
    """Build :class:`AgentSettings` from the environment.

    Keyword ``overrides`` win over env values. Invalid values raise
    :class:`ConfigurationError`.
    """
    values = {}
    for name in AgentSettings.model_fields:
        key = f"{ENV_PREFIX}{name.upper()}"
        # a tab delimiter must survive, so it is read unstripped
        raw = (os.getenv(key) or None) if name == "usergroup_delimiter" else get_env(key)
        if raw is not None:
            values[name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AgentSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid policy agent configuration: {exc}") from exc
