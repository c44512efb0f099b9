"""Exception hierarchy for the policy agent.

Only :class:`ConfigurationError` is meant to cross the agent's boundary.
Fetch failures are absorbed by the poller, store failures by the TLS helper.
"""

from __future__ import annotations


class PolicyAgentError(Exception):
    """Base class for all policy agent errors."""

    def __init__(self, message: str, code: str = "POLICY_AGENT_ERROR") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(PolicyAgentError):
    """Raised when the agent is misconfigured. Fatal at startup."""

    def __init__(self, message: str, code: str = "CONFIGURATION_ERROR") -> None:
        super().__init__(message, code=code)


class SourceNotFoundError(ConfigurationError):
    """Raised when a user/group source is missing or unreadable.

    Attributes:
        locator: The file path or URL that could not be read.
    """

    def __init__(self, locator: str, reason: str | None = None) -> None:
        reason_text = f": {reason}" if reason else ""
        super().__init__(
            f"User/group source '{locator}' does not exist or is not readable{reason_text}",
            code="SOURCE_NOT_FOUND",
        )
        self.locator = locator


class SourceParseError(PolicyAgentError):
    """Raised when a user/group source exists but cannot be parsed."""

    def __init__(self, locator: str, reason: str) -> None:
        super().__init__(
            f"Unable to parse user/group source '{locator}': {reason}",
            code="SOURCE_PARSE_ERROR",
        )
        self.locator = locator
        self.reason = reason


class FetchError(PolicyAgentError):
    """Transient failure fetching state from the remote authority.

    Covers unreachable hosts, non-success responses and malformed bodies alike.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, code="FETCH_FAILED")
        self.status_code = status_code


class StoreLoadError(PolicyAgentError):
    """Raised internally when a key-store or trust-store cannot be loaded."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Unable to load store '{path}': {reason}", code="STORE_LOAD_FAILED")
        self.path = path
        self.reason = reason
