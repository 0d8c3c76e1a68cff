"""Scheduler exception hierarchy."""

from __future__ import annotations

from typing import List, Optional, Tuple


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class SchedulerConfigurationError(SchedulerError):
    """Raised at construction time when a required dependency is missing."""


class InvalidScheduleError(SchedulerError, ValueError):
    pass


class InvalidWalletRefError(SchedulerError, ValueError):
    pass


class HireNotFoundError(SchedulerError, LookupError):
    def __init__(self, hire_id: str):
        super().__init__(f"Hire not found: {hire_id}")
        self.hire_id = hire_id


class HireCanceledError(SchedulerError):
    def __init__(self, hire_id: str):
        super().__init__(f"Hire is canceled: {hire_id}")
        self.hire_id = hire_id


class AgentCardError(SchedulerError):
    """The payload is not a usable agent card."""


class AgentCardFetchError(AgentCardError):
    """No candidate URL produced a valid agent card.

    ``attempts`` holds one ``(url, reason)`` pair per candidate probed.
    """

    def __init__(self, base_url: str, attempts: List[Tuple[str, str]]):
        self.base_url = base_url
        self.attempts = list(attempts)
        tried = ", ".join(f"{url} ({reason})" for url, reason in self.attempts)
        super().__init__(f"Failed to fetch Agent Card for {base_url}. Tried: {tried}")


class WalletResolutionError(SchedulerError):
    def __init__(self, wallet_id: str, reason: Optional[str] = None):
        message = f"Failed to resolve wallet {wallet_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.wallet_id = wallet_id


class InvokeError(SchedulerError):
    """The remote entrypoint call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnknownEntrypointError(SchedulerError, LookupError):
    def __init__(self, entrypoint_key: str, available: List[str]):
        super().__init__(
            f"Entrypoint {entrypoint_key!r} not found in agent card (available: {', '.join(available) or 'none'})"
        )
        self.entrypoint_key = entrypoint_key
        self.available = list(available)
