"""
Error taxonomy for Hermes.

Only configuration problems and an empty target set are fatal to a scan.
Resolution failures are collected per token, socket failures are
classified per attempt, and descriptor pressure is reported as a warning.
"""

from typing import List, Optional


class HermesError(Exception):
    """Base class for every error raised by Hermes."""


class ConfigError(HermesError, ValueError):
    """Invalid scan options or port specification. Raised before scanning."""


class ResolutionError(HermesError):
    """
    A single target token could not be turned into addresses.

    These are recorded and returned alongside the resolved hosts rather
    than raised, so one bad token never stops the rest from resolving.
    """

    def __init__(self, token: str, reason: str):
        super().__init__(f"{token}: {reason}")
        self.token = token
        self.reason = reason

    def __eq__(self, other):
        if not isinstance(other, ResolutionError):
            return NotImplemented
        return (self.token, self.reason) == (other.token, other.reason)

    def __hash__(self):
        return hash((self.token, self.reason))


class NoTargetsError(HermesError):
    """Resolution finished with no usable hosts at all."""

    def __init__(self, errors: Optional[List[ResolutionError]] = None):
        self.errors = list(errors or [])
        detail = "; ".join(str(e) for e in self.errors[:5])
        message = "No targets could be resolved"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class ResourceExhaustionWarning(UserWarning):
    """The descriptor ceiling forced the batch size below a usable minimum."""
