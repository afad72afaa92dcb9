"""Exception types raised by the Ralph engine."""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all Ralph errors."""


class PrdValidationError(RalphError, ValueError):
    """Raised when a PRD document is malformed."""


class ConfigError(RalphError, ValueError):
    """Raised when a configuration file cannot be used."""


class ThreadCorruptedError(RalphError):
    """Raised when a persisted or in-memory thread is structurally invalid.

    A corrupted thread is fatal for the run: it is surfaced to the operator
    instead of silently starting a fresh thread.
    """


class ResumeError(RalphError):
    """Raised when a thread cannot be resumed in the requested way."""


class AgentInvocationError(RalphError):
    """Raised when an agent process could not be started or talked to.

    The dispatch loop converts this into a recoverable ``error`` event.
    """
