"""Exceptions that cross component boundaries.

Tool-level failures are not exceptions: above the invoker they travel as
`ToolErr` values and are fed back to the reasoning loop as observations.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for errors raised by the agentic core."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class SessionUnavailable(AgentError):
    """The state store could not be reached; fatal to the turn."""


class ReasoningOracleError(AgentError):
    """The reasoning oracle kept failing after all retries."""


class TurnDeadlineExceeded(AgentError):
    """The turn ran past its hard deadline; nothing was committed."""


class CredentialError(AgentError):
    """A short-lived tool credential could not be issued."""


class UnknownToolError(AgentError, KeyError):
    """No tool is registered under the requested name."""

    def __str__(self) -> str:
        return self.message
