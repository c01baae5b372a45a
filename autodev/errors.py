"""Error taxonomy shared by every autodev component.

All failures raised inside the daemon derive from :class:`AutodevError`.  The
exception carries a ``kind`` tag instead of relying on subclass checks, so each
boundary (the cycle loop, the CLI, the health endpoint) can map errors with a
single table lookup:

    kind       severity  raised by
    ---------  --------  ------------------------------------------------
    CONFIG     fatal     config loading, daemon initialization
    UPSTREAM   error     hosting API calls (strict gateway variants)
    AGENT      error     task discovery and coding-agent invocations
    WORKER     warning   a single worker task (never aborts the batch)
    MERGE      warning   a single merge candidate (never aborts the sequence)
"""

from enum import Enum


class ErrorKind(str, Enum):
    CONFIG = "config"
    UPSTREAM = "upstream"
    AGENT = "agent"
    WORKER = "worker"
    MERGE = "merge"


class Severity(str, Enum):
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"


_DEFAULT_SEVERITY: dict[ErrorKind, Severity] = {
    ErrorKind.CONFIG: Severity.FATAL,
    ErrorKind.UPSTREAM: Severity.ERROR,
    ErrorKind.AGENT: Severity.ERROR,
    ErrorKind.WORKER: Severity.WARNING,
    ErrorKind.MERGE: Severity.WARNING,
}

_DEFAULT_HINT: dict[ErrorKind, str] = {
    ErrorKind.CONFIG: "fix the configuration or credentials and restart",
    ErrorKind.UPSTREAM: "hosting API impaired; retried next cycle",
    ErrorKind.AGENT: "agent call failed; cycle continues with existing issues",
    ErrorKind.WORKER: "issue labelled needs-review",
    ErrorKind.MERGE: "PR left open for manual merge",
}

# Prefix used when an error is recorded in CycleResult.errors
_CYCLE_PREFIX: dict[ErrorKind, str] = {
    ErrorKind.CONFIG: "Configuration error",
    ErrorKind.UPSTREAM: "Hosting API error",
    ErrorKind.AGENT: "Agent error",
    ErrorKind.WORKER: "Worker error",
    ErrorKind.MERGE: "Merge error",
}


class AutodevError(Exception):
    """Base error; ``kind`` decides how callers react to it."""

    kind: ErrorKind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        severity: Severity | None = None,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.severity = severity or _DEFAULT_SEVERITY[self.kind]
        self.recovery_hint = recovery_hint or _DEFAULT_HINT[self.kind]

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.FATAL


class ConfigError(AutodevError):
    kind = ErrorKind.CONFIG


class UpstreamError(AutodevError):
    """A hosting API call failed or was short-circuited by an open circuit."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        endpoint: str = "",
        status: int | None = None,
        circuit_open: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.endpoint = endpoint
        self.status = status
        self.circuit_open = circuit_open


class AgentError(AutodevError):
    kind = ErrorKind.AGENT


class WorkerError(AutodevError):
    kind = ErrorKind.WORKER


class MergeError(AutodevError):
    kind = ErrorKind.MERGE


def describe_error(exc: BaseException) -> str:
    """Render *exc* as a one-line entry for ``CycleResult.errors``."""
    if isinstance(exc, AutodevError):
        return f"{_CYCLE_PREFIX[exc.kind]}: {exc} ({exc.recovery_hint})"
    return f"Unexpected {type(exc).__name__}: {exc}"
