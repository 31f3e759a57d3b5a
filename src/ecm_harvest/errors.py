"""Error taxonomy shared by dispatch, batch and import workflows."""

from __future__ import annotations


class HarvestError(RuntimeError):
    """Base class for orchestration errors with a stable machine code."""

    code = "harvest_error"


class DispatchError(HarvestError):
    """Item-scoped failure: recorded on the item, never aborts a loop."""

    code = "dispatch_error"


class ContextLoadTimeout(DispatchError):
    """Execution context did not become ready in time."""

    code = "context_load_timeout"


class ContextUnavailable(DispatchError):
    """Execution context vanished while it was being used."""

    code = "context_unavailable"


class AgentReportedFailure(DispatchError):
    """Extraction agent replied with ``success: false``."""

    code = "agent_reported_failure"


class ResponseTimeout(DispatchError):
    """Extraction agent never replied within the response bound."""

    code = "response_timeout"


class DriverError(DispatchError):
    """Driver could not create, feed or inspect a context."""

    code = "driver_error"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class LockAlreadyHeld(HarvestError):
    """An exclusive operation is already in flight."""

    code = "lock_already_held"

    def __init__(self, name: str, holder: str | None = None) -> None:
        busy = holder or name
        super().__init__(f"Cannot start {name!r}: another operation ({busy!r}) is running.")
        self.name = name
        self.holder = busy


class ProtocolViolation(HarvestError):
    """External command is not valid for the current workflow stage."""

    code = "protocol_violation"


class PersistenceWriteFailure(HarvestError):
    """Workflow state could not be written; resumability is at risk."""

    code = "persistence_write_failure"


class OriginatorUnreachable(HarvestError):
    """The caller that started a workflow can no longer be reached."""

    code = "originator_unreachable"
