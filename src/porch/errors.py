from __future__ import annotations


class PorchError(RuntimeError):
    """Base class for failures surfaced by the orchestrator."""

    category: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigurationError(PorchError):
    category = "configuration"


class ProtocolNotFound(ConfigurationError):
    def __init__(self, protocol_name: str, searched: list[str]) -> None:
        super().__init__(
            f"Protocol '{protocol_name}' not found. Searched: {', '.join(searched) or 'nothing'}"
        )
        self.protocol_name = protocol_name
        self.searched = searched


class ProtocolParseError(ConfigurationError):
    """Raised when a protocol file is not valid JSON."""


class ProtocolSchemaError(ConfigurationError):
    """Raised when a protocol definition is missing required structure."""


class PlanFileNotFound(ConfigurationError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Plan file not found: {path}")
        self.path = path


class StateCorrupt(PorchError):
    category = "state"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Project state at {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason


class ProjectNotFound(PorchError):
    category = "not_found"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} not found.")
        self.project_id = project_id


class ProjectExists(PorchError):
    category = "state"

    def __init__(self, project_id: str, path: str) -> None:
        super().__init__(f"Project {project_id} already exists at {path}.")
        self.project_id = project_id
        self.path = path


class GateError(PorchError):
    category = "gate"


class UnknownGate(GateError):
    def __init__(self, gate_name: str, expected: str | None) -> None:
        detail = f"expected '{expected}'" if expected else "current phase has no gate"
        super().__init__(f"Unknown gate: {gate_name} ({detail})")
        self.gate_name = gate_name
        self.expected = expected


class GateNotPending(GateError):
    def __init__(self, gate_name: str, status: str | None) -> None:
        super().__init__(
            f"Gate {gate_name} is not awaiting approval (status: {status or 'not requested'})."
        )
        self.gate_name = gate_name
        self.status = status
