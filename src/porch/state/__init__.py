from porch.state.store import (
    GateStatus,
    HistoryEntry,
    ProjectState,
    TransitionNote,
    find_status_path,
    iter_status_paths,
    new_project_state,
    read_state,
    state_exists,
    status_path_for,
    utcnow_iso,
    write_state,
)

__all__ = [
    "GateStatus",
    "HistoryEntry",
    "ProjectState",
    "TransitionNote",
    "find_status_path",
    "iter_status_paths",
    "new_project_state",
    "read_state",
    "state_exists",
    "status_path_for",
    "utcnow_iso",
    "write_state",
]
