"""
Per-thread session state and the deltas tool handlers return.

Tool handlers never mutate SessionState. They receive the current value and
return a StateDelta; the loop controller folds deltas back in with apply().
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class StateDelta:
    """Changes produced by one tool call."""
    written: Dict[str, str] = field(default_factory=dict)
    # Paths whose sandbox content is unknown after a failed write
    invalidated: List[str] = field(default_factory=list)
    main_task_completed: Optional[bool] = None
    has_pending_write_errors: Optional[bool] = None
    last_read_snapshot: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.written
            and not self.invalidated
            and self.main_task_completed is None
            and self.has_pending_write_errors is None
            and self.last_read_snapshot is None
        )


@dataclass(frozen=True)
class SessionState:
    written_files: Dict[str, str] = field(default_factory=dict)
    last_read_snapshot: Optional[str] = None
    main_task_completed: bool = False
    has_pending_write_errors: bool = False
    turns_taken: int = 0

    def apply(self, delta: StateDelta) -> "SessionState":
        """Return a new state with `delta` folded in."""
        if delta.is_empty:
            return self
        written = dict(self.written_files)
        for path in delta.invalidated:
            written.pop(path, None)
        written.update(delta.written)
        return replace(
            self,
            written_files=written,
            main_task_completed=(
                self.main_task_completed if delta.main_task_completed is None
                else delta.main_task_completed
            ),
            has_pending_write_errors=(
                self.has_pending_write_errors if delta.has_pending_write_errors is None
                else delta.has_pending_write_errors
            ),
            last_read_snapshot=(
                self.last_read_snapshot if delta.last_read_snapshot is None
                else delta.last_read_snapshot
            ),
        )

    def next_turn(self) -> "SessionState":
        """Advance the turn counter and drop the transient read snapshot."""
        return replace(self, turns_taken=self.turns_taken + 1, last_read_snapshot=None)

    def reset_completion(self) -> "SessionState":
        return replace(self, main_task_completed=False, has_pending_write_errors=False)

    def to_dict(self) -> Dict[str, Any]:
        # last_read_snapshot is transient and never persisted
        return {
            "written_files": dict(self.written_files),
            "main_task_completed": self.main_task_completed,
            "has_pending_write_errors": self.has_pending_write_errors,
            "turns_taken": self.turns_taken,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionState":
        data = data or {}
        return cls(
            written_files=dict(data.get("written_files", {}) or {}),
            main_task_completed=bool(data.get("main_task_completed", False)),
            has_pending_write_errors=bool(data.get("has_pending_write_errors", False)),
            turns_taken=int(data.get("turns_taken", 0) or 0),
        )


def merge_deltas(state: SessionState, deltas: List[StateDelta]) -> SessionState:
    """Fold deltas in request order, so the last write to a path wins."""
    for delta in deltas:
        state = state.apply(delta)
    return state
