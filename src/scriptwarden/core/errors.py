from __future__ import annotations


class SupervisorError(Exception):
    """Base class for errors reported by the task registry."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskNotFoundError(SupervisorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, f"Task {task_id} not found")


class TaskStateError(SupervisorError):
    """The task exists but is not in a state that allows the operation."""

    def __init__(self, task_id: str, status: str, message: str | None = None) -> None:
        super().__init__(task_id, message or f"Task {task_id} is not paused (status: {status})")
        self.status = status
