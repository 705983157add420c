"""
Task tree recalculation.

Applies a single todo mutation (toggle, add, delete) to an immutable
snapshot and re-derives every ancestor on the path back to the root:

    Todo → Subtask.progress → Task.progress → Workpackage.progress → Project.progress

Functions here are pure: they return new snapshots and never touch the
database. A missing workpackage, task, subtask or todo raises
``NotFoundError`` so the caller persists nothing.

Usage:
    from labops.services.task_tree import StatusPolicy, toggle_todo_in_workpackage

    wp = toggle_todo_in_workpackage(
        wp, "task-1", "sub-1", "todo-3", policy=StatusPolicy.MANUAL,
    )
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum

from labops.core.exceptions import NotFoundError, ValidationError
from labops.models.project import new_id
from labops.services.progress import aggregate, leaf_progress
from labops.services.snapshots import ProjectTree, Subtask, Task, Todo, Workpackage


class StatusPolicy(str, Enum):
    """How status follows progress.

    MANUAL:              status is only ever changed by a person.
    PROMOTE_ON_COMPLETE: reaching 100 marks the node done; a done node that
                         drops below 100 is demoted again.
    """

    MANUAL = "manual"
    PROMOTE_ON_COMPLETE = "promote_on_complete"

    @classmethod
    def parse(cls, value: StatusPolicy | str | None) -> StatusPolicy:
        if value is None or value == "":
            return cls.MANUAL
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown status policy: {value}",
                details={"allowed": [p.value for p in cls]},
            ) from None


# Labels used when the policy rewrites a status, per level.
_WORK_LABELS = ("done", "in-progress", "not-started")
_WORKPACKAGE_LABELS = ("completed", "active", "active")


def apply_status_policy(
    status: str,
    progress: int,
    policy: StatusPolicy,
    *,
    labels: tuple[str, str, str] = _WORK_LABELS,
) -> str:
    """Return the status a node should carry at *progress* under *policy*."""
    if policy is not StatusPolicy.PROMOTE_ON_COMPLETE:
        return status

    done, in_progress, not_started = labels
    if progress >= 100:
        return done
    if status == done:
        return not_started if progress == 0 else in_progress
    return status


def _now_iso(now: datetime | None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


# ── Node recalculation ───────────────────────────────────────────────────────

def recalculate_subtask(subtask: Subtask, *, policy: StatusPolicy = StatusPolicy.MANUAL) -> Subtask:
    """Derive progress from the todos; a subtask without todos sits at 0."""
    progress = leaf_progress(subtask.todos)
    status = apply_status_policy(subtask.status, progress, policy)
    if progress == subtask.progress and status == subtask.status:
        return subtask
    return replace(subtask, progress=progress, status=status)


def recalculate_task(task: Task, *, policy: StatusPolicy = StatusPolicy.MANUAL) -> Task:
    """Aggregate the subtasks' current progress into the task.

    A task that was never broken down into subtasks keeps its manually set
    progress and status.
    """
    if not task.subtasks:
        return task
    progress = aggregate(task.subtasks)
    status = apply_status_policy(task.status, progress, policy)
    if progress == task.progress and status == task.status:
        return task
    return replace(task, progress=progress, status=status)


def recalculate_workpackage(wp: Workpackage, *, policy: StatusPolicy = StatusPolicy.MANUAL) -> Workpackage:
    """Aggregate the tasks' current progress into the workpackage."""
    progress = aggregate(wp.tasks)
    status = apply_status_policy(wp.status, progress, policy, labels=_WORKPACKAGE_LABELS)
    if progress == wp.progress and status == wp.status:
        return wp
    return replace(wp, progress=progress, status=status)


def recalculate_project(project: ProjectTree) -> ProjectTree:
    """Aggregate the project's own workpackages. Project status is never derived."""
    progress = aggregate(wp for wp in project.workpackages if belongs_to_project(project, wp))
    if progress == project.progress:
        return project
    return replace(project, progress=progress)


def belongs_to_project(project: ProjectTree, wp: Workpackage) -> bool:
    """A workpackage counts toward *project* unless it names another project."""
    return wp.project_id is None or wp.project_id == project.id


# ── Path rewriting ───────────────────────────────────────────────────────────

def _edit_subtask(
    wp: Workpackage,
    task_id: str,
    subtask_id: str,
    edit: Callable[[Subtask], Subtask],
    policy: StatusPolicy,
) -> Workpackage:
    """Apply *edit* to one subtask and recompute the path up to *wp*."""
    tasks = list(wp.tasks)
    t_idx = next((i for i, t in enumerate(tasks) if t.id == task_id), None)
    if t_idx is None:
        raise NotFoundError("Task", task_id, scope=f"Workpackage {wp.id}")

    task = tasks[t_idx]
    subtasks = list(task.subtasks)
    s_idx = next((i for i, s in enumerate(subtasks) if s.id == subtask_id), None)
    if s_idx is None:
        raise NotFoundError("Subtask", subtask_id, scope=f"Task {task_id}")

    subtasks[s_idx] = recalculate_subtask(edit(subtasks[s_idx]), policy=policy)
    tasks[t_idx] = recalculate_task(replace(task, subtasks=tuple(subtasks)), policy=policy)
    return recalculate_workpackage(replace(wp, tasks=tuple(tasks)), policy=policy)


def _edit_workpackage(
    project: ProjectTree,
    workpackage_id: str,
    edit: Callable[[Workpackage], Workpackage],
) -> ProjectTree:
    workpackages = list(project.workpackages)
    idx = next((i for i, wp in enumerate(workpackages) if wp.id == workpackage_id), None)
    if idx is None or not belongs_to_project(project, workpackages[idx]):
        raise NotFoundError("Workpackage", workpackage_id, scope=f"Project {project.id}")

    workpackages[idx] = edit(workpackages[idx])
    return recalculate_project(replace(project, workpackages=tuple(workpackages)))


def _find_todo(subtask: Subtask, todo_id: str) -> int:
    for idx, todo in enumerate(subtask.todos):
        if todo.id == todo_id:
            return idx
    raise NotFoundError("Todo", todo_id, scope=f"Subtask {subtask.id}")


# ═══════════════════════════════════════════════════════════════════════════
#  WORKPACKAGE-SCOPED MUTATIONS
# ═══════════════════════════════════════════════════════════════════════════

def toggle_todo_in_workpackage(
    wp: Workpackage,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    policy: StatusPolicy = StatusPolicy.MANUAL,
    now: datetime | None = None,
) -> Workpackage:
    """Flip one todo's ``done`` flag and recompute its ancestors."""

    def _toggle(subtask: Subtask) -> Subtask:
        todos = list(subtask.todos)
        idx = _find_todo(subtask, todo_id)
        todo = todos[idx]
        done = not todo.done
        todos[idx] = replace(
            todo,
            done=done,
            completed_at=_now_iso(now) if done else None,
        )
        return replace(subtask, todos=tuple(todos))

    return _edit_subtask(wp, task_id, subtask_id, _toggle, policy)


def add_todo_to_workpackage(
    wp: Workpackage,
    task_id: str,
    subtask_id: str,
    text: str,
    *,
    todo_id: str | None = None,
    policy: StatusPolicy = StatusPolicy.MANUAL,
    now: datetime | None = None,
) -> Workpackage:
    """Append a new open todo to a subtask."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("Todo text is required", details={"field": "text"})

    def _add(subtask: Subtask) -> Subtask:
        todo_key = todo_id or new_id()
        if any(t.id == todo_key for t in subtask.todos):
            raise ValidationError(
                "Todo id already used in this subtask",
                details={"todo_id": todo_key, "subtask_id": subtask.id},
            )
        order = max((t.order for t in subtask.todos), default=-1) + 1
        todo = Todo(id=todo_key, text=text, done=False, created_at=_now_iso(now), order=order)
        return replace(subtask, todos=subtask.todos + (todo,))

    return _edit_subtask(wp, task_id, subtask_id, _add, policy)


def delete_todo_from_workpackage(
    wp: Workpackage,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    policy: StatusPolicy = StatusPolicy.MANUAL,
) -> Workpackage:
    """Remove one todo by id."""

    def _delete(subtask: Subtask) -> Subtask:
        idx = _find_todo(subtask, todo_id)
        return replace(subtask, todos=subtask.todos[:idx] + subtask.todos[idx + 1:])

    return _edit_subtask(wp, task_id, subtask_id, _delete, policy)


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECT-SCOPED MUTATIONS
# ═══════════════════════════════════════════════════════════════════════════

def toggle_todo(
    project: ProjectTree,
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    policy: StatusPolicy = StatusPolicy.MANUAL,
    now: datetime | None = None,
) -> ProjectTree:
    return _edit_workpackage(
        project, workpackage_id,
        lambda wp: toggle_todo_in_workpackage(
            wp, task_id, subtask_id, todo_id, policy=policy, now=now,
        ),
    )


def add_todo(
    project: ProjectTree,
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    text: str,
    *,
    todo_id: str | None = None,
    policy: StatusPolicy = StatusPolicy.MANUAL,
    now: datetime | None = None,
) -> ProjectTree:
    return _edit_workpackage(
        project, workpackage_id,
        lambda wp: add_todo_to_workpackage(
            wp, task_id, subtask_id, text, todo_id=todo_id, policy=policy, now=now,
        ),
    )


def delete_todo(
    project: ProjectTree,
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    policy: StatusPolicy = StatusPolicy.MANUAL,
) -> ProjectTree:
    return _edit_workpackage(
        project, workpackage_id,
        lambda wp: delete_todo_from_workpackage(
            wp, task_id, subtask_id, todo_id, policy=policy,
        ),
    )


# ── Stats ────────────────────────────────────────────────────────────────────

def project_stats(project: ProjectTree) -> dict:
    """Count totals and completed nodes at every level of a project."""
    counts = {
        level: {"total": 0, "completed": 0}
        for level in ("todos", "subtasks", "tasks", "workpackages")
    }

    def _count(level: str, completed: bool) -> None:
        counts[level]["total"] += 1
        if completed:
            counts[level]["completed"] += 1

    for wp in project.workpackages:
        _count("workpackages", wp.progress == 100)
        for task in wp.tasks:
            _count("tasks", task.progress == 100)
            for subtask in task.subtasks:
                _count("subtasks", subtask.progress == 100)
                for todo in subtask.todos:
                    _count("todos", todo.done)

    counts["overall_progress"] = project.progress
    return counts
