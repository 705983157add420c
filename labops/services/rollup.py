"""
Workpackage and project roll-up.

Full-cascade recomputation, used when a whole task document is replaced
and by the ``recalc-progress`` CLI command. Single-todo edits go through
``task_tree`` which only walks the affected path.

Project progress is persisted eagerly: whenever a workpackage row is
written, the owning project's ``progress`` is recomputed and stored in
the same database transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from labops.services.progress import aggregate
from labops.services.snapshots import ProjectTree, Workpackage
from labops.services.task_tree import (
    StatusPolicy,
    belongs_to_project,
    recalculate_subtask,
    recalculate_task,
    recalculate_workpackage,
)


def recompute_workpackage(wp: Workpackage, *, policy: StatusPolicy = StatusPolicy.MANUAL) -> Workpackage:
    """Recompute every subtask and task, then the workpackage itself."""
    tasks = []
    for task in wp.tasks:
        subtasks = tuple(recalculate_subtask(s, policy=policy) for s in task.subtasks)
        tasks.append(recalculate_task(replace(task, subtasks=subtasks), policy=policy))
    return recalculate_workpackage(replace(wp, tasks=tuple(tasks)), policy=policy)


def recompute_project_progress(project: ProjectTree, workpackages: Iterable[Workpackage]) -> int:
    """Aggregate the workpackages that belong to *project*.

    Workpackages that name another project are ignored, the same rule the
    single-todo path applies.
    """
    return aggregate(wp for wp in workpackages if belongs_to_project(project, wp))


def recompute_project(project: ProjectTree, *, policy: StatusPolicy = StatusPolicy.MANUAL) -> ProjectTree:
    workpackages = tuple(recompute_workpackage(wp, policy=policy) for wp in project.workpackages)
    updated = replace(project, workpackages=workpackages)
    return replace(updated, progress=recompute_project_progress(updated, workpackages))
