"""
Workpackage service.

Every task-tree mutation follows the same path:

    load snapshot → pure recalculation → version-checked workpackage write
    → project progress rewrite → audit row → single commit

A failing step rolls the whole change back; a stale ``expected_version``
is rejected before anything is written.

Project and workpackage creation follow the usual flush-only rule and leave
commit to the caller.
"""

import logging
from dataclasses import replace

from flask import current_app

from labops.core.exceptions import ValidationError
from labops.models.audit import write_audit
from labops.models.project import (
    IMPORTANCE_LEVELS,
    PROJECT_STATUSES,
    WORKPACKAGE_STATUSES,
    new_id,
)
from labops.services import repository
from labops.services.helpers.unit_of_work import run_in_unit_of_work
from labops.services.rollup import recompute_project, recompute_project_progress, recompute_workpackage
from labops.services.snapshots import Workpackage, tasks_from_document
from labops.services.task_tree import (
    StatusPolicy,
    add_todo_to_workpackage,
    delete_todo_from_workpackage,
    project_stats,
    toggle_todo_in_workpackage,
)

logger = logging.getLogger(__name__)


def _policy() -> StatusPolicy:
    return StatusPolicy.parse(current_app.config.get("TASK_STATUS_POLICY"))


def _parse_tasks(tasks) -> tuple:
    if tasks is None:
        return ()
    if not isinstance(tasks, list):
        raise ValidationError("tasks must be a list", details={"field": "tasks"})
    return tasks_from_document(tasks)


def _refresh_project_progress(project_id: str) -> int:
    """Rewrite the project's stored progress from its workpackages."""
    project = repository.get_project(project_id)
    progress = recompute_project_progress(project, project.workpackages)
    repository.update_project_progress(project_id, progress)
    return progress


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECTS
# ═══════════════════════════════════════════════════════════════════════════

def create_project(data: dict):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"field": "name"})
    status = data.get("status") or "planning"
    if status not in PROJECT_STATUSES:
        raise ValidationError("Invalid project status", details={"status": status})

    project = repository.create_project_row({**data, "name": name, "status": status})
    logger.info("Project %s created", project.id, extra={"project_id": project.id})
    return project


def get_project_tree(project_id: str) -> dict:
    """Project with its workpackages and completion counts."""
    project = repository.get_project(project_id)
    result = project.to_dict()
    result["stats"] = project_stats(project)
    return result


# ═══════════════════════════════════════════════════════════════════════════
#  WORKPACKAGES
# ═══════════════════════════════════════════════════════════════════════════

def create_workpackage(project_id: str, data: dict):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"field": "name"})
    status = data.get("status") or "planning"
    if status not in WORKPACKAGE_STATUSES:
        raise ValidationError("Invalid workpackage status", details={"status": status})
    importance = data.get("importance") or "medium"
    if importance not in IMPORTANCE_LEVELS:
        raise ValidationError("Invalid importance", details={"importance": importance})

    wp = recompute_workpackage(
        Workpackage(
            id=data.get("id") or new_id(),
            project_id=project_id,
            name=name,
            status=status,
            tasks=_parse_tasks(data.get("tasks")),
        ),
        policy=_policy(),
    )
    row = repository.create_workpackage_row(
        project_id, {**data, "id": wp.id, "name": name, "importance": importance}, wp,
    )
    _refresh_project_progress(project_id)
    logger.info(
        "Workpackage %s created (progress=%d)", row.id, row.progress,
        extra={"workpackage_id": row.id, "project_id": project_id},
    )
    return row


def get_workpackage(workpackage_id: str) -> dict:
    return repository.get_workpackage(workpackage_id).to_dict()


def _write(
    workpackage_id: str,
    mutate,
    *,
    action: str,
    expected_version: int | None,
    actor: str,
    details: dict,
) -> dict:
    """Run one snapshot mutation through the persistence path."""

    def _work():
        wp = repository.get_workpackage(workpackage_id)
        updated = mutate(wp)
        version = repository.update_workpackage_with_progress(
            workpackage_id, updated, expected_version=expected_version,
        )
        project_progress = _refresh_project_progress(wp.project_id)
        write_audit(
            entity_type="workpackage",
            entity_id=workpackage_id,
            action=action,
            actor=actor,
            project_id=wp.project_id,
            diff={**details, "progress": {"old": wp.progress, "new": updated.progress}},
        )
        logger.info(
            "%s on workpackage %s: progress %d → %d (v%s)",
            action, workpackage_id, wp.progress, updated.progress, version,
            extra={"workpackage_id": workpackage_id, "project_id": wp.project_id},
        )
        result = replace(updated, version=version).to_dict()
        result["project_progress"] = project_progress
        return result

    return run_in_unit_of_work(_work, resource="Workpackage", resource_id=workpackage_id)


def replace_tasks(
    workpackage_id: str,
    tasks: list,
    expected_version: int | None = None,
    *,
    actor: str = "system",
) -> dict:
    """Replace the whole task document; every derived field is recomputed."""
    new_tasks = _parse_tasks(tasks)
    policy = _policy()
    return _write(
        workpackage_id,
        lambda wp: recompute_workpackage(replace(wp, tasks=new_tasks), policy=policy),
        action="workpackage.replace_tasks",
        expected_version=expected_version,
        actor=actor,
        details={"task_count": len(new_tasks)},
    )


def toggle_todo(
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    expected_version: int | None = None,
    actor: str = "system",
) -> dict:
    policy = _policy()
    return _write(
        workpackage_id,
        lambda wp: toggle_todo_in_workpackage(wp, task_id, subtask_id, todo_id, policy=policy),
        action="todo.toggle",
        expected_version=expected_version,
        actor=actor,
        details={"task_id": task_id, "subtask_id": subtask_id, "todo_id": todo_id},
    )


def add_todo(
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    text: str,
    *,
    todo_id: str | None = None,
    expected_version: int | None = None,
    actor: str = "system",
) -> dict:
    policy = _policy()
    todo_id = todo_id or new_id()
    return _write(
        workpackage_id,
        lambda wp: add_todo_to_workpackage(
            wp, task_id, subtask_id, text, todo_id=todo_id, policy=policy,
        ),
        action="todo.add",
        expected_version=expected_version,
        actor=actor,
        details={"task_id": task_id, "subtask_id": subtask_id, "todo_id": todo_id},
    )


def delete_todo(
    workpackage_id: str,
    task_id: str,
    subtask_id: str,
    todo_id: str,
    *,
    expected_version: int | None = None,
    actor: str = "system",
) -> dict:
    policy = _policy()
    return _write(
        workpackage_id,
        lambda wp: delete_todo_from_workpackage(wp, task_id, subtask_id, todo_id, policy=policy),
        action="todo.delete",
        expected_version=expected_version,
        actor=actor,
        details={"task_id": task_id, "subtask_id": subtask_id, "todo_id": todo_id},
    )


def recalculate_all() -> dict:
    """Recompute every workpackage and project and store what changed."""
    policy = _policy()

    def _work():
        project_count = 0
        updated_wps = 0
        for project_id in repository.all_project_ids():
            project = repository.get_project(project_id)
            recomputed = recompute_project(project, policy=policy)
            for old, new in zip(project.workpackages, recomputed.workpackages):
                if new != old:
                    repository.update_workpackage_with_progress(new.id, new)
                    updated_wps += 1
            repository.update_project_progress(project_id, recomputed.progress)
            project_count += 1
        return {"projects": project_count, "workpackages_updated": updated_wps}

    result = run_in_unit_of_work(_work, resource="Project", resource_id="*")
    logger.info(
        "Recalculated %d projects, %d workpackages changed",
        result["projects"], result["workpackages_updated"],
    )
    return result
