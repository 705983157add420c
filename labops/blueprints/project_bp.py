"""
Project / workpackage blueprint.

Endpoints:
    POST   /api/v1/projects                                   create a project
    GET    /api/v1/projects                                   list projects
    GET    /api/v1/projects/<project_id>                      project tree + stats
    POST   /api/v1/projects/<project_id>/workpackages         create a workpackage
    GET    /api/v1/workpackages/<wp_id>                       workpackage + task document
    PUT    /api/v1/workpackages/<wp_id>/tasks                 replace the task document
    POST   /api/v1/workpackages/<wp_id>/tasks/<task_id>/subtasks/<subtask_id>/todos
    PATCH  /api/v1/workpackages/<wp_id>/tasks/<task_id>/subtasks/<subtask_id>/todos/<todo_id>/toggle
    DELETE /api/v1/workpackages/<wp_id>/tasks/<task_id>/subtasks/<subtask_id>/todos/<todo_id>

Workpackage writes accept ``expected_version`` (body, or query string on
DELETE); a stale version answers 409 and nothing is written.
Todo and task-document writes are committed by the service; creates are
committed here.
"""

import logging

from flask import Blueprint, jsonify, request

from labops.blueprints import json_body, optional_int, paginate_query, register_error_handlers
from labops.models import db
from labops.models.project import Project
from labops.services import workpackage_service as wps
from labops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

project_bp = Blueprint("projects", __name__, url_prefix="/api/v1")
register_error_handlers(project_bp)

_TODO_PATH = "/workpackages/<wp_id>/tasks/<task_id>/subtasks/<subtask_id>/todos"


def _actor(data=None):
    return (data or {}).get("actor") or request.headers.get("X-Actor") or "system"


# ═════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects", methods=["POST"])
def create_project():
    data, err = json_body()
    if err:
        return err
    project = wps.create_project(data)
    db.session.commit()
    return jsonify(project.to_dict()), 201


@project_bp.route("/projects", methods=["GET"])
def list_projects():
    query = Project.query.order_by(Project.created_at)
    status = request.args.get("status")
    if status:
        query = query.filter(Project.status == status)
    items, total = paginate_query(query)
    return jsonify({"items": [p.to_dict() for p in items], "total": total})


@project_bp.route("/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(wps.get_project_tree(project_id))


@project_bp.route("/projects/<project_id>/workpackages", methods=["POST"])
def create_workpackage(project_id):
    data, err = json_body()
    if err:
        return err
    row = wps.create_workpackage(project_id, data)
    db.session.commit()
    return jsonify(row.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Workpackages
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/workpackages/<wp_id>", methods=["GET"])
def get_workpackage(wp_id):
    return jsonify(wps.get_workpackage(wp_id))


@project_bp.route("/workpackages/<wp_id>/tasks", methods=["PUT"])
def replace_tasks(wp_id):
    data, err = json_body()
    if err:
        return err
    if "tasks" not in data:
        return api_error(E.VALIDATION_REQUIRED, "tasks is required")
    expected_version, err = optional_int(data.get("expected_version"), "expected_version")
    if err:
        return err
    result = wps.replace_tasks(wp_id, data["tasks"], expected_version, actor=_actor(data))
    return jsonify(result)


@project_bp.route(_TODO_PATH, methods=["POST"])
def add_todo(wp_id, task_id, subtask_id):
    data, err = json_body()
    if err:
        return err
    expected_version, err = optional_int(data.get("expected_version"), "expected_version")
    if err:
        return err
    result = wps.add_todo(
        wp_id, task_id, subtask_id, data.get("text", ""),
        todo_id=data.get("id"),
        expected_version=expected_version,
        actor=_actor(data),
    )
    return jsonify(result), 201


@project_bp.route(_TODO_PATH + "/<todo_id>/toggle", methods=["PATCH"])
def toggle_todo(wp_id, task_id, subtask_id, todo_id):
    data, err = json_body(required=False)
    if err:
        return err
    expected_version, err = optional_int(data.get("expected_version"), "expected_version")
    if err:
        return err
    result = wps.toggle_todo(
        wp_id, task_id, subtask_id, todo_id,
        expected_version=expected_version,
        actor=_actor(data),
    )
    return jsonify(result)


@project_bp.route(_TODO_PATH + "/<todo_id>", methods=["DELETE"])
def delete_todo(wp_id, task_id, subtask_id, todo_id):
    expected_version, err = optional_int(request.args.get("expected_version"), "expected_version")
    if err:
        return err
    result = wps.delete_todo(
        wp_id, task_id, subtask_id, todo_id,
        expected_version=expected_version,
        actor=_actor(),
    )
    return jsonify(result)
