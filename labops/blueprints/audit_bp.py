"""
Audit trail blueprint.

Endpoints:
    GET  /api/v1/audit               — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>  — single audit entry
"""

from flask import Blueprint, jsonify, request

from labops.blueprints import paginate_query
from labops.models import db
from labops.models.audit import AUDIT_ENTITY_TYPES, AuditLog
from labops.utils.errors import E, api_error

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return audit logs, newest first.

    Query params:
        project_id   — filter by project
        entity_type  — workpackage | funding_account | funding_transaction
        entity_id    — filter by entity id
        action       — prefix match (``todo.`` or ``funding.``)
        actor        — filter by actor
        limit/offset — pagination
    """
    q = AuditLog.query

    project_id = request.args.get("project_id")
    if project_id:
        q = q.filter(AuditLog.project_id == project_id)

    entity_type = request.args.get("entity_type")
    if entity_type:
        if entity_type not in AUDIT_ENTITY_TYPES:
            return api_error(
                E.VALIDATION_INVALID, "Unknown entity_type",
                details={"allowed": sorted(AUDIT_ENTITY_TYPES)},
            )
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor")
    if actor:
        q = q.filter(AuditLog.actor == actor)

    items, total = paginate_query(q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()))
    return jsonify({"items": [log.to_dict() for log in items], "total": total})


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        return api_error(E.NOT_FOUND, "Audit log not found")
    return jsonify(log.to_dict())
