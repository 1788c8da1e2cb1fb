import json

from flask import Blueprint, jsonify, request, current_app
from models.audit_log import AuditLog

audit_bp = Blueprint("audit", __name__)


def _limit() -> int:
    default = current_app.config.get("AUDIT_LOG_LIMIT", 200)
    limit = request.args.get("limit", type=int) or default
    return max(1, min(limit, 500))


def _row(r: AuditLog) -> dict:
    return {
        "id": r.id,
        "created_at": r.timestamp.isoformat() if r.timestamp else None,
        "actor_id": r.actor_id,
        "action": r.action,
        "entity": r.entity,
        "entity_id": r.entity_id,
        "ip": r.ip,
        "user_agent": r.user_agent,
        "metadata": json.loads(r.metadata_json) if r.metadata_json else None,
    }


@audit_bp.get("/bookings/<booking_id>/history")
def booking_history(booking_id: str):
    rows = (
        AuditLog.query
        .filter(AuditLog.entity == "booking", AuditLog.entity_id == booking_id)
        .order_by(AuditLog.id.asc())
        .limit(_limit())
        .all()
    )
    return jsonify([_row(r) for r in rows]), 200


@audit_bp.get("/audit-logs")
def list_audit_logs():
    action = request.args.get("action")
    actor_id = request.args.get("actor_id")

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if actor_id:
        q = q.filter(AuditLog.actor_id == actor_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(_limit()).all()
    return jsonify([_row(r) for r in rows]), 200
