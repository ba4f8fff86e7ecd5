# backend/fieldsync/routes/sync.py
"""
Sync API routes: the wire for device push/pull plus period administration.

No authentication here; the platform gateway in front of this service
authenticates devices and operators.
"""
from flask import Blueprint, current_app, jsonify, request

from fieldsync.errors import PeriodError, TransientIOError, UnknownTenant
from fieldsync.extensions import db
from fieldsync.services import period_service, store_service


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise store_service.StoreError(f"{name} must be an integer")


@sync_bp.route("/push", methods=["POST"])
def push():
    """
    Submit a batch of records.

    Request body:
    {
        "records": [SyncableRecord, ...]
    }

    Returns:
        200: {"results": [PushResult, ...]} (one per record, same order)
        400: Malformed request
        503: Storage busy; retry the whole batch
    """
    data = request.get_json(silent=True) or {}

    try:
        results = store_service.push(data.get("records"))
        return jsonify({"results": [result.to_dict() for result in results]}), 200

    except store_service.StoreError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except TransientIOError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 503
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unexpected error during push")
        return jsonify({"error": "Unexpected error during push"}), 500


@sync_bp.route("/pull", methods=["GET"])
def pull():
    """
    Fetch tenant records changed after a cursor.

    Query params:
        tenant_id (required), device_id (required)
        since (optional, default: the device's stored cursor)
        limit (optional, capped by SYNC_PULL_PAGE_SIZE)

    Returns:
        200: {"records": [...], "cursor": int, "has_more": bool}
        400: Invalid parameters
        404: Unknown tenant
    """
    tenant_id = (request.args.get("tenant_id") or "").strip()
    device_id = (request.args.get("device_id") or "").strip()
    if not tenant_id or not device_id:
        return jsonify({"error": "tenant_id and device_id are required"}), 400

    try:
        page = store_service.pull(
            tenant_id,
            device_id,
            since=_int_arg("since"),
            limit=_int_arg("limit"),
        )
        return jsonify(page.to_dict()), 200

    except store_service.StoreError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except UnknownTenant as e:
        db.session.rollback()
        return jsonify({"error": str(e), "reason": e.reason}), 404
    except TransientIOError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 503
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unexpected error during pull")
        return jsonify({"error": "Unexpected error during pull"}), 500


def _period_action(action):
    data = request.get_json(silent=True) or {}

    try:
        period = action(
            data["tenant_id"],
            data["period_key"],
            data.get("actor"),
        )
        db.session.commit()
        return jsonify(period.to_dict()), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except PeriodError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except UnknownTenant as e:
        db.session.rollback()
        return jsonify({"error": str(e), "reason": e.reason}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unexpected error updating period")
        return jsonify({"error": "Unexpected error updating period"}), 500


@sync_bp.route("/periods/close", methods=["POST"])
def close_period():
    """
    Close a cash reconciliation period.

    Request body:
    {
        "tenant_id": str,
        "period_key": str,  // "2026-10-18", "2026-W42" or "2026-10" per tenant granularity
        "actor": str (optional)
    }
    """
    return _period_action(period_service.close_period)


@sync_bp.route("/periods/reopen", methods=["POST"])
def reopen_period():
    """Re-open a closed period. Same body as /periods/close."""
    return _period_action(period_service.reopen_period)
