from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from auth import current_role, current_user_id, role_required
from draft_service import DRAFT_EDITOR_ROLES
from schedule_service import STATUS_DRAFT, STATUS_PUBLISHED, STATUS_SUBMITTED

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/admin")

SCHEDULE_ACTIONS = {
    "submit": STATUS_SUBMITTED,
    "publish": STATUS_PUBLISHED,
    "pullback": STATUS_DRAFT,
}


def _managers() -> dict:
    return current_app.extensions["coop"]


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("expected JSON object")
    return payload


def _draft_in_session(session_id: str, draft_id: str) -> dict:
    draft = _managers()["drafts"].get_draft(draft_id)
    if not draft or draft["sessionId"] != session_id:
        raise LookupError("Draft not found")
    return draft


# --- Drafts ---


@admin_bp.route("/schedule/<session_id>/drafts", methods=["GET"])
@role_required(*DRAFT_EDITOR_ROLES)
def list_drafts(session_id: str):
    creator_id = current_user_id() if request.args.get("mine") in ("1", "true") else None
    return jsonify(
        {
            "drafts": _managers()["drafts"].list_drafts(session_id, creator_id=creator_id),
            "conflicts": _managers()["conflicts"].detect(session_id),
        }
    )


@admin_bp.route("/schedule/<session_id>/drafts", methods=["POST"])
@role_required(*DRAFT_EDITOR_ROLES)
def create_draft(session_id: str):
    payload = _json_body()
    drafts = _managers()["drafts"]
    draft = drafts.create_draft(
        session_id,
        current_user_id(),
        payload.get("name"),
        payload.get("description"),
    )
    if payload.get("entries"):
        drafts.save_draft_entries(draft["id"], payload["entries"])
    return jsonify(drafts.load_draft(draft["id"])), 201


@admin_bp.route("/schedule/<session_id>/drafts/current", methods=["GET"])
@role_required(*DRAFT_EDITOR_ROLES)
def current_draft(session_id: str):
    drafts = _managers()["drafts"]
    draft = drafts.current_draft(session_id, current_user_id())
    if not draft:
        return jsonify({"draft": None, "entries": []})
    return jsonify(drafts.load_draft(draft["id"]))


@admin_bp.route("/schedule/<session_id>/drafts/<draft_id>", methods=["GET"])
@role_required(*DRAFT_EDITOR_ROLES)
def load_draft(session_id: str, draft_id: str):
    _draft_in_session(session_id, draft_id)
    return jsonify(_managers()["drafts"].load_draft(draft_id))


@admin_bp.route("/schedule/<session_id>/drafts/<draft_id>", methods=["PUT"])
@role_required(*DRAFT_EDITOR_ROLES)
def save_draft(session_id: str, draft_id: str):
    _draft_in_session(session_id, draft_id)
    drafts = _managers()["drafts"]
    drafts.assert_can_modify(draft_id, current_user_id(), current_role())
    payload = _json_body()
    entries = payload.get("entries")
    if not isinstance(entries, list):
        raise ValueError("entries must be a list")
    saved = drafts.save_draft_entries(draft_id, entries)
    if payload.get("setActive"):
        drafts.set_active_draft(draft_id, current_user_id())
    current_app.logger.info("Draft %s saved by %s (%s entries)", draft_id, current_user_id(), saved)
    return jsonify(drafts.load_draft(draft_id))


@admin_bp.route("/schedule/<session_id>/drafts/<draft_id>", methods=["DELETE"])
@role_required(*DRAFT_EDITOR_ROLES)
def delete_draft(session_id: str, draft_id: str):
    _draft_in_session(session_id, draft_id)
    drafts = _managers()["drafts"]
    drafts.assert_can_modify(draft_id, current_user_id(), current_role())
    drafts.delete_draft(draft_id)
    return jsonify({"status": "deleted", "id": draft_id})


@admin_bp.route("/schedule/<session_id>/drafts/<draft_id>/open", methods=["POST"])
@role_required(*DRAFT_EDITOR_ROLES)
def open_draft(session_id: str, draft_id: str):
    _draft_in_session(session_id, draft_id)
    return jsonify(_managers()["drafts"].open_draft(draft_id, current_user_id()))


@admin_bp.route("/schedule/<session_id>/conflicts", methods=["GET"])
@role_required(*DRAFT_EDITOR_ROLES)
def draft_conflicts(session_id: str):
    conflicts = _managers()["conflicts"].detect(session_id)
    return jsonify({"sessionId": session_id, "count": len(conflicts), "conflicts": conflicts})


# --- Live schedule ---


@admin_bp.route("/schedule/<session_id>", methods=["GET"])
@role_required(*DRAFT_EDITOR_ROLES)
def live_schedule(session_id: str):
    schedule = _managers()["schedule"]
    return jsonify(
        {
            "sessionId": session_id,
            "status": schedule.schedule_status(session_id),
            "entries": schedule.get_schedule(session_id),
        }
    )


@admin_bp.route("/schedule/<session_id>/drafts/<draft_id>/apply", methods=["POST"])
@role_required(*DRAFT_EDITOR_ROLES)
def apply_draft(session_id: str, draft_id: str):
    count = _managers()["schedule"].apply_draft(session_id, draft_id)
    return jsonify({"sessionId": session_id, "draftId": draft_id, "count": count})


@admin_bp.route("/schedule/<session_id>/slots", methods=["POST"])
@role_required(*DRAFT_EDITOR_ROLES)
def place_class(session_id: str):
    payload = _json_body()
    entry = _managers()["schedule"].place_class(
        session_id,
        payload.get("classTeachingRequestId"),
        payload.get("classroomId"),
        payload.get("period"),
    )
    return jsonify(entry), 201


@admin_bp.route("/schedule/<session_id>/slots", methods=["DELETE"])
@role_required(*DRAFT_EDITOR_ROLES)
def remove_class(session_id: str):
    payload = _json_body()
    removed = _managers()["schedule"].remove_class(
        session_id,
        payload.get("classroomId"),
        payload.get("period"),
    )
    if not removed:
        raise LookupError("Nothing scheduled in that slot")
    return jsonify({"status": "removed"})


@admin_bp.route("/schedule/<session_id>/<action>", methods=["POST"])
@role_required(*DRAFT_EDITOR_ROLES)
def schedule_action(session_id: str, action: str):
    target = SCHEDULE_ACTIONS.get(action)
    if not target:
        raise LookupError(f"Unknown schedule action '{action}'")
    return jsonify(_managers()["schedule"].transition(session_id, target))


# --- Registration overrides ---


@admin_bp.route("/registration-overrides", methods=["GET"])
@role_required("admin")
def list_overrides():
    session_id = request.args.get("sessionId")
    status = request.args.get("status") or "admin_override"
    found = _managers()["overrides"].list_requests(session_id, status=status)
    return jsonify({"requests": found, "count": len(found)})


@admin_bp.route("/registration-overrides/<override_id>", methods=["PATCH"])
@role_required("admin")
def decide_override(override_id: str):
    payload = _json_body()
    action = payload.get("action")
    overrides = _managers()["overrides"]
    if action == "approve":
        result = overrides.approve(override_id, current_user_id(), payload.get("reason"))
    elif action == "deny":
        result = overrides.deny(override_id, current_user_id(), payload.get("reason"))
    else:
        raise ValueError("action must be 'approve' or 'deny'")
    return jsonify(result)
