from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from auth import auth_required, current_user_id

registration_bp = Blueprint("registration_bp", __name__, url_prefix="/registration")

OUTCOME_STATUS = {
    "conflicts": 409,
    "hours_unmet": 400,
    "override_requested": 200,
    "committed": 200,
}


def _registration_manager():
    return current_app.extensions["coop"]["registration"]


@registration_bp.route("/batch", methods=["POST"])
@auth_required
def batch_register():
    payload = request.get_json(silent=True)
    result = _registration_manager().submit_batch(current_user_id(), payload)
    if result["outcome"] == "committed" and result["failedCount"]:
        current_app.logger.warning(
            "Batch for %s partially committed: %s failed",
            current_user_id(),
            result["failedCount"],
        )
    return jsonify(result), OUTCOME_STATUS[result["outcome"]]


@registration_bp.route("/preview", methods=["POST"])
@auth_required
def preview_registration():
    payload = request.get_json(silent=True)
    return jsonify(_registration_manager().preview(current_user_id(), payload))


@registration_bp.route("/family-status")
@auth_required
def family_status():
    session_id = request.args.get("sessionId")
    return jsonify(_registration_manager().family_status(current_user_id(), session_id))
