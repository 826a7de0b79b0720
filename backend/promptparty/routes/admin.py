from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from ..extensions import get_game, json_body
from ..game import errors
from ..game.errors import GameError

bp = Blueprint("admin", __name__)


def _authorized() -> bool:
    token = current_app.config.get("ADMIN_TOKEN", "")
    if not token:
        return True
    return hmac.compare_digest(request.headers.get("X-Admin-Token", ""), token)


@bp.before_request
def require_admin():
    if not _authorized():
        raise GameError(errors.UNAUTHORIZED, "admin token required")


@bp.post("/admin/start-round")
def start_round():
    data = json_body()
    state = get_game().start_round(
        data.get("theme"),
        timer_seconds=data.get("timer"),
        participant_count=data.get("participantCount"),
    )
    return jsonify({"ok": True, "state": state})


@bp.post("/admin/stop-timer")
def stop_timer():
    return jsonify({"ok": True, "state": get_game().stop_timer()})


@bp.post("/admin/trigger-generation")
def trigger_generation():
    # Accepted: images arrive later through state updates.
    return jsonify({"ok": True, "state": get_game().trigger_generation()}), 202


@bp.post("/admin/start-voting")
def start_voting():
    return jsonify({"ok": True, "state": get_game().start_voting()})


@bp.post("/admin/close-session")
def close_session():
    return jsonify({"ok": True, "state": get_game().close_session()})


@bp.get("/admin/logs")
def logs():
    return jsonify({"logs": get_game().logs()})
