from __future__ import annotations

from flask import Blueprint, jsonify

from ..extensions import get_game, json_body

bp = Blueprint("participant", __name__)


@bp.post("/participant/join")
def join():
    data = json_body()
    result = get_game().join(
        data.get("token"),
        data.get("name", ""),
        session_secret=data.get("sessionSecret") or None,
        connection_id=data.get("connectionId") or None,
    )
    return jsonify(result)


@bp.post("/participant/update-prompt")
def update_prompt():
    data = json_body()
    ack = get_game().update_prompt(
        data.get("prompt"),
        token=data.get("token") or None,
        connection_id=data.get("connectionId") or None,
        session_secret=data.get("sessionSecret") or None,
    )
    return jsonify(ack)
