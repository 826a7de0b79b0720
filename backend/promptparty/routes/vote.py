from __future__ import annotations

from flask import Blueprint, jsonify

from ..extensions import get_game, json_body
from ..game import errors
from ..game.errors import GameError

bp = Blueprint("vote", __name__)


@bp.post("/vote/cast")
def cast():
    token = json_body().get("participantToken")
    if not isinstance(token, str) or not token.strip():
        raise GameError(errors.INVALID_PAYLOAD, "participantToken is required")
    return jsonify(get_game().cast_vote(token))
