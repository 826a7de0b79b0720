from __future__ import annotations

from flask import Blueprint, jsonify

from ..extensions import get_game

bp = Blueprint("health", __name__)


@bp.get("/health")
def health():
    game = get_game()
    return jsonify({"ok": True, "serverTime": game.now()})
