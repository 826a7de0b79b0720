from __future__ import annotations

from flask import current_app, request

from .game.service import GameService


GAME_EXTENSION = "promptparty.game"


def get_game() -> GameService:
    return current_app.extensions[GAME_EXTENSION]


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
