from __future__ import annotations

import json
import uuid

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..extensions import get_game
from ..game import errors
from ..game.errors import GameError
from ..realtime import events

bp = Blueprint("state", __name__)


def _sse(item: dict) -> str:
    return f"data: {json.dumps(item)}\n\n"


@bp.get("/game-state")
def game_state():
    return jsonify(get_game().state())


@bp.get("/check-timer")
def check_timer():
    game = get_game()
    fired = game.check_timers()
    return jsonify({"fired": fired, "state": game.state()})


@bp.get("/results")
def results():
    return jsonify(get_game().results())


@bp.get("/game-events")
def game_events():
    """Pull channel for clients that cannot keep a socket open."""
    connection_id = (request.args.get("connectionId") or "").strip()
    if not connection_id:
        raise GameError(errors.INVALID_PAYLOAD, "connectionId is required")

    game = get_game()
    game.subscribers.subscribe(connection_id)
    game.sync_remote()
    queued, resync = game.subscribers.drain(connection_id)
    return jsonify({"events": queued, "resync": resync, "state": game.state()})


@bp.get("/game-stream")
def game_stream():
    connection_id = (request.args.get("connectionId") or "").strip() or uuid.uuid4().hex
    keepalive = float(current_app.config.get("SSE_KEEPALIVE_SEC", 30))

    game = get_game()
    registry = game.subscribers
    registry.subscribe(connection_id)
    initial = {"type": events.STATE_UPDATE, "data": game.state()}

    @stream_with_context
    def generate():
        yield _sse(initial)
        try:
            while True:
                game.sync_remote()
                queued, resync = registry.wait(connection_id, keepalive)
                if resync:
                    registry.subscribe(connection_id)
                    yield _sse({"type": events.STATE_UPDATE, "data": game.state()})
                elif not queued:
                    yield ": ping\n\n"
                for item in queued:
                    yield _sse(item)
        finally:
            registry.unsubscribe(connection_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
