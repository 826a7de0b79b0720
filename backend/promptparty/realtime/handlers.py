from __future__ import annotations

import hmac
import logging
from typing import Any, Callable

from flask import request
from flask_socketio import SocketIO, emit, join_room

from . import events
from ..game import clock, errors
from ..game.errors import GameError
from ..game.service import GameService


log = logging.getLogger(__name__)


def _payload(data: Any) -> dict:
    return data if isinstance(data, dict) else {}


def _run(fn: Callable, *args, **kwargs) -> dict:
    try:
        result = fn(*args, **kwargs)
    except GameError as exc:
        return {"ok": False, "error": exc.code, "message": exc.message}
    if isinstance(result, dict) and "ok" in result:
        return result
    return {"ok": True, "state": result}


def register_socketio_handlers(socketio: SocketIO, game: GameService, config) -> None:
    ticker = {"running": False}

    def _admin_ok(data: Any) -> bool:
        token = config.get("ADMIN_TOKEN", "")
        if not token:
            return True
        supplied = _payload(data).get("adminToken", "")
        return isinstance(supplied, str) and hmac.compare_digest(supplied, token)

    def _admin(fn: Callable, data: Any, *args, **kwargs) -> dict:
        if not _admin_ok(data):
            return {"ok": False, "error": errors.UNAUTHORIZED}
        return _run(fn, *args, **kwargs)

    def _ensure_ticker() -> None:
        if ticker["running"] or not config.get("TIMER_TICKER_ENABLED", True):
            return
        ticker["running"] = True
        interval = float(config.get("TICK_INTERVAL_SEC", 0.25))

        def _runner() -> None:
            last_sec = None
            while True:
                try:
                    game.check_timers()
                    state = game.store.load()
                    now = game.now()
                    # Tick (once per second)
                    if clock.countdown_active(state) and now // 1000 != last_sec:
                        last_sec = now // 1000
                        game.broadcaster.broadcast(
                            events.TIMER_UPDATE,
                            {
                                "timer": clock.writing_remaining(state, now),
                                "votingTimer": clock.voting_remaining(state, now),
                                "status": state.status,
                            },
                        )
                except Exception:
                    log.exception("[timer] tick failed")
                socketio.sleep(interval)

        socketio.start_background_task(_runner)

    @socketio.on("connect")
    def on_connect(auth=None):
        _ensure_ticker()

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        game.disconnect(request.sid)

    @socketio.on("join_room")
    def on_join_room(data):
        payload = data if isinstance(data, dict) else {"role": data}
        role = str(payload.get("role", "")).strip().lower()
        if role not in events.ROLES:
            return {"ok": False, "error": errors.INVALID_PAYLOAD}
        if role == "admin" and not _admin_ok(payload):
            return {"ok": False, "error": errors.UNAUTHORIZED}

        join_room(role)
        state = game.state()
        emit(events.STATE_UPDATE, state, to=request.sid)
        return {"ok": True, "role": role, "state": state}

    @socketio.on("state:get")
    def on_state_get(data=None):
        return {"ok": True, "state": game.state()}

    # ---- admin ----

    @socketio.on("admin:start_round")
    def on_start_round(data):
        payload = _payload(data)
        return _admin(
            game.start_round,
            payload,
            payload.get("theme"),
            timer_seconds=payload.get("timer"),
            participant_count=payload.get("participantCount"),
        )

    @socketio.on("admin:stop_timer")
    def on_stop_timer(data=None):
        return _admin(game.stop_timer, data)

    @socketio.on("admin:trigger_generation")
    def on_trigger_generation(data=None):
        return _admin(game.trigger_generation, data)

    @socketio.on("admin:start_voting")
    def on_start_voting(data=None):
        return _admin(game.start_voting, data)

    @socketio.on("admin:close_session")
    def on_close_session(data=None):
        return _admin(game.close_session, data)

    @socketio.on("admin:get_logs")
    def on_get_logs(data=None):
        if not _admin_ok(data):
            return {"ok": False, "error": errors.UNAUTHORIZED}
        return {"ok": True, "logs": game.logs()}

    # ---- participants ----

    @socketio.on("participant:join")
    def on_participant_join(data):
        payload = _payload(data)
        try:
            result = game.join(
                payload.get("token"),
                payload.get("name", ""),
                session_secret=payload.get("sessionSecret") or None,
                connection_id=request.sid,
            )
        except GameError as exc:
            emit(events.JOIN_ERROR, exc.to_dict(), to=request.sid)
            return {"ok": False, "error": exc.code, "message": exc.message}

        join_room("participant")
        # Only the joining socket ever sees the session secret.
        emit(
            events.PARTICIPANT_JOINED,
            dict(result["participant"], sessionSecret=result["sessionSecret"]),
            to=request.sid,
        )
        return {"ok": True, **result}

    @socketio.on("participant:update_prompt")
    def on_update_prompt(data):
        return _run(game.update_prompt, data, connection_id=request.sid)

    @socketio.on("vote:cast")
    def on_vote_cast(data):
        payload = data if isinstance(data, dict) else {"participantToken": data}
        token = payload.get("participantToken")
        if not isinstance(token, str) or not token.strip():
            return {"ok": False, "error": errors.INVALID_PAYLOAD}
        return _run(game.cast_vote, token)
