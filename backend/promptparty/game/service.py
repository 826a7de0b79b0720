from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from . import clock, errors, identity, machine
from .errors import GameError
from .models import GameState, LogEntry, Participant
from .store import GameStore
from ..generation.orchestrator import GenerationOrchestrator, GenerationSummary, PromptJob, run_inline
from ..realtime import events
from ..realtime.broadcast import Broadcaster, Debouncer, RedisRelay, SubscriberRegistry


log = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class _StaleResult(Exception):
    pass


def normalize_prompt(raw: Any, max_length: int = 500) -> str:
    """Flatten ``str | {"prompt": str} | {"prompt": {"prompt": str}}`` to a string."""
    value = raw
    for _ in range(3):
        if not isinstance(value, dict):
            break
        if "prompt" not in value:
            raise GameError(errors.INVALID_PAYLOAD, "prompt is missing")
        value = value["prompt"]
    if not isinstance(value, str):
        raise GameError(errors.INVALID_PAYLOAD, "prompt must be text")
    if len(value) > max_length:
        raise GameError(errors.PROMPT_TOO_LONG, f"prompt is limited to {max_length} characters")
    return value


def participant_public(p: Participant) -> dict:
    # Never expose session_secret or connection_id.
    return {
        "token": p.token,
        "name": p.display_name,
        "color": p.color,
        "prompt": p.prompt,
        "imageUrl": p.image_url,
        "votes": p.votes,
        "connected": p.connected,
    }


def public_state(state: GameState, now: int) -> dict:
    payload = {
        "round": state.round,
        "theme": state.theme,
        "status": state.status,
        "timer": clock.writing_remaining(state, now),
        "timerDurationSec": state.timer_duration_sec,
        "timerStartedAt": state.timer_started_at_ms,
        "timerRunning": state.timer_running,
        "votingTimer": clock.voting_remaining(state, now),
        "votingDurationSec": state.voting_duration_sec,
        "votingStartedAt": state.voting_started_at_ms,
        "expectedParticipantCount": state.expected_participant_count,
        "validTokens": list(state.valid_tokens),
        "generationTriggered": state.generation_triggered,
        "participants": {token: participant_public(p) for token, p in state.participants.items()},
        "revision": state.revision,
        "serverTime": now,
    }
    if state.status == "ENDED":
        payload["winners"] = machine.winners(state)
    return payload


class GameService:
    """Command surface shared by the HTTP routes and the Socket.IO handlers.

    Owns no state of its own: everything lives in the store and every change
    goes through ``store.update`` with a state machine function.
    """

    def __init__(
        self,
        store: GameStore,
        broadcaster: Broadcaster,
        orchestrator: GenerationOrchestrator,
        config=None,
        subscribers: SubscriberRegistry | None = None,
        relay: RedisRelay | None = None,
        clock_fn: Callable[[], int] = clock.now_ms,
        spawn: Callable = run_inline,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        cfg = config or {}
        self.store = store
        self.broadcaster = broadcaster
        self.orchestrator = orchestrator
        self.subscribers = subscribers
        self.relay = relay
        self._clock = clock_fn
        self._spawn = spawn

        self.voting_duration_sec = int(cfg.get("VOTING_DURATION_SEC", 120))
        self.default_timer_sec = int(cfg.get("DEFAULT_TIMER_SEC", 60))
        self.min_timer_sec = int(cfg.get("MIN_TIMER_SEC", 5))
        self.max_timer_sec = int(cfg.get("MAX_TIMER_SEC", 900))
        self.default_participant_count = int(cfg.get("DEFAULT_PARTICIPANT_COUNT", 2))
        self.max_participant_count = int(cfg.get("MAX_PARTICIPANT_COUNT", 32))
        self.prompt_max_length = int(cfg.get("PROMPT_MAX_LENGTH", 500))

        self._debouncer = Debouncer(
            int(cfg.get("PROMPT_BROADCAST_DEBOUNCE_MS", 200)),
            self.broadcast_state,
            spawn=spawn,
            sleep=sleep,
        )
        self.store.add_listener(self._on_commit)

    # ---- reads ----

    def now(self) -> int:
        return self._clock()

    def check_timers(self) -> list[str]:
        now = self._clock()
        if not clock.due_events(self.store.load(), now):
            return []
        effects, snapshot = self.store.update(lambda s: machine.apply_clock_events(s, now))
        if machine.GENERATION_REQUESTED in effects:
            self.log("Timer reached zero, starting generation automatically", "info")
        self._after(effects, snapshot)
        return effects

    def state(self) -> dict:
        self.check_timers()
        return public_state(self.store.load(), self._clock())

    def results(self) -> dict:
        self.check_timers()
        state = self.store.load()
        return {
            "round": state.round,
            "status": state.status,
            "ranking": [participant_public(p) for p in machine.ranking(state)],
            "winners": machine.winners(state),
        }

    def logs(self) -> list[dict]:
        return [entry.to_dict() for entry in self.store.get_logs()]

    # ---- admin ----

    def _int_in_range(self, raw, default: int, low: int, high: int, field: str) -> int:
        if raw is None or raw == "":
            return default
        if isinstance(raw, bool):
            raise GameError(errors.INVALID_PAYLOAD, f"{field} must be a number")
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise GameError(errors.INVALID_PAYLOAD, f"{field} must be a number")
        if value < low or value > high:
            raise GameError(errors.INVALID_PAYLOAD, f"{field} must be between {low} and {high}")
        return value

    def start_round(self, theme, timer_seconds=None, participant_count=None) -> dict:
        theme = str(theme or "").strip()
        if not theme:
            raise GameError(errors.INVALID_PAYLOAD, "theme is required")
        timer = self._int_in_range(
            timer_seconds, self.default_timer_sec, self.min_timer_sec, self.max_timer_sec, "timer"
        )
        count = self._int_in_range(
            participant_count, self.default_participant_count, 1, self.max_participant_count, "participantCount"
        )

        _, snapshot = self.store.update(
            lambda s: machine.start_round(s, theme, timer, count, self.voting_duration_sec)
        )
        self.log(f"Round {snapshot.round} started: '{theme}', {count} seat(s), {timer}s", "info")
        return public_state(snapshot, self._clock())

    def stop_timer(self) -> dict:
        self.check_timers()
        now = self._clock()
        effects, snapshot = self.store.update(lambda s: machine.stop_timer(s, now))
        if effects:
            self.log(f"Timer stopped with {snapshot.timer_remaining_sec}s left", "warning")
        return public_state(snapshot, now)

    def trigger_generation(self) -> dict:
        self.check_timers()
        now = self._clock()
        effects, snapshot = self.store.update(lambda s: machine.request_generation(s, now))
        self.log("Manual generation trigger from admin", "info")
        self._after(effects, snapshot)
        return public_state(self.store.load(), self._clock())

    def start_voting(self) -> dict:
        self.check_timers()
        now = self._clock()
        _, snapshot = self.store.update(lambda s: machine.start_voting(s, now))
        self.log(f"Voting opened for {snapshot.voting_duration_sec}s", "info")
        return public_state(snapshot, now)

    def close_session(self) -> dict:
        _, snapshot = self.store.update(machine.close_session)
        try:
            self.store.clear_logs()
        except Exception:
            log.warning("[store] could not clear admin log", exc_info=True)
        self.log("Session closed", "info")
        return public_state(snapshot, self._clock())

    # ---- participants & voters ----

    def join(self, token, name="", session_secret=None, connection_id=None) -> dict:
        self.check_timers()
        connection_id = connection_id or f"http_{uuid.uuid4().hex}"
        now = self._clock()
        try:
            (joined, effects), snapshot = self.store.update(
                lambda s: machine.join(s, token, connection_id, name, session_secret, now)
            )
        except GameError as exc:
            self.log(f"Join rejected for {identity.normalize_token(token) or '?'}: {exc.code}", "warning")
            raise

        p = snapshot.participants[joined.token]
        if machine.PARTICIPANT_JOINED in effects:
            self.log(f"{p.display_name} joined ({p.token})", "info")
            self.broadcaster.broadcast(
                events.PARTICIPANT_JOINED, {"token": p.token, "name": p.display_name, "color": p.color}
            )
        else:
            self.log(f"{p.display_name} reconnected ({p.token})", "info")
        self._after(effects, snapshot)

        return {
            "participant": participant_public(p),
            "sessionSecret": p.session_secret,
            "connectionId": connection_id,
            "gameState": public_state(snapshot, now),
        }

    def update_prompt(self, prompt, token=None, connection_id=None, session_secret=None) -> dict:
        text = normalize_prompt(prompt, self.prompt_max_length)
        self.check_timers()

        def mutator(state: GameState) -> str | None:
            if token:
                resolved = identity.authenticate(state, token, session_secret)
            else:
                resolved = identity.resolve_by_connection(state, connection_id or "")
            machine.update_prompt(state, resolved, text)
            return resolved

        resolved, _ = self.store.update(mutator, notify=False)
        self.broadcaster.broadcast(events.PROMPT_UPDATE, {"token": resolved, "prompt": text})
        self._debouncer.trigger()
        return {"ok": True, "token": resolved}

    def cast_vote(self, token) -> dict:
        self.check_timers()
        token = identity.normalize_token(token)
        _, snapshot = self.store.update(lambda s: machine.cast_vote(s, token))
        return {"ok": True, "token": token, "votes": snapshot.participants[token].votes}

    def disconnect(self, connection_id: str) -> str | None:
        if connection_id not in self.store.load().connections:
            return None
        token, snapshot = self.store.update(lambda s: identity.detach_connection(s, connection_id))
        if token and token in snapshot.participants:
            self.log(f"{snapshot.participants[token].display_name} disconnected ({token})", "debug")
        return token

    # ---- generation sink ----

    def image_ready(self, round_no: int, token: str, image_url: str) -> bool:
        def mutator(state: GameState) -> None:
            if not machine.record_image(state, round_no, token, image_url):
                raise _StaleResult()

        try:
            self.store.update(mutator)
        except _StaleResult:
            self.log(f"Ignoring stale image for {token} from round {round_no}", "warning")
            return False
        return True

    def generation_settled(self, summary: GenerationSummary) -> None:
        if summary.round != self.store.load().round:
            log.info(f"[generation] round {summary.round} settled after it was replaced: {summary.to_dict()}")
            return
        self.log(
            f"All generations completed for round {summary.round}: "
            f"{len(summary.succeeded)} ok, {len(summary.failed)} failed, {len(summary.skipped)} skipped"
            + (f", {len(summary.stale)} stale" if summary.stale else ""),
            "success" if not summary.failed else "warning",
        )
        self.broadcast_state()

    # ---- distribution ----

    def log(self, message: str, level: str = "info") -> None:
        log.log(_LOG_LEVELS.get(level, logging.INFO), f"[admin] {message}")
        entry = LogEntry.create(message, level)
        try:
            self.store.append_log(entry)
        except Exception:
            log.warning("[store] could not append admin log", exc_info=True)
        self.broadcaster.broadcast(events.ADMIN_LOG, entry.to_dict())

    def sync_remote(self) -> None:
        """Pull events other instances relayed into the local subscriber queues."""
        if self.relay is None:
            return
        try:
            self.relay.pump()
        except Exception:
            log.warning("[relay] could not read relayed events", exc_info=True)

    def broadcast_state(self) -> None:
        self.broadcaster.broadcast(events.STATE_UPDATE, self.state())

    def _on_commit(self, snapshot: GameState) -> None:
        self.broadcaster.broadcast(events.STATE_UPDATE, public_state(snapshot, self._clock()))

    def _after(self, effects: list[str], snapshot: GameState) -> None:
        if machine.WRITING_STARTED in effects:
            self.log(
                f"All {len(snapshot.participants)} participants joined, timer started "
                f"({snapshot.timer_duration_sec}s)",
                "success",
            )
        if machine.VOTING_ENDED in effects:
            winners = machine.winners(snapshot)
            self.log(f"Voting closed, winner(s): {', '.join(winners) or 'none'}", "success")
        if machine.GENERATION_REQUESTED in effects:
            jobs = [PromptJob(p.token, p.display_name, p.prompt) for p in snapshot.participants.values()]
            self._spawn(self.orchestrator.run, snapshot.round, jobs, self)
