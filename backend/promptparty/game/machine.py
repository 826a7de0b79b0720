"""Round state machine.

Every function takes the working copy handed out by ``GameStore.update`` and
mutates it in place. A raised ``GameError`` aborts the update, so guards can
be checked after partial work without leaking it into the committed state.
The returned effect names tell the service which side effects to run once
the update has committed.
"""
from __future__ import annotations

import random

from . import clock, errors, identity
from .clock import ClockEvent
from .errors import GameError
from .models import GameState, Participant


ROUND_STARTED = "round_started"
PARTICIPANT_JOINED = "participant_joined"
PARTICIPANT_REJOINED = "participant_rejoined"
WRITING_STARTED = "writing_started"
PROMPT_UPDATED = "prompt_updated"
TIMER_STOPPED = "timer_stopped"
GENERATION_REQUESTED = "generation_requested"
VOTING_STARTED = "voting_started"
VOTE_CAST = "vote_cast"
VOTING_ENDED = "voting_ended"
SESSION_CLOSED = "session_closed"


def _clear_writing_timer(state: GameState, now: int) -> None:
    state.timer_remaining_sec = clock.writing_remaining(state, now)
    state.timer_running = False
    state.timer_started_at_ms = None


def start_round(
    state: GameState,
    theme: str,
    timer_sec: int,
    participant_count: int,
    voting_sec: int,
    rng: random.Random | None = None,
) -> list[str]:
    state.round += 1
    state.theme = theme
    state.status = "WAITING_FOR_PLAYERS"
    state.timer_duration_sec = timer_sec
    state.timer_remaining_sec = timer_sec
    state.timer_running = False
    state.timer_started_at_ms = None
    state.voting_duration_sec = voting_sec
    state.voting_started_at_ms = None
    state.expected_participant_count = participant_count
    state.valid_tokens = identity.issue_tokens(participant_count, rng=rng)
    state.participants = {}
    state.connections = {}
    state.generation_triggered = False
    return [ROUND_STARTED]


def join(
    state: GameState,
    token: str,
    connection_id: str,
    display_name: str,
    session_secret: str | None,
    now: int,
) -> tuple[Participant, list[str]]:
    result = identity.join(state, token, connection_id, display_name, session_secret)
    effects = [PARTICIPANT_JOINED if result.created else PARTICIPANT_REJOINED]

    if (
        result.created
        and state.status == "WAITING_FOR_PLAYERS"
        and len(state.participants) == state.expected_participant_count
    ):
        state.status = "WRITING"
        state.timer_started_at_ms = now
        state.timer_running = True
        state.timer_remaining_sec = state.timer_duration_sec
        effects.append(WRITING_STARTED)

    return result.participant, effects


def update_prompt(state: GameState, token: str | None, prompt: str) -> list[str]:
    if state.status != "WRITING":
        raise GameError(errors.WRONG_PHASE, "prompts can only be written while the timer runs")
    if not token or token not in state.participants:
        raise GameError(errors.UNKNOWN_PARTICIPANT, "participant not found")
    state.participants[token].prompt = prompt
    return [PROMPT_UPDATED]


def stop_timer(state: GameState, now: int) -> list[str]:
    if state.status != "WRITING":
        raise GameError(errors.WRONG_PHASE, "no writing timer to stop")
    if not state.timer_running:
        return []
    _clear_writing_timer(state, now)
    return [TIMER_STOPPED]


def request_generation(state: GameState, now: int) -> list[str]:
    if state.generation_triggered:
        raise GameError(errors.GENERATION_ALREADY_TRIGGERED, "generation already running")
    if state.status != "WRITING":
        raise GameError(errors.WRONG_PHASE, "generation starts from the writing phase")
    _clear_writing_timer(state, now)
    state.generation_triggered = True
    state.status = "GENERATING"
    return [GENERATION_REQUESTED]


def start_voting(state: GameState, now: int) -> list[str]:
    if state.status not in ("WRITING", "GENERATING"):
        raise GameError(errors.WRONG_PHASE, "voting follows writing or generation")
    if state.timer_running:
        _clear_writing_timer(state, now)
    state.status = "VOTING"
    state.voting_started_at_ms = now
    return [VOTING_STARTED]


def cast_vote(state: GameState, token: str) -> list[str]:
    if state.status != "VOTING":
        raise GameError(errors.WRONG_PHASE, "voting is closed")
    participant = state.participants.get(identity.normalize_token(token))
    if participant is None:
        raise GameError(errors.UNKNOWN_PARTICIPANT, "participant not found")
    participant.votes += 1
    return [VOTE_CAST]


def apply_clock_events(state: GameState, now: int) -> list[str]:
    """Apply whatever zero-crossings are due. Safe to call any number of times."""
    effects: list[str] = []
    for event in clock.due_events(state, now):
        if event is ClockEvent.WRITING_EXPIRED:
            _clear_writing_timer(state, now)
            state.timer_remaining_sec = 0
            state.generation_triggered = True
            state.status = "GENERATING"
            effects.append(GENERATION_REQUESTED)
        elif event is ClockEvent.VOTING_EXPIRED:
            state.status = "ENDED"
            effects.append(VOTING_ENDED)
    return effects


def record_image(state: GameState, round_no: int, token: str, image_url: str) -> bool:
    """Store a generated image. Results for a replaced round are ignored."""
    if state.round != round_no:
        return False
    participant = state.participants.get(token)
    if participant is None:
        return False
    participant.image_url = image_url
    return True


def close_session(state: GameState) -> list[str]:
    # round keeps counting so late generation results never match a new round
    fresh = GameState(
        round=state.round,
        timer_duration_sec=state.timer_duration_sec,
        timer_remaining_sec=state.timer_duration_sec,
        voting_duration_sec=state.voting_duration_sec,
        revision=state.revision,
    )
    state.__dict__.update(fresh.__dict__)
    return [SESSION_CLOSED]


def ranking(state: GameState) -> list[Participant]:
    return sorted(state.participants.values(), key=lambda p: p.votes, reverse=True)


def winners(state: GameState) -> list[str]:
    top = max((p.votes for p in state.participants.values()), default=0)
    if top <= 0:
        return []
    return [p.token for p in state.participants.values() if p.votes == top]
