"""Countdown arithmetic for the writing and voting phases.

Timers are never ticked. Every value is derived from a stored start stamp and
a duration, so any reader (a request, the timer-check endpoint, the
background ticker) computes the same number. Zero-crossings are reported as
clock events; applying them is the state machine's job.
"""
from __future__ import annotations

import time
from enum import Enum

from .models import GameState


class ClockEvent(str, Enum):
    WRITING_EXPIRED = "writing_expired"
    VOTING_EXPIRED = "voting_expired"


def now_ms() -> int:
    return int(time.time() * 1000)


def remaining(now: int, started_at: int, duration_sec: int) -> int:
    elapsed = (now - started_at) // 1000
    return max(0, min(duration_sec, duration_sec - elapsed))


def writing_remaining(state: GameState, now: int) -> int:
    if state.timer_running and state.timer_started_at_ms is not None:
        return remaining(now, state.timer_started_at_ms, state.timer_duration_sec)
    return max(0, state.timer_remaining_sec)


def voting_remaining(state: GameState, now: int) -> int:
    if state.voting_started_at_ms is None:
        return state.voting_duration_sec
    if state.status == "ENDED":
        return 0
    return remaining(now, state.voting_started_at_ms, state.voting_duration_sec)


def due_events(state: GameState, now: int) -> list[ClockEvent]:
    events: list[ClockEvent] = []
    if (
        state.status == "WRITING"
        and state.timer_running
        and not state.generation_triggered
        and writing_remaining(state, now) == 0
    ):
        events.append(ClockEvent.WRITING_EXPIRED)
    if (
        state.status == "VOTING"
        and state.voting_started_at_ms is not None
        and voting_remaining(state, now) == 0
    ):
        events.append(ClockEvent.VOTING_EXPIRED)
    return events


def countdown_active(state: GameState) -> bool:
    if state.status == "WRITING" and state.timer_running:
        return True
    return state.status == "VOTING" and state.voting_started_at_ms is not None
