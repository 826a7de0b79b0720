from __future__ import annotations

import hmac
import random
import secrets
from dataclasses import dataclass

from . import errors
from .errors import GameError
from .models import GameState, Participant


# No I, O, 0, 1 to avoid confusion when typed from a screen.
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOKEN_LENGTH = 4
PALETTE = ("#BEFA4F", "#E83399", "#5AA7B9", "#F5B700")
MAX_NAME_LENGTH = 24


@dataclass
class JoinResult:
    participant: Participant
    created: bool


def issue_tokens(count: int, rng: random.Random | None = None) -> list[str]:
    if count < 0 or count > len(TOKEN_ALPHABET) ** TOKEN_LENGTH:
        raise ValueError(f"cannot issue {count} tokens")
    rng = rng or random
    tokens: list[str] = []
    seen: set[str] = set()
    while len(tokens) < count:
        token = "".join(rng.choices(TOKEN_ALPHABET, k=TOKEN_LENGTH))
        if token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def new_session_secret() -> str:
    return secrets.token_urlsafe(24)


def normalize_token(raw) -> str:
    return str(raw or "").strip().upper()


def normalize_name(raw, position: int) -> str:
    n = str(raw or "").strip()
    if not n:
        return f"Player {position}"
    if len(n) > MAX_NAME_LENGTH:
        raise GameError(errors.INVALID_PAYLOAD, "name is too long")
    # Avoid obvious HTML/script injection.
    if "<" in n or ">" in n:
        raise GameError(errors.INVALID_PAYLOAD, "name contains forbidden characters")
    for ch in n:
        if ord(ch) < 32:
            raise GameError(errors.INVALID_PAYLOAD, "name contains control characters")
    return n


def _check_secret(participant: Participant, session_secret, missing: str) -> None:
    if not session_secret:
        raise GameError(errors.SESSION_SECRET_REQUIRED, missing)
    if not hmac.compare_digest(participant.session_secret, str(session_secret)):
        raise GameError(errors.INVALID_SESSION_SECRET, "session secret does not match")


def join(
    state: GameState,
    token: str,
    connection_id: str,
    display_name: str,
    session_secret: str | None = None,
) -> JoinResult:
    """Seat a participant, or reattach a returning one.

    Mutates ``state`` in place; callers run this inside the store's atomic
    update so a raised GameError leaves the committed state untouched.
    """
    if state.status == "IDLE":
        raise GameError(errors.GAME_NOT_STARTED, "no round is running")

    token = normalize_token(token)
    if token not in state.valid_tokens:
        raise GameError(errors.INVALID_TOKEN, "unknown access token")

    bound = state.connections.get(connection_id)
    if connection_id and bound and bound != token:
        raise GameError(errors.TOKEN_ALREADY_IN_USE, "this connection already holds another seat")

    existing = state.participants.get(token)
    if existing is not None:
        _check_secret(existing, session_secret, "token already claimed")

        name = str(display_name or "").strip()
        if name:
            name = normalize_name(name, list(state.participants).index(token) + 1)
        old_cid = existing.connection_id
        if old_cid and state.connections.get(old_cid) == token:
            del state.connections[old_cid]
        existing.connection_id = connection_id
        existing.connected = True
        if name:
            existing.display_name = name
        if connection_id:
            state.connections[connection_id] = token
        return JoinResult(participant=existing, created=False)

    if state.status != "WAITING_FOR_PLAYERS":
        raise GameError(errors.WRONG_PHASE, "joining is closed for this round")
    if len(state.participants) >= state.expected_participant_count:
        raise GameError(errors.ROUND_FULL, "all seats are taken")

    position = len(state.participants)
    participant = Participant(
        token=token,
        display_name=normalize_name(display_name, position + 1),
        color=PALETTE[position % len(PALETTE)],
        session_secret=new_session_secret(),
        connection_id=connection_id,
    )
    state.participants[token] = participant
    if connection_id:
        state.connections[connection_id] = token
    return JoinResult(participant=participant, created=True)


def resolve_by_connection(state: GameState, connection_id: str) -> str | None:
    if not connection_id:
        return None
    return state.connections.get(connection_id)


def detach_connection(state: GameState, connection_id: str) -> str | None:
    token = state.connections.pop(connection_id, None)
    if token is None:
        return None
    participant = state.participants.get(token)
    if participant is not None and participant.connection_id == connection_id:
        participant.connected = False
    return token


def authenticate(state: GameState, token, session_secret) -> str:
    """Resolve a seat addressed by token; only its holder's secret unlocks it."""
    token = normalize_token(token)
    participant = state.participants.get(token)
    if participant is None:
        raise GameError(errors.UNKNOWN_PARTICIPANT, "no participant holds this token")
    _check_secret(participant, session_secret, "session secret is required")
    return token
