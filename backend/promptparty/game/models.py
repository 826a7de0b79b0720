from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Literal


GameStatus = Literal["IDLE", "WAITING_FOR_PLAYERS", "WRITING", "GENERATING", "VOTING", "ENDED"]

STATUSES: tuple[str, ...] = ("IDLE", "WAITING_FOR_PLAYERS", "WRITING", "GENERATING", "VOTING", "ENDED")

LogLevel = Literal["debug", "info", "success", "warning", "error"]


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


@dataclass
class Participant:
    token: str
    display_name: str
    color: str
    session_secret: str
    connection_id: str = ""
    prompt: str = ""
    image_url: str | None = None
    votes: int = 0
    connected: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(**_known(cls, data))


@dataclass
class GameState:
    round: int = 0
    theme: str = ""
    status: GameStatus = "IDLE"
    timer_duration_sec: int = 60
    timer_started_at_ms: int | None = None
    timer_running: bool = False
    timer_remaining_sec: int = 60
    voting_duration_sec: int = 120
    voting_started_at_ms: int | None = None
    expected_participant_count: int = 0
    valid_tokens: list[str] = field(default_factory=list)
    generation_triggered: bool = False
    participants: dict[str, Participant] = field(default_factory=dict)
    # connection id -> token; never exposed to clients
    connections: dict[str, str] = field(default_factory=dict)
    revision: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "GameState":
        values = _known(cls, data)
        values["participants"] = {
            token: Participant.from_dict(p) for token, p in (values.get("participants") or {}).items()
        }
        values["valid_tokens"] = list(values.get("valid_tokens") or [])
        values["connections"] = dict(values.get("connections") or {})
        if values.get("status") not in STATUSES:
            values["status"] = "IDLE"
        return cls(**values)


@dataclass
class LogEntry:
    timestamp: str
    message: str
    level: LogLevel = "info"

    @classmethod
    def create(cls, message: str, level: LogLevel = "info") -> "LogEntry":
        ts = datetime.now(timezone.utc).isoformat(timespec="seconds")
        return cls(timestamp=ts, message=message, level=level)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        return cls(**_known(cls, data))
