from __future__ import annotations


GAME_NOT_STARTED = "GAME_NOT_STARTED"
INVALID_TOKEN = "INVALID_TOKEN"
TOKEN_ALREADY_IN_USE = "TOKEN_ALREADY_IN_USE"
SESSION_SECRET_REQUIRED = "SESSION_SECRET_REQUIRED"
INVALID_SESSION_SECRET = "INVALID_SESSION_SECRET"
WRONG_PHASE = "WRONG_PHASE"
ROUND_FULL = "ROUND_FULL"
UNKNOWN_PARTICIPANT = "UNKNOWN_PARTICIPANT"
GENERATION_ALREADY_TRIGGERED = "GENERATION_ALREADY_TRIGGERED"
INVALID_PAYLOAD = "INVALID_PAYLOAD"
PROMPT_TOO_LONG = "PROMPT_TOO_LONG"
UNAUTHORIZED = "UNAUTHORIZED"

_HTTP_STATUS = {
    UNAUTHORIZED: 401,
    TOKEN_ALREADY_IN_USE: 409,
    GENERATION_ALREADY_TRIGGERED: 409,
}


class GameError(Exception):
    """A rejected client action. ``code`` is stable and machine readable."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code.replace("_", " ").lower()

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.code, 400)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}
