STATE_UPDATE = "state:update"
PROMPT_UPDATE = "prompt:update"
PARTICIPANT_JOINED = "participant:joined"
ADMIN_LOG = "admin:log"
TIMER_UPDATE = "timer:update"
JOIN_ERROR = "error:join"

ROLES = ("admin", "screen", "participant", "vote")
