import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev")

    # CORS
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # Admin console (empty = open)
    ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")

    # Reverse proxy / IP headers
    TRUST_PROXY_HEADERS = os.environ.get("TRUST_PROXY_HEADERS", "1") == "1"

    # Socket.IO
    SOCKETIO_ASYNC_MODE = os.environ.get("SOCKETIO_ASYNC_MODE", "").strip()
    # e.g. redis://localhost:6379/1 so every instance fans out the same emits
    SOCKETIO_MESSAGE_QUEUE = os.environ.get("SOCKETIO_MESSAGE_QUEUE", "")

    # Storage (defaults to in-memory)
    STORE_BACKEND = os.environ.get("STORE_BACKEND", "memory")
    REDIS_URL = os.environ.get("REDIS_URL", "")
    STATE_KEY = os.environ.get("STATE_KEY", "game:state")
    LOGS_KEY = os.environ.get("LOGS_KEY", "game:logs")
    LOG_BUFFER_SIZE = int(os.environ.get("LOG_BUFFER_SIZE", "100"))
    # pub/sub channel that relays pull/SSE events between instances
    RELAY_CHANNEL = os.environ.get("RELAY_CHANNEL", "game:events")

    # Game
    DEFAULT_TIMER_SEC = int(os.environ.get("DEFAULT_TIMER_SEC", "60"))
    MIN_TIMER_SEC = int(os.environ.get("MIN_TIMER_SEC", "5"))
    MAX_TIMER_SEC = int(os.environ.get("MAX_TIMER_SEC", "900"))
    DEFAULT_PARTICIPANT_COUNT = int(os.environ.get("DEFAULT_PARTICIPANT_COUNT", "2"))
    MAX_PARTICIPANT_COUNT = int(os.environ.get("MAX_PARTICIPANT_COUNT", "32"))
    VOTING_DURATION_SEC = int(os.environ.get("VOTING_DURATION_SEC", "120"))
    PROMPT_MAX_LENGTH = int(os.environ.get("PROMPT_MAX_LENGTH", "500"))

    # Realtime
    PROMPT_BROADCAST_DEBOUNCE_MS = int(os.environ.get("PROMPT_BROADCAST_DEBOUNCE_MS", "200"))
    TIMER_TICKER_ENABLED = os.environ.get("TIMER_TICKER_ENABLED", "1") == "1"
    TICK_INTERVAL_SEC = float(os.environ.get("TICK_INTERVAL_SEC", "0.25"))
    SSE_KEEPALIVE_SEC = float(os.environ.get("SSE_KEEPALIVE_SEC", "30"))
    POLL_QUEUE_SIZE = int(os.environ.get("POLL_QUEUE_SIZE", "200"))
    POLL_SUBSCRIBER_TTL_SEC = int(os.environ.get("POLL_SUBSCRIBER_TTL_SEC", "60"))

    # Image generation
    REPLICATE_API_TOKEN = os.environ.get("REPLICATE_API_TOKEN", "")
    REPLICATE_MODEL = os.environ.get("REPLICATE_MODEL", "google/nano-banana-pro")
    GENERATION_ASPECT_RATIO = os.environ.get("GENERATION_ASPECT_RATIO", "16:9")
    GENERATION_POLL_INTERVAL_SEC = float(os.environ.get("GENERATION_POLL_INTERVAL_SEC", "2"))
    GENERATION_MAX_POLLS = int(os.environ.get("GENERATION_MAX_POLLS", "120"))
    GENERATION_SUBMIT_RETRIES = int(os.environ.get("GENERATION_SUBMIT_RETRIES", "1"))
