import logging
import os

from dotenv import load_dotenv

# Config reads the environment at import time.
load_dotenv()
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

try:
    from backend.promptparty.server import create_app  # noqa: E402
except ImportError:  # pragma: no cover
    from promptparty.server import create_app  # noqa: E402

app, socketio = create_app()
