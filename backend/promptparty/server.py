from __future__ import annotations

import sys
from typing import Callable

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .extensions import GAME_EXTENSION
from .game.clock import now_ms
from .game.errors import GameError
from .game.service import GameService
from .game.store import GameStore, make_redis_client, make_store, uses_redis
from .generation.client import GenerationClient, make_generation_client
from .generation.orchestrator import GenerationOrchestrator, run_inline
from .realtime.broadcast import Broadcaster, RedisRelay, SocketIOChannel, SubscriberRegistry
from .realtime.handlers import register_socketio_handlers
from .routes.admin import bp as admin_bp
from .routes.health import bp as health_bp
from .routes.participant import bp as participant_bp
from .routes.state import bp as state_bp
from .routes.vote import bp as vote_bp


def create_app(
    config_class=Config,
    generation_client: GenerationClient | None = None,
    store: GameStore | None = None,
    clock: Callable[[], int] | None = None,
    redis_client=None,
) -> tuple[Flask, SocketIO]:
    app = Flask(__name__)
    app.config.from_object(config_class)

    if app.config.get("TRUST_PROXY_HEADERS", False):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    cors_origins = app.config.get("CORS_ORIGINS", "*")
    CORS(app, resources={r"/api/*": {"origins": cors_origins}})

    async_mode = app.config.get("SOCKETIO_ASYNC_MODE", "")
    if not async_mode:
        # eventlet has known compatibility issues on Windows and Python >= 3.13
        if sys.platform.startswith("win") or sys.version_info >= (3, 13):
            async_mode = "threading"
        else:
            async_mode = "eventlet"

    socketio = SocketIO(
        app,
        cors_allowed_origins=cors_origins,
        async_mode=async_mode,
        message_queue=app.config.get("SOCKETIO_MESSAGE_QUEUE") or None,
    )

    # Background work runs inline under test so results are deterministic.
    if app.config.get("TESTING", False):
        spawn = run_inline
    else:
        spawn = socketio.start_background_task

    subscribers = SubscriberRegistry(
        maxlen=app.config.get("POLL_QUEUE_SIZE", 200),
        ttl_sec=app.config.get("POLL_SUBSCRIBER_TTL_SEC", 60),
    )
    broadcaster = Broadcaster()
    broadcaster.add_channel(SocketIOChannel(socketio))
    broadcaster.add_channel(subscribers)

    # Instances sharing a Redis store also share pull/SSE events.
    relay = None
    if uses_redis(app.config):
        if redis_client is None:
            redis_client = make_redis_client(app.config)
        relay = RedisRelay(
            redis_client,
            subscribers,
            channel=app.config.get("RELAY_CHANNEL", "game:events"),
            sleep=socketio.sleep,
        )
        broadcaster.add_channel(relay)
        if not app.config.get("TESTING", False):
            socketio.start_background_task(relay.run)

    orchestrator = GenerationOrchestrator(
        generation_client or make_generation_client(app.config),
        spawn=spawn,
        sleep=socketio.sleep,
        poll_interval=app.config.get("GENERATION_POLL_INTERVAL_SEC", 2),
        max_polls=app.config.get("GENERATION_MAX_POLLS", 120),
        submit_retries=app.config.get("GENERATION_SUBMIT_RETRIES", 1),
    )

    game = GameService(
        store or make_store(app.config, client=redis_client),
        broadcaster,
        orchestrator,
        config=app.config,
        subscribers=subscribers,
        relay=relay,
        clock_fn=clock or now_ms,
        spawn=spawn,
        sleep=socketio.sleep,
    )
    app.extensions[GAME_EXTENSION] = game

    @app.errorhandler(GameError)
    def handle_game_error(exc: GameError):
        return jsonify(exc.to_dict()), exc.http_status

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(state_bp, url_prefix="/api")
    app.register_blueprint(admin_bp, url_prefix="/api")
    app.register_blueprint(participant_bp, url_prefix="/api")
    app.register_blueprint(vote_bp, url_prefix="/api")

    register_socketio_handlers(socketio, game, app.config)

    return app, socketio
