from __future__ import annotations

import copy
import json
import logging
from collections import deque
from threading import RLock
from typing import Any, Callable, TypeVar

import redis

from .models import GameState, LogEntry


log = logging.getLogger(__name__)

T = TypeVar("T")
Mutator = Callable[[GameState], T]
Listener = Callable[[GameState], None]


class StoreError(Exception):
    pass


class GameStore:
    """Holds the single GameState record and the capped admin log.

    ``update`` is the only way to change state: the mutator gets a private
    working copy, and the copy is committed only if the mutator returns.
    Listeners run after the commit with a detached snapshot, one snapshot at a
    time and in revision order; a snapshot older than one already published
    is dropped.
    """

    def __init__(self, log_cap: int = 100) -> None:
        self.log_cap = log_cap
        self._listeners: list[Listener] = []
        self._notify_lock = RLock()
        self._published_revision = -1

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, state: GameState) -> None:
        with self._notify_lock:
            if state.revision <= self._published_revision:
                log.debug(f"[store] skipping stale snapshot r{state.revision}")
                return
            self._published_revision = state.revision
            for listener in list(self._listeners):
                try:
                    listener(state)
                except Exception:
                    log.exception("[store] change listener failed")

    def load(self) -> GameState:
        raise NotImplementedError

    def update(self, mutator: Mutator, notify: bool = True) -> tuple[Any, GameState]:
        raise NotImplementedError

    def append_log(self, entry: LogEntry) -> None:
        raise NotImplementedError

    def get_logs(self) -> list[LogEntry]:
        raise NotImplementedError

    def clear_logs(self) -> None:
        raise NotImplementedError


class MemoryStore(GameStore):
    def __init__(self, log_cap: int = 100, initial: GameState | None = None) -> None:
        super().__init__(log_cap=log_cap)
        self._lock = RLock()
        self._state = initial or GameState()
        self._logs: deque[LogEntry] = deque(maxlen=log_cap)

    def load(self) -> GameState:
        with self._lock:
            return copy.deepcopy(self._state)

    def update(self, mutator: Mutator, notify: bool = True) -> tuple[Any, GameState]:
        with self._lock:
            working = copy.deepcopy(self._state)
            result = mutator(working)
            working.revision += 1
            self._state = working
            snapshot = copy.deepcopy(working)
        if notify:
            self._notify(snapshot)
        return result, snapshot

    def append_log(self, entry: LogEntry) -> None:
        with self._lock:
            self._logs.append(entry)

    def get_logs(self) -> list[LogEntry]:
        with self._lock:
            return list(self._logs)

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()


class RedisStore(GameStore):
    """GameState as one JSON document, updated with WATCH/MULTI/EXEC.

    Several server instances (or stateless request workers) can share it; a
    concurrent writer makes EXEC fail and the mutator is re-run on fresh data.
    """

    def __init__(
        self,
        client: redis.Redis,
        state_key: str = "game:state",
        logs_key: str = "game:logs",
        log_cap: int = 100,
        max_retries: int = 50,
    ) -> None:
        super().__init__(log_cap=log_cap)
        self.client = client
        self.state_key = state_key
        self.logs_key = logs_key
        self.max_retries = max_retries

    @staticmethod
    def _decode(raw) -> GameState:
        if not raw:
            return GameState()
        return GameState.from_dict(json.loads(raw))

    def load(self) -> GameState:
        try:
            raw = self.client.get(self.state_key)
        except redis.RedisError as exc:
            log.warning(f"[store] redis read failed, serving default state: {exc}")
            return GameState()
        return self._decode(raw)

    def update(self, mutator: Mutator, notify: bool = True) -> tuple[Any, GameState]:
        for _ in range(self.max_retries):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(self.state_key)
                    state = self._decode(pipe.get(self.state_key))
                    result = mutator(state)
                    state.revision += 1
                    pipe.multi()
                    pipe.set(self.state_key, json.dumps(state.to_dict()))
                    pipe.execute()
                except redis.WatchError:
                    continue
            if notify:
                self._notify(state)
            return result, state
        raise StoreError(f"gave up updating {self.state_key} after {self.max_retries} conflicts")

    def append_log(self, entry: LogEntry) -> None:
        with self.client.pipeline() as pipe:
            pipe.lpush(self.logs_key, json.dumps(entry.to_dict()))
            pipe.ltrim(self.logs_key, 0, self.log_cap - 1)
            pipe.execute()

    def get_logs(self) -> list[LogEntry]:
        try:
            raw = self.client.lrange(self.logs_key, 0, self.log_cap - 1)
        except redis.RedisError as exc:
            log.warning(f"[store] redis log read failed: {exc}")
            return []
        return [LogEntry.from_dict(json.loads(item)) for item in reversed(raw)]

    def clear_logs(self) -> None:
        self.client.delete(self.logs_key)


def uses_redis(config) -> bool:
    return str(config.get("STORE_BACKEND", "memory")).lower() == "redis"


def make_redis_client(config) -> redis.Redis:
    url = config.get("REDIS_URL") or "redis://localhost:6379/0"
    log.info(f"[store] using redis at {url}")
    return redis.Redis.from_url(url)


def make_store(config, client: redis.Redis | None = None) -> GameStore:
    cap = int(config.get("LOG_BUFFER_SIZE", 100))
    if uses_redis(config):
        return RedisStore(
            client if client is not None else make_redis_client(config),
            state_key=config.get("STATE_KEY", "game:state"),
            logs_key=config.get("LOGS_KEY", "game:logs"),
            log_cap=cap,
        )
    return MemoryStore(log_cap=cap)
