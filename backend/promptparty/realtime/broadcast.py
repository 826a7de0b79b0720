from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from threading import Condition, Lock
from typing import Callable, Protocol

from flask_socketio import SocketIO


log = logging.getLogger(__name__)


class Channel(Protocol):
    def publish(self, event: str, payload) -> None: ...


class Broadcaster:
    """Fans every event out to all registered channels.

    A channel that fails is logged and skipped; clients behind it recover by
    pulling the full state.
    """

    def __init__(self) -> None:
        self._channels: list[Channel] = []

    def add_channel(self, channel: Channel) -> None:
        self._channels.append(channel)

    def broadcast(self, event: str, payload) -> None:
        for channel in list(self._channels):
            try:
                channel.publish(event, payload)
            except Exception:
                log.warning(f"[broadcast] {type(channel).__name__} failed to deliver {event}", exc_info=True)


class SocketIOChannel:
    def __init__(self, socketio: SocketIO, namespace: str = "/") -> None:
        self.socketio = socketio
        self.namespace = namespace

    def publish(self, event: str, payload) -> None:
        self.socketio.emit(event, payload, namespace=self.namespace)


class Subscriber:
    def __init__(self, connection_id: str, maxlen: int, now: float) -> None:
        self.connection_id = connection_id
        self.events: deque[dict] = deque()
        self.maxlen = maxlen
        self.last_seen = now
        self.resync = False

    def push(self, item: dict) -> None:
        if len(self.events) >= self.maxlen:
            self.events.popleft()
            self.resync = True
        self.events.append(item)


class SubscriberRegistry:
    """Per-connection event queues for HTTP pull and SSE clients.

    Events are queued in emission order. A client that falls too far behind
    loses the oldest events and is told to resync from the full state.
    """

    def __init__(self, maxlen: int = 200, ttl_sec: float = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.maxlen = maxlen
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._subs: dict[str, Subscriber] = {}
        self._cond = Condition(Lock())

    def __len__(self) -> int:
        with self._cond:
            return len(self._subs)

    def subscribe(self, connection_id: str) -> Subscriber:
        with self._cond:
            sub = self._subs.get(connection_id)
            if sub is None:
                sub = Subscriber(connection_id, self.maxlen, self._clock())
                self._subs[connection_id] = sub
            sub.last_seen = self._clock()
            return sub

    def unsubscribe(self, connection_id: str) -> None:
        with self._cond:
            self._subs.pop(connection_id, None)

    def _prune_locked(self) -> None:
        cutoff = self._clock() - self.ttl_sec
        for cid in [cid for cid, sub in self._subs.items() if sub.last_seen < cutoff]:
            del self._subs[cid]

    def publish(self, event: str, payload) -> None:
        item = {"type": event, "data": payload}
        with self._cond:
            self._prune_locked()
            for sub in self._subs.values():
                sub.push(item)
            self._cond.notify_all()

    def drain(self, connection_id: str) -> tuple[list[dict], bool]:
        with self._cond:
            sub = self._subs.get(connection_id)
            if sub is None:
                return [], True
            return self._take_locked(sub)

    def wait(self, connection_id: str, timeout: float) -> tuple[list[dict], bool]:
        """Block until events arrive for ``connection_id`` or ``timeout`` passes."""
        with self._cond:
            sub = self._subs.get(connection_id)
            if sub is None:
                return [], True
            if not sub.events:
                self._cond.wait(timeout)
            return self._take_locked(sub)

    def _take_locked(self, sub: Subscriber) -> tuple[list[dict], bool]:
        sub.last_seen = self._clock()
        events = list(sub.events)
        sub.events.clear()
        resync, sub.resync = sub.resync, False
        return events, resync


class RedisRelay:
    """Carries events between instances that share one Redis.

    Everything broadcast locally is published on a pub/sub channel; messages
    from other instances are handed to ``sink``, normally the local
    SubscriberRegistry, so pull and SSE clients see every commit whichever
    instance made it. Socket.IO clients are covered by the message queue.
    """

    def __init__(
        self,
        client,
        sink: Channel,
        channel: str = "game:events",
        origin: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.sink = sink
        self.channel = channel
        self.origin = origin or uuid.uuid4().hex
        self._sleep = sleep
        self._pubsub = client.pubsub()
        self._subscribed = False
        self._lock = Lock()
        try:
            self._subscribe()
        except Exception:
            log.warning(f"[relay] could not subscribe to {channel}, will retry", exc_info=True)

    def _subscribe(self) -> None:
        if not self._subscribed:
            self._pubsub.subscribe(self.channel)
            self._subscribed = True

    def publish(self, event: str, payload) -> None:
        message = json.dumps({"origin": self.origin, "type": event, "data": payload})
        self.client.publish(self.channel, message)

    def pump(self, timeout: float = 0.0) -> int:
        """Deliver pending messages from other instances; returns how many."""
        # A non-blocking pump never waits behind the background reader.
        if not self._lock.acquire(blocking=timeout > 0):
            return 0
        delivered = 0
        try:
            self._subscribe()
            while True:
                message = self._pubsub.get_message(timeout=timeout)
                if message is None:
                    break
                timeout = 0.0
                if message.get("type") != "message":
                    continue
                try:
                    item = json.loads(message["data"])
                except (TypeError, ValueError):
                    item = None
                if not isinstance(item, dict):
                    log.warning(f"[relay] dropping malformed message on {self.channel}")
                    continue
                if item.get("origin") == self.origin:
                    continue
                self.sink.publish(item.get("type"), item.get("data"))
                delivered += 1
        finally:
            self._lock.release()
        return delivered

    def run(self) -> None:
        log.info(f"[relay] listening on {self.channel} as {self.origin}")
        while True:
            try:
                self.pump(timeout=1.0)
            except Exception:
                log.warning("[relay] read failed", exc_info=True)
                self._subscribed = False
                self._sleep(1.0)


class Debouncer:
    """Leading-edge call plus at most one trailing call per window.

    ``fire`` is expected to read the latest state itself, so the trailing call
    always carries the last change made inside the window.
    """

    def __init__(
        self,
        window_ms: int,
        fire: Callable[[], None],
        spawn: Callable,
        sleep: Callable[[float], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window_ms / 1000.0
        self._fire = fire
        self._spawn = spawn
        self._sleep = sleep
        self._clock = clock
        self._lock = Lock()
        self._last = float("-inf")
        self._pending = False

    def trigger(self) -> None:
        fire_now = False
        delay = 0.0
        with self._lock:
            now = self._clock()
            elapsed = now - self._last
            if self.window <= 0 or elapsed >= self.window:
                self._last = now
                fire_now = True
            elif self._pending:
                return
            else:
                self._pending = True
                delay = self.window - elapsed
        if fire_now:
            self._fire()
        else:
            self._spawn(self._trailing, delay)

    def _trailing(self, delay: float) -> None:
        self._sleep(delay)
        with self._lock:
            self._pending = False
            self._last = self._clock()
        self._fire()
