# api/broadcast.py
import itertools
import json
import logging
import queue
import threading
import time
from typing import Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)


def format_sse(snapshot: Dict) -> str:
    """Encode one snapshot as a server-sent-event frame."""
    payload = {"type": "state", **snapshot}
    return f"data: {json.dumps(payload)}\n\n"


class StateBroadcaster:
    """
    Fans committed snapshots out to event-stream subscribers.

    Each subscriber owns a bounded queue. Publishing never blocks: when a
    queue is full its oldest snapshot is discarded, since every snapshot
    carries the whole state and a newer one supersedes it.
    """

    def __init__(self, queue_size: int = 64, keepalive_seconds: float = 15.0):
        self.queue_size = queue_size
        self.keepalive_seconds = keepalive_seconds
        self.subscribers: Dict[int, queue.Queue] = {}
        self.connections: Dict[str, Dict] = {}  # socket.io session_id -> connection_info
        self.lock = threading.RLock()
        self._ids = itertools.count(1)

    def add_subscriber(self) -> int:
        with self.lock:
            subscriber_id = next(self._ids)
            self.subscribers[subscriber_id] = queue.Queue(maxsize=self.queue_size)
            return subscriber_id

    def remove_subscriber(self, subscriber_id: int) -> None:
        with self.lock:
            self.subscribers.pop(subscriber_id, None)

    def publish(self, snapshot: Dict) -> None:
        """Queue a snapshot for every subscriber."""
        with self.lock:
            targets = list(self.subscribers.items())

        for subscriber_id, pending in targets:
            try:
                pending.put_nowait(snapshot)
            except queue.Full:
                try:
                    pending.get_nowait()
                except queue.Empty:
                    pass
                try:
                    pending.put_nowait(snapshot)
                except queue.Full:
                    logger.warning(f"Subscriber {subscriber_id} is not keeping up, "
                                   f"skipped version {snapshot.get('version')}")

    def subscribe(self, initial: Optional[Callable[[], Dict]] = None) -> Iterator[Optional[Dict]]:
        """
        Lazy, endless sequence of snapshots.

        Registers before reading the initial snapshot so no commit is missed.
        Yields None whenever keepalive_seconds pass without a commit. The
        subscription is dropped when the generator is closed.
        """
        subscriber_id = self.add_subscriber()
        pending = self.subscribers[subscriber_id]
        logger.info(f"Event subscriber {subscriber_id} connected")
        try:
            if initial is not None:
                yield initial()
            while True:
                try:
                    yield pending.get(timeout=self.keepalive_seconds)
                except queue.Empty:
                    yield None
        finally:
            self.remove_subscriber(subscriber_id)
            logger.info(f"Event subscriber {subscriber_id} disconnected")

    def add_connection(self, session_id: str, user_info: Dict = None) -> None:
        """Track a socket.io connection."""
        with self.lock:
            self.connections[session_id] = {
                "connected_at": time.time(),
                "user_info": user_info or {},
            }

    def remove_connection(self, session_id: str) -> None:
        with self.lock:
            self.connections.pop(session_id, None)

    def get_subscriber_count(self) -> int:
        with self.lock:
            return len(self.subscribers) + len(self.connections)
