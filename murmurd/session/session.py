import asyncio
import logging
import traceback

from murmurd.errors import SessionError, TransportError
from murmurd.protocol.envelope import build_envelope, envelope_key, verify_envelope
from murmurd.session.store import MessageStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

EVENTS = ("ready", "error", "message")


class Session:
    """Binds an Identity to a Connection and owns the message history.

    Without a connection the session runs offline: history is kept in memory
    and every send fails.
    """

    def __init__(self, identity, connection=None):
        self.identity = identity
        self.connection = connection
        self.store = connection.store if connection is not None else MessageStore(":memory:")
        self.ready = False
        self._lock = asyncio.Lock()
        self._listeners = {event: [] for event in EVENTS}

    def on(self, event, callback):
        if event not in self._listeners:
            raise ValueError(f"Unknown session event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.error(f"Listener for '{event}' failed:\n{traceback.format_exc()}")

    async def open(self):
        if self.connection is not None:
            await self.connection.start(self._receive)
        else:
            logger.warning("No connection available, session is offline (passive mode)")
        self.ready = True
        self._emit("ready")

    async def close(self):
        self.ready = False
        if self.connection is not None:
            await self.connection.close()
        else:
            self.store.close()

    async def send(self, to, message):
        if self.connection is None:
            raise SessionError("session is offline (passive mode)")

        envelope = build_envelope(self.identity, to, message)
        key = envelope_key(envelope)
        # Delivery happens outside the lock; a message to ourselves re-enters _receive
        await self.connection.deliver(to, envelope)
        async with self._lock:
            self.store.put(key, "out", envelope)
        logger.debug(f"Message {key[:12]} delivered to {to}")
        return {"key": key, "to": to, "timestamp": envelope["timestamp"], "delivered": True}

    async def playback(self):
        async with self._lock:
            return self.store.all()

    async def purge(self):
        async with self._lock:
            self.store.purge()
        logger.info("Message history purged")

    async def _receive(self, envelope):
        """Accept an inbound envelope from the connection; returns its key."""
        try:
            verify_envelope(envelope)
        except TransportError as e:
            self._emit("error", e)
            raise
        if envelope["to"] != self.identity.user_id:
            raise TransportError(f"envelope is addressed to {envelope['to']}, not {self.identity.user_id}")

        key = envelope_key(envelope)
        async with self._lock:
            stored = self.store.put(key, "in", envelope)
        if stored:
            self._emit("message", {
                "key": key,
                "direction": "in",
                "from": envelope["from"],
                "to": envelope["to"],
                "message": envelope["message"],
                "timestamp": envelope["timestamp"],
            })
        return key
