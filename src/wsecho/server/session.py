import asyncio
import concurrent.futures
import socket
from enum import Enum
from typing import Optional

from websockets.exceptions import WebSocketException
from websockets.frames import CloseCode

from ..protocol.messages import MessageType
from ..utils.config import EchoSettings
from ..utils.logger import fail, get_logger
from .connection import ClientConnection, PeerClosed
from .runtime import SerializationContext

logger = get_logger("wsecho.Session")

# what a single I/O step may fail with; anything else is a bug and propagates
IO_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class SessionState(Enum):
    CREATED = "created"
    READING = "reading"
    WRITING = "writing"
    CLOSED = "closed"


class Session:
    """Echoes every message of one WebSocket connection back to its sender.

    All of a session's I/O runs inside serve(), a single coroutine on the
    session's serialization context. The task owns the session for as long as
    any read or write is in flight, and the session goes away with it.
    """
    def __init__(self, sock: socket.socket, context: SerializationContext, settings: Optional[EchoSettings] = None):
        self.settings = settings or EchoSettings()
        self.context = context
        self.state = SessionState.CREATED

        self._sock = sock
        self._conn: Optional[ClientConnection] = None
        self._buffer = bytearray()
        self._msg_type = MessageType.TEXT
        self._abort = False

        try:
            self.peer = sock.getpeername()
        except OSError:
            self.peer = None

    def run(self) -> concurrent.futures.Future:
        """Start the session on its own context; returns immediately"""
        return self.context.spawn(self.serve())

    async def serve(self):
        close_code = None
        try:
            if not await self._on_created():
                return

            while await self._on_reading() and await self._on_writing():
                pass

        except asyncio.CancelledError:
            logger.debug(f"Session with {self.peer} cancelled")
            close_code = CloseCode.GOING_AWAY
            raise

        finally:
            await self._on_closed(close_code)

    async def _on_created(self) -> bool:
        try:
            self._conn = await ClientConnection.open(
                self._sock,
                max_size=self.settings.max_message_size,
                handshake_timeout=self.settings.handshake_timeout,
                idle_timeout=self.settings.idle_timeout,
                close_timeout=self.settings.close_timeout,
            )
            await self._conn.do_handshake()

        except IO_ERRORS as e:
            self._report(e, "accept")
            return False

        logger.info(f"WebSocket session open with {self.peer}")
        return True

    async def _on_reading(self) -> bool:
        self.state = SessionState.READING

        try:
            self._msg_type = await self._conn.read_msg(self._buffer)

        except PeerClosed as e:
            logger.info(f"{self.peer} closed the connection (code {e.code})")
            return False

        except IO_ERRORS as e:
            self._report(e, "read")
            return False

        return True

    async def _on_writing(self) -> bool:
        self.state = SessionState.WRITING

        try:
            await self._conn.send_msg(bytes(self._buffer), self._msg_type)

        except IO_ERRORS as e:
            self._report(e, "write")
            return False

        del self._buffer[:]
        return True

    def _report(self, exc: BaseException, what: str):
        fail(exc, what, logger)
        # a broken or stalled transport cannot deliver a close frame
        self._abort = isinstance(exc, (OSError, asyncio.TimeoutError))

    async def _on_closed(self, close_code: Optional[int] = None):
        self.state = SessionState.CLOSED
        self._buffer = bytearray()

        if self._conn is not None:
            await self._conn.close(close_code, abort=self._abort)
        else:
            self._sock.close()

        logger.debug(f"Session with {self.peer} closed")
