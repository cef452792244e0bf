import asyncio
import socket
from collections import deque
from typing import Deque, Optional

from websockets.exceptions import WebSocketException
from websockets.frames import CloseCode, Frame, Opcode
from websockets.http11 import Request
from websockets.protocol import Event, State
from websockets.server import ServerProtocol
from websockets.version import version as websockets_version

from ..protocol.messages import MessageType
from ..utils.logger import get_logger

logger = get_logger("wsecho.Connection")

SERVER_HEADER = f"websockets/{websockets_version} wsecho-server-async"
READ_CHUNK = 64 * 1024


class HandshakeError(WebSocketException):
    """The opening handshake did not produce an open connection"""


class PeerClosed(Exception):
    """The peer ended the connection cleanly, with a close frame or EOF between messages"""
    def __init__(self, code: Optional[int] = None, reason: str = ""):
        super().__init__(code, reason)
        self.code = code
        self.reason = reason


class ClientConnection:
    """One WebSocket stream over an accepted TCP socket"""
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        max_size: Optional[int] = 2 ** 20,
        handshake_timeout: Optional[float] = 30.0,
        idle_timeout: Optional[float] = 300.0,
        close_timeout: Optional[float] = 5.0,
    ):
        self.reader = reader
        self.writer = writer
        self.user = writer.get_extra_info("peername")

        self.protocol = ServerProtocol(max_size=max_size, logger=logger)
        self.handshake_timeout = handshake_timeout
        self.idle_timeout = idle_timeout
        self.close_timeout = close_timeout

        self._events: Deque[Event] = deque()
        self._eof = False

    @classmethod
    async def open(cls, sock: socket.socket, **kwargs) -> "ClientConnection":
        """Wrap an accepted socket into streams on the running loop"""
        reader, writer = await asyncio.open_connection(sock=sock)
        return cls(reader, writer, **kwargs)

    @property
    def is_open(self) -> bool:
        return self.protocol.state is State.OPEN

    async def do_handshake(self, server_header: str = SERVER_HEADER):
        """Answer the HTTP upgrade request; raises HandshakeError unless the connection ends up OPEN"""
        await asyncio.wait_for(self._handshake(server_header), self.handshake_timeout)

    async def _handshake(self, server_header: str):
        request = None
        while request is None:
            await self._receive()

            while self._events and request is None:
                event = self._events.popleft()
                if isinstance(event, Request):
                    request = event

            if request is None:
                if self.protocol.handshake_exc is not None:
                    raise HandshakeError(f"invalid request from {self.user}") from self.protocol.handshake_exc
                if self._eof:
                    raise HandshakeError(f"{self.user} closed before sending a request")

        response = self.protocol.accept(request)
        response.headers["Server"] = server_header
        self.protocol.send_response(response)
        await self._flush()

        if self.protocol.state is not State.OPEN:
            raise HandshakeError(
                f"rejected {request.path!r} from {self.user} with {response.status_code}"
            ) from self.protocol.handshake_exc

        logger.debug(f"Handshake complete with {self.user}")

    async def read_msg(self, buffer: bytearray) -> MessageType:
        """Append the next complete message to buffer and return its type"""
        msg_type: Optional[MessageType] = None

        while True:
            while self._events:
                event = self._events.popleft()
                if not isinstance(event, Frame):
                    continue

                if event.opcode in (Opcode.TEXT, Opcode.BINARY):
                    msg_type = MessageType.from_opcode(event.opcode)
                elif event.opcode is Opcode.CLOSE:
                    close = self.protocol.close_rcvd
                    raise PeerClosed(close.code if close else None, close.reason if close else "")
                elif event.opcode is not Opcode.CONT:
                    # ping/pong, already answered by the protocol
                    continue

                buffer += event.data
                if event.fin:
                    if msg_type is MessageType.TEXT:
                        self._check_utf8(buffer)
                    return msg_type

            exc = self.protocol.parser_exc
            if exc is not None and not isinstance(exc, EOFError):
                raise WebSocketException(str(exc)) from exc

            if self._eof:
                if msg_type is not None:
                    raise ConnectionResetError(f"{self.user} closed mid-message")
                raise PeerClosed()

            await asyncio.wait_for(self._receive(), self.idle_timeout)

    async def send_msg(self, payload: bytes, msg_type: MessageType):
        """Send payload as one frame of the given type"""
        if msg_type is MessageType.TEXT:
            self.protocol.send_text(payload)
        else:
            self.protocol.send_binary(payload)

        await asyncio.wait_for(self._flush(), self.idle_timeout)

    async def close(self, code: Optional[int] = None, abort: bool = False):
        """Close the stream.

        With abort, the transport is dropped at once and unsent data is discarded.
        Otherwise a close frame is queued first when code is given and the
        connection is open, and buffered data gets close_timeout to drain before
        the transport is aborted anyway.
        """
        try:
            if abort:
                self.writer.transport.abort()
            else:
                if code is not None and self.is_open:
                    self.protocol.send_close(code)
                    self._write_pending()
                self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), self.close_timeout)

        except asyncio.TimeoutError:
            logger.warning(f"{self.user} did not drain within {self.close_timeout}s, aborting")
            self.writer.transport.abort()

        except (OSError, WebSocketException) as e:
            logger.warning(f"Failed to close connection with {self.user}: {e}")

    def _check_utf8(self, buffer: bytearray):
        try:
            bytes(buffer).decode("utf-8")
        except UnicodeDecodeError as e:
            self.protocol.fail(CloseCode.INVALID_DATA, "invalid UTF-8 in text message")
            self._write_pending()
            raise WebSocketException(f"invalid text message from {self.user}: {e}") from e

    async def _receive(self):
        data = await self.reader.read(READ_CHUNK)
        if data:
            self.protocol.receive_data(data)
        else:
            self._eof = True
            self.protocol.receive_eof()

        self._events.extend(self.protocol.events_received())
        await self._flush()

    def _write_pending(self):
        for data in self.protocol.data_to_send():
            if data:
                self.writer.write(data)
            elif self.writer.can_write_eof() and not self.writer.is_closing():
                self.writer.write_eof()

    async def _flush(self):
        self._write_pending()
        await self.writer.drain()
