import asyncio
import concurrent.futures
import errno
import socket
from typing import Optional, Tuple

from ..utils.config import EchoSettings, Endpoint
from ..utils.logger import fail, get_logger
from .runtime import Runtime, SerializationContext
from .session import Session

logger = get_logger("wsecho.Listener")

# errors after which the acceptor is unusable
FATAL_ACCEPT_ERRNOS = {errno.EBADF, errno.EINVAL, errno.ENOTSOCK, errno.EOPNOTSUPP}
# out of descriptors or memory; accepting again right away would spin
EXHAUSTION_ERRNOS = {errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM}
ACCEPT_BACKOFF = 0.1


class Listener:
    """Owns the listening socket and turns every accepted connection into a Session"""
    def __init__(self, runtime: Runtime, endpoint: Endpoint, settings: Optional[EchoSettings] = None):
        self.runtime = runtime
        self.endpoint = endpoint
        self.settings = settings or EchoSettings()

        self._acceptor: Optional[socket.socket] = None
        self._context: Optional[SerializationContext] = None
        self._accepting: Optional[concurrent.futures.Future] = None

        self._open()

    def _open(self):
        family = socket.AF_INET6 if self.endpoint.family_version == 6 else socket.AF_INET

        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError as e:
            fail(e, "open", logger)
            return

        steps = (
            ("set_option", lambda: sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)),
            ("bind", lambda: sock.bind((self.endpoint.address, self.endpoint.port))),
            ("listen", lambda: sock.listen(socket.SOMAXCONN)),
        )
        for what, step in steps:
            try:
                step()
            except OSError as e:
                fail(e, what, logger)
                sock.close()
                return

        sock.setblocking(False)
        self._acceptor = sock

    @property
    def is_open(self) -> bool:
        return self._acceptor is not None

    @property
    def address(self) -> Optional[Tuple]:
        """The bound (host, port, ...) tuple, or None if setup failed"""
        if self._acceptor is None:
            return None
        return self._acceptor.getsockname()

    def start(self):
        """Begin accepting on the listener's own context; a no-op if setup failed"""
        if self._acceptor is None:
            logger.warning("Listener is not open, not accepting")
            return
        if self._accepting is not None:
            return

        self._context = self.runtime.make_serialization_context()
        self._accepting = self._context.spawn(self._accept_loop())

    def close(self):
        """Stop accepting; safe from any thread"""
        if self._accepting is not None:
            self._accepting.cancel()
        elif self._acceptor is not None:
            self._acceptor.close()

    async def _accept_loop(self):
        loop = asyncio.get_running_loop()
        logger.info(f"Accepting on {self.endpoint.address}:{self.endpoint.port}")

        try:
            while True:
                try:
                    sock, peer = await loop.sock_accept(self._acceptor)

                except OSError as e:
                    fail(e, "accept", logger)
                    if e.errno in FATAL_ACCEPT_ERRNOS or self._acceptor.fileno() == -1:
                        logger.error("Acceptor is unusable, accept loop stopped")
                        return
                    if e.errno in EXHAUSTION_ERRNOS:
                        await asyncio.sleep(ACCEPT_BACKOFF)
                    continue

                logger.info(f"Accepted connection from {peer}")
                try:
                    Session(sock, self.runtime.make_serialization_context(), self.settings).run()
                except RuntimeError as e:
                    # the session's worker loop is gone, the runtime is shutting down
                    fail(e, "accept", logger)
                    sock.close()
                    return

        finally:
            self._acceptor.close()
            logger.debug("Acceptor closed")
