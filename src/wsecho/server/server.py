import signal
import sys
import threading
from typing import Optional, Sequence

from rich.console import Console

from ..utils.config import ConfigError, EchoSettings, ServerConfig, UsageError
from ..utils.logger import configure_logging, get_logger
from .listener import Listener
from .runtime import Runtime

console = Console()
err_console = Console(stderr=True)
logger = get_logger("wsecho.EchoServer")


class EchoServer:
    """Multi-threaded WebSocket echo server"""
    def __init__(self, config: ServerConfig, settings: Optional[EchoSettings] = None):
        self.config = config
        self.settings = settings or EchoSettings()
        self.runtime = Runtime(config.threads)
        self.listener = Listener(self.runtime, config.endpoint, self.settings)

    @property
    def port(self) -> Optional[int]:
        address = self.listener.address
        return address[1] if address else None

    def serve(self) -> int:
        """Accept and echo until stop() is called; returns the process exit code"""
        if not self.listener.is_open:
            console.print(f"[!] Could not listen on {self.config.address}:{self.config.port}")
            return 1

        self.listener.start()
        logger.info(f"Server listening on {self.config.address}:{self.port} with {self.config.threads} thread(s)")
        console.print(f"[*] Server is started on {self.config.address}:{self.port}")

        self.runtime.run_until_stopped()
        return 0

    def stop(self):
        """Stop accepting and cancel every session; safe from any thread"""
        self.listener.close()
        self.runtime.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    try:
        config = ServerConfig.from_argv(argv)

    except UsageError as e:
        err_console.print(str(e), markup=False, highlight=False)
        return 1

    except ConfigError as e:
        err_console.print(f"[!] {e}", markup=False, highlight=False)
        return 1

    settings = EchoSettings()
    configure_logging(settings.get("log_level"), settings.get("log_file"))

    server = EchoServer(config, settings)

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: server.stop())

    try:
        code = server.serve()
    except KeyboardInterrupt:
        console.print("[*] Shutting down…")
        server.stop()
        code = 0

    if code == 0:
        console.print("\n[*] Server stopped")
    return code
