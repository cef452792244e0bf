import threading
import time

import pytest

from wsecho.server.server import EchoServer
from wsecho.utils.config import EchoSettings, ServerConfig


def wait_until(predicate, timeout: float = 5.0) -> bool:
    """Poll predicate until it holds or timeout runs out"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def settings(tmp_path) -> EchoSettings:
    return EchoSettings(config_path=tmp_path / "config.yaml")


@pytest.fixture
def server_factory(tmp_path):
    """Start EchoServers on a free port in background threads, stop them afterwards"""
    started = []

    def start(threads: int = 2, **overrides) -> EchoServer:
        settings = EchoSettings(config_path=tmp_path / "config.yaml", **overrides)
        server = EchoServer(ServerConfig("127.0.0.1", 0, threads), settings)
        thread = threading.Thread(target=server.serve, daemon=True)
        thread.start()
        started.append((server, thread))
        return server

    yield start

    for server, thread in started:
        server.stop()
        thread.join(timeout=10)


@pytest.fixture
def echo_server(server_factory) -> EchoServer:
    return server_factory()
