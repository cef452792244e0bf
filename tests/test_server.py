import asyncio
import socket
import struct

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.frames import CloseCode

from wsecho.server.server import main
from conftest import wait_until


def uri(server) -> str:
    return f"ws://127.0.0.1:{server.port}"


def client(server):
    return connect(uri(server), proxy=None)


HANDSHAKE = (
    b"GET / HTTP/1.1\r\n"
    b"Host: 127.0.0.1\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
    b"Sec-WebSocket-Version: 13\r\n"
    b"\r\n"
)


def client_frame(opcode: int, payload: bytes, fin: bool = True) -> bytes:
    """Masked client frame; the all-zero mask leaves the payload as is"""
    head = bytes([(0x80 if fin else 0) | opcode])
    length = len(payload)
    if length < 126:
        head += bytes([0x80 | length])
    elif length < 65536:
        head += bytes([0x80 | 126]) + length.to_bytes(2, "big")
    else:
        head += bytes([0x80 | 127]) + length.to_bytes(8, "big")
    return head + b"\x00\x00\x00\x00" + payload


async def raw_session(server, rcvbuf=None):
    """Open a WebSocket by hand and return the stream pair"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if rcvbuf:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, rcvbuf)
    sock.setblocking(False)
    await asyncio.get_running_loop().sock_connect(sock, ("127.0.0.1", server.port))

    reader, writer = await asyncio.open_connection(sock=sock)
    writer.write(HANDSHAKE)
    await writer.drain()

    response = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
    assert response.startswith(b"HTTP/1.1 101")
    return reader, writer


async def assert_still_echoes(server):
    async with client(server) as ws:
        await ws.send("ok")
        assert await ws.recv() == "ok"


@pytest.mark.asyncio
async def test_smoke(echo_server):
    async with client(echo_server) as ws:
        await ws.send("hello")
        assert await ws.recv() == "hello"

    assert ws.close_code == CloseCode.NORMAL_CLOSURE


@pytest.mark.asyncio
async def test_binary_echo(echo_server):
    payload = b"\xab" * 1024

    async with client(echo_server) as ws:
        await ws.send(payload)
        reply = await ws.recv()

    assert isinstance(reply, bytes)
    assert reply == payload


@pytest.mark.asyncio
async def test_interleaved_clients_are_isolated(echo_server):
    async with client(echo_server) as c1, client(echo_server) as c2:
        await c1.send("A1")
        await c2.send("B1")
        await c1.send("A2")
        await c2.send("B2")

        assert [await c1.recv(), await c1.recv()] == ["A1", "A2"]
        assert [await c2.recv(), await c2.recv()] == ["B1", "B2"]


@pytest.mark.asyncio
async def test_survives_bad_handshake(echo_server):
    reader, writer = await asyncio.open_connection("127.0.0.1", echo_server.port)
    writer.write(b"\x16\x03\x01 this is not http\r\n\r\n")
    await writer.drain()
    writer.close()
    await writer.wait_closed()

    async with client(echo_server) as ws:
        await ws.send("ok")
        assert await ws.recv() == "ok"


@pytest.mark.asyncio
async def test_frame_type_fidelity(echo_server):
    async with client(echo_server) as ws:
        await ws.send("T")
        await ws.send(b"\x00\xff")
        await ws.send("")

        replies = [await ws.recv() for _ in range(3)]

    assert replies == ["T", b"\x00\xff", ""]
    assert [type(r) for r in replies] == [str, bytes, str]


def test_usage_without_arguments(capsys):
    assert main([]) != 0

    err = capsys.readouterr().err
    assert "wsecho-server <address> <port> <threads>" in err
    assert "Example" in err


def test_bad_address_exits_non_zero(capsys):
    assert main(["not-an-ip", "8080", "1"]) != 0
    assert "invalid address" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_server_header(echo_server):
    async with client(echo_server) as ws:
        assert "wsecho-server-async" in ws.response.headers["Server"]


@pytest.mark.asyncio
async def test_repeated_messages_are_echoed_each_time(echo_server):
    async with client(echo_server) as ws:
        await ws.send("same")
        await ws.send("same")

        assert [await ws.recv(), await ws.recv()] == ["same", "same"]


@pytest.mark.asyncio
async def test_ping_is_answered(echo_server):
    async with client(echo_server) as ws:
        pong = await ws.ping()
        await asyncio.wait_for(pong, 5)

        await ws.send("after ping")
        assert await ws.recv() == "after ping"


@pytest.mark.asyncio
async def test_fragmented_message_is_echoed_whole(echo_server):
    async with client(echo_server) as ws:
        await ws.send(["frag", "mented"])
        assert await ws.recv() == "fragmented"


@pytest.mark.asyncio
async def test_oversized_message_only_ends_that_session(server_factory):
    server = server_factory(max_message_size=1024)

    async with client(server) as bystander:
        async with client(server) as ws:
            await ws.send(b"x" * 1024)
            assert await ws.recv() == b"x" * 1024

            await ws.send(b"x" * 2048)
            with pytest.raises(ConnectionClosedError) as exc:
                await ws.recv()

        assert exc.value.rcvd.code == CloseCode.MESSAGE_TOO_BIG

        await bystander.send("still here")
        assert await bystander.recv() == "still here"


@pytest.mark.asyncio
async def test_plain_http_is_rejected(echo_server):
    reader, writer = await asyncio.open_connection("127.0.0.1", echo_server.port)
    writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()

    response = await asyncio.wait_for(reader.read(), 5)
    writer.close()
    await writer.wait_closed()

    assert response.startswith(b"HTTP/1.1 4")
    assert b"wsecho-server-async" in response


@pytest.mark.asyncio
async def test_sessions_are_released_after_close(echo_server):
    for _ in range(3):
        async with client(echo_server) as ws:
            await ws.send("bye")
            await ws.recv()

    # only the accept loop is left
    assert await asyncio.to_thread(wait_until, lambda: echo_server.runtime.pending == 1)


@pytest.mark.asyncio
async def test_stop_closes_live_sessions_with_going_away(echo_server):
    async with client(echo_server) as ws:
        await ws.send("ping")
        assert await ws.recv() == "ping"

        echo_server.stop()

        with pytest.raises(ConnectionClosed) as exc:
            await asyncio.wait_for(ws.recv(), 5)

    assert exc.value.rcvd.code == CloseCode.GOING_AWAY


@pytest.mark.asyncio
async def test_stalled_reader_is_dropped_after_write_timeout(server_factory, caplog):
    server = server_factory(threads=1, idle_timeout=0.5)
    reader, writer = await raw_session(server, rcvbuf=4096)

    # 8 MiB echo cannot fit in the socket buffers of a client that never reads
    writer.write(client_frame(0x2, bytes(8 * 1024 * 1024)))
    await writer.drain()

    assert await asyncio.to_thread(wait_until, lambda: "write: TimeoutError()" in caplog.text, 10)
    assert await asyncio.to_thread(wait_until, lambda: server.runtime.pending == 1, 3)

    writer.transport.abort()
    await assert_still_echoes(server)


@pytest.mark.asyncio
async def test_reset_mid_message_is_reported(echo_server, caplog):
    reader, writer = await raw_session(echo_server)

    # the header announces 100 bytes, only 10 follow
    writer.write(client_frame(0x2, bytes(100))[:16])
    await writer.drain()
    await asyncio.sleep(0.1)

    sock = writer.get_extra_info("socket")
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.transport.abort()

    assert await asyncio.to_thread(wait_until, lambda: "read: " in caplog.text)
    assert await asyncio.to_thread(wait_until, lambda: echo_server.runtime.pending == 1)
    await assert_still_echoes(echo_server)


@pytest.mark.asyncio
async def test_eof_mid_message_is_reported(echo_server, caplog):
    reader, writer = await raw_session(echo_server)

    writer.write(client_frame(0x1, b"first half", fin=False))
    await writer.drain()
    writer.write_eof()

    assert await asyncio.to_thread(wait_until, lambda: "closed mid-message" in caplog.text)
    assert "read: " in caplog.text

    writer.close()
    await assert_still_echoes(echo_server)


@pytest.mark.asyncio
async def test_invalid_utf8_text_is_closed_with_1007(echo_server, caplog):
    reader, writer = await raw_session(echo_server)

    writer.write(client_frame(0x1, b"\xff\xfe"))
    await writer.drain()

    data = await asyncio.wait_for(reader.read(), 5)
    writer.close()

    assert data[0] == 0x88
    assert int.from_bytes(data[2:4], "big") == CloseCode.INVALID_DATA
    assert await asyncio.to_thread(wait_until, lambda: "read: " in caplog.text)
    await assert_still_echoes(echo_server)


@pytest.mark.asyncio
async def test_stalled_handshake_times_out(server_factory, caplog):
    server = server_factory(handshake_timeout=0.3)
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)

    writer.write(b"GET / HTTP/1.1\r\n")
    await writer.drain()

    try:
        assert await asyncio.wait_for(reader.read(), 5) == b""
    except ConnectionResetError:
        pass
    writer.close()

    assert await asyncio.to_thread(wait_until, lambda: "accept: TimeoutError()" in caplog.text)
    await assert_still_echoes(server)
