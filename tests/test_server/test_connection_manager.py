#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

import socket
import threading
import time

import pytest

from imdlink.clients.imd_client import ImdClient
from imdlink.sockets.protocol import (
    HEADER_LEN,
    ImdMessage,
    decode_handshake,
    encode_header,
)
from imdlink.sockets.sockets import ConnectionState, ImdServer


@pytest.fixture
def server():
    srv = ImdServer(host="127.0.0.1", port=0, io_timeout=2.0, connect_wait=1.0, loop_wait=0.01)
    srv.listen()
    yield srv
    srv.close()


def _raw_client(port: int) -> socket.socket:
    sock = socket.create_connection(("127.0.0.1", port), timeout=2.0)
    return sock


def _recv_exact(sock, n):
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def test_listen_reports_os_chosen_port(tmp_path):
    port_file = tmp_path / "imd.port"
    srv = ImdServer(host="127.0.0.1", port=-1, port_file=str(port_file))
    try:
        port = srv.listen()
        assert port > 0
        assert srv.state is ConnectionState.LISTENING
        assert port_file.read_text().split() == ["127.0.0.1", str(port)]
    finally:
        srv.close()
    assert srv.state is ConnectionState.CLOSED


def test_listen_on_busy_port_is_fatal():
    busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    busy.bind(("127.0.0.1", 0))
    busy.listen(1)
    try:
        srv = ImdServer(host="127.0.0.1", port=busy.getsockname()[1])
        with pytest.raises(RuntimeError):
            srv.listen()
    finally:
        busy.close()


def test_unwritable_port_file_is_fatal(tmp_path):
    srv = ImdServer(host="127.0.0.1", port=0, port_file=str(tmp_path / "missing" / "imd.port"))
    with pytest.raises(RuntimeError, match="port file"):
        srv.listen()
    assert srv.state is ConnectionState.UNSTARTED
    assert srv.serversock is None


def test_try_connect_without_client_returns_immediately(server):
    t0 = time.monotonic()
    assert server.try_connect() is False
    assert time.monotonic() - t0 < 0.5
    assert server.state is ConnectionState.LISTENING


@pytest.mark.core
def test_handshake_then_go_connects(server):
    peer = _raw_client(server.port)
    try:
        # GO may be sent before reading the handshake, it is simply buffered
        peer.sendall(encode_header(ImdMessage.GO, 0))
        assert server.try_connect() is True
        assert server.connected
        assert server.state is ConnectionState.CONNECTED
        decode_handshake(_recv_exact(peer, HEADER_LEN))
    finally:
        peer.close()


@pytest.mark.core
def test_other_first_message_aborts_and_stays_idle(server):
    peer = _raw_client(server.port)
    try:
        peer.sendall(encode_header(ImdMessage.PAUSE, 0))
        assert server.try_connect() is False
        assert server.client is None
        assert server.state is ConnectionState.LISTENING
        # handshake arrives, then the server hangs up
        _recv_exact(peer, HEADER_LEN)
        assert peer.recv(1) == b""
    finally:
        peer.close()


def test_missing_go_times_out(server):
    server.connect_wait = 0.1
    peer = _raw_client(server.port)
    try:
        t0 = time.monotonic()
        assert server.try_connect() is False
        assert time.monotonic() - t0 < 1.0
        assert server.state is ConnectionState.LISTENING
    finally:
        peer.close()


def test_block_connect_honors_stop_before_waiting(server):
    assert server.block_connect(lambda: True) is False


def test_block_connect_stops_when_requested(server):
    calls = []

    def stop_requested():
        calls.append(1)
        return len(calls) > 3

    t0 = time.monotonic()
    assert server.block_connect(stop_requested) is False
    assert time.monotonic() - t0 < 1.0
    assert len(calls) == 4


def test_block_connect_with_client_thread(server):
    client = ImdClient("127.0.0.1", server.port, timeout=2.0)
    errors = []

    def run():
        try:
            client.connect()
        except Exception as err:  # surfaced in the main thread
            errors.append(err)

    th = threading.Thread(target=run)
    th.start()
    deadline = time.monotonic() + 5.0
    try:
        assert server.block_connect(lambda: time.monotonic() > deadline) is True
        th.join(timeout=5.0)
        assert not errors
        assert client.byteorder in ("<", ">")
    finally:
        client.close()


def test_disconnect_runs_hooks_and_returns_to_listening(server):
    peer = _raw_client(server.port)
    seen = []
    server.disconnect_hooks.append(lambda: seen.append("reset"))
    try:
        peer.sendall(encode_header(ImdMessage.GO, 0))
        assert server.try_connect()
        server.disconnect()
        assert seen == ["reset"]
        assert server.client is None
        assert server.state is ConnectionState.LISTENING
        # second disconnect is a no-op
        server.disconnect()
        assert seen == ["reset"]
    finally:
        peer.close()


def test_reconnect_after_disconnect(server):
    for _ in range(2):
        peer = _raw_client(server.port)
        try:
            peer.sendall(encode_header(ImdMessage.GO, 0))
            assert server.try_connect()
            server.disconnect()
        finally:
            peer.close()
