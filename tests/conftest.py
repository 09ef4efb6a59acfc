#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

from __future__ import annotations

import socket

import numpy as np
import pytest

from imdlink.parallel import Role
from imdlink.sockets.sockets import ConnectionState, ImdServer


def _pick_free_port() -> int:
    """Ask the OS for a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class RecordingGroup:
    """
    Coordinator of a pretend two-rank group.

    Every collective call is recorded so a :class:`ReplayGroup` can play the
    worker side afterwards, without MPI.
    """

    rank = 0
    size = 2
    is_parallel = True
    is_coordinator = True
    role = Role.COORDINATOR

    def __init__(self):
        self.log = []

    def bcast(self, value):
        self.log.append(("bcast", value))
        return value

    def bcast_array(self, arr):
        buf = np.ascontiguousarray(arr).copy()
        self.log.append(("array", buf.copy()))
        return buf

    def sum_array(self, arr):
        buf = np.ascontiguousarray(arr).copy()
        self.log.append(("sum", buf.copy()))
        return buf

    def kinds(self):
        return [k for k, _ in self.log]


class ReplayGroup:
    """
    Worker of a pretend two-rank group, receiving what a :class:`RecordingGroup` sent.

    Fails the test if the worker issues collective calls in a different order
    or with different array shapes than the coordinator.
    """

    rank = 1
    size = 2
    is_parallel = True
    is_coordinator = False
    role = Role.WORKER

    def __init__(self, recorder: RecordingGroup):
        self.recorder = recorder
        self.pos = 0

    def _next(self, kind):
        assert self.pos < len(self.recorder.log), f"worker issued an extra {kind}"
        got, value = self.recorder.log[self.pos]
        assert got == kind, f"worker called {kind} where coordinator called {got}"
        self.pos += 1
        return value

    def bcast(self, value):
        return self._next("bcast")

    def bcast_array(self, arr):
        value = self._next("array")
        buf = np.ascontiguousarray(arr)
        assert buf.shape == value.shape and buf.dtype == value.dtype
        return value.copy()

    def sum_array(self, arr):
        value = self._next("sum")
        assert np.ascontiguousarray(arr).shape == value.shape
        return value.copy()

    @property
    def exhausted(self) -> bool:
        return self.pos == len(self.recorder.log)


def connected_pair(server: ImdServer):
    """
    Attach one end of a socket pair to ``server`` as if a client had connected.

    Returns the peer end, from which the test plays the client.
    """

    ours, peer = socket.socketpair()
    ours.settimeout(1.0)
    peer.settimeout(1.0)
    server.client = ours
    server.address = "socketpair"
    server.state = ConnectionState.CONNECTED
    return peer


@pytest.fixture
def free_port() -> int:
    return _pick_free_port()


@pytest.fixture
def recorder() -> RecordingGroup:
    return RecordingGroup()


@pytest.fixture
def replay(recorder) -> ReplayGroup:
    return ReplayGroup(recorder)


@pytest.fixture
def attach_peer():
    """
    Factory attaching a socket-pair peer to an :class:`ImdServer`; peers are closed at teardown.
    """

    peers = []

    def _attach(server: ImdServer):
        peer = connected_pair(server)
        peers.append(peer)
        return peer

    yield _attach
    for p in peers:
        p.close()
