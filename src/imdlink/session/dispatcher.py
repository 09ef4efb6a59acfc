#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Coordinator-side handling of client commands.
"""

from __future__ import annotations
import socket
from typing import Callable, Optional

import numpy as np

from ..sockets.protocol import ImdMessage, _SocketClosed
from ..sockets.sockets import ImdServer
from .state import ForceBatch, SessionState


class CommandDispatcher:
    """
    Drains pending client messages once per step and turns them into session
    state changes.

    Runs on the coordinator only. All reads are non-blocking, except while the
    client holds the simulation paused: then the dispatcher waits for the next
    command in ``latency``-sized slices, checking ``stop_requested`` in between.
    """

    def __init__(
        self,
        state: SessionState,
        server: ImdServer,
        ntracked: int,
        request_stop: Optional[Callable[[], None]] = None,
        stop_requested: Optional[Callable[[], bool]] = None,
        latency: float = 0.01,
    ):
        """
        Parameters
        ----------
        state : SessionState
            Session state to update.
        server : ImdServer
            Connection manager holding the client socket.
        ntracked : int
            Size of the tracked atom set; received force indices must lie below it.
        request_stop : callable or None, optional
            Asks the simulation to stop cooperatively (used by ``KILL``).
        stop_requested : callable or None, optional
            External stop flag, checked while paused.
        latency : float, default: 0.01
            Poll slice (seconds) while paused.
        """

        self.state = state
        self.server = server
        self.ntracked = int(ntracked)
        self.request_stop = request_stop or (lambda: None)
        self.stop_requested = stop_requested or (lambda: False)
        self.latency = float(latency)
        self.paused = False

    def _log(self, *a):
        print("[ImdSession]", *a)

    def drop_client(self, msg: str):
        """
        Log ``msg`` and force a disconnect. Does not stop the simulation.
        """

        self._log(msg)
        self.server.disconnect()

    def drain(self) -> int:
        """
        Process every message that is available right now.

        Returns
        -------
        int
            Number of messages handled.
        """

        handled = 0
        self.paused = False
        while self.server.client is not None:
            if not self.paused:
                if not self.server.has_pending_data(0.0):
                    break
            elif not self.server.has_pending_data(self.latency):
                if self.stop_requested():
                    self._log("Stop requested while paused, resuming.")
                    self.paused = False
                    break
                continue

            kind, length = self.server.recv_header()
            self.handle(kind, length)
            handled += 1
        return handled

    def handle(self, kind, length: int):
        """
        Apply a single decoded message.

        Parameters
        ----------
        kind : ImdMessage or int
            Message type as returned by the wire codec.
        length : int
            Header length field.
        """

        st = self.state

        if kind == ImdMessage.KILL:
            if st.terminatable:
                self._log(
                    "Terminating connection and running simulation (if supported by integrator)."
                )
                st.terminated = True
                st.wait_for_connection = False
                self.request_stop()
                self.server.disconnect()
            else:
                self._log(
                    "Set --imd-term to allow termination of the simulation from within IMD."
                )

        elif kind == ImdMessage.DISCONNECT:
            self._log("Disconnecting client.")
            self.server.disconnect()

        elif kind == ImdMessage.MDCOMM:
            self._read_forces(length)

        elif kind == ImdMessage.PAUSE:
            if self.paused:
                self._log("Un-pause command received.")
            else:
                self._log("Pause command received.")
            self.paused = not self.paused

        elif kind == ImdMessage.TRATE:
            # a rate of 0 resets to the default (VMD itself never sends 0)
            st.pending_interval = int(length) if length > 0 else st.default_interval
            self._log(f"Update frequency will be set to {st.pending_interval}.")

        else:
            name = kind.name if isinstance(kind, ImdMessage) else str(kind)
            self._log(f"Received unexpected {name}.")
            self.drop_client("Terminating connection")

    def _read_forces(self, nforces: int):
        try:
            # a client never pulls on more atoms than it was sent
            indices, forces = self.server.recv_forces(nforces, max_forces=self.ntracked)
        except (socket.timeout, _SocketClosed, OSError, ValueError):
            self.drop_client("Error while reading forces from remote. Disconnecting")
            return

        if indices.size and (indices.min() < 0 or indices.max() >= self.ntracked):
            self.drop_client(
                f"Force index out of range [0, {self.ntracked}) received. Disconnecting"
            )
            return

        self.state.received_forces = ForceBatch(indices, forces.astype(np.float64))
        self.state.new_forces_pending = True
