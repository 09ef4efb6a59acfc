#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Connection manager for IMD sessions.

:class:`ImdServer` owns the listening endpoint and at most one peer
connection. It lives on the coordinator rank only and never blocks the
caller, except inside :meth:`ImdServer.block_connect` (bounded by an external
stop flag) and the short wait for the client's ``GO`` after the handshake.

State machine::

    UNSTARTED --listen()--> LISTENING <--try_connect()/disconnect()--> CONNECTED
                                 \\                                       /
                                  '-------------- close() -------------> CLOSED
"""

from __future__ import annotations
import socket, time
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .protocol import (
    ImdMessage,
    EnergyBlock,
    poll_readable,
    recv_header,
    recv_mdcomm,
    send_energies,
    send_handshake,
    send_positions,
)


class ConnectionState(Enum):
    UNSTARTED = "unstarted"
    LISTENING = "listening"
    CONNECTED = "connected"
    CLOSED = "closed"


class ImdServer:
    """
    Single-client IMD server socket.

    Transport errors on an established connection are not handled here: the
    ``send_*`` / ``recv_*`` methods raise, and the caller decides to
    :meth:`disconnect`. Every disconnect runs the registered
    ``disconnect_hooks`` so session state can be reset in one place.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 0,
        io_timeout: float = 10.0,
        connect_wait: float = 1.0,
        loop_wait: float = 1.0,
        port_file: Optional[str] = None,
    ):
        """
        Parameters
        ----------
        host : str or None, default: None
            Interface to bind to; ``None`` binds to all interfaces.
        port : int, default: 0
            TCP port. Values below 1 let the OS pick a free port.
        io_timeout : float, default: 10.0
            Socket timeout (seconds) on the client connection; a read that does
            not complete within it counts as an I/O error.
        connect_wait : float, default: 1.0
            Seconds to wait for ``GO`` after the handshake.
        loop_wait : float, default: 1.0
            Sleep (seconds) between attempts in :meth:`block_connect`.
        port_file : str or None, default: None
            If given, ``host`` and the bound port are written there (one per line)
            once listening.
        """

        self.host = host or ""
        self.port = int(port) if port and port > 0 else 0
        self.io_timeout = float(io_timeout)
        self.connect_wait = float(connect_wait)
        self.loop_wait = float(loop_wait)
        self.port_file = port_file

        self.serversock: Optional[socket.socket] = None
        self.client: Optional[socket.socket] = None
        self.address: Optional[str] = None
        self.state = ConnectionState.UNSTARTED
        self.disconnect_hooks: List[Callable[[], None]] = []

    def _log(self, *a):
        print("[ImdServer]", *a)

    # -------------- lifecycle --------------

    def listen(self) -> int:
        """
        Create, bind and listen on the server socket.

        Returns
        -------
        int
            The port actually bound.

        Raises
        ------
        RuntimeError
            If the socket cannot be created, bound, set to listen or queried, or
            the port file cannot be written.
        """

        if self.state is not ConnectionState.UNSTARTED:
            raise RuntimeError(f"Cannot listen from state {self.state.value}")

        self._log("Setting up incoming socket.")
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as err:
            raise RuntimeError(f"Failed to create socket: {err}") from err
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(1)
            self.port = sock.getsockname()[1]
        except OSError as err:
            sock.close()
            raise RuntimeError(
                f"Binding socket to port {self.port} failed with error: {err}"
            ) from err

        if self.port_file is not None:
            try:
                with open(self.port_file, "w") as f:
                    f.write(f"{self.host or '127.0.0.1'}\n{self.port}\n")
            except OSError as err:
                sock.close()
                raise RuntimeError(
                    f"Writing port file {self.port_file} failed with error: {err}"
                ) from err

        self.serversock = sock
        self.state = ConnectionState.LISTENING
        self._log(f"Listening for IMD connection on port {self.port}.")
        return self.port

    def close(self):
        """
        Drop any client and close the listening socket.
        """

        self.disconnect()
        if self.serversock is not None:
            try:
                self.serversock.close()
            except OSError:
                pass
            self.serversock = None
        self.state = ConnectionState.CLOSED

    @property
    def connected(self) -> bool:
        return self.client is not None

    # -------------- connecting --------------

    def _abandon(self, csock: socket.socket, msg: str):
        self._log(msg)
        try:
            csock.close()
        except OSError:
            pass
        self._log("disconnected.")

    def try_connect(self) -> bool:
        """
        Single non-blocking connection attempt.

        Accepts a pending connection, sends the handshake and waits at most
        ``connect_wait`` seconds for the client's ``GO``. Any failure abandons
        the attempt and leaves the server listening.

        Returns
        -------
        bool
            ``True`` if a client is now connected.
        """

        if self.state is not ConnectionState.LISTENING or self.client is not None:
            return False
        if not poll_readable(self.serversock, 0.0):
            return False

        try:
            csock, addr = self.serversock.accept()
        except OSError:
            self._log("Accepting the connection on the socket failed.")
            return False

        try:
            csock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except (OSError, AttributeError):
            pass
        csock.settimeout(self.io_timeout)

        try:
            send_handshake(csock)
        except (socket.timeout, OSError):
            self._abandon(csock, "Connection failed.")
            return False

        self._log("Connection established, checking if I got IMD_GO orders.")
        if not poll_readable(csock, self.connect_wait):
            self._abandon(csock, "No IMD_GO order received. IMD connection failed.")
            return False
        kind, _ = recv_header(csock)
        if kind != ImdMessage.GO:
            self._abandon(csock, "No IMD_GO order received. IMD connection failed.")
            return False

        self.client = csock
        self.address = addr if isinstance(addr, str) else f"{addr[0]}:{addr[1]}"
        self.state = ConnectionState.CONNECTED
        self._log(f"CONNECTED: IMD client {self.address}")
        return True

    def block_connect(self, stop_requested: Optional[Callable[[], bool]] = None) -> bool:
        """
        Repeat :meth:`try_connect` every ``loop_wait`` seconds until a client
        connects or ``stop_requested()`` turns true.

        Parameters
        ----------
        stop_requested : callable or None, optional
            Cooperative cancellation flag, checked before every attempt.

        Returns
        -------
        bool
            ``True`` if a client is connected on return.
        """

        if stop_requested is None:
            stop_requested = lambda: False
        # do not wait when a stop was requested already
        if stop_requested():
            return self.connected

        self._log("Will wait until I have a connection and IMD_GO orders.")
        while self.client is None and not stop_requested():
            if self.try_connect():
                break
            time.sleep(self.loop_wait)
        return self.connected

    def disconnect(self):
        """
        Shut down and drop the client connection (no-op when not connected),
        then run the disconnect hooks.
        """

        if self.client is None:
            return
        try:
            self.client.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.client.close()
        except OSError:
            self._log("Failed to destroy socket.")
        self._log(f"DISCONNECTED: IMD client {self.address}")
        self.client = None
        self.address = None
        if self.state is ConnectionState.CONNECTED:
            self.state = ConnectionState.LISTENING
        for hook in self.disconnect_hooks:
            hook()

    # -------------- I/O on the active connection --------------

    def has_pending_data(self, timeout: float = 0.0) -> bool:
        return self.client is not None and poll_readable(self.client, timeout)

    def recv_header(self):
        return recv_header(self.client)

    def recv_forces(self, nforces: int, max_forces: Optional[int] = None):
        return recv_mdcomm(self.client, nforces, max_forces)

    def send_energies(self, block: EnergyBlock):
        send_energies(self.client, block)

    def send_positions(self, x_nm: np.ndarray):
        send_positions(self.client, x_nm)
