#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
A small IMD client, speaking the viewer side of the protocol.

Useful for scripting a running simulation (pull on atoms, change the
transmission rate, stop the run) and for testing servers.
"""

from __future__ import annotations
import argparse, socket
from typing import Optional, Tuple, Union

import numpy as np

from ..sockets.protocol import (
    ENERGY_BLOCK_LEN,
    HEADER_LEN,
    PROTOCOL_VERSION,
    DT_FLOAT,
    EnergyBlock,
    ImdMessage,
    _recvall,
    decode_energies,
    decode_handshake,
    decode_header,
    decode_positions,
    send_forces,
    send_header,
)

description = """
Connect to a simulation serving IMD, print the received energies and
optionally pull on atoms, change the transmission rate or terminate the run.
"""


class ImdClient:
    """
    Client end of an IMD connection.

    Examples
    --------
    >>> client = ImdClient("localhost", 8888)  # doctest: +SKIP
    >>> client.connect()                        # doctest: +SKIP
    >>> kind, payload = client.recv_message()   # doctest: +SKIP
    """

    def __init__(self, host: str = "localhost", port: int = 8888, timeout: float = 10.0):
        """
        Parameters
        ----------
        host : str, default: "localhost"
            Server host name.
        port : int, default: 8888
            Server port.
        timeout : float, default: 10.0
            Socket timeout in seconds.
        """

        self.host = host
        self.port = int(port)
        self.timeout = float(timeout)
        self.sock: Optional[socket.socket] = None
        # byte order of the server's payloads, learned from the handshake
        self.byteorder = "="

    def _log(self, *a):
        print("[ImdClient]", *a)

    def connect(self, go: bool = True):
        """
        Connect, read the handshake and (by default) send ``GO``.

        Raises
        ------
        ValueError
            If the server does not start with a valid handshake.
        OSError
            On connection failure.
        """

        sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except (OSError, AttributeError):
            pass
        self.sock = sock
        self.byteorder = decode_handshake(_recvall(sock, HEADER_LEN), PROTOCOL_VERSION)
        self._log(
            f"Handshake from {self.host}:{self.port}, server is "
            f"{'little' if self.byteorder == '<' else 'big'} endian."
        )
        if go:
            self.send_go()

    def close(self):
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None

    # -------------- outgoing commands --------------

    def send_go(self):
        send_header(self.sock, ImdMessage.GO, 0)

    def pause(self):
        """
        Toggle the pause state of the simulation.
        """

        send_header(self.sock, ImdMessage.PAUSE, 0)

    def set_rate(self, rate: int):
        """
        Request a new transmission interval; ``0`` restores the server default.
        """

        send_header(self.sock, ImdMessage.TRATE, int(rate))

    def kill(self):
        send_header(self.sock, ImdMessage.KILL, 0)

    def disconnect(self):
        """
        Tell the server we leave, then close the socket.
        """

        try:
            send_header(self.sock, ImdMessage.DISCONNECT, 0)
        finally:
            self.close()

    def send_forces(self, indices, forces):
        """
        Send pull forces.

        Parameters
        ----------
        indices : array-like of int
            Positions within the server's tracked atom set.
        forces : array-like, shape (N, 3)
            Forces in kcal/(mol Angstrom).
        """

        send_forces(self.sock, indices, forces)

    # -------------- incoming data --------------

    def recv_message(self) -> Tuple[Union[ImdMessage, int], object]:
        """
        Receive one message from the server.

        Returns
        -------
        tuple
            ``(ImdMessage.ENERGIES, EnergyBlock)``,
            ``(ImdMessage.FCOORDS, ndarray of shape (N, 3) in Angstrom)`` or
            ``(kind, length)`` for anything else.

        Raises
        ------
        _SocketClosed
            If the server closes the connection mid-message.
        """

        kind, length = decode_header(_recvall(self.sock, HEADER_LEN))
        if kind == ImdMessage.ENERGIES:
            return kind, decode_energies(_recvall(self.sock, ENERGY_BLOCK_LEN), self.byteorder)
        if kind == ImdMessage.FCOORDS:
            nbytes = 3 * length * np.dtype(DT_FLOAT).itemsize
            return kind, decode_positions(_recvall(self.sock, nbytes), length, self.byteorder)
        return kind, length

    def recv_frame(self) -> Tuple[EnergyBlock, np.ndarray]:
        """
        Receive one transmission step: the energy record and the positions.
        """

        energies = positions = None
        while energies is None or positions is None:
            kind, payload = self.recv_message()
            if kind == ImdMessage.ENERGIES:
                energies = payload
            elif kind == ImdMessage.FCOORDS:
                positions = payload
            else:
                raise RuntimeError(f"Unexpected message from server: {kind!r}")
        return energies, positions


def _parse_pull(text: str):
    """
    Parse ``"i:fx,fy,fz;j:fx,fy,fz"`` into index and force arrays.
    """

    indices, forces = [], []
    for item in filter(None, (s.strip() for s in text.split(";"))):
        idx, vec = item.split(":")
        f = [float(v) for v in vec.split(",")]
        if len(f) != 3:
            raise ValueError(f"Force for atom {idx} needs 3 components, got {len(f)}")
        indices.append(int(idx))
        forces.append(f)
    return np.array(indices, dtype=np.int32), np.array(forces, dtype=np.float64).reshape(-1, 3)


def run_client(
    address: str = "localhost",
    port: int = 8888,
    frames: int = 10,
    rate: Optional[int] = None,
    pull: str = "",
    kill: bool = False,
    timeout: float = 10.0,
):
    """
    Connect, optionally send commands, print ``frames`` energy records and leave.

    Parameters
    ----------
    address : str, default: "localhost"
        Server host.
    port : int, default: 8888
        Server port.
    frames : int, default: 10
        Number of transmission steps to receive.
    rate : int or None, default: None
        Transmission interval to request.
    pull : str, default: ""
        Forces to apply, ``"i:fx,fy,fz;..."`` in kcal/(mol Angstrom).
    kill : bool, default: False
        Terminate the simulation instead of disconnecting at the end.
    timeout : float, default: 10.0
        Socket timeout in seconds.
    """

    client = ImdClient(address, port, timeout=timeout)
    client.connect()
    try:
        if rate is not None:
            client.set_rate(rate)
        if pull:
            client.send_forces(*_parse_pull(pull))
        for _ in range(frames):
            e, x = client.recv_frame()
            print(
                f"step {e.tstep:8d}  T={e.temperature:10.3f}  Etot={e.total:14.6e}  "
                f"Epot={e.potential:14.6e}  natoms={x.shape[0]}"
            )
    finally:
        if client.sock is not None:
            if kill:
                client.kill()
                client.close()
            else:
                client.disconnect()


def imd_client_main():
    """
    Parse CLI arguments and run :func:`run_client`.
    """

    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "-a",
        "--address",
        type=str,
        default="localhost",
        help="Host name of the simulation serving IMD.",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=8888,
        help="TCP port of the IMD server.",
    )
    parser.add_argument(
        "-n",
        "--frames",
        type=int,
        default=10,
        help="Number of frames to receive before leaving.",
    )
    parser.add_argument(
        "-r",
        "--rate",
        type=int,
        default=None,
        help="Request this transmission interval (0 restores the server default).",
    )
    parser.add_argument(
        "-f",
        "--pull",
        type=str,
        default="",
        help="""Pull forces as "i:fx,fy,fz;j:fx,fy,fz" (kcal/mol/Angstrom, i is the
        position within the served atom group).""",
    )
    parser.add_argument(
        "-k",
        "--kill",
        action="store_true",
        default=False,
        help="Terminate the simulation when done.",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=10.0,
        help="Socket timeout in seconds.",
    )

    args = parser.parse_args()

    run_client(
        address=args.address,
        port=args.port,
        frames=args.frames,
        rate=args.rate,
        pull=args.pull,
        kill=args.kill,
        timeout=args.timeout,
    )


if __name__ == "__main__":
    imd_client_main()
