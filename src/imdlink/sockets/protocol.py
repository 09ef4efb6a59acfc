#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
IMD wire codec.

The protocol is the one spoken by VMD and NAMD (IMD version 2):

- **Header**: 8 bytes, ``int32 type`` + ``int32 length``, both in network
  byte order. The meaning of ``length`` depends on the message type.
- **Handshake**: a header whose ``length`` carries the protocol version in
  *host* byte order, so the peer can tell which byte order we use.
- **Payloads**: fixed-width, native byte order; ``float32`` for coordinates,
  forces and energies, ``int32`` for indices and the step counter.

Low-level helpers (``send_*`` / ``recv_*``) raise ``_SocketClosed`` or
``OSError`` on transport failure, except ``recv_header`` which reports a short
read as ``ImdMessage.IOERROR``.
"""

from __future__ import annotations
import select, socket, struct
from dataclasses import astuple, dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union

import numpy as np

from ..units import NM_TO_ANGSTROM

HEADER_LEN = 8
PROTOCOL_VERSION = 2

_HEADER = struct.Struct("!ii")
_NET_INT32 = struct.Struct("!i")
_HOST_INT32 = struct.Struct("=i")
_ENERGIES = struct.Struct("=i9f")

ENERGY_BLOCK_LEN = _ENERGIES.size  # 40 bytes

# largest single recv request; the announced length is peer-controlled
_RECV_CHUNK = 1 << 16

# numpy dtypes on the wire (native byte order)
DT_FLOAT = np.float32
DT_INT = np.int32


class ImdMessage(IntEnum):
    """
    IMD message types, numbered as in the NAMD/VMD implementation.
    """

    DISCONNECT = 0
    ENERGIES = 1
    FCOORDS = 2
    GO = 3
    HANDSHAKE = 4
    KILL = 5
    MDCOMM = 6
    PAUSE = 7
    TRATE = 8
    IOERROR = 9


class _SocketClosed(OSError):
    """
    Exception raised when the peer closes the socket unexpectedly.
    """

    pass


@dataclass
class EnergyBlock:
    """
    IMD energy record, sent after every transmission step.

    All energies are in kJ/mol, the temperature in K.
    """

    tstep: int = 0
    temperature: float = 0.0
    total: float = 0.0
    potential: float = 0.0
    vdw: float = 0.0
    coulomb: float = 0.0
    bond: float = 0.0
    angle: float = 0.0
    dihedral: float = 0.0
    improper: float = 0.0


# -------- pure encoders / decoders --------


def encode_header(kind: Union[ImdMessage, int], length: int) -> bytes:
    """
    Encode an IMD header in network byte order.

    Parameters
    ----------
    kind : ImdMessage or int
        Message type.
    length : int
        Type-dependent length field.

    Returns
    -------
    bytes
        The 8-byte header.
    """

    return _HEADER.pack(int(kind), int(length))


def decode_header(buf: bytes) -> Tuple[Union[ImdMessage, int], int]:
    """
    Decode an IMD header.

    Parameters
    ----------
    buf : bytes
        Raw bytes as read from the socket.

    Returns
    -------
    tuple
        ``(kind, length)``. ``kind`` is an :class:`ImdMessage` when the type is
        known, otherwise the raw integer. A buffer shorter than
        ``HEADER_LEN`` decodes to ``(ImdMessage.IOERROR, 0)``.
    """

    if len(buf) != HEADER_LEN:
        return ImdMessage.IOERROR, 0
    itype, length = _HEADER.unpack(buf)
    try:
        kind = ImdMessage(itype)
    except ValueError:
        kind = itype
    return kind, length


def encode_handshake(version: int = PROTOCOL_VERSION) -> bytes:
    """
    Encode the handshake header.

    The type is in network byte order, but the version is deliberately left
    in host byte order: the client uses it to detect our endianness.
    """

    return _NET_INT32.pack(int(ImdMessage.HANDSHAKE)) + _HOST_INT32.pack(int(version))


def decode_handshake(buf: bytes, version: int = PROTOCOL_VERSION) -> str:
    """
    Detect the sender's byte order from a handshake header.

    Parameters
    ----------
    buf : bytes
        The 8-byte handshake header.
    version : int, default: PROTOCOL_VERSION
        Expected protocol version.

    Returns
    -------
    str
        ``"<"`` (little endian) or ``">"`` (big endian), usable as a ``struct``
        or NumPy byte-order prefix.

    Raises
    ------
    ValueError
        If the buffer is not a handshake or carries an unexpected version.
    """

    kind, _ = decode_header(buf)
    if kind != ImdMessage.HANDSHAKE:
        raise ValueError(f"Expected handshake, got message type {kind!r}")
    if struct.unpack_from("<i", buf, 4)[0] == version:
        return "<"
    if struct.unpack_from(">i", buf, 4)[0] == version:
        return ">"
    raise ValueError("Could not detect byte order from handshake")


def encode_energies(block: EnergyBlock) -> bytes:
    """
    Encode an energy record (header with ``length=1`` followed by the block).
    """

    values = astuple(block)
    return encode_header(ImdMessage.ENERGIES, 1) + _ENERGIES.pack(
        int(values[0]), *(float(v) for v in values[1:])
    )


def decode_energies(buf: bytes, byteorder: str = "=") -> EnergyBlock:
    """
    Decode the 40-byte energy block that follows an ``ENERGIES`` header.
    """

    return EnergyBlock(*struct.unpack(byteorder + "i9f", buf))


def encode_positions(x_nm) -> bytes:
    """
    Encode a position batch, converting nm to Angstrom.

    Parameters
    ----------
    x_nm : array-like, shape (N, 3)
        Positions in nm.

    Returns
    -------
    bytes
        ``FCOORDS`` header with ``length=N`` followed by ``N*3`` float32.
    """

    x = np.asarray(x_nm, dtype=np.float64).reshape(-1, 3)
    payload = np.ascontiguousarray(x * NM_TO_ANGSTROM, dtype=DT_FLOAT)
    return encode_header(ImdMessage.FCOORDS, x.shape[0]) + payload.tobytes()


def decode_positions(buf: bytes, natoms: int, byteorder: str = "=") -> np.ndarray:
    """
    Decode an ``FCOORDS`` payload into an ``(N, 3)`` array in Angstrom.
    """

    return np.frombuffer(buf, dtype=np.dtype(DT_FLOAT).newbyteorder(byteorder), count=3 * natoms).reshape(natoms, 3)


def encode_forces(indices, forces) -> bytes:
    """
    Encode a force batch as sent by a client (``MDCOMM``).

    Parameters
    ----------
    indices : array-like of int, shape (N,)
        Positions within the server's tracked atom set.
    forces : array-like of float, shape (N, 3)
        Forces in kcal/(mol Angstrom).
    """

    idx = np.ascontiguousarray(indices, dtype=DT_INT).reshape(-1)
    f = np.ascontiguousarray(forces, dtype=DT_FLOAT).reshape(-1, 3)
    if f.shape[0] != idx.shape[0]:
        raise ValueError("indices and forces must have the same length")
    return encode_header(ImdMessage.MDCOMM, idx.shape[0]) + idx.tobytes() + f.tobytes()


def decode_forces(index_buf: bytes, force_buf: bytes, nforces: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Decode the two ``MDCOMM`` payload blocks.

    Returns
    -------
    tuple
        ``(indices, forces)`` as ``(N,)`` int32 and ``(N, 3)`` float32 arrays
        (fresh copies, not views of the input buffers).
    """

    idx = np.frombuffer(index_buf, dtype=DT_INT, count=nforces).copy()
    f = np.frombuffer(force_buf, dtype=DT_FLOAT, count=3 * nforces).reshape(nforces, 3).copy()
    return idx, f


# -------- socket helpers --------


def poll_readable(sock: socket.socket, timeout: float = 0.0) -> bool:
    """
    Return True if ``sock`` has data (or a pending connection) to read.

    Parameters
    ----------
    sock : socket.socket
        Socket to poll.
    timeout : float, default: 0.0
        Seconds to wait; ``0`` makes the call non-blocking.
    """

    try:
        readable, _, _ = select.select([sock], [], [], max(0.0, timeout))
    except (OSError, ValueError):
        return False
    return bool(readable)


def _read_multiple(sock: socket.socket, n: int) -> bytes:
    """
    Read up to ``n`` bytes in bounded chunks, retrying on interrupted calls.

    Returns fewer than ``n`` bytes when the peer closes the connection, the
    socket timeout expires or an I/O error occurs.
    """

    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = sock.recv(min(n - len(buf), _RECV_CHUNK))
        except InterruptedError:
            continue
        except (socket.timeout, OSError):
            break
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


def _recvall(sock: socket.socket, n: int) -> bytes:
    """
    Read exactly ``n`` bytes or raise ``_SocketClosed``.
    """

    buf = _read_multiple(sock, n)
    if len(buf) != n:
        raise _SocketClosed(f"Short read: expected {n} bytes, got {len(buf)}")
    return buf


def send_header(sock: socket.socket, kind: Union[ImdMessage, int], length: int = 0) -> None:
    sock.sendall(encode_header(kind, length))


def recv_header(sock: socket.socket) -> Tuple[Union[ImdMessage, int], int]:
    """
    Receive and decode one header; a short read yields ``ImdMessage.IOERROR``.
    """

    return decode_header(_read_multiple(sock, HEADER_LEN))


def send_handshake(sock: socket.socket) -> None:
    sock.sendall(encode_handshake())


def send_energies(sock: socket.socket, block: EnergyBlock) -> None:
    sock.sendall(encode_energies(block))


def send_positions(sock: socket.socket, x_nm) -> None:
    sock.sendall(encode_positions(x_nm))


def send_forces(sock: socket.socket, indices, forces) -> None:
    sock.sendall(encode_forces(indices, forces))


def recv_mdcomm(
    sock: socket.socket, nforces: int, max_forces: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Receive the index and force blocks of an ``MDCOMM`` message.

    Parameters
    ----------
    sock : socket.socket
        Connected client socket.
    nforces : int
        Number of forces announced in the header.
    max_forces : int or None, optional
        Largest count accepted; larger announcements are rejected before
        anything is read.

    Returns
    -------
    tuple
        ``(indices, forces)``; see :func:`decode_forces`.

    Raises
    ------
    _SocketClosed
        If either block arrives incomplete.
    ValueError
        If ``nforces`` is negative or exceeds ``max_forces``.
    """

    if nforces < 0:
        raise ValueError(f"Negative force count {nforces}")
    if max_forces is not None and nforces > max_forces:
        raise ValueError(f"Force count {nforces} exceeds the limit of {max_forces}")
    index_buf = _recvall(sock, np.dtype(DT_INT).itemsize * nforces)
    force_buf = _recvall(sock, 3 * np.dtype(DT_FLOAT).itemsize * nforces)
    return decode_forces(index_buf, force_buf, nforces)
