#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Process-group helpers for keeping every simulation rank consistent.

Only the coordinator (rank 0) ever touches the IMD socket. All other ranks
(workers) learn about the session exclusively through the broadcasts issued
here. When ``mpi4py`` is not importable, or the run has a single rank, every
call degrades to a local no-op and the single process is the coordinator.
"""

from __future__ import annotations

from enum import Enum

import numpy as np


class Role(Enum):
    """
    Role of a process within the simulation's process group.
    """

    COORDINATOR = "coordinator"
    WORKER = "worker"


class ProcessGroup:
    """
    Thin wrapper around an MPI communicator exposing the broadcast and
    reduction primitives the IMD session relies on.
    """

    def __init__(self, comm=None):
        """
        Parameters
        ----------
        comm : mpi4py.MPI.Comm or None, optional
            Communicator to use. Defaults to ``MPI.COMM_WORLD`` when ``mpi4py``
            is available, otherwise a serial (single-rank) group.
        """

        self._mpi = None
        if comm is None:
            try:
                from mpi4py import MPI as _MPI

                comm = _MPI.COMM_WORLD
                self._mpi = _MPI
            except Exception:
                comm = None
        else:
            try:
                from mpi4py import MPI as _MPI

                self._mpi = _MPI
            except ImportError:
                self._mpi = None

        self.comm = comm
        self.rank = comm.Get_rank() if comm is not None else 0
        self.size = comm.Get_size() if comm is not None else 1

    @property
    def is_parallel(self) -> bool:
        return self.size > 1

    @property
    def is_coordinator(self) -> bool:
        return self.rank == 0

    @property
    def role(self) -> Role:
        return Role.COORDINATOR if self.is_coordinator else Role.WORKER

    def bcast(self, value):
        """
        Broadcast a Python scalar (or small object) from the coordinator.

        Parameters
        ----------
        value : any
            Value on the coordinator; ignored on workers.

        Returns
        -------
        any
            The coordinator's value on every rank.
        """

        if self.is_parallel:
            value = self.comm.bcast(value, root=0)
        return value

    def bcast_array(self, arr: np.ndarray) -> np.ndarray:
        """
        Broadcast a contiguous NumPy array from the coordinator in place.

        Every rank must pass an array of identical shape and dtype; the
        worker arrays are overwritten with the coordinator's contents.

        Parameters
        ----------
        arr : numpy.ndarray
            Send buffer on the coordinator, receive buffer on workers.

        Returns
        -------
        numpy.ndarray
            A C-contiguous array holding the coordinator's data.
        """

        buf = np.ascontiguousarray(arr)
        if self.is_parallel and buf.size > 0:
            self.comm.Bcast(buf, root=0)
        return buf

    def sum_array(self, arr: np.ndarray) -> np.ndarray:
        """
        Element-wise sum of ``arr`` across all ranks; every rank gets the result.

        Parameters
        ----------
        arr : numpy.ndarray
            Local contribution.

        Returns
        -------
        numpy.ndarray
            The reduced array.
        """

        buf = np.ascontiguousarray(arr)
        if self.is_parallel and buf.size > 0:
            out = np.empty_like(buf)
            self.comm.Allreduce(buf, out, op=self._mpi.SUM)
            return out
        return buf
