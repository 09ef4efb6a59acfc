#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
In-memory engine backed by NumPy arrays, for tests and demonstrations.
"""

from typing import Dict, Optional

import numpy as np

from .abstract import MDEngine


class ArrayEngine(MDEngine):
    """
    Minimal :class:`MDEngine` holding the full system in NumPy arrays.

    Each rank keeps the global coordinate array but only *owns* the atoms in
    ``owned``; ownership decides which forces this rank applies and which
    positions it contributes to the gather, as a domain-decomposed engine would.

    Examples
    --------
    >>> eng = ArrayEngine(np.zeros((4, 3)), box=np.eye(3) * 2.0)
    >>> eng.global_to_local(3)
    3
    """

    def __init__(
        self,
        positions,
        box=None,
        owned=None,
        molecule_starts=None,
        partition_interval: int = 0,
        energies: Optional[Dict[str, float]] = None,
    ):
        """
        Parameters
        ----------
        positions : array-like, shape (N, 3)
            Global positions in nm.
        box : array-like, shape (3, 3), optional
            Box matrix in nm. Defaults to a 10 nm cube.
        owned : array-like of int, optional
            Global indices owned by this rank. Defaults to all atoms.
        molecule_starts : array-like of int, optional
            Molecule layout (see :meth:`MDEngine.molecule_starts`).
        partition_interval : int, default: 0
            Every this many steps :meth:`is_partition_step` is true; ``0`` never.
        energies : dict, optional
            Initial energy terms.
        """

        self.x = np.array(positions, dtype=np.float64).reshape(-1, 3)
        self.natoms = self.x.shape[0]
        self._box = np.eye(3) * 10.0 if box is None else np.array(box, dtype=np.float64)
        owned = np.arange(self.natoms) if owned is None else np.asarray(owned, dtype=np.int64)
        self.owned = np.sort(owned)
        self._g2l = {int(g): l for l, g in enumerate(self.owned)}
        self.f = np.zeros((self.owned.shape[0], 3), dtype=np.float64)
        self._molecule_starts = (
            None if molecule_starts is None else np.asarray(molecule_starts, dtype=np.int64)
        )
        self.partition_interval = int(partition_interval)
        self.energies = dict(energies or {})
        self._stop = False

    def energy_terms(self) -> Dict[str, float]:
        return dict(self.energies)

    def global_to_local(self, global_index: int) -> Optional[int]:
        return self._g2l.get(int(global_index))

    def add_force(self, local_index: int, force):
        self.f[local_index] += np.asarray(force, dtype=np.float64)

    def clear_forces(self):
        self.f[:] = 0.0

    def local_tracked_positions(self, tracked):
        tracked = np.asarray(tracked, dtype=np.int64)
        slots = np.flatnonzero(np.isin(tracked, self.owned))
        return slots, self.x[tracked[slots]].copy()

    def box(self) -> np.ndarray:
        return self._box

    def molecule_starts(self) -> np.ndarray:
        if self._molecule_starts is None:
            return super().molecule_starts()
        return self._molecule_starts

    def is_partition_step(self, step: int) -> bool:
        return self.partition_interval > 0 and step % self.partition_interval == 0

    def wrap(self):
        """
        Put every atom back into the central box (triclinic boxes included).
        """

        for m in (2, 1, 0):
            k = np.floor(self.x[:, m] / self._box[m, m])
            self.x -= k[:, None] * self._box[m]

    def request_stop(self):
        self._stop = True

    def stop_requested(self) -> bool:
        return self._stop
