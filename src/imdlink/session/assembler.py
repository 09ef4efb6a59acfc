#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Assembly of the tracked positions on the coordinator and removal of
periodic-boundary discontinuities.

Box matrices follow the usual MD convention: rows are the box vectors and
the matrix is lower triangular (``box[0] = (a, 0, 0)``,
``box[1] = (bx, by, 0)``, ``box[2] = (cx, cy, cz)``). An integer shift
``s = (sx, sy, sz)`` moves a position by ``s @ box``.
"""

from __future__ import annotations

from typing import Iterator, Optional, Tuple

import numpy as np


class MoleculeGrouping:
    """
    Partition of the tracked atom set into contiguous per-molecule ranges.

    ``boundaries[k]:boundaries[k + 1]`` are the positions (within the tracked
    set) of the atoms of the ``k``-th molecule that has any tracked atom.
    """

    def __init__(self, boundaries):
        b = np.asarray(boundaries, dtype=np.int64).reshape(-1)
        if b.size == 0 or b[0] != 0 or np.any(np.diff(b) <= 0):
            raise ValueError("Molecule boundaries must start at 0 and increase strictly")
        b.setflags(write=False)
        self.boundaries = b

    @classmethod
    def from_topology(cls, tracked, molecule_starts) -> "MoleculeGrouping":
        """
        Build the grouping from the system's molecule layout.

        Parameters
        ----------
        tracked : array-like of int
            Global indices of the tracked atoms, sorted ascending.
        molecule_starts : array-like of int
            First global atom index of every molecule, followed by the total
            number of atoms (``M + 1`` entries for ``M`` molecules).

        Raises
        ------
        ValueError
            If ``tracked`` is not sorted or references atoms outside the system.
        """

        ind = np.asarray(tracked, dtype=np.int64).reshape(-1)
        starts = np.asarray(molecule_starts, dtype=np.int64).reshape(-1)
        if np.any(np.diff(ind) < 0):
            raise ValueError("IMD index is not sorted. This is currently not supported.")
        if ind.size and (ind[0] < starts[0] or ind[-1] >= starts[-1]):
            raise ValueError("IMD index references atoms outside the system")
        if ind.size == 0:
            return cls([0])

        mol_of = np.searchsorted(starts, ind, side="right") - 1
        _, counts = np.unique(mol_of, return_counts=True)
        return cls(np.concatenate([[0], np.cumsum(counts)]))

    @classmethod
    def single_atoms(cls, natoms: int) -> "MoleculeGrouping":
        return cls(np.arange(natoms + 1))

    def __len__(self) -> int:
        return int(self.boundaries.size - 1)

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        for k in range(len(self)):
            yield int(self.boundaries[k]), int(self.boundaries[k + 1])


def get_shifts(box, x, reference) -> np.ndarray:
    """
    Integer image shifts bringing every position closest to its reference.

    Parameters
    ----------
    box : array-like, shape (3, 3)
        Lower-triangular box matrix (rows are box vectors).
    x : array-like, shape (N, 3)
        Current positions.
    reference : array-like, shape (N, 3)
        Reference positions.

    Returns
    -------
    numpy.ndarray of int, shape (N, 3)
        Shifts ``s`` such that ``x + s @ box`` is the image of ``x`` nearest to
        ``reference`` (each component in ``[-b/2, b/2)`` along the box diagonal).
    """

    box = np.asarray(box, dtype=np.float64)
    dx = np.asarray(x, dtype=np.float64) - np.asarray(reference, dtype=np.float64)
    shifts = np.zeros(dx.shape, dtype=np.int64)
    # highest dimension first: box[m] only touches components <= m
    for m in (2, 1, 0):
        if box[m, m] <= 0.0:
            continue
        k = -np.floor(dx[:, m] / box[m, m] + 0.5).astype(np.int64)
        dx += k[:, None] * box[m]
        shifts[:, m] += k
    return shifts


def apply_shifts(x, shifts, box) -> np.ndarray:
    """
    Return ``x + shifts @ box``.
    """

    return np.asarray(x, dtype=np.float64) + np.asarray(shifts, dtype=np.float64) @ np.asarray(box, dtype=np.float64)


def remove_molecule_shifts(x: np.ndarray, shifts, box, grouping: MoleculeGrouping) -> np.ndarray:
    """
    Translate whole molecules back towards the central box, in place.

    For every molecule and axis, if all of its atoms carry a positive shift the
    smallest one is undone; if all carry a negative shift the largest one is.
    The same translation is applied to every atom of the molecule, so the
    molecule stays whole.

    Parameters
    ----------
    x : numpy.ndarray, shape (N, 3)
        Whole (unwrapped) positions, modified in place.
    shifts : array-like of int, shape (N, 3)
        Accumulated per-atom shifts that made ``x`` whole.
    box : array-like, shape (3, 3)
        Box matrix.
    grouping : MoleculeGrouping
        Molecule ranges within ``x``.

    Returns
    -------
    numpy.ndarray
        ``x``.
    """

    if len(grouping) == 0:
        return x
    shifts = np.asarray(shifts, dtype=np.int64)
    starts = grouping.boundaries[:-1]
    smallest = np.minimum.reduceat(shifts, starts, axis=0)
    largest = np.maximum.reduceat(shifts, starts, axis=0)

    mol_shift = np.where(smallest > 0, smallest, 0)
    mol_shift = np.where(largest < 0, largest, mol_shift)

    moved = np.flatnonzero(np.any(mol_shift != 0, axis=1))
    if moved.size:
        translation = mol_shift.astype(np.float64) @ np.asarray(box, dtype=np.float64)
        sizes = np.diff(grouping.boundaries)
        x -= np.repeat(translation, sizes, axis=0)
    return x


class CoordinateAssembler:
    """
    Gathers the tracked positions from all ranks and keeps them whole.

    The gather is collective (every rank contributes its locally owned atoms
    and every rank receives the sum), so :meth:`communicate` must be called on
    all ranks with the same ``partition_step`` flag.
    """

    def __init__(self, group, ntracked: int, grouping: Optional[MoleculeGrouping] = None):
        """
        Parameters
        ----------
        group : ProcessGroup
            Process group providing ``sum_array``.
        ntracked : int
            Number of tracked atoms.
        grouping : MoleculeGrouping or None, optional
            Molecule layout; defaults to one molecule per atom.
        """

        self.group = group
        self.ntracked = int(ntracked)
        self.grouping = grouping if grouping is not None else MoleculeGrouping.single_atoms(self.ntracked)
        self.xa = np.zeros((self.ntracked, 3), dtype=np.float64)
        self.shifts = np.zeros((self.ntracked, 3), dtype=np.int64)
        self.extra_shifts = np.zeros((self.ntracked, 3), dtype=np.int64)
        self.reference = np.zeros((self.ntracked, 3), dtype=np.float64)

    def _gather(self, local_slots, local_x) -> np.ndarray:
        buf = np.zeros((self.ntracked, 3), dtype=np.float64)
        slots = np.asarray(local_slots, dtype=np.int64)
        if slots.size:
            buf[slots] = np.asarray(local_x, dtype=np.float64).reshape(-1, 3)
        return self.group.sum_array(buf)

    def set_reference(self, local_slots, local_x):
        """
        Store the current (whole) positions as unwrap reference on every rank.
        """

        self.reference = np.array(self._gather(local_slots, local_x), dtype=np.float64)
        self.xa = self.reference.copy()

    def communicate(self, local_slots, local_x, box, partition_step: bool = False) -> np.ndarray:
        """
        Assemble the tracked positions and make them whole.

        Parameters
        ----------
        local_slots : array-like of int
            Positions (within the tracked set) of this rank's atoms.
        local_x : array-like, shape (len(local_slots), 3)
            Their current positions.
        box : array-like, shape (3, 3)
            Current box.
        partition_step : bool, default: False
            Whether atoms were re-wrapped/re-partitioned this step; only then
            are new image shifts detected against the reference.

        Returns
        -------
        numpy.ndarray, shape (ntracked, 3)
            The assembled positions (also stored in ``self.xa``).
        """

        xa = apply_shifts(self._gather(local_slots, local_x), self.shifts, box)
        if partition_step:
            extra = get_shifts(box, xa, self.reference)
            xa = apply_shifts(xa, extra, box)
            self.shifts += extra
            self.extra_shifts = extra
            self.reference = xa.copy()
        self.xa = xa
        return xa

    def remove_molecule_shifts(self, box) -> np.ndarray:
        return remove_molecule_shifts(self.xa, self.shifts, box, self.grouping)
