#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Human-readable log of the pull forces applied through IMD.

A line is written only when the applied batch differs from the last one
logged, and only the atoms whose force changed are listed, which keeps the
file small for long interactive sessions.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .state import ForceBatch


class ForceLog:
    """
    Append-only pull-force log, written on the coordinator only.
    """

    def __init__(
        self,
        path: str,
        tracked: np.ndarray,
        natoms_total: Optional[int] = None,
        append: bool = False,
    ):
        """
        Parameters
        ----------
        path : str
            Output file.
        tracked : numpy.ndarray
            Global indices of the tracked atoms; force indices are positions in it.
        natoms_total : int or None, optional
            Number of atoms in the whole system, for the header.
        append : bool, default: False
            Append to an existing file; the header is assumed present already.
        """

        self.path = path
        self.tracked = np.asarray(tracked, dtype=np.int64)
        # PreviousForceBatch: last batch that made it into the file
        self.previous = ForceBatch()
        self._f = open(path, "a" if append else "w")
        if not append:
            self._write_header(natoms_total)

    def _write_header(self, natoms_total):
        ntracked = self.tracked.shape[0]
        if natoms_total is None:
            natoms_total = ntracked
        if ntracked == natoms_total:
            self._f.write(
                "# Note that you can select an IMD index group if a subset of the atoms suffices.\n"
            )
        self._f.write("# IMD Pull Forces\n")
        self._f.write(
            f"# Can display and manipulate {ntracked} (of a total of {natoms_total}) atoms via IMD.\n"
        )
        self._f.write("# column 1    : time (ps)\n")
        self._f.write(
            "# column 2    : total number of atoms feeling an IMD pulling force at that time\n"
        )
        self._f.write(
            "# cols. 3.-6  : global atom number of pulled atom, x-force, y-force, z-force (kJ/mol/nm)\n"
        )
        self._f.write(
            "# then follow : atom-ID, f[x], f[y], f[z] for more atoms in case the force on multiple atoms is changed simultaneously.\n"
        )
        self._f.write(
            "# Note that the force on any atom is always equal to the last value for that atom-ID found in the data.\n"
        )
        self._f.flush()

    def _changed_entries(self, batch: ForceBatch) -> np.ndarray:
        n = len(batch)
        changed = np.ones(n, dtype=bool)
        m = min(n, len(self.previous))
        if m:
            same_index = batch.indices[:m] == self.previous.indices[:m]
            same_force = np.all(batch.vectors[:m] == self.previous.vectors[:m], axis=1)
            changed[:m] = ~(same_index & same_force)
        return changed

    def forces_changed(self, batch: ForceBatch) -> bool:
        if len(batch) != len(self.previous):
            return True
        return bool(np.any(self._changed_entries(batch)))

    def write(self, time: float, batch: ForceBatch) -> bool:
        """
        Log ``batch`` at simulation time ``time`` if it changed.

        Returns
        -------
        bool
            ``True`` if a line was written.
        """

        if not self.forces_changed(batch):
            return False

        parts = [f"{time:14.6e}{len(batch):6d}"]
        for i in np.flatnonzero(self._changed_entries(batch)):
            fx, fy, fz = batch.vectors[i]
            parts.append(f"{int(self.tracked[batch.indices[i]]) + 1:9d}")
            parts.append(f"{fx:12.4e}{fy:12.4e}{fz:12.4e}")
        self._f.write("".join(parts) + "\n")
        self.previous = batch
        return True

    def flush(self):
        if not self._f.closed:
            self._f.flush()

    def close(self):
        if not self._f.closed:
            self._f.close()
