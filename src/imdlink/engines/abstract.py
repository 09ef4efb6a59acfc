#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

from typing import Dict, Optional, Tuple

import numpy as np

# Names of the energy terms an engine may report, in wire order after the step.
ENERGY_TERMS = (
    "temperature",
    "total",
    "potential",
    "vdw",
    "coulomb",
    "bond",
    "angle",
    "dihedral",
    "improper",
)


class MDEngine:
    """
    The physics side of an IMD session.

    This class is a template for coupling an MD code to :class:`imdlink.session.ImdSession`.
    One instance lives on every rank; each rank owns a subset of the atoms
    (all of them in a serial run). The session never touches particle data
    directly, it only goes through the methods below.
    """

    natoms = 0

    # -------------- energies --------------

    def energy_terms(self) -> Dict[str, float]:
        """
        Latest energy terms (kJ/mol, temperature in K), keyed by the names in
        ``ENERGY_TERMS``. Missing keys keep their previously sent value.

        Notes
        -----
        This method *should be* overridden by subclasses. Only called on the
        coordinator.
        """

        return {}

    # -------------- domain decomposition --------------

    def global_to_local(self, global_index: int) -> Optional[int]:
        """
        Translate a global atom index into this rank's local index.

        Returns
        -------
        int or None
            The local index, or ``None`` if the atom is not owned by this rank.
        """

        raise NotImplementedError

    def add_force(self, local_index: int, force):
        """
        Add a 3-vector (kJ/mol/nm) to the force accumulator of a local atom.
        """

        raise NotImplementedError

    def local_tracked_positions(self, tracked: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Positions (nm) of the tracked atoms owned by this rank.

        Parameters
        ----------
        tracked : numpy.ndarray
            Global indices of the tracked atoms.

        Returns
        -------
        slots : numpy.ndarray of int
            Positions within ``tracked`` of the locally owned atoms.
        x : numpy.ndarray, shape (len(slots), 3)
            Their current positions.
        """

        raise NotImplementedError

    def box(self) -> np.ndarray:
        """
        Current box matrix (nm), rows are box vectors, lower triangular.
        """

        raise NotImplementedError

    def molecule_starts(self) -> np.ndarray:
        """
        First global atom index of every molecule followed by ``natoms``.

        Notes
        -----
        The default treats every atom as its own molecule.
        """

        return np.arange(self.natoms + 1)

    def is_partition_step(self, step: int) -> bool:
        """
        Whether atoms are re-wrapped into the box / redistributed over ranks at ``step``.
        """

        return False

    # -------------- run control --------------

    def request_stop(self):
        """
        Ask the simulation to stop at the next opportunity.
        """

        raise NotImplementedError

    def stop_requested(self) -> bool:
        return False
