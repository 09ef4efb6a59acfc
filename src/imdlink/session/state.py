#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Session data model shared by the dispatcher, synchronizer and orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..sockets.protocol import EnergyBlock

# The energy sample is exactly the record that goes on the wire.
EnergySample = EnergyBlock


@dataclass(frozen=True)
class ForceBatch:
    """
    Paired force indices and vectors.

    ``indices`` are positions within the session's tracked atom set, ``vectors``
    the matching 3-vectors. The pair is immutable and replaced as a whole, so
    indices and forces can never be observed out of step.
    """

    indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int32))
    vectors: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.float64))

    def __post_init__(self):
        idx = np.array(self.indices, dtype=np.int32).reshape(-1)
        vec = np.array(self.vectors, dtype=np.float64).reshape(-1, 3)
        if idx.shape[0] != vec.shape[0]:
            raise ValueError(
                f"ForceBatch needs as many indices as vectors, got {idx.shape[0]} and {vec.shape[0]}"
            )
        idx.setflags(write=False)
        vec.setflags(write=False)
        object.__setattr__(self, "indices", idx)
        object.__setattr__(self, "vectors", vec)

    def __len__(self) -> int:
        return int(self.indices.shape[0])

    def scaled(self, factor: float) -> "ForceBatch":
        return ForceBatch(self.indices, self.vectors * factor)


@dataclass
class SessionState:
    """
    Mutable per-run session state.

    On the coordinator every field is authoritative. Workers only ever learn
    ``connected``, ``update_interval`` and ``applied_forces`` through the
    group synchronizer; their other fields keep their initial values.

    Attributes
    ----------
    session_possible : bool
        Whether the run configuration allows IMD at all (fixed at creation).
    connected : bool
        Whether a client is connected (broadcast every step).
    terminated : bool
        Set once the client terminated the run.
    terminatable : bool
        Whether the client may terminate the run.
    wait_for_connection : bool
        Block the coordinator until a client connects.
    force_injection_enabled : bool
        Whether client forces are applied.
    update_interval : int
        Steps between transmissions, identical on every rank.
    pending_interval : int
        Interval negotiated by the client, coordinator only; adopted by all
        ranks at the next synchronization.
    default_interval : int
        Interval restored on disconnect or on a rate request of zero.
    new_forces_pending : bool
        A force batch arrived since the last synchronization (coordinator).
    received_forces : ForceBatch
        Newest batch from the client, raw client units (coordinator only).
    applied_forces : ForceBatch
        Batch agreed on all ranks, in engine units.
    energies : EnergySample
        Last energy sample sent to the client (coordinator only).
    """

    session_possible: bool = False
    connected: bool = False
    terminated: bool = False
    terminatable: bool = False
    wait_for_connection: bool = False
    force_injection_enabled: bool = False
    update_interval: int = 1
    pending_interval: int = 1
    default_interval: int = 1
    new_forces_pending: bool = False
    received_forces: ForceBatch = field(default_factory=ForceBatch)
    applied_forces: ForceBatch = field(default_factory=ForceBatch)
    energies: EnergySample = field(default_factory=EnergySample)

    def reset_after_disconnect(self):
        """
        Forget the negotiated rate so a later client starts from the defaults.
        """

        self.connected = False
        self.pending_interval = self.default_interval
