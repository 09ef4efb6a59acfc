#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Group-wide propagation of the coordinator's session state.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from ..units import IMD_FORCE_TO_KJ_PER_MOL_NM
from .forcelog import ForceLog
from .state import ForceBatch, SessionState


class GroupSynchronizer:
    """
    Broadcasts connection status, update interval and force batch from the
    coordinator to every rank.

    :meth:`sync` is collective: every rank must call it once per step, in the
    same order relative to other collective calls. The broadcast sequence is

    1. ``connected`` (stop here when false),
    2. the negotiated update interval,
    3. the signed force count (only with force injection enabled),
    4. indices and force vectors (only when the count is non-negative).
    """

    def __init__(self, state: SessionState, group, force_log: Optional[ForceLog] = None):
        """
        Parameters
        ----------
        state : SessionState
            This rank's session state.
        group : ProcessGroup
            Process group providing ``bcast``, ``bcast_array`` and ``is_coordinator``.
        force_log : ForceLog or None, optional
            Pull-force log, coordinator only.
        """

        self.state = state
        self.group = group
        self.force_log = force_log

    def sync(self, time: float = 0.0) -> bool:
        """
        Run one synchronization.

        Parameters
        ----------
        time : float, default: 0.0
            Simulation time, used for the force log.

        Returns
        -------
        bool
            ``True`` if a new force batch was agreed during this call.
        """

        st = self.state
        group = self.group

        st.connected = bool(group.bcast(st.connected))
        if not st.connected:
            return False

        st.pending_interval = int(group.bcast(st.pending_interval))
        st.update_interval = st.pending_interval

        if not st.force_injection_enabled:
            return False

        # negative count: nothing new, workers keep their copy
        signed_count = 0
        if group.is_coordinator:
            n = len(st.received_forces)
            signed_count = n if st.new_forces_pending else -n
        signed_count = int(group.bcast(signed_count))
        if signed_count < 0:
            return False

        if group.is_coordinator:
            batch = st.received_forces.scaled(IMD_FORCE_TO_KJ_PER_MOL_NM)
            indices = np.array(batch.indices, dtype=np.int32)
            vectors = np.array(batch.vectors, dtype=np.float64)
            if self.force_log is not None:
                self.force_log.write(time, batch)
        else:
            indices = np.empty(signed_count, dtype=np.int32)
            vectors = np.empty((signed_count, 3), dtype=np.float64)

        indices = group.bcast_array(indices)
        vectors = group.bcast_array(vectors)
        st.applied_forces = ForceBatch(indices, vectors)

        st.new_forces_pending = False
        return True
