#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Per-step orchestration of an IMD session inside a simulation loop.

A typical step of the hosting MD code looks like::

    transmit = session.do_step(step, time)     # all ranks
    engine.compute_forces()
    session.apply_forces()                     # all ranks
    session.publish(step, transmit)            # coordinator sends, workers no-op
    ...
    session.finalize()

All entry points are no-ops when the run configuration does not allow a
session.
"""

from __future__ import annotations

import socket
from typing import Optional

import numpy as np

from ..config import ImdOptions, check_run_configuration
from ..engines.abstract import ENERGY_TERMS, MDEngine
from ..parallel import ProcessGroup, Role
from ..sockets.protocol import _SocketClosed
from ..sockets.sockets import ImdServer
from ..units import KJ_PER_MOL_TO_IMD_ENERGY
from .assembler import CoordinateAssembler, MoleculeGrouping
from .dispatcher import CommandDispatcher
from .forcelog import ForceLog
from .state import SessionState
from .synchronizer import GroupSynchronizer


class ImdSession:
    """
    One interactive session of a simulation run, present on every rank.

    The coordinator owns the server socket, the command dispatcher and the
    force log; workers only hold the synchronized state, the assembler and
    the engine.
    """

    def __init__(
        self,
        engine: MDEngine,
        options: ImdOptions,
        tracked=None,
        group: Optional[ProcessGroup] = None,
        integrator: str = "md",
        nstcalcenergy: int = 1,
        multisim: bool = False,
    ):
        """
        Set up the session. Collective: all ranks must construct it together.

        Parameters
        ----------
        engine : MDEngine
            Physics side of this rank.
        options : ImdOptions
            IMD options; only the coordinator's values for ``wait``,
            ``terminatable`` and ``pull`` matter.
        tracked : array-like of int or None, optional
            Sorted global indices of the atoms exchanged with the client. Empty
            or ``None`` selects all atoms.
        group : ProcessGroup or None, optional
            Process group; defaults to ``MPI.COMM_WORLD`` (or serial).
        integrator : str, default: "md"
            Integrator name, see :func:`imdlink.config.check_run_configuration`.
        nstcalcenergy : int, default: 1
            Energy interval, the default transmission interval for MD.
        multisim : bool, default: False
            Whether this run is part of a multi-simulation.

        Raises
        ------
        ValueError
            If ``tracked`` is unsorted or out of range.
        RuntimeError
            On every rank, for an unsupported integrator/parallel combination,
            or when the coordinator cannot open the listening socket or the
            force log.
        """

        self.engine = engine
        self.options = options
        self.group = group if group is not None else ProcessGroup()
        self.state = SessionState()
        self.server: Optional[ImdServer] = None
        self.dispatcher: Optional[CommandDispatcher] = None
        self.force_log: Optional[ForceLog] = None
        self.synchronizer: Optional[GroupSynchronizer] = None
        self.assembler: Optional[CoordinateAssembler] = None

        if tracked is None or len(tracked) == 0:
            tracked = np.arange(engine.natoms)
        self.tracked = np.asarray(tracked, dtype=np.int64).reshape(-1)

        if not self.group.bcast(options.requested):
            self._log("None of the IMD switches was used. This run will not use IMD.")
            return

        default_interval = check_run_configuration(
            integrator,
            nstcalcenergy,
            parallel=self.group.is_parallel,
            multisim=multisim,
            is_coordinator=self.is_coordinator,
        )
        if default_interval is None:
            return

        grouping = MoleculeGrouping.from_topology(self.tracked, engine.molecule_starts())

        st = self.state
        st.session_possible = True
        st.default_interval = default_interval
        st.update_interval = default_interval
        st.pending_interval = default_interval

        setup_error = None
        if self.is_coordinator:
            try:
                self._setup_coordinator()
            except (RuntimeError, OSError) as err:
                setup_error = str(err)
                self.finalize()
        # workers must not wait for a coordinator that gave up
        setup_error = self.group.bcast(setup_error)
        if setup_error is not None:
            raise RuntimeError(f"IMD setup failed: {setup_error}")

        st.force_injection_enabled = bool(self.group.bcast(st.force_injection_enabled))

        self.synchronizer = GroupSynchronizer(st, self.group, self.force_log)
        self.synchronizer.sync(0.0)

        self.assembler = CoordinateAssembler(self.group, len(self.tracked), grouping)
        slots, x = engine.local_tracked_positions(self.tracked)
        self.assembler.set_reference(slots, x)

    def _log(self, *a):
        if self.is_coordinator:
            print("[ImdSession]", *a)

    def _setup_coordinator(self):
        st = self.state
        opts = self.options

        if opts.force_log:
            self.force_log = ForceLog(
                opts.force_log, self.tracked, natoms_total=self.engine.natoms, append=opts.append
            )

        if opts.wait:
            st.wait_for_connection = True
            self._log("Pausing simulation while no IMD connection present (--imd-wait).")
        if opts.terminatable:
            st.terminatable = True
            self._log("Allow termination of the simulation from IMD client (--imd-term).")
        if opts.pull:
            st.force_injection_enabled = True
            self._log("Pulling from IMD remote is enabled (--imd-pull).")

        self._log(
            f"Can display and manipulate {len(self.tracked)} "
            f"(of a total of {self.engine.natoms}) atoms via IMD."
        )

        self.server = ImdServer(
            host=opts.host,
            port=opts.port,
            io_timeout=opts.io_timeout,
            connect_wait=opts.connect_wait,
            loop_wait=opts.loop_wait,
            port_file=opts.port_file,
        )
        self.server.disconnect_hooks.append(st.reset_after_disconnect)
        if self.force_log is not None:
            self.server.disconnect_hooks.append(self.force_log.flush)
        self.server.listen()

        self.dispatcher = CommandDispatcher(
            st,
            self.server,
            len(self.tracked),
            request_stop=self.engine.request_stop,
            stop_requested=self.engine.stop_requested,
            latency=opts.latency,
        )

        if st.wait_for_connection:
            self.server.block_connect(self.engine.stop_requested)
        else:
            self._log("--imd-wait not set, starting simulation.")
        st.connected = self.server.connected

    # -------------- properties --------------

    @property
    def is_coordinator(self) -> bool:
        return self.group.is_coordinator

    @property
    def role(self) -> Role:
        return self.group.role

    @property
    def session_possible(self) -> bool:
        return self.state.session_possible

    @property
    def connected(self) -> bool:
        return self.state.connected

    @property
    def terminated(self) -> bool:
        return self.state.terminated

    @property
    def update_interval(self) -> int:
        return self.state.update_interval

    # -------------- per-step entry points --------------

    def poll_and_sync(self, step: int, time: float = 0.0) -> bool:
        """
        Handle the connection and client commands, then synchronize all ranks.

        Parameters
        ----------
        step : int
            Current step number.
        time : float, default: 0.0
            Current simulation time (ps), used in the force log.

        Returns
        -------
        bool
            Whether ``step`` is a transmission step.
        """

        st = self.state
        if not st.session_possible:
            return False

        if self.is_coordinator:
            if self.server.client is None:
                if st.wait_for_connection:
                    self.server.block_connect(self.engine.stop_requested)
                else:
                    self.server.try_connect()
            if self.server.client is not None:
                self.dispatcher.drain()
            st.connected = self.server.connected

        self.synchronizer.sync(time)
        return step % st.update_interval == 0

    def gather_if_needed(self, step: int, transmission: bool):
        """
        Assemble the tracked positions when they are sent this step, or when the
        engine re-partitions atoms (to keep the unwrap reference current).
        Collective.
        """

        if not self.state.session_possible:
            return
        send = transmission and self.state.connected
        partition = self.engine.is_partition_step(step)
        if not (send or partition):
            return

        box = self.engine.box()
        slots, x = self.engine.local_tracked_positions(self.tracked)
        self.assembler.communicate(slots, x, box, partition_step=partition)
        if send and self.is_coordinator:
            self.assembler.remove_molecule_shifts(box)

    def do_step(self, step: int, time: float = 0.0) -> bool:
        """
        :meth:`poll_and_sync` followed by :meth:`gather_if_needed`.

        Returns
        -------
        bool
            Whether ``step`` is a transmission step.
        """

        transmission = self.poll_and_sync(step, time)
        self.gather_if_needed(step, transmission)
        return transmission

    def publish(self, step: int, transmission: bool, have_new_energies: bool = True):
        """
        Refresh the energy sample and, on transmission steps, send energies and
        positions to the client. Coordinator only; a no-op elsewhere.

        Parameters
        ----------
        step : int
            Current step number.
        transmission : bool
            Value returned by :meth:`poll_and_sync` for this step.
        have_new_energies : bool, default: True
            Whether the engine evaluated energies this step.
        """

        st = self.state
        if not st.session_possible or not self.is_coordinator:
            return
        if self.server.client is None:
            return

        st.energies.tstep = int(step)
        if have_new_energies:
            terms = self.engine.energy_terms()
            for name in ENERGY_TERMS:
                if name in terms:
                    value = float(terms[name])
                    if name != "temperature":
                        value *= KJ_PER_MOL_TO_IMD_ENERGY
                    setattr(st.energies, name, value)

        if not transmission:
            return

        try:
            self.server.send_energies(st.energies)
        except (socket.timeout, _SocketClosed, OSError):
            self.dispatcher.drop_client("Error sending updated energies. Disconnecting client.")
            return
        try:
            self.server.send_positions(self.assembler.xa)
        except (socket.timeout, _SocketClosed, OSError):
            self.dispatcher.drop_client("Error sending updated positions. Disconnecting client.")

    def apply_forces(self) -> int:
        """
        Add the agreed client forces to the engine's force accumulator.

        Every rank applies the entries whose atoms it owns.

        Returns
        -------
        int
            Number of forces applied on this rank.
        """

        st = self.state
        if not st.session_possible or not st.force_injection_enabled:
            return 0

        batch = st.applied_forces
        applied = 0
        for i, vec in zip(batch.indices, batch.vectors):
            local = self.engine.global_to_local(int(self.tracked[i]))
            if local is None:
                continue
            self.engine.add_force(local, vec)
            applied += 1
        return applied

    def finalize(self):
        """
        Close the force log, drop the client and stop listening.
        """

        if self.force_log is not None:
            self.force_log.close()
            self.force_log = None
        if self.server is not None:
            self.server.close()
