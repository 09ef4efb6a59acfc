#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

"""
Run configuration of an IMD session and the checks deciding whether a
session is possible at all.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Optional

DEFAULT_PORT = 8888

DYNAMICAL_INTEGRATORS = ("md", "md-vv", "md-vv-avek", "sd", "bd")
MINIMIZERS = ("steep", "cg", "l-bfgs", "nm")


@dataclass
class ImdOptions:
    """
    User-facing IMD options.

    Attributes
    ----------
    port : int
        TCP port to listen on; values below 1 let the OS choose.
    host : str or None
        Interface to bind to; ``None`` binds to all interfaces.
    wait : bool
        Block before the first step until a client connects.
    terminatable : bool
        Allow the client to terminate the run.
    pull : bool
        Allow the client to apply forces.
    force_log : str or None
        Path of the pull-force log; no log when ``None``.
    append : bool
        Append to an existing force log instead of starting a new one.
    port_file : str or None
        File receiving the bound host and port once listening.
    io_timeout : float
        Seconds a read or write on the client connection may take.
    connect_wait : float
        Seconds to wait for the client's ``GO`` after the handshake.
    loop_wait : float
        Seconds between connection attempts while waiting for a client.
    latency : float
        Poll slice (seconds) while the client holds the run paused.
    """

    port: int = DEFAULT_PORT
    host: Optional[str] = None
    wait: bool = False
    terminatable: bool = False
    pull: bool = False
    force_log: Optional[str] = None
    append: bool = False
    port_file: Optional[str] = None
    io_timeout: float = 10.0
    connect_wait: float = 1.0
    loop_wait: float = 1.0
    latency: float = 0.01

    def __post_init__(self):
        for name in ("io_timeout", "connect_wait", "loop_wait", "latency"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")

    @property
    def requested(self) -> bool:
        """
        Whether any option asks for an interactive session.
        """

        return bool(self.wait or self.terminatable or self.pull)

    @classmethod
    def from_args(cls, ns: argparse.Namespace) -> "ImdOptions":
        return cls(
            port=ns.imd_port,
            host=ns.imd_host,
            wait=ns.imd_wait,
            terminatable=ns.imd_term,
            pull=ns.imd_pull,
            force_log=ns.imd_force_log,
            append=ns.imd_append,
            port_file=ns.imd_port_file,
        )


def add_imd_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """
    Register the IMD command-line options on ``parser``.

    Parameters
    ----------
    parser : argparse.ArgumentParser
        Parser of the hosting simulation program.

    Returns
    -------
    argparse.ArgumentParser
        The same parser, for chaining.
    """

    group = parser.add_argument_group("interactive molecular dynamics")
    group.add_argument(
        "--imd-port",
        type=int,
        default=DEFAULT_PORT,
        help="TCP port for IMD connections. Values below 1 let the OS pick a free port.",
    )
    group.add_argument(
        "--imd-host",
        type=str,
        default=None,
        help="Interface to listen on (default: all interfaces).",
    )
    group.add_argument(
        "--imd-wait",
        action="store_true",
        default=False,
        help="Pause the simulation until an IMD client connects.",
    )
    group.add_argument(
        "--imd-term",
        action="store_true",
        default=False,
        help="Allow the IMD client to terminate the simulation.",
    )
    group.add_argument(
        "--imd-pull",
        action="store_true",
        default=False,
        help="Allow the IMD client to pull on atoms.",
    )
    group.add_argument(
        "--imd-force-log",
        type=str,
        default=None,
        help="Write the applied IMD pull forces to this file.",
    )
    group.add_argument(
        "--imd-append",
        action="store_true",
        default=False,
        help="Append to an existing force log instead of overwriting it.",
    )
    group.add_argument(
        "--imd-port-file",
        type=str,
        default=None,
        help="Write host and bound port to this file once listening.",
    )
    return parser


def check_run_configuration(
    integrator: str,
    nstcalcenergy: int = 1,
    parallel: bool = False,
    multisim: bool = False,
    is_coordinator: bool = True,
) -> Optional[int]:
    """
    Decide whether the run can host an IMD session.

    Parameters
    ----------
    integrator : str
        Integrator name of the run.
    nstcalcenergy : int, default: 1
        Energy-evaluation interval; becomes the default transmission interval
        for dynamical integrators.
    parallel : bool, default: False
        Whether the run uses more than one rank.
    multisim : bool, default: False
        Whether this is one of several coupled simulations.
    is_coordinator : bool, default: True
        Only the coordinator reports why IMD is disabled.

    Returns
    -------
    int or None
        The default update interval, or ``None`` if IMD is not possible and the
        run should continue without it.

    Raises
    ------
    RuntimeError
        For an energy minimisation run in parallel.
    ValueError
        If ``nstcalcenergy`` is not positive for a dynamical integrator.
    """

    if multisim:
        if is_coordinator:
            print("[ImdSession] IMD is not supported for multi-simulations.")
        return None

    if integrator in DYNAMICAL_INTEGRATORS:
        if int(nstcalcenergy) < 1:
            raise ValueError(f"nstcalcenergy must be positive, got {nstcalcenergy}")
        return int(nstcalcenergy)

    if integrator in MINIMIZERS:
        if parallel:
            raise RuntimeError(
                "Interactive energy minimization is only supported with a single rank."
            )
        return 1

    if is_coordinator:
        print(
            f"[ImdSession] Integrator '{integrator}' is not supported by IMD; IMD is disabled for this run."
        )
    return None
