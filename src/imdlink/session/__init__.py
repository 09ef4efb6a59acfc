from .state import EnergySample, ForceBatch, SessionState
from .forcelog import ForceLog
from .dispatcher import CommandDispatcher
from .synchronizer import GroupSynchronizer
from .assembler import (
    CoordinateAssembler,
    MoleculeGrouping,
    apply_shifts,
    get_shifts,
    remove_molecule_shifts,
)
from .session import ImdSession

__all__ = [
    "EnergySample",
    "ForceBatch",
    "SessionState",
    "ForceLog",
    "CommandDispatcher",
    "GroupSynchronizer",
    "CoordinateAssembler",
    "MoleculeGrouping",
    "apply_shifts",
    "get_shifts",
    "remove_molecule_shifts",
    "ImdSession",
]
