#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

import numpy as np
import pytest

from imdlink.engines.dummy import ArrayEngine
from imdlink.parallel import ProcessGroup
from imdlink.session.assembler import (
    CoordinateAssembler,
    MoleculeGrouping,
    apply_shifts,
    get_shifts,
    remove_molecule_shifts,
)

CUBE = np.eye(3) * 3.0
TRICLINIC = np.array([[3.0, 0.0, 0.0], [1.0, 3.0, 0.0], [0.5, 1.0, 3.0]])


class SerialGroup:
    is_parallel = False
    is_coordinator = True

    def bcast(self, value):
        return value

    def bcast_array(self, arr):
        return np.ascontiguousarray(arr)

    def sum_array(self, arr):
        return np.ascontiguousarray(arr)


def test_grouping_from_topology():
    # molecules: [0,1,2] [3,4] [5] [6,7,8,9]
    starts = [0, 3, 5, 6, 10]
    grouping = MoleculeGrouping.from_topology([1, 2, 3, 6, 8, 9], starts)
    assert list(grouping) == [(0, 2), (2, 3), (3, 6)]
    assert len(grouping) == 3


def test_grouping_rejects_unsorted_index():
    with pytest.raises(ValueError, match="not sorted"):
        MoleculeGrouping.from_topology([3, 1, 2], [0, 10])


def test_grouping_rejects_atoms_outside_system():
    with pytest.raises(ValueError):
        MoleculeGrouping.from_topology([1, 12], [0, 10])


@pytest.mark.parametrize("box", [CUBE, TRICLINIC])
def test_shifts_bring_positions_to_nearest_image(box):
    rng = np.random.default_rng(7)
    ref = rng.uniform(0.0, 3.0, size=(50, 3))
    true_shift = rng.integers(-2, 3, size=(50, 3))
    noise = rng.uniform(-0.2, 0.2, size=(50, 3))
    x = ref + noise + true_shift @ box

    s = get_shifts(box, x, ref)
    np.testing.assert_array_equal(s, -true_shift)
    np.testing.assert_allclose(apply_shifts(x, s, box), ref + noise)


@pytest.mark.core
def test_whole_molecule_is_translated_uniformly():
    grouping = MoleculeGrouping([0, 3, 5])
    x = np.array(
        [[4.0, 0.5, 0.5], [4.2, 0.5, 0.5], [4.4, 0.7, 0.5],  # crossed +x
         [1.0, 1.0, 1.0], [3.9, 1.0, 1.0]],                  # straddles the boundary
        dtype=float,
    )
    shifts = np.array([[1, 0, 0], [1, 0, 0], [2, 0, 0], [0, 0, 0], [1, 0, 0]])
    before = x.copy()

    remove_molecule_shifts(x, shifts, CUBE, grouping)

    np.testing.assert_allclose(x[:3], before[:3] - [3.0, 0.0, 0.0])
    np.testing.assert_allclose(np.diff(x[:3], axis=0), np.diff(before[:3], axis=0))
    # mixed signs extremes (0 and 1): left alone
    np.testing.assert_allclose(x[3:], before[3:])


def test_negative_shifts_are_undone_by_the_largest():
    grouping = MoleculeGrouping([0, 2])
    x = np.array([[-3.5, 0.0, 0.0], [-6.2, 0.0, 0.0]])
    shifts = np.array([[-1, 0, 0], [-2, 0, 0]])
    remove_molecule_shifts(x, shifts, CUBE, grouping)
    np.testing.assert_allclose(x, [[-0.5, 0.0, 0.0], [-3.2, 0.0, 0.0]])


@pytest.mark.core
def test_molecule_stays_whole_across_rewrapping():
    # a diatomic near the +x face of a 3 nm box
    engine = ArrayEngine(
        [[2.8, 1.0, 1.0], [2.95, 1.0, 1.0]],
        box=CUBE,
        molecule_starts=[0, 2],
        partition_interval=1,
    )
    tracked = np.arange(2)
    assembler = CoordinateAssembler(
        SerialGroup(), 2, MoleculeGrouping.from_topology(tracked, engine.molecule_starts())
    )
    assembler.set_reference(*engine.local_tracked_positions(tracked))

    # drift by +0.1 nm: atom 1 leaves the box and gets wrapped to the -x side
    engine.x[:, 0] += 0.1
    engine.wrap()
    assert engine.x[1, 0] == pytest.approx(0.05)

    xa = assembler.communicate(*engine.local_tracked_positions(tracked), CUBE, partition_step=True)
    np.testing.assert_allclose(xa[1] - xa[0], [0.15, 0.0, 0.0])
    assert assembler.shifts[1].tolist() == [1, 0, 0]

    # no re-partition: accumulated shifts still apply
    engine.x[:, 0] += 0.05
    xa = assembler.communicate(*engine.local_tracked_positions(tracked), CUBE, partition_step=False)
    np.testing.assert_allclose(xa[1] - xa[0], [0.15, 0.0, 0.0])

    before = xa.copy()
    assembler.remove_molecule_shifts(CUBE)
    np.testing.assert_allclose(assembler.xa, before)


def test_assembler_gathers_partial_ownership():
    x = np.arange(12, dtype=float).reshape(4, 3)
    tracked = np.array([0, 2, 3])
    engine = ArrayEngine(x, owned=[2, 3])
    assembler = CoordinateAssembler(ProcessGroup(comm=None), 3)
    slots, local_x = engine.local_tracked_positions(tracked)
    assert slots.tolist() == [1, 2]

    xa = assembler.communicate(slots, local_x, np.eye(3) * 100.0)
    np.testing.assert_allclose(xa[1:], x[[2, 3]])
    np.testing.assert_allclose(xa[0], 0.0)
