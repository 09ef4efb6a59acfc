#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

import numpy as np
import pytest

from imdlink.session.state import ForceBatch, SessionState
from imdlink.session.synchronizer import GroupSynchronizer
from imdlink.units import IMD_FORCE_TO_KJ_PER_MOL_NM


def _coordinator_state(**kw):
    st = SessionState(session_possible=True, force_injection_enabled=True)
    for k, v in kw.items():
        setattr(st, k, v)
    return st


def _worker_state():
    return SessionState(session_possible=True, force_injection_enabled=True)


@pytest.mark.core
def test_disconnected_coordinator_ends_sync_after_first_broadcast(recorder, replay):
    coord = _coordinator_state(
        connected=False,
        pending_interval=3,
        new_forces_pending=True,
        received_forces=ForceBatch([1], [[1.0, 2.0, 3.0]]),
    )
    worker = _worker_state()
    worker.connected = True
    worker.update_interval = 7
    previous = ForceBatch([4], [[0.0, 0.0, 1.0]])
    worker.applied_forces = previous

    GroupSynchronizer(coord, recorder).sync()
    assert recorder.kinds() == ["bcast"]

    GroupSynchronizer(worker, replay).sync()
    assert replay.exhausted
    assert worker.connected is False
    assert worker.update_interval == 7
    assert worker.applied_forces is previous


@pytest.mark.core
def test_new_force_batch_reaches_every_rank(recorder, replay):
    received = ForceBatch([5, 9], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    coord = _coordinator_state(connected=True, new_forces_pending=True, received_forces=received)
    worker = _worker_state()

    assert GroupSynchronizer(coord, recorder).sync() is True
    assert recorder.kinds() == ["bcast", "bcast", "bcast", "array", "array"]
    assert recorder.log[2] == ("bcast", 2)

    assert GroupSynchronizer(worker, replay).sync() is True
    assert replay.exhausted

    expected = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]) * IMD_FORCE_TO_KJ_PER_MOL_NM
    for st in (coord, worker):
        assert st.applied_forces.indices.tolist() == [5, 9]
        np.testing.assert_allclose(st.applied_forces.vectors, expected)
    assert not coord.new_forces_pending
    # the raw batch stays in client units
    np.testing.assert_array_equal(coord.received_forces.vectors, received.vectors)


def test_unchanged_batch_is_not_rebroadcast(recorder, replay):
    coord = _coordinator_state(
        connected=True,
        new_forces_pending=True,
        received_forces=ForceBatch([3], [[0.0, 0.0, 1.0]]),
    )
    worker = _worker_state()
    sync_c = GroupSynchronizer(coord, recorder)
    sync_w = GroupSynchronizer(worker, replay)

    sync_c.sync()
    sync_w.sync()
    agreed = worker.applied_forces

    assert sync_c.sync() is False
    assert recorder.log[-1] == ("bcast", -1)
    assert sync_w.sync() is False
    assert replay.exhausted
    assert worker.applied_forces is agreed


def test_empty_batch_clears_forces(recorder, replay):
    coord = _coordinator_state(connected=True, new_forces_pending=True, received_forces=ForceBatch())
    worker = _worker_state()
    worker.applied_forces = ForceBatch([1], [[1.0, 1.0, 1.0]])

    GroupSynchronizer(coord, recorder).sync()
    GroupSynchronizer(worker, replay).sync()
    assert len(worker.applied_forces) == 0
    assert replay.exhausted


def test_interval_is_adopted_everywhere(recorder, replay):
    coord = _coordinator_state(connected=True, pending_interval=25, update_interval=100)
    coord.force_injection_enabled = False
    worker = _worker_state()
    worker.force_injection_enabled = False

    GroupSynchronizer(coord, recorder).sync()
    GroupSynchronizer(worker, replay).sync()

    assert recorder.kinds() == ["bcast", "bcast"]
    assert coord.update_interval == worker.update_interval == 25
    assert replay.exhausted


def test_force_log_written_by_coordinator(recorder, tmp_path):
    from imdlink.session.forcelog import ForceLog

    log = ForceLog(str(tmp_path / "pull.log"), np.arange(20))
    coord = _coordinator_state(
        connected=True, new_forces_pending=True, received_forces=ForceBatch([2], [[1.0, 0.0, 0.0]])
    )
    GroupSynchronizer(coord, recorder, force_log=log).sync(time=0.5)
    log.close()

    lines = [ln for ln in (tmp_path / "pull.log").read_text().splitlines() if not ln.startswith("#")]
    assert len(lines) == 1
    assert lines[0].split()[:3] == ["5.000000e-01", "1", "3"]
