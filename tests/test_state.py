import json

import pytest

from zfsinstall.errors import PoolCreationError, ResumeStateError
from zfsinstall.state import InstallState, Phase, PhaseRunner, StateStore


def recording_phases(log, fail_on=None):
    def make(name, updates=None):
        def action(state):
            log.append(name)
            if name == fail_on:
                raise PoolCreationError("rpool", "simulated")
            return updates
        return action

    return [
        Phase("preflight", make("preflight", {"arc_max_mb": 1024})),
        Phase("disk-selection", make("disk-selection", {"devices": ["a"]}), requires=("devices",)),
        Phase("pool-creation", make("pool-creation", {"pools_created": ["bpool"]})),
        Phase("finalize", make("finalize")),
    ]


def test_missing_state_file_is_initial(tmp_path):
    state = StateStore(tmp_path / "state.json").load()
    assert state.is_initial
    assert state.checkpoint is None


def test_save_is_atomic_and_leaves_no_temp_files(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(InstallState("preflight", {"arc_max_mb": 512}))

    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
    raw = json.loads((tmp_path / "state.json").read_text())
    assert raw["checkpoint"] == "preflight"
    assert raw["data"] == {"arc_max_mb": 512}


def test_corrupt_state_file_is_rejected(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    with pytest.raises(ResumeStateError):
        StateStore(path).load()


def test_all_phases_run_and_checkpoint_advances(tmp_path):
    store = StateStore(tmp_path / "state.json")
    ran = []
    checkpoints = []
    real_save = store.save
    store.save = lambda state: (checkpoints.append(state.checkpoint), real_save(state))

    final = PhaseRunner(store, recording_phases(ran)).run_phases()

    assert ran == ["preflight", "disk-selection", "pool-creation", "finalize"]
    assert checkpoints == ran
    assert final.get("pools_created") == ["bpool"]
    assert final.get("arc_max_mb") == 1024


def test_failed_phase_keeps_previous_checkpoint(tmp_path):
    store = StateStore(tmp_path / "state.json")
    runner = PhaseRunner(store, recording_phases([], fail_on="pool-creation"))

    with pytest.raises(PoolCreationError):
        runner.run_phases()

    assert store.load().checkpoint == "disk-selection"
    assert runner.current.name == "pool-creation"


def test_resume_skips_completed_phases(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(InstallState("disk-selection", {"arc_max_mb": 1024, "devices": ["a"]}))
    ran = []

    PhaseRunner(store, recording_phases(ran)).run_phases()

    assert ran == ["pool-creation", "finalize"]


def test_resume_with_missing_phase_data_is_rejected(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(InstallState("disk-selection", {"arc_max_mb": 1024}))
    ran = []

    with pytest.raises(ResumeStateError, match="devices"):
        PhaseRunner(store, recording_phases(ran)).run_phases()
    assert ran == []


def test_unknown_checkpoint_is_rejected(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(InstallState("reticulate-splines"))
    with pytest.raises(ResumeStateError):
        PhaseRunner(store, recording_phases([])).run_phases()


def test_clear_removes_state(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(InstallState("preflight"))
    store.clear()
    assert store.load().is_initial
