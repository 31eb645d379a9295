from matrixci.model import Problem, Run, RunStatus
from matrixci.store import GateSnapshot, StateStore


def test_counters_are_per_job_and_strictly_increasing(store):
    assert [store.next_counter("A") for _ in range(3)] == [1, 2, 3]
    assert store.next_counter("B") == 1
    assert store.peek_counter("A") == 3
    assert store.peek_counter("never") == 0


def test_counters_survive_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'nested' / 'state.db'}"
    StateStore(url).next_counter("A")
    assert StateStore(url).next_counter("A") == 2


def test_in_memory_store():
    store = StateStore("sqlite://")
    assert store.next_counter("A") == 1
    assert store.next_counter("A") == 2


def test_record_and_reload_run(store):
    run = Run(job_id="Build_Linux", build_number="7", counter=7, params={"releaseVersion": "0.1.0"})
    run.start("agent-linux")
    run.add_problem(Problem(kind="StepExecutionError", message="exit code 1", job="Build_Linux", step="build"))
    run.artifacts = ["maven/lib.jar"]
    run.finish(RunStatus.FAILED)
    store.record_run("lib", run)

    loaded = store.get_run(run.id)
    assert loaded.status is RunStatus.FAILED
    assert loaded.agent == "agent-linux"
    assert loaded.problems == run.problems
    assert loaded.artifacts == ["maven/lib.jar"]
    assert loaded.params == {"releaseVersion": "0.1.0"}
    assert loaded.finished_at.tzinfo is not None


def test_record_run_updates_in_place(store):
    run = Run(job_id="A")
    store.record_run("lib", run)
    run.start("x")
    run.finish(RunStatus.SUCCEEDED)
    store.record_run("lib", run)

    assert len(store.runs(project="lib")) == 1
    assert store.get_run(run.id).status is RunStatus.SUCCEEDED


def test_runs_filter_and_latest(store):
    first = Run(job_id="A", counter=1)
    second = Run(job_id="A", counter=2)
    other = Run(job_id="B", counter=1)
    for r in (first, second, other):
        store.record_run("lib", r)
    store.record_run("elsewhere", Run(job_id="A", counter=9))

    assert {r.id for r in store.runs(project="lib", job_id="A")} == {first.id, second.id}
    assert store.latest_run("A", project="lib").id == second.id
    assert store.latest_run("missing") is None
    assert store.get_run("nope") is None


def test_gate_snapshot_roundtrip(store):
    assert store.load_gate("lib") is None
    store.save_gate(GateSnapshot(project="lib", state="configured", version="0.1.0-dev-3", configure_run_id="abc", attempt=1))
    snap = store.load_gate("lib")
    assert (snap.state, snap.version, snap.configure_run_id, snap.attempt) == ("configured", "0.1.0-dev-3", "abc", 1)
    assert snap.updated_at is not None
