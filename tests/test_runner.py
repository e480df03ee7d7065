from __future__ import annotations

from pathlib import Path

from repoci.containers import ContainerError, ExecResult, ExecTimeout, Mount
from repoci.materializer import materialize_run
from repoci.model import JobDefinition, ShellStep, ActionStep, Status, WorkflowDefinition
from repoci.runner import RUNS_ON_IMAGES, RunExecutor, resolve_image
from repoci.settings import JobLimits

from fakes import FakeRuntime, MemorySource


def _workflow(**jobs: JobDefinition) -> WorkflowDefinition:
    return WorkflowDefinition(name="CI", file_name="ci.yml", jobs=dict(jobs))


def _sh(*commands: str) -> list:
    return [ShellStep(command=c) for c in commands]


NODE_BUILD = JobDefinition(runs_on="node", steps=_sh("npm ci", "npm test", "npm run deploy"))


def _execute(store, runtime, trigger, definition, source=None, **kwargs):
    run = materialize_run(store, "demo", definition, trigger)
    executor = RunExecutor(store, runtime, source, **kwargs)
    status = executor.execute_run(run)
    return status, store.get_run(run.id)


# ---------------------------------------------------------------------
# Image resolution
# ---------------------------------------------------------------------

def test_known_labels_map_to_images():
    assert resolve_image("ubuntu-latest") == "ubuntu:22.04"
    assert resolve_image("ubuntu-20.04") == "ubuntu:20.04"
    assert resolve_image("node") == "node:20"
    assert resolve_image("node-18") == "node:18"
    assert resolve_image("python-3.11") == "python:3.11"
    assert resolve_image("dotnet") == "mcr.microsoft.com/dotnet/sdk:8.0"


def test_label_lookup_is_case_insensitive():
    assert resolve_image("Python-Latest") == "python:3.12"
    assert resolve_image("UBUNTU-22.04") == "ubuntu:22.04"


def test_unknown_label_falls_back_to_ubuntu():
    assert resolve_image("weird-tag") == "ubuntu:22.04"
    assert resolve_image("") == "ubuntu:22.04"


def test_image_resolution_is_stable():
    for label in list(RUNS_ON_IMAGES) + ["weird-tag"]:
        assert resolve_image(label) == resolve_image(label)


# ---------------------------------------------------------------------
# Step cascade inside a job
# ---------------------------------------------------------------------

def test_failing_step_cancels_rest_of_job(store, trigger):
    runtime = FakeRuntime({"npm test": ExecResult(1, "1 failing\n")})

    status, run = _execute(store, runtime, trigger, _workflow(build=NODE_BUILD))

    job = run.jobs[0]
    assert [s.status for s in job.steps] == [Status.SUCCESS, Status.FAILURE, Status.CANCELLED]
    assert job.status == Status.FAILURE
    assert job.steps[0].output == "ran npm ci\n"
    assert job.steps[1].output.endswith("Process exited with code 1")
    assert job.steps[1].output.startswith("1 failing\n")
    assert job.steps[2].started_at is None
    assert "npm run deploy" not in runtime.executed
    assert runtime.args_of("pull_image") == [("node:20",)]
    assert status == run.status == Status.FAILURE


def test_all_jobs_run_even_after_a_failure(store, trigger):
    runtime = FakeRuntime({"npm test": ExecResult(1, "")})
    definition = _workflow(
        build=NODE_BUILD,
        smoke=JobDefinition(steps=_sh("true")),
    )

    status, run = _execute(store, runtime, trigger, definition)

    assert [j.status for j in run.jobs] == [Status.FAILURE, Status.SUCCESS]
    assert "true" in runtime.executed
    assert run.status == Status.FAILURE
    assert len(runtime.args_of("create_container")) == 2


def test_run_succeeds_when_every_job_succeeds(store, runtime, trigger):
    definition = _workflow(
        a=JobDefinition(steps=_sh("make")),
        b=JobDefinition(runs_on="python", steps=_sh("pytest")),
    )

    status, run = _execute(store, runtime, trigger, definition)

    assert status == Status.SUCCESS
    assert all(j.status == Status.SUCCESS for j in run.jobs)
    assert run.created_at <= run.started_at <= run.completed_at
    for job in run.jobs:
        assert run.started_at <= job.started_at <= job.completed_at <= run.completed_at


def test_step_without_command_runs_placeholder(store, runtime, trigger):
    definition = _workflow(j=JobDefinition(steps=[ShellStep(command=None)]))

    status, run = _execute(store, runtime, trigger, definition)

    step = run.jobs[0].steps[0]
    assert runtime.executed == ["echo 'No command'"]
    assert step.name == "Step"
    assert step.status == Status.SUCCESS
    assert step.output == "No command\n"
    assert status == Status.SUCCESS


def test_action_steps_are_never_executed(store, runtime, trigger):
    definition = _workflow(
        j=JobDefinition(steps=[ActionStep(reference="actions/checkout@v4"), ShellStep(command="make")])
    )

    status, run = _execute(store, runtime, trigger, definition)

    assert runtime.executed == ["make"]
    action = run.jobs[0].steps[0]
    assert action.status == Status.SUCCESS
    assert "actions/checkout@v4" in action.output
    assert status == Status.SUCCESS


def test_empty_run_succeeds_without_containers(store, runtime, trigger):
    status, run = _execute(store, runtime, trigger, _workflow())

    assert status == run.status == Status.SUCCESS
    assert runtime.calls == []


# ---------------------------------------------------------------------
# Container lifecycle
# ---------------------------------------------------------------------

def test_container_is_bounded_mounted_and_bootstrapped(store, runtime, trigger):
    source = MemorySource(locations={"demo": Path("/repos/demo.git")})
    definition = _workflow(j=JobDefinition(steps=_sh("ls")))

    _execute(store, runtime, trigger, definition, source=source)

    image, memory, cpus, mounts, workdir = runtime.args_of("create_container")[0]
    assert image == "ubuntu:22.04"
    assert memory == 512 * 1024 * 1024
    assert cpus == 1.0
    assert mounts == [Mount(source="/repos/demo.git", target="/repo", read_only=True)]
    assert workdir == "/workspace"
    assert runtime.executed == ["git clone /repo /workspace 2>&1 || true", "ls"]
    assert runtime.args_of("exec")[1][1] == ["sh", "-c", "ls"]
    assert runtime.ops() == ["pull_image", "create_container", "start", "exec", "exec", "stop", "remove"]
    assert runtime.args_of("stop") == [("container-1", 5)]
    assert runtime.args_of("remove") == [("container-1", True)]


def test_no_mount_means_no_bootstrap(store, runtime, trigger):
    _execute(store, runtime, trigger, _workflow(j=JobDefinition(steps=_sh("ls"))), source=MemorySource())

    assert runtime.args_of("create_container")[0][3] == []
    assert runtime.executed == ["ls"]


def test_bootstrap_failure_is_ignored(store, trigger):
    limits = JobLimits()
    runtime = FakeRuntime({limits.bootstrap_command: ContainerError(kind="exec_failed", message="boom")})
    source = MemorySource(locations={"demo": Path("/repos/demo")})

    status, run = _execute(store, runtime, trigger, _workflow(j=JobDefinition(steps=_sh("ls"))), source=source)

    assert status == Status.SUCCESS
    assert run.jobs[0].steps[0].status == Status.SUCCESS


def test_pull_failure_fails_job_but_not_later_jobs(store, trigger):
    runtime = FakeRuntime()
    runtime.failures["pull_image"] = ContainerError(kind="image_pull_failed", message="no such image")
    definition = _workflow(
        first=JobDefinition(steps=_sh("a", "b")),
        second=JobDefinition(steps=_sh("c")),
    )

    calls = []
    original_pull = runtime.pull_image

    def pull_once(image):
        calls.append(image)
        if len(calls) == 2:
            runtime.failures.pop("pull_image", None)
        original_pull(image)

    runtime.pull_image = pull_once

    status, run = _execute(store, runtime, trigger, definition)

    first, second = run.jobs
    assert first.status == Status.FAILURE
    assert first.completed_at is not None
    assert [s.status for s in first.steps] == [Status.CANCELLED, Status.CANCELLED]
    assert second.status == Status.SUCCESS
    assert runtime.executed == ["c"]
    assert status == Status.FAILURE


def test_exec_transport_error_fails_step_and_cleans_up(store, trigger):
    runtime = FakeRuntime({"b": ContainerError(kind="exec_failed", message="connection reset")})

    status, run = _execute(store, runtime, trigger, _workflow(j=JobDefinition(steps=_sh("a", "b", "c"))))

    job = run.jobs[0]
    assert [s.status for s in job.steps] == [Status.SUCCESS, Status.FAILURE, Status.CANCELLED]
    assert "connection reset" in job.steps[1].output
    assert job.status == Status.FAILURE
    assert runtime.ops()[-2:] == ["stop", "remove"]
    assert status == Status.FAILURE


def test_cleanup_errors_do_not_change_outcome(store, trigger):
    runtime = FakeRuntime()
    runtime.failures["stop"] = ContainerError(kind="container_stop_failed", message="gone")

    status, run = _execute(store, runtime, trigger, _workflow(j=JobDefinition(steps=_sh("ls"))))

    assert status == Status.SUCCESS
    assert run.jobs[0].status == Status.SUCCESS
    assert runtime.args_of("remove") == [("container-1", True)]


def test_create_failure_skips_cleanup(store, trigger):
    runtime = FakeRuntime()
    runtime.failures["create_container"] = ContainerError(kind="container_create_failed", message="oom")

    status, run = _execute(store, runtime, trigger, _workflow(j=JobDefinition(steps=_sh("ls"))))

    assert run.jobs[0].status == Status.FAILURE
    assert "stop" not in runtime.ops() and "remove" not in runtime.ops()
    assert status == Status.FAILURE


# ---------------------------------------------------------------------
# Timeouts and shutdown
# ---------------------------------------------------------------------

def test_step_timeout_fails_and_cascades(store, trigger):
    runtime = FakeRuntime({"sleep 1d": ExecTimeout(kind="exec_timeout", message="too slow")})

    status, run = _execute(
        store, runtime, trigger,
        _workflow(j=JobDefinition(steps=_sh("sleep 1d", "echo never"))),
        step_timeout=30,
    )

    job = run.jobs[0]
    assert job.steps[0].status == Status.FAILURE
    assert job.steps[0].output == "Step timed out after 30 seconds"
    assert job.steps[1].status == Status.CANCELLED
    assert runtime.args_of("exec")[0][2] == 30
    assert status == Status.FAILURE


def test_stop_signal_lets_current_step_finish(store, runtime, trigger):
    definition = _workflow(
        first=JobDefinition(steps=_sh("one", "two")),
        second=JobDefinition(steps=_sh("three")),
    )
    run = materialize_run(store, "demo", definition, trigger)
    executor = RunExecutor(store, runtime)
    runtime.on_exec = lambda command: executor.stop_event.set()

    status = executor.execute_run(run)

    loaded = store.get_run(run.id)
    first, second = loaded.jobs
    assert runtime.executed == ["one"]
    assert [s.status for s in first.steps] == [Status.SUCCESS, Status.CANCELLED]
    assert first.status == Status.CANCELLED
    assert second.status == Status.CANCELLED
    assert second.steps[0].status == Status.CANCELLED
    assert status == loaded.status == Status.FAILURE
    assert runtime.ops()[-2:] == ["stop", "remove"]
