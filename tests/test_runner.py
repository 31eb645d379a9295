import pytest

from matrixci.agents import AgentPool
from matrixci.config import FailureConditions
from matrixci.model import ArtifactRule, Job, Run, RunStatus, SecretRef, Severity, Step
from matrixci.params import ParameterContext, SecretResolver
from matrixci.runner import JobRunner, classify_line, error_lines, mask


@pytest.fixture
def runner(tmp_path, agents, artifacts, console):
    def _make(conditions=None, secrets=None):
        return JobRunner(
            AgentPool(agents),
            artifacts,
            conditions=conditions or FailureConditions(),
            work_root=tmp_path / "work",
            secrets=secrets or SecretResolver(environ={}),
            console=console,
        )

    return _make


def _execute(runner, *commands, **job_kw):
    job = Job(
        id=job_kw.pop("id", "Build_Linux"),
        name="Build",
        steps=tuple(Step(f"step{i}", c) for i, c in enumerate(commands)),
        **job_kw,
    )
    run = Run(job_id=job.id)
    ctx = ParameterContext(job, counter=1)
    run.build_number = ctx.assign_build_number()
    return runner.execute(job, run, ctx)


@pytest.mark.parametrize(
    "line, severity",
    [
        ("error: boom", Severity.ERROR),
        ("FAILURE: Build failed", Severity.ERROR),
        ("warning: deprecated API", Severity.WARNING),
        ("WARN: slow", Severity.WARNING),
        ("Note: recompile with -Xlint", Severity.INFO),
    ],
)
def test_classify_line(line, severity):
    assert classify_line(line) is severity


def test_error_lines_threshold():
    stderr = "warning: a\nerror: b\n\n"
    assert error_lines(stderr, Severity.ERROR) == ["error: b"]
    assert error_lines(stderr, Severity.WARNING) == ["warning: a", "error: b"]


def test_mask():
    assert mask("key=abc123 user=bob", ["abc123", ""]) == "key=****** user=bob"


def test_successful_job(runner):
    run = _execute(runner(), "echo hello", "true")
    assert run.status is RunStatus.SUCCEEDED
    assert run.agent is not None
    assert run.started_at is not None and run.finished_at is not None
    assert run.problems == []


def test_nonzero_exit_fails_and_stops(runner, checkout):
    run = _execute(runner(), "exit 3", "touch never-created")
    assert run.status is RunStatus.FAILED
    [problem] = run.problems
    assert problem.kind == "StepExecutionError"
    assert problem.step == "step0"
    assert "exit code 3" in problem.message
    assert not (checkout / "never-created").exists()


def test_error_output_fails_job(runner):
    run = _execute(runner(), "echo 'error: something broke' >&2")
    assert run.status is RunStatus.FAILED
    assert "something broke" in run.problems[0].message


def test_warning_output_does_not_fail(runner):
    run = _execute(runner(), "echo 'warning: just saying' >&2")
    assert run.status is RunStatus.SUCCEEDED


def test_error_output_ignored_when_condition_disabled(runner):
    run = _execute(runner(FailureConditions(error_message=False)), "echo 'error: noisy tool' >&2")
    assert run.status is RunStatus.SUCCEEDED


def test_timeout(runner):
    # 0.01 min = 0.6s
    run = _execute(runner(FailureConditions(execution_timeout_min=0.01)), "sleep 5")
    assert run.status is RunStatus.FAILED
    assert run.problems[0].kind == "TimeoutExceeded"


def test_timeout_is_shared_across_steps(runner):
    run = _execute(runner(FailureConditions(execution_timeout_min=0.01)), "sleep 0.4", "sleep 0.4")
    assert run.status is RunStatus.FAILED
    assert run.problems[0].kind == "TimeoutExceeded"
    assert run.problems[0].step == "step1"


def test_no_compatible_agent(runner):
    from matrixci.model import Requirement

    run = _execute(runner(), "true", requirements=(Requirement("agent.os.name", "equals", "Solaris"),))
    assert run.status is RunStatus.FAILED
    assert run.problems[0].kind == "AgentUnavailable"
    assert run.agent is None


def test_unresolved_parameter_in_step(runner):
    run = _execute(runner(), "echo %missing%")
    assert run.status is RunStatus.FAILED
    assert run.problems[0].kind == "ParameterError"


def test_secret_is_passed_by_env_and_masked(runner, console):
    secrets = SecretResolver(environ={"MATRIXCI_SECRET_ABC": "s3cr3t-value"})
    run = _execute(
        runner(secrets=secrets),
        "echo key=%bintray-key%",
        params={"bintray-key": SecretRef("credentialsJSON:abc")},
    )
    assert run.status is RunStatus.SUCCEEDED
    out = console._stream.getvalue()
    assert "key=******" in out
    assert "s3cr3t-value" not in out


def test_missing_secret_fails(runner):
    run = _execute(runner(), "echo %bintray-key%", params={"bintray-key": SecretRef("credentialsJSON:abc")})
    assert run.status is RunStatus.FAILED
    assert run.problems[0].kind == "ParameterError"


def test_artifacts_published_even_when_step_fails(runner, checkout, artifacts):
    run = _execute(
        runner(),
        "mkdir -p build/maven && echo jar > build/maven/lib.jar",
        "exit 1",
        artifact_rules=(ArtifactRule.parse("+:build/maven=>maven"),),
    )
    assert run.status is RunStatus.FAILED
    assert run.artifacts == ["maven/lib.jar"]
    assert artifacts.list("Build_Linux", run.id) == ["maven/lib.jar"]


def test_clean_checkout_uses_fresh_copy(runner, checkout, tmp_path):
    (checkout / "source.txt").write_text("src")
    run = _execute(runner(), "test -f source.txt && touch produced.txt", clean_checkout=True)
    assert run.status is RunStatus.SUCCEEDED
    assert not (checkout / "produced.txt").exists()
    assert (tmp_path / "work" / run.agent / "Build_Linux" / "produced.txt").exists()


def test_problems_added_before_execution_fail_the_run(runner, agents):
    from matrixci.model import Problem

    job = Job(id="All", name="All", steps=(Step("s", "true"),))
    run = Run(job_id="All")
    run.add_problem(Problem(kind="DependencyFailure", message="snapshot dependency failed: X", job="All"))
    ctx = ParameterContext(job, counter=1)
    result = runner().execute(job, run, ctx)
    assert result.status is RunStatus.FAILED
    assert len(result.problems) == 1
