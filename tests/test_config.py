from pathlib import Path

import pytest

from matrixci.agents import MEMORY_MB, OS_NAME
from matrixci.config import PipelineConfig, load_pipeline
from matrixci.dsl import Project, matrix, platform_job_id, sh, with_cwd
from matrixci.errors import ConfigError
from matrixci.model import DependencyKind, FailureAction, JobType, Platform, Requirement, SecretRef

PIPELINE_FILE = Path(__file__).resolve().parents[1] / "matrixci_pipeline.py"


@pytest.fixture(scope="module")
def config():
    return load_pipeline(PIPELINE_FILE)


def test_project_settings(config):
    assert config.project == "matrixci"
    assert config.settings_version == "2018.2"
    assert config.conditions.execution_timeout_min == 120
    assert config.conditions.nonzero_exit_code and config.conditions.error_message


def test_job_ids_and_order(config):
    assert [j.id for j in config.ordered_jobs()] == [
        "Build_All",
        "Build_Windows",
        "Build_Linux",
        "Build_Mac",
        "Deploy_Publish",
        "Deploy_Configure",
        "Deploy_Windows",
        "Deploy_Linux",
        "Deploy_Mac",
    ]
    assert config.job("Build_Mac").name == "Build (Mac OS X)"


def test_build_all_edges(config):
    edges = config.graph.edges_into("Build_All")
    snapshot = [e for e in edges if e.kind is DependencyKind.SNAPSHOT]
    artifact = [e for e in edges if e.kind is DependencyKind.ARTIFACT]
    assert {e.source for e in snapshot} == {"Build_Windows", "Build_Linux", "Build_Mac"}
    assert all(e.on_failure is FailureAction.ADD_PROBLEM and e.on_cancel is FailureAction.CANCEL for e in snapshot)
    assert {str(r) for e in artifact for r in e.artifact_rules} == {"+:maven=>maven"}
    assert len(artifact) == 3


def test_platform_builds(config):
    job = config.job("Build_Linux")
    assert job.platform is Platform.LINUX
    assert "clean publishToBuildLocal check --continue" in job.steps[0].run
    assert [str(r) for r in job.artifact_rules] == ["+:build/maven=>maven"]
    assert Requirement(OS_NAME, "equals", "Linux") in job.requirements
    assert Requirement(MEMORY_MB, "no-less-than", "6144") in job.requirements
    assert config.job("Build_Windows").steps[0].run.startswith("gradlew.bat")


def test_common_requirements_apply_to_every_job(config):
    mem = Requirement(MEMORY_MB, "no-less-than", "6144")
    assert all(mem in j.requirements for j in config.graph.jobs.values())


def test_release_definition(config):
    rel = config.release
    assert rel.configure == "Deploy_Configure"
    assert rel.deploys == ("Deploy_Windows", "Deploy_Linux", "Deploy_Mac")
    assert rel.publish == "Deploy_Publish"
    assert rel.version_parameter == "releaseVersion"

    configure = config.job("Deploy_Configure")
    assert configure.build_number_pattern == "0.1.0-dev-%build.counter%"
    assert configure.params["bintray-key"] == SecretRef("credentialsJSON:9a48193c-d16d-46c7-8751-2fb434b09e07")

    deploy = config.job("Deploy_Mac")
    assert deploy.type is JobType.DEPLOYMENT
    assert deploy.max_running == 1
    assert deploy.clean_checkout
    assert deploy.build_number_pattern == "%releaseVersion% (%build.counter%)"

    publish_edges = config.graph.edges_into("Deploy_Publish")
    assert all(e.on_failure is FailureAction.FAIL_TO_START for e in publish_edges)
    assert {e.source for e in publish_edges} == {"Deploy_Configure", *rel.deploys}


def test_triggers_and_default_targets(config):
    assert config.default_targets() == ["Build_All"]
    assert not config.triggers["Build_All"].should_trigger(["README.md"])


def test_release_jobs_excluded_from_default_targets_without_triggers():
    project = Project("p")
    project.job("A").define_step("a", "true")
    c = project.job("C").define_step("c", "true")
    d = project.job("D").define_step("d", "true").depends_on_snapshot(c)
    p = project.job("P").composite().depends_on_snapshot(d)
    project.release(configure=c, deploys=[d], publish=p)
    assert project.freeze().default_targets() == ["A"]


def test_release_must_be_connected():
    project = Project("p")
    c = project.job("C").define_step("c", "true")
    d = project.job("D").define_step("d", "true")
    p = project.job("P").composite().depends_on(d)
    project.release(configure=c, deploys=[d], publish=p)
    with pytest.raises(ConfigError, match="does not depend on configure"):
        project.freeze()


def test_composite_with_steps_is_rejected():
    project = Project("p")
    project.job("X").composite().define_step("s", "true")
    with pytest.raises(ConfigError, match="cannot have steps"):
        project.freeze()


def test_job_without_steps_is_rejected():
    project = Project("p")
    project.job("X")
    with pytest.raises(ConfigError, match="no steps"):
        project.freeze()


def test_invalid_job_id():
    with pytest.raises(ConfigError, match="letters, digits and underscores"):
        Project("p").job("Build-All")


def test_duplicate_job_id():
    project = Project("p")
    project.job("A")
    with pytest.raises(ConfigError, match="Duplicate"):
        project.job("A")


def test_cycle_through_dsl():
    project = Project("p")
    a = project.job("A").define_step("a", "true")
    b = project.job("B").define_step("b", "true").depends_on(a)
    a.depends_on(b)
    with pytest.raises(ConfigError, match="cycle"):
        project.freeze()


def test_freeze_is_repeatable():
    calls = []
    project = Project("p", common=lambda j: calls.append(j.id))
    project.job("A").define_step("a", "true")
    first, second = project.freeze(), project.freeze()
    assert calls == ["A"]
    assert first.job("A") == second.job("A")


def test_matrix_and_helpers():
    project = Project("p")
    jobs = matrix("platform", list(Platform)).jobs(
        lambda p: project.platform_job(p, "Test").steps(*with_cwd([sh("test", "make test")], "core"))
    )
    assert [j.id for j in jobs] == [platform_job_id("Test", p) for p in Platform]
    config = project.freeze()
    assert config.job("Test_Mac").steps[0].cwd == "core"


def test_load_pipeline_constant(tmp_path):
    f = tmp_path / "p.py"
    f.write_text(
        "from matrixci import Project\n"
        "project = Project('const')\n"
        "project.job('A').define_step('a', 'true')\n"
        "PIPELINE = project.freeze()\n"
    )
    config = load_pipeline(f)
    assert isinstance(config, PipelineConfig)
    assert config.project == "const"


def test_load_pipeline_requires_definition(tmp_path):
    f = tmp_path / "empty.py"
    f.write_text("x = 1\n")
    with pytest.raises(ConfigError, match=r"pipeline\(\) or PIPELINE"):
        load_pipeline(f)


def test_load_pipeline_wrong_type(tmp_path):
    f = tmp_path / "wrong.py"
    f.write_text("def pipeline():\n    return 42\n")
    with pytest.raises(ConfigError, match="got int"):
        load_pipeline(f)


def test_frozen_job_params_are_read_only():
    project = Project("p")
    project.job("A").define_step("a", "true").param("channel", "beta")
    job = project.freeze().job("A")
    with pytest.raises(TypeError):
        job.params["channel"] = "stable"
    assert job.params["channel"] == "beta"
    assert hash(job) == hash(project.freeze().job("A"))


def test_bad_artifact_dependency_rule_is_a_config_error():
    project = Project("p")
    a = project.job("A").define_step("a", "true")
    with pytest.raises(ConfigError, match="Job 'B'"):
        project.job("B").define_step("b", "true").depends_on_artifacts(a, "-:maven=>maven")
