import shutil
import subprocess

import pytest

from matrixci.triggers import TriggerRule, VcsTrigger, collect_changed_files


def test_exclusions_only_include_everything_else():
    trigger = VcsTrigger.from_rules("-:*.md", "-:.gitignore")
    assert not trigger.includes("README.md")
    assert not trigger.includes(".gitignore")
    assert trigger.includes("core/src/Main.kt")


def test_change_set_of_only_excluded_files_does_not_fire():
    trigger = VcsTrigger.from_rules("-:*.md\n-:.gitignore")
    assert not trigger.should_trigger(["README.md", ".gitignore"])
    assert trigger.should_trigger(["README.md", "build.gradle.kts"])
    assert not trigger.should_trigger([])


def test_last_matching_rule_wins():
    trigger = VcsTrigger.from_rules("+:src/*", "-:src/generated/*")
    assert trigger.includes("src/Main.kt")
    assert not trigger.includes("src/generated/Api.kt")
    assert not trigger.includes("docs/index.html")


def test_explain_splits_change_set():
    trigger = VcsTrigger.from_rules("-:*.md")
    assert trigger.explain(["a.md", "b.kt"]) == (["b.kt"], ["a.md"])


def test_rule_parsing():
    assert TriggerRule.parse("-: *.md") == TriggerRule("*.md", include=False)
    assert TriggerRule.parse("+:src/**") == TriggerRule("src/**")
    assert TriggerRule.parse("docs/*") == TriggerRule("docs/*")


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path, monkeypatch):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "ci@example.com")
    _git(tmp_path, "config", "user.name", "ci")
    (tmp_path / "README.md").write_text("readme")
    (tmp_path / "main.kt").write_text("fun main() {}")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "initial")
    monkeypatch.chdir(tmp_path)
    return tmp_path


@requires_git
def test_collect_changed_files_dirty_tree(repo):
    (repo / "README.md").write_text("changed")
    (repo / "new.txt").write_text("new")
    assert collect_changed_files() == ["README.md", "new.txt"]


@requires_git
def test_collect_changed_files_last_commit(repo):
    (repo / "README.md").write_text("changed")
    _git(repo, "commit", "-q", "-am", "docs")
    assert collect_changed_files() == ["README.md"]


@requires_git
def test_collect_changed_files_first_commit(repo):
    assert collect_changed_files() == ["README.md", "main.kt"]
