import zipfile

import pytest

from matrixci.artifacts import ArtifactStore, copy_by_rules, select_files
from matrixci.model import ArtifactRule, parse_artifact_rules


def _write(root, rel, text="x"):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text)
    return p


def test_parse_rules():
    rules = parse_artifact_rules("+:build/maven=>maven\n-:build/maven/**/*.tmp")
    assert rules[0] == ArtifactRule(source="build/maven", target="maven", include=True)
    assert rules[1] == ArtifactRule(source="build/maven/**/*.tmp", include=False)
    assert str(rules[0]) == "+:build/maven=>maven"


def test_parse_rules_accepts_commas_and_bare_paths():
    rules = parse_artifact_rules("dist/*.whl, reports=>reports")
    assert [r.source for r in rules] == ["dist/*.whl", "reports"]
    assert rules[1].target == "reports"


def test_exclusion_rule_cannot_have_target():
    with pytest.raises(ValueError):
        ArtifactRule.parse("-:build=>out")


def test_directory_keeps_structure(tmp_path):
    src = tmp_path / "src"
    _write(src, "build/maven/org/lib/1.0/lib.jar")
    _write(src, "build/maven/org/lib/1.0/lib.pom")
    _write(src, "build/other.txt")

    selected = select_files(src, parse_artifact_rules("+:build/maven=>maven"))
    assert [(target, rel) for _, target, rel in selected] == [
        ("maven", "org/lib/1.0/lib.jar"),
        ("maven", "org/lib/1.0/lib.pom"),
    ]


def test_globs_flatten_and_exclusions_apply(tmp_path):
    src = tmp_path / "src"
    _write(src, "out/a.txt")
    _write(src, "out/b.log")
    _write(src, "out/c.txt")

    rules = parse_artifact_rules("+:out/*=>logs\n-:out/c.txt")
    assert [rel for _, _, rel in select_files(src, rules)] == ["a.txt", "b.log"]


def test_double_star_keeps_relative_path(tmp_path):
    src = tmp_path / "src"
    _write(src, "reports/unit/a.xml")
    _write(src, "reports/int/deep/b.xml")

    rules = parse_artifact_rules("+:reports/**/*.xml=>xml")
    assert sorted(rel for _, _, rel in select_files(src, rules)) == ["int/deep/b.xml", "unit/a.xml"]


def test_zip_target(tmp_path):
    src = tmp_path / "src"
    _write(src, "dist/app.bin", "binary")
    dest = tmp_path / "dest"

    stored = copy_by_rules(src, parse_artifact_rules("+:dist=>bundle.zip"), dest)
    assert stored == ["bundle.zip"]
    with zipfile.ZipFile(dest / "bundle.zip") as zf:
        assert zf.read("app.bin") == b"binary"


def test_store_publish_fetch_and_list(tmp_path):
    work = tmp_path / "work"
    _write(work, "build/maven/lib.jar", "jar")
    store = ArtifactStore(tmp_path / "artifacts")

    published = store.publish("Build_Linux", "run1", parse_artifact_rules("+:build/maven=>maven"), work)
    assert published == ["maven/lib.jar"]
    assert store.list("Build_Linux", "run1") == ["maven/lib.jar"]

    dest = tmp_path / "consumer"
    fetched = store.fetch("Build_Linux", "run1", parse_artifact_rules("+:maven=>maven"), dest)
    assert fetched == ["maven/lib.jar"]
    assert (dest / "maven" / "lib.jar").read_text() == "jar"


def test_publish_without_rules_is_noop(tmp_path):
    store = ArtifactStore(tmp_path / "artifacts")
    assert store.publish("J", "r", (), tmp_path) == []
    assert store.list("J", "r") == []
