# artifacts.py
from __future__ import annotations

import shutil
import zipfile
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from .model import ArtifactRule

DEFAULT_ARTIFACTS_DIR = ".matrixci/artifacts"

_GLOB_CHARS = set("*?[")


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _static_prefix(pattern: str) -> str:
    """Leading path segments of a glob that contain no wildcard."""
    parts: List[str] = []
    for part in pattern.split("/"):
        if _GLOB_CHARS & set(part):
            break
        parts.append(part)
    return "/".join(parts)


def _resolve(src_root: Path, pattern: str) -> List[Path]:
    p = src_root / pattern
    if not (_GLOB_CHARS & set(pattern)):
        return [p] if p.exists() else []
    return sorted(src_root.glob(pattern))


def select_files(src_root: Path, rules: Sequence[ArtifactRule]) -> List[Tuple[Path, str, str]]:
    """
    Apply a rule set to a directory.

    Returns (file, target, relative destination) triples. Directories are
    copied with their structure; files matched by a `**` pattern keep the
    path below the pattern's static prefix; other files are flattened.
    """
    excludes = [r.source for r in rules if not r.include]
    out: Dict[Tuple[str, str], Tuple[Path, str, str]] = {}

    for rule in rules:
        if not rule.include:
            continue
        for match in _resolve(src_root, rule.source):
            if match.is_dir():
                pairs = [(f, _relpath(f, match)) for f in _iter_files_under(match)]
            elif "**" in rule.source:
                prefix = src_root / _static_prefix(rule.source)
                pairs = [(match, _relpath(match, prefix))]
            else:
                pairs = [(match, match.name)]

            for f, rel in pairs:
                if any(fnmatch(_relpath(f, src_root), ex) for ex in excludes):
                    continue
                out[(rule.target, rel)] = (f, rule.target, rel)

    return [out[k] for k in sorted(out)]


def copy_by_rules(src_root: Path, rules: Sequence[ArtifactRule], dest_root: Path) -> List[str]:
    """
    Copy files selected by rules from src_root into dest_root.
    Targets ending in .zip are written as archives. Returns stored paths
    relative to dest_root.
    """
    src_root = Path(src_root).resolve()
    dest_root = Path(dest_root).resolve()
    stored: set[str] = set()
    archives: Dict[str, List[Tuple[Path, str]]] = {}

    for f, target, rel in select_files(src_root, rules):
        if target.lower().endswith(".zip"):
            archives.setdefault(target, []).append((f, rel))
            continue
        dst = dest_root / target / rel if target else dest_root / rel
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(f, dst)
        stored.add(_relpath(dst, dest_root))

    for target, members in archives.items():
        zpath = dest_root / target
        zpath.parent.mkdir(parents=True, exist_ok=True)
        tmp = zpath.with_suffix(".zip.tmp")
        try:
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for f, rel in members:
                    zf.write(f, arcname=rel)
            tmp.replace(zpath)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        stored.add(_relpath(zpath, dest_root))

    return sorted(stored)


class ArtifactStore:
    """
    File-based artifact store:
      root/
        <job_id>/
          <run_id>/
            <published files>
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACTS_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def run_dir(self, job_id: str, run_id: str) -> Path:
        return self.root / job_id / run_id

    def publish(self, job_id: str, run_id: str, rules: Sequence[ArtifactRule], workdir: Path) -> List[str]:
        """Persist the files matching rules, keyed by run id."""
        if not rules:
            return []
        d = self.run_dir(job_id, run_id)
        d.mkdir(parents=True, exist_ok=True)
        return copy_by_rules(workdir, rules, d)

    def fetch(self, job_id: str, run_id: str, rules: Sequence[ArtifactRule], dest: Path) -> List[str]:
        """Copy an upstream run's artifacts into dest (artifact dependency)."""
        src = self.run_dir(job_id, run_id)
        if not src.exists():
            return []
        return copy_by_rules(src, rules, dest)

    def list(self, job_id: str, run_id: str) -> List[str]:
        d = self.run_dir(job_id, run_id)
        if not d.exists():
            return []
        return [_relpath(f, d) for f in _iter_files_under(d)]
