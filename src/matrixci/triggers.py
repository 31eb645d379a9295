# triggers.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Tuple

from .git_facts.git import changed_files as changed_files_between
from .git_facts.git import is_dirty, merge_base, repo_root, tracked_files, working_tree_changes


@dataclass(frozen=True)
class TriggerRule:
    pattern: str
    include: bool = True

    @classmethod
    def parse(cls, line: str) -> "TriggerRule":
        text = line.strip()
        if text.startswith("-:"):
            return cls(pattern=text[2:].strip(), include=False)
        if text.startswith("+:"):
            text = text[2:]
        return cls(pattern=text.strip(), include=True)

    def matches(self, path: str) -> bool:
        return fnmatch(path, self.pattern)


@dataclass(frozen=True)
class VcsTrigger:
    """
    Change-set trigger with path rules.

    A file is included when the last matching rule is an include rule. With
    only exclusion rules, every file not excluded is included. The trigger
    fires when at least one changed file is included.
    """
    rules: Tuple[TriggerRule, ...] = ()

    @classmethod
    def from_rules(cls, *lines: str) -> "VcsTrigger":
        parsed: List[TriggerRule] = []
        for text in lines:
            for line in text.splitlines():
                if line.strip():
                    parsed.append(TriggerRule.parse(line))
        return cls(rules=tuple(parsed))

    def includes(self, path: str) -> bool:
        path = path.replace("\\", "/")
        has_includes = any(r.include for r in self.rules)
        decision = not has_includes
        for rule in self.rules:
            if rule.matches(path):
                decision = rule.include
        return decision

    def should_trigger(self, changed: Iterable[str]) -> bool:
        return any(self.includes(f) for f in changed)

    def explain(self, changed: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split a change-set into (included, excluded) files."""
        included: List[str] = []
        excluded: List[str] = []
        for f in changed:
            (included if self.includes(f) else excluded).append(f)
        return included, excluded


def collect_changed_files(compare_ref: str = "origin/main") -> List[str]:
    """
    Files changed in the current repository.

      - dirty working tree: staged, unstaged and untracked files
      - clean tree: diff against the merge-base with compare_ref, falling back
        to HEAD~1, then to all tracked files on a first commit
    """
    root: Path = repo_root()

    if is_dirty(cwd=root):
        return working_tree_changes(cwd=root)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # no remote configured
        base = "HEAD~1"

    try:
        return changed_files_between(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        return tracked_files(cwd=root)
