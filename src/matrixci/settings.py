# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read from the environment once per process."""
    home: Path
    database_url: str
    workers: Optional[int]
    agent_memory_mb: Optional[int]

    @property
    def artifacts_dir(self) -> Path:
        return self.home / "artifacts"

    @property
    def work_dir(self) -> Path:
        return self.home / "work"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        home = Path(env.get("MATRIXCI_HOME", ".matrixci"))
        workers = env.get("MATRIXCI_WORKERS")
        memory = env.get("MATRIXCI_AGENT_MEMORY_MB")
        return cls(
            home=home,
            database_url=env.get("MATRIXCI_DATABASE_URL", f"sqlite:///{home / 'state.db'}"),
            workers=int(workers) if workers else None,
            agent_memory_mb=int(memory) if memory else None,
        )
