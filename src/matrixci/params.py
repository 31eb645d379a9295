# params.py
# %name% parameter references, build number patterns and secret resolution.
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from .errors import ParameterError
from .model import Job, Run, SecretRef

REF_RE = re.compile(r"%%|%([^%\s]+)%")

COUNTER = "build.counter"
BUILD_NUMBER = "build.number"


@dataclass(frozen=True)
class VersionParameter:
    """Version bound once per release sequence. Read-only."""
    name: str
    value: str


def references(template: str) -> list[str]:
    return [m.group(1) for m in REF_RE.finditer(template) if m.group(1)]


def render(template: str, lookup: Callable[[str], str]) -> str:
    """Replace every %name% with lookup(name). ``%%`` yields a literal percent."""

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name is None:
            return "%"
        return lookup(name)

    return REF_RE.sub(_sub, template)


def secret_env_name(param: str) -> str:
    return "MATRIXCI_PARAM_" + re.sub(r"[^A-Za-z0-9]", "_", param).upper()


def env_reference(var: str) -> str:
    """Shell syntax for reading an environment variable in a step command."""
    if os.name == "nt":
        return f"%{var}%"
    return f"${{{var}}}"


class SecretResolver:
    """
    Resolves opaque secret references at execution time.

    The default implementation reads ``MATRIXCI_SECRET_<ID>`` from the
    environment, where <ID> is the part after the first ':' of the reference.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def env_name(secret: SecretRef) -> str:
        raw = secret.ref.split(":", 1)[-1]
        return "MATRIXCI_SECRET_" + re.sub(r"[^A-Za-z0-9]", "_", raw).upper()

    def resolve(self, secret: SecretRef) -> str | None:
        return self.environ.get(self.env_name(secret))


class ParameterContext:
    """
    Resolves parameters for one run of a job.

    Lookup order:
      1. the bound version parameter (read-only, wins over job params)
      2. build.counter / build.number of this run
      3. job params (values may reference other params)
      4. pipeline-level extra params
      5. dep.<job id>.build.number and dep.<job id>.<param> from upstream runs
      6. env.<NAME> from the process environment
    """

    def __init__(
        self,
        job: Job,
        *,
        counter: int | None = None,
        upstream_runs: Optional[Mapping[str, Run]] = None,
        extra: Optional[Mapping[str, str]] = None,
        version: Optional[VersionParameter] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.job = job
        self.counter = counter
        self.upstream_runs = dict(upstream_runs or {})
        self.extra = dict(extra or {})
        self.version = version
        self.environ = os.environ if environ is None else environ
        self.build_number: str | None = None
        self._resolving: list[str] = []

    def _fail(self, message: str) -> ParameterError:
        return ParameterError(job=self.job.id, message=message)

    def value(self, name: str, *, secrets: str = "error") -> str:
        """
        Resolve one parameter.

        secrets="error" refuses secret params, secrets="env" renders them as
        an environment variable reference for step commands.
        """
        if self.version is not None and name == self.version.name:
            return self.version.value
        if name == COUNTER:
            if self.counter is None:
                raise self._fail("build.counter is not assigned yet")
            return str(self.counter)
        if name == BUILD_NUMBER:
            if self.build_number is None:
                raise self._fail("build.number is not available while rendering the build number")
            return self.build_number
        if name in self.job.params:
            raw = self.job.params[name]
            if isinstance(raw, SecretRef):
                if secrets == "env":
                    return env_reference(secret_env_name(name))
                raise self._fail(f"secret parameter {name!r} cannot be rendered as plain text")
            return self._render_nested(name, raw, secrets)
        if name in self.extra:
            return self._render_nested(name, self.extra[name], secrets)
        if name.startswith("dep."):
            return self._dep_value(name)
        if name.startswith("env."):
            var = name[len("env."):]
            if var not in self.environ:
                raise self._fail(f"environment variable {var!r} is not set")
            return self.environ[var]
        raise self._fail(f"unresolved parameter reference %{name}%")

    def _render_nested(self, name: str, raw: str, secrets: str) -> str:
        if name in self._resolving:
            chain = " -> ".join(self._resolving + [name])
            raise self._fail(f"parameter reference cycle: {chain}")
        self._resolving.append(name)
        try:
            return render(raw, lambda n: self.value(n, secrets=secrets))
        finally:
            self._resolving.pop()

    def _dep_value(self, name: str) -> str:
        # dep.<job id>.<param>; job ids never contain dots
        rest = name[len("dep."):]
        job_id, _, param = rest.partition(".")
        run = self.upstream_runs.get(job_id)
        if run is None:
            raise self._fail(f"%{name}% refers to {job_id!r}, which is not an upstream dependency")
        if param == BUILD_NUMBER:
            if run.build_number is None:
                raise self._fail(f"upstream {job_id!r} has no build number")
            return run.build_number
        if param not in run.params:
            raise self._fail(f"upstream {job_id!r} has no parameter {param!r}")
        return run.params[param]

    def render(self, template: str, *, secrets: str = "error") -> str:
        return render(template, lambda n: self.value(n, secrets=secrets))

    def assign_build_number(self) -> str:
        self.build_number = self.render(self.job.build_number_pattern)
        return self.build_number

    def resolved(self) -> Dict[str, str]:
        """Non-secret job params, fully rendered, to be stored with the run."""
        out: Dict[str, str] = {}
        for name, raw in self.job.params.items():
            if isinstance(raw, SecretRef):
                continue
            out[name] = self.value(name)
        if self.version is not None:
            out[self.version.name] = self.version.value
        return out

    def secret_env(self, resolver: SecretResolver) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for name, secret in self.job.secret_params.items():
            plain = resolver.resolve(secret)
            if plain is None:
                raise self._fail(
                    f"secret parameter {name!r} could not be resolved "
                    f"(set {SecretResolver.env_name(secret)})"
                )
            env[secret_env_name(name)] = plain
        return env
