# dsl.py
from __future__ import annotations

import itertools
import string
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import RESERVED_ENV, Axis, ConfigurationError, JobSpec, Step, axis_env_var


StepsArg = Union[Sequence[Step], Callable[[Dict[str, str]], Sequence[Step]]]


# ---------------------------------------------------------------------
# Step / axis helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    allow_failure: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, timeout=timeout, halt_on_failure=not allow_failure)


def axis(name: str, values: Union[Iterable[str], Mapping[str, str]]) -> Axis:
    """
    Declare a matrix axis.

        axis("os", ["ubuntu-latest", "windows-latest"])
        axis("features", {"default": "", "no_std": "--no-default-features"})

    With a mapping, keys are the job labels and values the text that
    `{features}` expands to inside step commands.
    """
    if isinstance(values, Mapping):
        labels = [str(k) for k in values]
        args = tuple((str(k), str(v)) for k, v in values.items())
    else:
        labels = [str(v) for v in values]
        args = ()

    if not labels:
        raise ConfigurationError(f"axis {name!r} has no values", axis=name)
    if len(set(labels)) != len(labels):
        dupes = sorted({v for v in labels if labels.count(v) > 1})
        raise ConfigurationError(f"axis {name!r} has duplicate values: {dupes}", axis=name)

    return Axis(name=name, values=tuple(labels), args=args)


# ---------------------------------------------------------------------
# Matrix (job family)
# ---------------------------------------------------------------------

class Matrix:
    """
    A job family: the Cartesian product of its axes, each combination
    running the same ordered steps (or the steps a callable returns for it).

    Example:
        matrix(
            "build",
            axis("os", ["linux", "macos"]),
            axis("features", {"default": "", "no_std": "--no-default-features"}),
            steps=[sh("check", "cargo check {features}"), sh("test", "cargo test")],
        ).expand()
    """
    def __init__(
        self,
        family: str,
        axes: Sequence[Axis],
        steps: StepsArg,
        *,
        env: Optional[Dict[str, str]] = None,
        requires: Optional[List[str]] = None,
        needs: Optional[List[str]] = None,
        exclude: Optional[List[Dict[str, str]]] = None,
    ):
        self.family = family
        self.axes = list(axes)
        self.steps = steps
        self.env = {k: str(v) for k, v in (env or {}).items()}
        self.requires = list(requires or [])
        self.needs = list(needs or [])
        self.exclude = [dict(e) for e in (exclude or [])]

    def validate(self) -> None:
        if not self.family:
            raise ConfigurationError("job family must have a name")

        names = [a.name for a in self.axes]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"family {self.family!r} has duplicate axes: {dupes}", family=self.family)

        for a in self.axes:
            if not a.values:
                raise ConfigurationError(f"axis {a.name!r} in family {self.family!r} has no values", family=self.family)

        env_names: Dict[str, str] = {}
        for n in names:
            var = axis_env_var(n)
            if var in RESERVED_ENV:
                raise ConfigurationError(
                    f"axis {n!r} in family {self.family!r} would overwrite {var}",
                    family=self.family,
                )
            if var in env_names:
                raise ConfigurationError(
                    f"axes {env_names[var]!r} and {n!r} in family {self.family!r} both map to {var}",
                    family=self.family,
                )
            env_names[var] = n

        for rule in self.exclude:
            unknown = sorted(set(rule) - set(names))
            if unknown:
                raise ConfigurationError(
                    f"family {self.family!r} excludes on unknown axes: {unknown}",
                    family=self.family,
                )

        if not callable(self.steps) and not self.steps:
            raise ConfigurationError(f"family {self.family!r} must have at least one step", family=self.family)

    def _excluded(self, params: Dict[str, str]) -> bool:
        return any(all(params.get(k) == v for k, v in rule.items()) for rule in self.exclude)

    def _steps_for(self, params: Dict[str, str]) -> List[Step]:
        steps = self.steps(dict(params)) if callable(self.steps) else self.steps
        steps = list(steps or [])
        if not steps:
            raise ConfigurationError(
                f"family {self.family!r} produced no steps for {params}",
                family=self.family,
            )
        return steps

    def _render(self, step: Step, subst: Dict[str, str]) -> Step:
        try:
            run = string.Formatter().vformat(step.run, (), subst)
        except (KeyError, IndexError) as e:
            raise ConfigurationError(
                f"step {step.name!r} in family {self.family!r} uses unknown placeholder {e}",
                family=self.family,
                known=sorted(subst),
            ) from None
        except ValueError as e:
            raise ConfigurationError(
                f"step {step.name!r} in family {self.family!r} has a malformed command template: {e}",
                family=self.family,
            ) from None
        return replace(step, run=run)

    def expand(self) -> List[JobSpec]:
        """
        Expand into JobSpecs, lexicographic over axis declaration order and
        then value order. Pure: the same Matrix always yields the same list.
        """
        self.validate()

        jobs: List[JobSpec] = []
        for combo in itertools.product(*(a.values for a in self.axes)):
            values = tuple(zip((a.name for a in self.axes), combo))
            params = dict(values)
            if self._excluded(params):
                continue

            subst = {a.name: a.arg(v) for a, v in zip(self.axes, combo)}
            steps = tuple(self._render(s, subst) for s in self._steps_for(params))

            jobs.append(
                JobSpec(
                    family=self.family,
                    values=values,
                    steps=steps,
                    env=tuple(sorted(self.env.items())),
                    requires=tuple(self.requires),
                    needs=tuple(self.needs),
                )
            )
        return jobs


def matrix(
    family: str,
    *axes: Axis,
    steps: StepsArg,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    needs: Optional[List[str]] = None,
    exclude: Optional[List[Dict[str, str]]] = None,
) -> Matrix:
    return Matrix(family, axes, steps, env=env, requires=requires, needs=needs, exclude=exclude)


def single(
    family: str,
    *steps: Step,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    needs: Optional[List[str]] = None,
) -> Matrix:
    """A single-configuration family: a matrix with no axes, i.e. one job."""
    return Matrix(family, (), list(steps), env=env, requires=requires, needs=needs)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def wf(*families: Matrix) -> List[Matrix]:
    """
    Workflow definition helper:

        from matrixci import wf, matrix, single, axis, sh

        def workflow():
            return wf(
                matrix("build", axis("os", [...]), steps=[...]),
                single("fmt-docs", sh(...), sh(...)),
            )
    """
    return list(families)


def expand_all(families: Iterable[Matrix]) -> List[JobSpec]:
    """
    Expand every family, in declaration order, into one ordered job list.

    Raises ConfigurationError for duplicate families, unknown `needs`, or
    dependency cycles between families, before anything runs.
    """
    families = list(families)
    names = [f.family for f in families]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job families found: {dupes}")

    for f in families:
        for dep in f.needs:
            if dep not in names:
                raise ConfigurationError(
                    f"family {f.family!r} needs missing family {dep!r}",
                    known=sorted(names),
                )

    _check_acyclic({f.family: f.needs for f in families})

    jobs: List[JobSpec] = []
    for f in families:
        jobs.extend(f.expand())
    return jobs


def _check_acyclic(needs: Dict[str, List[str]]) -> None:
    indeg = {n: 0 for n in needs}
    children: Dict[str, List[str]] = {n: [] for n in needs}
    for name, deps in needs.items():
        for d in set(deps):
            children[d].append(name)
            indeg[name] += 1

    queue = sorted(n for n, d in indeg.items() if d == 0)
    seen = 0
    while queue:
        node = queue.pop()
        seen += 1
        for child in children[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)

    if seen != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"job families have a dependency cycle. Stuck: {stuck}")



workflow = wf  # alias; avoid naming your own function workflow if you import it
