from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import structlog

from pgext_image_build.core import InvalidParameterError, UnresolvedParameterError
from pgext_image_build.definition.models import (
    PARAM_NAME_PATTERN,
    ParameterSpec,
    ParamValue,
    coerce_param,
    format_param,
)

log = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_PARAM_NAME = re.compile(PARAM_NAME_PATTERN)

# Set by the stage environment rather than by a parameter.
SHELL_PASSTHROUGH = frozenset({"STAGE_ROOT"})


@dataclass(frozen=True, slots=True)
class ParameterSet:
    """
    Fully resolved parameters for one run.

    `values` holds every declared parameter that has a default or an
    override; `unresolved` the declared names that have neither.
    """

    values: dict[str, ParamValue]
    specs: dict[str, ParameterSpec]
    unresolved: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, ParamValue]:
        return dict(self.values)

    def bindings(self, owner: str, names: Iterable[str]) -> "Bindings":
        """
        Bindings visible to `owner` (a stage or the assembler).
        Every visible name must have a value.
        """
        visible = sorted(set(names))
        missing = [n for n in visible if n in self.unresolved]
        if missing:
            raise UnresolvedParameterError(
                f"parameter(s) {missing} have no default and no override",
                stage=owner,
                step="resolve",
            )
        unknown = [n for n in visible if n not in self.specs]
        if unknown:
            raise UnresolvedParameterError(
                f"parameter(s) {unknown} are not declared", stage=owner, step="resolve"
            )
        return Bindings(
            owner=owner,
            values={n: self.values[n] for n in visible},
            declared=frozenset(self.specs),
        )


@dataclass(frozen=True, slots=True)
class Bindings:
    """
    Parameters in scope for one stage, plus the template renderer.

    Templates use `${NAME}`. Only that exact form is touched; everything
    else (`$VAR`, `$(...)`, `$$`) is left byte-for-byte. Plain fields must
    only reference parameters in scope. Shell fields (`shell=True`) may
    also carry shell variables, but an uppercase `${NAME}` that could be a
    parameter must be one, except for the names in `SHELL_PASSTHROUGH`.
    """

    owner: str
    values: dict[str, ParamValue]
    declared: frozenset[str]

    def _check(self, ident: str, *, where: str, step: str, shell: bool) -> None:
        if ident in self.values:
            return
        if ident in self.declared:
            raise UnresolvedParameterError(
                f"{where} references {ident}, which is not in scope "
                f"(add it to the stage args)",
                stage=self.owner,
                step=step,
            )
        if shell and (ident in SHELL_PASSTHROUGH or not _PARAM_NAME.match(ident)):
            return
        raise UnresolvedParameterError(
            f"{where} references ${{{ident}}}, which is not a declared parameter",
            stage=self.owner,
            step=step,
        )

    def render(
        self, template: str, *, where: str, step: str = "resolve", shell: bool = False
    ) -> str:
        env = self.as_env()

        def sub(m: re.Match[str]) -> str:
            ident = m.group(1)
            self._check(ident, where=where, step=step, shell=shell)
            return env.get(ident, m.group(0))

        return _PLACEHOLDER.sub(sub, template)

    def render_all(
        self, templates: Mapping[str, str], *, where: str, shell: bool = False
    ) -> dict[str, str]:
        return {
            k: self.render(v, where=f"{where}.{k}", shell=shell)
            for k, v in sorted(templates.items())
        }

    def as_env(self) -> dict[str, str]:
        return {k: format_param(v) for k, v in self.values.items()}


def resolve_parameters(
    specs: Iterable[ParameterSpec],
    overrides: Mapping[str, Any] | None = None,
) -> ParameterSet:
    """
    Merge declared defaults with caller overrides.

    Pure and deterministic: the same specs and overrides always give the
    same mapping. Overrides for undeclared names are ignored with a warning.
    """
    by_name = {s.name: s for s in specs}
    overrides = dict(overrides or {})

    ignored = sorted(set(overrides) - set(by_name))
    if ignored:
        log.warning("parameters.ignored_overrides", names=ignored)

    values: dict[str, ParamValue] = {}
    unresolved: set[str] = set()

    for name in sorted(by_name):
        spec = by_name[name]
        if name in overrides and overrides[name] is not None:
            try:
                values[name] = coerce_param(spec.type, overrides[name])
            except ValueError as e:
                raise InvalidParameterError(
                    f"override {name}={overrides[name]!r}: {e} "
                    f"(declared type {spec.type.value})",
                    step="resolve",
                ) from e
        elif spec.default is not None:
            values[name] = spec.default
        else:
            unresolved.add(name)

    return ParameterSet(
        values=values,
        specs=dict(sorted(by_name.items())),
        unresolved=frozenset(unresolved),
    )


def parse_overrides(pairs: Iterable[str]) -> dict[str, str]:
    """
    Parse `NAME=VALUE` pairs (CLI `--param`). Later pairs win.
    """
    out: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        name = name.strip()
        if not sep or not name:
            raise InvalidParameterError(f"expected NAME=VALUE, got {pair!r}")
        out[name] = value
    return out
