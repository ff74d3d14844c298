# expressions.py
# `${{ ... }}` references inside step commands, parameters and env values.
#
#   ${{ outputs.JOB.STEP.NAME }}   output NAME of step STEP in job JOB
#   ${{ event.ref }}               a field of the triggering event
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Union

from .model import Event, Step

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_OUTPUT = re.compile(r"^outputs\.([\w-]+)\.([\w-]+)\.([\w-]+)$")
_EVENT = re.compile(r"^event\.(\w+)$")

EVENT_FIELDS = ("repository", "ref", "actor", "branch", "tag", "kind")


@dataclass(frozen=True)
class OutputRef:
    job: str
    step: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.job}.{self.step}.{self.name}"


@dataclass(frozen=True)
class EventRef:
    field: str


Reference = Union[OutputRef, EventRef]


def parse(expr: str) -> Reference:
    m = _OUTPUT.match(expr)
    if m:
        return OutputRef(*m.groups())
    m = _EVENT.match(expr)
    if m and m.group(1) in EVENT_FIELDS:
        return EventRef(m.group(1))
    raise ValueError(
        f"unsupported expression '${{{{ {expr} }}}}'; "
        f"use outputs.JOB.STEP.NAME or event.<{'|'.join(EVENT_FIELDS)}>"
    )


def scan(text: str) -> List[Reference]:
    return [parse(m.group(1)) for m in _EXPR.finditer(text)]


def strings_in(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from strings_in(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from strings_in(v)


def step_strings(step: Step) -> Iterator[str]:
    if step.run is not None:
        yield step.run
    yield from strings_in(dict(step.with_))
    yield from strings_in(dict(step.env))


def render(value: Any, outputs: Mapping[str, str], event: Event) -> Any:
    """Substitute references in `value` (str, or nested dict/list of str)."""
    if isinstance(value, str):
        def repl(m: re.Match) -> str:
            ref = parse(m.group(1))
            if isinstance(ref, OutputRef):
                # a declared output the step never wrote renders empty
                return outputs.get(ref.key, "")
            return str(getattr(event, ref.field) or "")

        return _EXPR.sub(repl, value)
    if isinstance(value, Mapping):
        return {k: render(v, outputs, event) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, outputs, event) for v in value]
    return value
