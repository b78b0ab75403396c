"""
Conductor Parameter Resolver

Turns a step's raw parameters into concrete tool arguments:

  1. User inputs supplied on resume are written into a copy of the
     parameters at their target paths (creating containers as needed).
  2. Template references of the form {{<stepId>.output.<path>}} are
     replaced with values from earlier step outputs.

A reference that cannot be satisfied is not an error. It becomes a
missing-data requirement for the field that holds it, which is what
pauses a task. The whole thing is a pure function of (parameters,
step_outputs, user_inputs).
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from conductor.errors import MissingInputError
from conductor.models import MissingDataRef

PROMPT_USER = "{{PROMPT_USER}}"

TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_REFERENCE_RE = re.compile(
    r"^(?P<step>[^.\[\]\s{}]+)\.output(?P<path>(?:\.[^.\[\]\s]+|\[\d+\])*)$"
)
_PLAIN_KEY_RE = re.compile(r'[^.\[\]"\s]+')
_KEY_RE = re.compile(r"[^.\[\]\s]+")
_INDEX_RE = re.compile(r"\[(\d+)\]")
_decoder = json.JSONDecoder()

Token = str | int


class _Unresolved(Exception):
    pass


# ---------------------------------------------------------------------------
# Path addressing
# ---------------------------------------------------------------------------

def parse_path(path: str) -> list[Token]:
    """
    Split a field path into tokens.

    'items[0]._id' gives ['items', 0, '_id']. Keys that are empty or hold
    '.', '[', ']', '"' or whitespace are written as JSON strings in
    brackets: 'filters["address.city"]' gives ['filters', 'address.city'].
    """
    path = path.strip()
    if not path:
        raise ValueError(f"Invalid field path: {path!r}")

    tokens: list[Token] = []
    pos = 0
    while pos < len(path):
        if path.startswith('["', pos):
            try:
                key, end = _decoder.raw_decode(path, pos + 1)
            except ValueError:
                raise ValueError(f"Invalid field path: {path!r}") from None
            if not isinstance(key, str) or not path.startswith("]", end):
                raise ValueError(f"Invalid field path: {path!r}")
            tokens.append(key)
            pos = end + 1
            continue

        index = _INDEX_RE.match(path, pos)
        if index:
            tokens.append(int(index.group(1)))
            pos = index.end()
            continue

        start = pos + 1 if tokens and path.startswith(".", pos) else pos
        if tokens and start == pos:
            raise ValueError(f"Invalid field path: {path!r}")
        key = _KEY_RE.match(path, start)
        if not key:
            raise ValueError(f"Invalid field path: {path!r}")
        tokens.append(key.group(0))
        pos = key.end()
    return tokens


def format_path(tokens: list[Token]) -> str:
    """Inverse of parse_path."""
    out = ""
    for tok in tokens:
        if isinstance(tok, int):
            out += f"[{tok}]"
        elif not _PLAIN_KEY_RE.fullmatch(tok):
            out += f"[{json.dumps(tok)}]"
        else:
            out += f".{tok}" if out else tok
    return out


def get_path(value: Any, tokens: list[Token]) -> Any:
    current = value
    for tok in tokens:
        if isinstance(current, list):
            if isinstance(tok, str):
                if not tok.isdigit():
                    raise _Unresolved(tok)
                tok = int(tok)
            if tok >= len(current):
                raise _Unresolved(tok)
            current = current[tok]
        elif isinstance(current, dict):
            key = str(tok)
            if key not in current:
                raise _Unresolved(tok)
            current = current[key]
        else:
            raise _Unresolved(tok)
    return current


def _child(container: Any, tok: Token) -> Any:
    if isinstance(container, list):
        idx = int(tok)
        return container[idx] if idx < len(container) else None
    if isinstance(container, dict):
        return container.get(str(tok))
    return None


def _put(container: Any, tok: Token, value: Any) -> None:
    if isinstance(container, list):
        if isinstance(tok, str) and not tok.isdigit():
            raise ValueError(f"Cannot use key {tok!r} on a list")
        idx = int(tok)
        if idx >= len(container):
            container.extend([None] * (idx + 1 - len(container)))
        container[idx] = value
    elif isinstance(container, dict):
        container[str(tok)] = value
    else:
        raise ValueError(f"Cannot write {tok!r} into {type(container).__name__}")


def set_path(target: Any, path: str, value: Any) -> None:
    """
    Write value at path inside target, in place.

    Missing intermediate containers are created: a list when the next
    token is an [n] index, a dict otherwise. Lists are padded with None.
    """
    tokens = parse_path(path)
    current = target
    for tok, nxt in zip(tokens, tokens[1:]):
        child = _child(current, tok)
        if not isinstance(child, (dict, list)):
            child = [] if isinstance(nxt, int) else {}
            _put(current, tok, child)
        current = child
    _put(current, tokens[-1], value)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    value: Any
    missing: list[MissingDataRef] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing

    def require(self) -> Any:
        """The resolved value, or MissingInputError if anything is unresolved."""
        if self.missing:
            raise MissingInputError(self.missing)
        return self.value


def merge_user_inputs(parameters: Any, inputs: Mapping[str, Any] | None) -> Any:
    """Return a deep copy of parameters with user-supplied values written in."""
    merged = copy.deepcopy(parameters)
    for field_path, value in (inputs or {}).items():
        if not field_path:
            merged = copy.deepcopy(value)
            continue
        set_path(merged, field_path, copy.deepcopy(value))
    return merged


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


class _Walker:
    def __init__(self, step_id: str, step_outputs: Mapping[str, Any]):
        self.step_id = step_id
        self.step_outputs = step_outputs
        self.missing: list[MissingDataRef] = []

    def lookup(self, expression: str) -> Any:
        match = _REFERENCE_RE.match(expression.strip())
        if not match:
            raise LookupError(expression)
        source = match.group("step")
        if source not in self.step_outputs:
            raise _Unresolved(source)
        path = match.group("path").lstrip(".")
        tokens = parse_path(path) if path else []
        return copy.deepcopy(get_path(self.step_outputs[source], tokens))

    def flag(self, path: list[Token], reference: str) -> None:
        field_path = format_path(path)
        if any(m.field == field_path for m in self.missing):
            return
        self.missing.append(MissingDataRef(
            step=self.step_id,
            field=field_path,
            type="string",
            description=f"Value for '{field_path}' could not be resolved from {reference}",
        ))

    def walk(self, value: Any, path: list[Token]) -> Any:
        if isinstance(value, dict):
            return {k: self.walk(v, path + [k]) for k, v in value.items()}
        if isinstance(value, list):
            return [self.walk(v, path + [i]) for i, v in enumerate(value)]
        if isinstance(value, str):
            return self._walk_string(value, path)
        return value

    def _walk_string(self, value: str, path: list[Token]) -> Any:
        if value.strip() == PROMPT_USER:
            self.flag(path, "user input")
            return value

        whole = TEMPLATE_RE.fullmatch(value.strip())
        if whole:
            try:
                return self.lookup(whole.group(1))
            except LookupError:
                # Not a step reference; leave it alone.
                return value
            except _Unresolved:
                self.flag(path, value.strip())
                return value

        def substitute(m: re.Match) -> str:
            try:
                return _render(self.lookup(m.group(1)))
            except LookupError:
                return m.group(0)
            except _Unresolved:
                self.flag(path, m.group(0))
                return m.group(0)

        return TEMPLATE_RE.sub(substitute, value)


def resolve_parameters(
    parameters: Any,
    step_id: str,
    step_outputs: Mapping[str, Any],
    user_inputs: Mapping[str, Mapping[str, Any]] | None = None,
) -> Resolution:
    """
    Resolve one step's parameters against a task snapshot.

    Never mutates its inputs. Unresolvable references are returned in
    Resolution.missing with the field path inside the step's parameters.
    """
    merged = merge_user_inputs(parameters, (user_inputs or {}).get(step_id))
    walker = _Walker(step_id, step_outputs)
    value = walker.walk(merged, [])
    return Resolution(value=value, missing=walker.missing)


def references(parameters: Any) -> set[str]:
    """Step ids referenced by templates anywhere in parameters."""
    found: set[str] = set()

    def visit(value: Any) -> None:
        if isinstance(value, dict):
            for v in value.values():
                visit(v)
        elif isinstance(value, list):
            for v in value:
                visit(v)
        elif isinstance(value, str):
            for expr in TEMPLATE_RE.findall(value):
                match = _REFERENCE_RE.match(expr.strip())
                if match:
                    found.add(match.group("step"))

    visit(parameters)
    return found
