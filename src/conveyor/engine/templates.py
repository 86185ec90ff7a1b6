"""Template resolver for ``{{stepId.field}}`` placeholders.

Values are walked recursively (dicts, lists, scalars). Only string leaves are
scanned. A string is split into literal and placeholder segments; a string
made of exactly one placeholder resolves to the referenced value itself, so
numbers and objects keep their native type. Mixed strings splice values in:
strings verbatim, everything else JSON-encoded.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from conveyor.engine.errors import UnresolvedReferenceError

_OPEN = "{{"
_CLOSE = "}}"


@dataclass(frozen=True)
class Placeholder:
    """A parsed ``{{path}}`` reference."""

    path: str

    @property
    def segments(self) -> list[str]:
        return self.path.split(".")

    @property
    def root(self) -> str:
        return self.segments[0]


def _is_valid_path(path: str) -> bool:
    if not path:
        return False
    for segment in path.split("."):
        if not segment:
            return False
        if not all(ch.isalnum() or ch in "_-" for ch in segment):
            return False
    return True


def split_template(text: str) -> list[str | Placeholder]:
    """Split *text* into literal strings and placeholders.

    Brace pairs that do not enclose a valid dotted path are kept as literal
    text, so strings such as ``"{{ not a ref }}"`` or JSON snippets survive.
    """
    parts: list[str | Placeholder] = []
    literal: list[str] = []
    pos = 0
    while pos < len(text):
        start = text.find(_OPEN, pos)
        if start < 0:
            literal.append(text[pos:])
            break
        end = text.find(_CLOSE, start + len(_OPEN))
        if end < 0:
            literal.append(text[pos:])
            break
        path = text[start + len(_OPEN):end].strip()
        if not _is_valid_path(path):
            literal.append(text[pos:start + 1])
            pos = start + 1
            continue
        literal.append(text[pos:start])
        if "".join(literal):
            parts.append("".join(literal))
        literal = []
        parts.append(Placeholder(path))
        pos = end + len(_CLOSE)
    if "".join(literal):
        parts.append("".join(literal))
    return parts


def find_references(value: Any) -> list[str]:
    """Return every placeholder path found in the string leaves of *value*."""
    found: list[str] = []
    if isinstance(value, str):
        found.extend(p.path for p in split_template(value) if isinstance(p, Placeholder))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_references(item))
    return found


def lookup(path: str, namespace: dict[str, Any]) -> Any:
    """Resolve a dotted *path* against *namespace*.

    Dict segments are keys; list segments must be integer indices.
    """
    segments = path.split(".")
    root = segments[0]
    if root not in namespace:
        raise UnresolvedReferenceError(path, f"'{root}' has no output")
    current = namespace[root]
    for depth, segment in enumerate(segments[1:], start=1):
        walked = ".".join(segments[: depth + 1])
        if isinstance(current, dict):
            if segment not in current:
                raise UnresolvedReferenceError(path, f"'{walked}' does not exist")
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(segment)
            except ValueError:
                raise UnresolvedReferenceError(
                    path, f"'{segment}' is not a list index"
                ) from None
            if not 0 <= index < len(current):
                raise UnresolvedReferenceError(path, f"index {index} out of range")
            current = current[index]
        else:
            raise UnresolvedReferenceError(
                path, f"cannot index into {type(current).__name__} at '{walked}'"
            )
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def resolve_string(text: str, namespace: dict[str, Any]) -> Any:
    parts = split_template(text)
    if len(parts) == 1 and isinstance(parts[0], Placeholder):
        return lookup(parts[0].path, namespace)
    if not any(isinstance(p, Placeholder) for p in parts):
        return text
    out: list[str] = []
    for part in parts:
        if isinstance(part, Placeholder):
            out.append(_stringify(lookup(part.path, namespace)))
        else:
            out.append(part)
    return "".join(out)


def resolve(value: Any, namespace: dict[str, Any]) -> Any:
    """Return a copy of *value* with every placeholder resolved."""
    if isinstance(value, str):
        return resolve_string(value, namespace)
    if isinstance(value, dict):
        return {key: resolve(item, namespace) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve(item, namespace) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve(item, namespace) for item in value)
    return value


def build_namespace(run_input: dict[str, Any], outputs: dict[str, Any]) -> dict[str, Any]:
    """Synthetic lookup namespace: ``input`` plus one entry per succeeded step."""
    return {"input": run_input, **outputs}
