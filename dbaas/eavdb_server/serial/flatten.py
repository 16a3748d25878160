"""
Flattening of nested attribute values into column paths.

    {"bar": {"b": False, "n": 1}, "tags": ["x", "y"]}
        <->
    [("bar.b", False), ("bar.n", 1), ("tags[0]", "x"), ("tags[1]", "y")]

Plain dicts become dotted paths, lists and tuples become bracketed
indexes. References, entities, bytes and empty containers are leaves
and are stored whole.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

from .types import Entity, is_ref

Segment = Union[str, int]

_SEGMENT_RE = re.compile(r"\.?([^.\[\]]+)|\[(\d+)\]")
_RESERVED_CHARS = frozenset(".[]")


def _is_branch(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    if isinstance(value, dict) and not isinstance(value, Entity) and not is_ref(value):
        return len(value) > 0
    return False


def _walk(path: str, value: Any, out: List[Tuple[str, Any]]) -> None:
    if not _is_branch(value):
        out.append((path, value))
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _walk(f"{path}[{index}]", item, out)
        return
    for key, item in value.items():
        _walk(f"{path}.{_check_key(key)}", item, out)


def _check_key(key: Any) -> str:
    if not isinstance(key, str):
        raise TypeError(f"Attribute keys must be strings, got {key!r}")
    if not key or _RESERVED_CHARS.intersection(key):
        raise ValueError(f"Invalid attribute key {key!r}: must be non-empty without '.', '[' or ']'")
    return key


def flatten(values: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    """Flatten nested attribute values into (path, leaf) pairs.

    The resulting set of pairs does not depend on key order; only the
    order of the returned list follows the input.

    Args:
        values: Top-level attribute mapping

    Returns:
        List of (path, leaf value) pairs

    Raises:
        TypeError: If a key is not a string
        ValueError: If a key contains '.', '[' or ']'
    """
    out: List[Tuple[str, Any]] = []
    for key, value in values.items():
        _walk(_check_key(key), value, out)
    return out


def parse_path(path: str) -> List[Segment]:
    """Split a column path into keys (str) and indexes (int).

    >>> parse_path("a.b[0].c")
    ['a', 'b', 0, 'c']
    """
    segments: List[Segment] = []
    for match in _SEGMENT_RE.finditer(path):
        key, index = match.groups()
        segments.append(int(index) if index is not None else key)
    return segments


def format_path(segments: Iterable[Segment]) -> str:
    """Inverse of parse_path()."""
    path = ""
    for segment in segments:
        if isinstance(segment, int):
            path += f"[{segment}]"
        else:
            path += f".{segment}" if path else segment
    return path


def root_of(path: str) -> str:
    """Top-level attribute name of a column path."""
    segments = parse_path(path)
    return str(segments[0]) if segments else path


def _container_for(segment: Segment) -> Union[Dict[str, Any], List[Any]]:
    return [] if isinstance(segment, int) else {}


def _assign(container: Any, segment: Segment, value: Any) -> None:
    if isinstance(segment, int):
        if len(container) <= segment:
            container.extend([None] * (segment + 1 - len(container)))
    container[segment] = value


def _child(container: Any, segment: Segment, next_segment: Segment) -> Any:
    expected = list if isinstance(next_segment, int) else dict
    if isinstance(segment, int):
        current = container[segment] if segment < len(container) else None
    else:
        current = container.get(segment)
    if not isinstance(current, expected):
        current = _container_for(next_segment)
        _assign(container, segment, current)
    return current


def expand(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """Rebuild nested values from (path, leaf) pairs.

    Args:
        pairs: Pairs as produced by flatten(), in any order

    Returns:
        Nested attribute mapping
    """
    result: Dict[str, Any] = {}
    for path, value in pairs:
        segments = parse_path(path)
        if not segments or isinstance(segments[0], int):
            continue
        container: Any = result
        for segment, next_segment in zip(segments, segments[1:]):
            container = _child(container, segment, next_segment)
        _assign(container, segments[-1], value)
    return result
