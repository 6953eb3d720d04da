from __future__ import annotations

from collections import OrderedDict
from typing import Any, TypeVar

T = TypeVar("T")


def collect_attrs(
    root: object,
    target_type: type[T],
    *,
    recurse_into: type | tuple[type, ...] = (),
) -> OrderedDict[str, T]:
    """Recursively collect all instances of **target_type** reachable from **root**.

    Walks every instance attribute (via `vars(root)`) and descends into
    lists, tuples, dicts, and objects whose type is listed in **recurse_into**.
    An instance reachable under several paths is reported once, under the
    first path found.

    Args:
        root: The object whose attributes to traverse.
        target_type: The type to search for.
        recurse_into: Type(s) whose `vars()` should be recursively
            traversed (in addition to the standard containers).

    Raises:
        TypeError: If a target is found inside a `set` (no stable ordering).

    Returns:
        OrderedDict[str, T]: Matches keyed by their path,
            e.g. "layers[0].weight", "payload{key}.bias".
    """
    _recurse_into: tuple[type, ...] = (
        (recurse_into,) if isinstance(recurse_into, type) else recurse_into
    )
    result: OrderedDict[str, T] = OrderedDict()
    seen: set[int] = set()

    def _handle(item: Any, path: str) -> None:
        if isinstance(item, target_type):
            if id(item) not in seen:
                seen.add(id(item))
                result[path] = item
        elif isinstance(item, _recurse_into):
            if id(item) in seen:
                return
            seen.add(id(item))
            for name, value in vars(item).items():
                _handle(value, f"{path}.{name}" if path else name)
        elif isinstance(item, set):
            if any(isinstance(elem, target_type) for elem in item):
                raise TypeError(
                    f'Found "{target_type.__name__}" in property of type "set" '
                    f'for path "{path}". Sets are not allowed for storing '
                    f"these types (no stable ordering)."
                )
        elif isinstance(item, list | tuple):
            for i, elem in enumerate(item):
                _handle(elem, f"{path}[{i}]")
        elif isinstance(item, dict):
            for k, v in item.items():
                _handle(v, f"{path}{{{k}}}")

    seen.add(id(root))
    for attr_name, attr_value in vars(root).items():
        _handle(attr_value, attr_name)
    return result


__all__ = [
    "collect_attrs",
]
