from typing import Callable, Dict, Iterable, List, TypeVar

_T = TypeVar("_T")
_K = TypeVar("_K")


def group_by(items: Iterable[_T], key: Callable[[_T], _K]) -> Dict[_K, List[_T]]:
    """
    Buckets `items` by the value of `key`, preserving the order in which keys (and the items under each key) were first seen.
    """

    groups: Dict[_K, List[_T]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)

    return groups
