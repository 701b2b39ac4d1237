"""Thread-safe, compute-once attributes.

``single_flight`` behaves like ``functools.cached_property`` but guarantees
the wrapped function runs at most once per instance even when several
threads ask for the value at the same time: the first caller computes, the
others block on a per-instance lock and then reuse the stored value.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

_LOCKS_ATTR = "_single_flight_locks"
_registry_lock = threading.Lock()


def _lock_for(instance: Any, name: str) -> threading.Lock:
    with _registry_lock:
        locks: Dict[str, threading.Lock] = instance.__dict__.setdefault(_LOCKS_ATTR, {})
        lock = locks.get(name)
        if lock is None:
            lock = locks[name] = threading.Lock()
        return lock


class single_flight(Generic[T]):  # pylint: disable=invalid-name
    """Descriptor computing an attribute once, on first access."""

    def __init__(self, func: Callable[[Any], T]):
        self.func = func
        self.attrname: Optional[str] = None
        self.__doc__ = func.__doc__

    def __set_name__(self, owner: type, name: str) -> None:
        self.attrname = name

    def __get__(self, instance: Any, owner: Optional[type] = None):
        if instance is None:
            return self
        name = self.attrname or self.func.__name__
        cache = instance.__dict__
        if name in cache:
            return cache[name]
        with _lock_for(instance, name):
            if name not in cache:
                cache[name] = self.func(instance)
            return cache[name]


def reset(instance: Any, name: str) -> None:
    """Forget a memoised value so the next access recomputes it."""
    with _lock_for(instance, name):
        instance.__dict__.pop(name, None)


def is_computed(instance: Any, name: str) -> bool:
    return name in instance.__dict__
