"""rugsim.strategies.registry

Strategies report for duty.

- ``@register("kind")`` decorator
- lookup/list helpers
- module auto-discovery (import rugsim.strategies.* to trigger decorators)
"""

from __future__ import annotations

import importlib
import pkgutil
from collections.abc import Callable
from typing import Any

from rugsim.strategies.base import Strategy

_REGISTRY: dict[str, type[Strategy]] = {}
_DISCOVERED = False


def register(name: str) -> Callable[[type[Any]], type[Any]]:
    def _decorator(cls: type[Any]) -> type[Any]:
        if name in _REGISTRY and _REGISTRY[name] is not cls:
            raise ValueError(f"strategy already registered: {name}")
        cls.name = name
        _REGISTRY[name] = cls
        return cls

    return _decorator


def discover() -> None:
    global _DISCOVERED
    if _DISCOVERED:
        return

    pkg_name = "rugsim.strategies"
    pkg = importlib.import_module(pkg_name)
    for m in pkgutil.iter_modules(pkg.__path__, prefix=f"{pkg_name}."):
        if m.name.endswith(".base") or m.name.endswith(".registry"):
            continue
        importlib.import_module(m.name)

    _DISCOVERED = True


def get_strategy(name: str) -> type[Strategy]:
    discover()
    try:
        return _REGISTRY[name]
    except KeyError:
        raise KeyError(f"unknown strategy kind: {name}") from None


def list_strategies() -> list[str]:
    discover()
    return sorted(_REGISTRY)
