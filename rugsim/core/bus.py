"""rugsim.core.bus

Typed publish/subscribe. Synchronous fan-out on publish.

Subscribers register for a message *type* (a frozen dataclass from
``rugsim.core.types``), optionally narrowed to a category, with a priority.
Delivery order is priority descending, then subscription order. That order is
part of the contract: replay determinism depends on it.

A handler that raises does not stop delivery to the others. The error is
logged and counted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

M = TypeVar("M")


class Priority(IntEnum):
    LOW = -10
    NORMAL = 0
    HIGH = 10


@dataclass(slots=True)
class Subscription:
    message_type: type
    handler: Callable[[Any], None]
    category: str | None
    priority: int
    seq: int
    active: bool = True


@dataclass
class EventBus:
    """One bus per context. Live has one, every replay run gets its own."""

    name: str = "bus"
    _subs: dict[type, list[Subscription]] = field(default_factory=dict)
    _seq: int = 0
    handler_errors: int = 0
    published: int = 0

    def subscribe(
        self,
        message_type: type[M],
        handler: Callable[[M], None],
        *,
        category: str | None = None,
        priority: int = Priority.NORMAL,
    ) -> Subscription:
        self._seq += 1
        sub = Subscription(
            message_type=message_type,
            handler=handler,
            category=category,
            priority=int(priority),
            seq=self._seq,
        )
        subs = self._subs.setdefault(message_type, [])
        subs.append(sub)
        subs.sort(key=lambda s: (-s.priority, s.seq))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.active = False
        subs = self._subs.get(sub.message_type, [])
        if sub in subs:
            subs.remove(sub)

    def clear(self) -> None:
        for subs in self._subs.values():
            for s in subs:
                s.active = False
        self._subs.clear()

    def subscriber_count(self, message_type: type | None = None) -> int:
        if message_type is None:
            return sum(len(v) for v in self._subs.values())
        return len(self._subs.get(message_type, []))

    def publish(self, message: Any, *, category: str | None = None) -> int:
        """Deliver ``message`` to every matching subscriber. Returns the delivery count.

        A subscription with a category only sees messages published with that
        category. A subscription without one sees everything of its type.
        """

        self.published += 1
        delivered = 0
        for sub in list(self._subs.get(type(message), [])):
            if not sub.active:
                continue
            if sub.category is not None and sub.category != category:
                continue
            try:
                sub.handler(message)
            except Exception:
                self.handler_errors += 1
                logger.exception(
                    "bus_handler_failed",
                    extra={"bus": self.name, "message_type": type(message).__name__},
                )
                continue
            delivered += 1
        return delivered
