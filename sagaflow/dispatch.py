"""Fan-out of delivered events to subscribed handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .contracts import Event

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Any]


@dataclass(frozen=True)
class Subscription:
    """A handler registered for a topic, independent of its siblings."""

    topic: str
    handler: Handler = field(compare=False)
    name: str


@dataclass
class DispatchReport:
    """Per-subscription outcome of delivering one event."""

    event: Event
    delivered: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    failed: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def handler_name(handler: Handler) -> str:
    module = getattr(handler, "__module__", None)
    qualname = getattr(handler, "__qualname__", None) or repr(handler)
    return f"{module}.{qualname}" if module else qualname


class SubscriberDispatcher:
    """Delivers each event to every matching subscription independently.

    A failing handler is caught and reported; it never prevents delivery to
    the other handlers of the same event. Successful ``(event id,
    subscription)`` pairs are remembered so duplicate transport deliveries
    are skipped.
    """

    def __init__(self, dedup_capacity: int = 10_000) -> None:
        self._subscriptions: Dict[str, Dict[str, Subscription]] = defaultdict(dict)
        self._handled: "OrderedDict[Tuple[str, str], None]" = OrderedDict()
        self._dedup_capacity = dedup_capacity

    def add(self, topic: str, handler: Handler, name: Optional[str] = None) -> Subscription:
        name = name or handler_name(handler)
        if name in self._subscriptions[topic]:
            raise ValueError(f"Subscription {name!r} already exists on topic {topic!r}")
        subscription = Subscription(topic=topic, handler=handler, name=name)
        self._subscriptions[topic][name] = subscription
        logger.debug(f"Subscribed {name} to {topic}")
        return subscription

    def remove(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.topic].pop(subscription.name, None)

    def topics(self) -> List[str]:
        return [topic for topic, subs in self._subscriptions.items() if subs]

    def subscriptions(self, topic: str) -> List[Subscription]:
        return list(self._subscriptions.get(topic, {}).values())

    async def dispatch(self, event: Event) -> DispatchReport:
        """Deliver ``event`` to its topic's subscriptions (or only its target)."""
        report = DispatchReport(event=event)
        subscriptions = self.subscriptions(event.topic)
        if event.target is not None:
            subscriptions = [s for s in subscriptions if s.name == event.target]
        if not subscriptions:
            logger.debug(f"No subscribers for event {event.id} on {event.topic}")
            return report

        outcomes = await asyncio.gather(
            *(self._deliver(subscription, event) for subscription in subscriptions)
        )
        for subscription, (duplicate, error) in zip(subscriptions, outcomes):
            if duplicate:
                report.duplicates.append(subscription.name)
            elif error is not None:
                report.failed[subscription.name] = error
            else:
                report.delivered.append(subscription.name)
        return report

    async def _deliver(
        self, subscription: Subscription, event: Event
    ) -> Tuple[bool, Optional[Exception]]:
        key = (event.id, subscription.name)
        if key in self._handled:
            logger.debug(f"Skipping duplicate event {event.id} for {subscription.name}")
            return True, None

        try:
            outcome = subscription.handler(event.model_copy(deep=True))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(
                f"Handler {subscription.name} failed for event {event.id} on "
                f"{event.topic} (attempt {event.attempt}): {e}"
            )
            return False, e

        self._handled[key] = None
        if len(self._handled) > self._dedup_capacity:
            self._handled.popitem(last=False)
        return False, None
