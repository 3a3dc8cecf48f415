"""In-process publish/subscribe channel for activity log mutations.

Subscribers are async callables. ``publish`` awaits every matching
subscriber in subscription order; a failing subscriber does not stop the
others, but the first failure is re-raised once all have run so the
mutation path that published the event sees it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .models import MUTATION_TYPES, ActivityLogMutation

logger = logging.getLogger(__name__)

MutationListener = Callable[[ActivityLogMutation], Awaitable[None]]
Unsubscribe = Callable[[], None]


@dataclass(eq=False)
class _Subscription:
    listener: MutationListener
    mutation_types: frozenset[str]
    active: bool = field(default=True)


class LogMutationBus:
    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(self, listener: MutationListener, *mutation_types: str) -> Unsubscribe:
        """Register ``listener`` for the given mutation types (all when none given)."""
        for mutation_type in mutation_types:
            if mutation_type not in MUTATION_TYPES:
                raise ValueError(f"Unknown mutation type {mutation_type!r}")
        subscription = _Subscription(
            listener=listener,
            mutation_types=frozenset(mutation_types or MUTATION_TYPES),
        )
        self._subscriptions.append(subscription)
        logger.debug(
            "Subscribed %s to log mutations %s",
            getattr(listener, "__qualname__", repr(listener)),
            sorted(subscription.mutation_types),
        )

        def unsubscribe() -> None:
            if subscription.active:
                subscription.active = False
                self._subscriptions.remove(subscription)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, mutation: ActivityLogMutation | dict[str, Any]) -> int:
        """Deliver ``mutation``; returns the number of subscribers invoked."""
        if not isinstance(mutation, ActivityLogMutation):
            try:
                mutation = ActivityLogMutation.model_validate(mutation)
            except ValidationError:
                logger.warning("Ignoring malformed log mutation payload: %r", mutation)
                return 0

        first_error: Exception | None = None
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.active or mutation.type not in subscription.mutation_types:
                continue
            delivered += 1
            try:
                await subscription.listener(mutation)
            except Exception as exc:
                logger.exception(
                    "Log mutation listener failed (type=%s, standard=%s)",
                    mutation.type,
                    mutation.standard_id,
                )
                if first_error is None:
                    first_error = exc

        if first_error is not None:
            raise first_error
        return delivered
