"""An exchange reading from a local store, and a scripted subscriber."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from .interface import Getter, Header, Subscriber, Subscription, Validator


class LocalExchange(Getter):
    """Exchange that serves headers from a store, with no networking."""

    def __init__(self, store: Getter) -> None:
        self._store = store
        self._running = False

    @property
    def running(self) -> bool:
        """Whether the exchange has been started and not yet stopped."""
        return self._running

    async def start(self) -> None:
        """Mark the exchange as running; there is no connection to open."""
        self._running = True

    async def stop(self) -> None:
        """Mark the exchange as stopped; there is no connection to close."""
        self._running = False

    async def head(self) -> Header:
        return await self._store.head()

    async def get_by_height(self, height: int) -> Header:
        return await self._store.get_by_height(height)

    async def get_range_by_height(self, origin: int, amount: int) -> list[Header]:
        """Return ``amount`` headers starting at height ``origin``."""
        if amount == 0:
            return []
        return await self._store.get_range_by_height(origin, origin + amount)

    async def get(self, hash: bytes) -> Header:
        return await self._store.get(hash)


@dataclass
class DummySubscriber(Subscriber, Subscription):
    """Subscriber handing out a fixed list of headers, one per call."""

    headers: list[Header] = field(default_factory=list)
    validators: list[Validator] = field(default_factory=list, repr=False)
    stopped: bool = field(default=False, repr=False)
    cancelled: bool = field(default=False, repr=False)

    def add_validator(self, validator: Validator) -> None:
        """Record the validator; headers handed out are not screened by it."""
        self.validators.append(validator)

    def subscribe(self) -> Subscription:
        return self

    async def next_header(self) -> Header:
        """Pop and return the next header; cancel once none are left."""
        if not self.headers:
            raise asyncio.CancelledError()
        return self.headers.pop(0)

    async def stop(self) -> None:
        """Mark the subscriber as stopped."""
        self.stopped = True

    def cancel(self) -> None:
        """Mark the subscription as cancelled."""
        self.cancelled = True