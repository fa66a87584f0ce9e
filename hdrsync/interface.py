"""Header model, errors and the abstract contracts used across header syncing."""

from __future__ import annotations

import abc
import enum
from collections.abc import Awaitable, Callable


class HeaderNotFoundError(LookupError):
    """Raised when a requested header does not exist."""

    def __init__(self, message: str = "header: not found") -> None:
        super().__init__(message)


class NoHeadError(LookupError):
    """Raised when a store holds no header at all and so has no chain head."""

    def __init__(self, message: str = "header/store: no chain head") -> None:
        super().__init__(message)


class NonAdjacentError(ValueError):
    """Raised when a header appended to a store does not follow its head."""

    def __init__(self, message: str = "header/store: non-adjacent") -> None:
        super().__init__(message)


class VerifyError(Exception):
    """Raised when a header fails verification against a trusted one."""

    def __init__(self, reason: object) -> None:
        super().__init__(f"header: verification failed: {reason}")
        self.reason = reason


class ValidationResult(enum.Enum):
    """Verdict a validator gives on a header received from the network."""

    ACCEPT = "accept"
    REJECT = "reject"
    IGNORE = "ignore"


class Header(abc.ABC):
    """A chain header as seen by storage and syncing.

    Concrete headers carry an integer ``height`` attribute.
    """

    height: int

    @abc.abstractmethod
    def hash(self) -> bytes:
        """Return the hash identifying this header."""

    @abc.abstractmethod
    def last_header(self) -> bytes:
        """Return the hash of the previous header in the chain."""

    @abc.abstractmethod
    def marshal_binary(self) -> bytes:
        """Serialize the header to bytes."""

    @abc.abstractmethod
    def verify_adjacent(self, other: Header) -> None:
        """Check that ``other`` directly follows this header; raise if not."""

    @abc.abstractmethod
    def verify_non_adjacent(self, other: Header) -> None:
        """Check ``other``, further up the chain, against this header; raise if invalid."""

    @abc.abstractmethod
    def is_expired(self) -> bool:
        """Report whether the header is outside of its trusting period."""


Validator = Callable[[Header], Awaitable[ValidationResult]]


class Getter(abc.ABC):
    """Retrieves headers that were processed during header sync."""

    @abc.abstractmethod
    async def head(self) -> Header:
        """Return the header of the chain head."""

    @abc.abstractmethod
    async def get(self, hash: bytes) -> Header:
        """Return the header with the given hash."""

    @abc.abstractmethod
    async def get_by_height(self, height: int) -> Header:
        """Return the header at the given height."""

    @abc.abstractmethod
    async def get_range_by_height(self, start: int, end: int) -> list[Header]:
        """Return the headers in the height range ``[start, end)``."""


Exchange = Getter


class Store(Getter):
    """Stores and retrieves headers from a node's local storage."""

    @property
    @abc.abstractmethod
    def height(self) -> int:
        """Height of the current chain head."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Start the store."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Stop the store, refusing further writes and finishing ongoing ones."""

    @abc.abstractmethod
    async def init(self, initial: Header) -> None:
        """Initialize the store with a trusted header as its head."""

    @abc.abstractmethod
    async def has(self, hash: bytes) -> bool:
        """Report whether a header with the given hash is stored."""

    @abc.abstractmethod
    async def append(self, *args: Header) -> int:
        """Verify and store headers adjacent to the head, in ascending order.

        Return how many headers were applied.
        """


class Subscription(abc.ABC):
    """Yields new headers arriving from the network."""

    @abc.abstractmethod
    async def next_header(self) -> Header:
        """Return the next verified header."""

    @abc.abstractmethod
    def cancel(self) -> None:
        """Cancel the subscription."""


class Subscriber(abc.ABC):
    """Subscribes to new header events from the network."""

    @abc.abstractmethod
    def subscribe(self) -> Subscription:
        """Create a long-living subscription to validated headers."""

    @abc.abstractmethod
    def add_validator(self, validator: Validator) -> None:
        """Register a validator screening headers before delivery."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Remove validators and close the topic."""