"""Transport interface, registry of transport factories and transport errors."""

from __future__ import annotations

import abc
import json
import threading
from collections.abc import Callable
from logging import Logger
from typing import TYPE_CHECKING, Any
from urllib.parse import SplitResult, urlsplit, urlunsplit

if TYPE_CHECKING:
    from .subscriber import Subscriber
    from .topic_selector import TopicSelectorStore
    from .update import Update

EARLIEST_LAST_EVENT_ID = "earliest"
"""Reserved value representing the earliest available event ID."""

TransportFactory = Callable[[str, Logger, "TopicSelectorStore | None"], "Transport"]

_factories: dict[str, TransportFactory] = {}
_factories_lock = threading.Lock()


class ClosedTransportError(RuntimeError):
    """Raised by a transport's operations after it has been closed."""

    def __init__(self, message: str = "hub: read/write on closed Transport") -> None:
        super().__init__(message)


class TransportError(Exception):
    """Raised when a transport DSN is invalid."""

    def __init__(self, dsn: str, msg: str = "", err: BaseException | None = None) -> None:
        super().__init__(dsn, msg, err)
        self.dsn = dsn
        self.msg = msg
        self.err = err
        self.__cause__ = err

    def __str__(self) -> str:
        dsn = json.dumps(self.dsn, ensure_ascii=False)
        if not self.msg:
            if self.err is None:
                return f"{dsn}: invalid transport"
            return f"{dsn}: invalid transport: {self.err}"
        if self.err is None:
            return f"{dsn}: invalid transport: {self.msg}"
        return f"{dsn}: {self.msg}: invalid transport: {self.err}"


class Transport(abc.ABC):
    """Dispatches and persists updates."""

    @abc.abstractmethod
    def dispatch(self, update: Update) -> None:
        """Dispatch an update to all subscribers."""

    @abc.abstractmethod
    def add_subscriber(self, subscriber: Subscriber) -> None:
        """Add a new subscriber to the transport."""

    @abc.abstractmethod
    def remove_subscriber(self, subscriber: Subscriber) -> None:
        """Remove a subscriber from the transport."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the transport."""

    def __enter__(self) -> Transport:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class TransportSubscribers(abc.ABC):
    """A transport able to list its active subscribers."""

    @abc.abstractmethod
    def get_subscribers(self) -> tuple[str, list[Subscriber]]:
        """Return the last event ID and the list of active subscribers."""


def register_transport_factory(scheme: str, factory: TransportFactory) -> None:
    """Register the factory that creates transports for a URL scheme."""
    with _factories_lock:
        _factories[scheme] = factory


def _redacted(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.netloc.rpartition("@")[2]
    netloc = f"{parts.username or ''}:xxxxx@{host}"
    return urlunsplit(parts._replace(netloc=netloc))


def new_transport(
    url: str | SplitResult,
    logger: Logger,
    topic_selector_store: TopicSelectorStore | None,
) -> Transport:
    """Create a transport using the factory registered for the URL's scheme.

    The factory receives the URL as a string; no topic selector store is passed on.
    """
    text = urlunsplit(url) if isinstance(url, SplitResult) else url
    scheme = urlsplit(text).scheme
    with _factories_lock:
        factory = _factories.get(scheme)
    if factory is None:
        raise TransportError(dsn=_redacted(text), msg="no such transport available")
    return factory(text, logger, None)