"""Transport storing updates in a Redis stream."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import redis

from .subscriber import Subscriber
from .subscriber_list import SubscriberList
from .transport import (
    EARLIEST_LAST_EVENT_ID,
    ClosedTransportError,
    Transport,
    TransportSubscribers,
    register_transport_factory,
)
from .update import Update, assign_uuid

if TYPE_CHECKING:
    from .topic_selector import TopicSelectorStore

DEFAULT_STREAM = "mercure"
DEFAULT_EVENT_TTL = 24 * 3600.0
SUBSCRIBER_LIST_SIZE = 100_000

_DURATION = re.compile(r"(?:(?:\d+\.?\d*|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+")
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_MISSING = object()


class RedisTransportError(Exception):
    """Raised when the Redis stream holds data the transport cannot use."""


def parse_duration(text: str) -> float:
    """Parse a duration such as "300ms", "-1.5h" or "2h45m" into seconds."""
    body = text
    sign = 1.0
    if body[:1] in ("+", "-"):
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body or not _DURATION.fullmatch(body):
        raise ValueError(f"invalid duration {text!r}")
    total = sum(float(number) * _UNITS[unit] for number, unit in _DURATION_PART.findall(body))
    return sign * total


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def _field(fields: Mapping[Any, Any], name: str) -> Any:
    if name in fields:
        return fields[name]
    return fields.get(name.encode(), _MISSING)


def _stream_messages(result: Any) -> list[tuple[Any, Mapping[Any, Any]]]:
    if isinstance(result, Mapping):
        messages = next(iter(result.values()))
        if len(messages) == 1 and isinstance(messages[0], list):
            messages = messages[0]
        return list(messages)
    return list(result[0][1])


class RedisTransport(Transport, TransportSubscribers):
    """Stores updates in a Redis stream and dispatches them to subscribers.

    Each update ID is also stored as a key holding the stream entry ID, so that
    a subscriber's Last-Event-ID can be located in the stream.
    """

    def __init__(
        self,
        url: str,
        logger: logging.Logger | None = None,
        stream: str = DEFAULT_STREAM,
        event_ttl: float = DEFAULT_EVENT_TTL,
        cleanup_interval: float = 0.0,
        client: Any = None,
    ) -> None:
        self.url = url
        self.logger = logger or logging.getLogger(__name__)
        self.stream = stream
        self.event_ttl = event_ttl
        self.cleanup_interval = cleanup_interval
        self.client = client
        self._subscribers = SubscriberList(SUBSCRIBER_LIST_SIZE)
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise ClosedTransportError()

    def connect(self, url: str) -> None:
        """Connect to the Redis server at the URL."""
        client = redis.Redis.from_url(url, decode_responses=True)
        self.logger.debug("Connecting to %s", url)
        try:
            client.ping()
        except redis.exceptions.RedisError as exc:
            raise ConnectionError(f"Failed to connect to Redis: {exc}") from exc
        self.client = client

    def _store_update(self, update: Update) -> None:
        payload = update.to_json()
        redis_id = _text(self.client.xadd(self.stream, {"update": payload}, id="*"))
        self.client.set(update.id, redis_id)
        self.logger.debug("Storing update %s as Redis ID %s", payload, redis_id)

    def dispatch(self, update: Update) -> None:
        """Store the update and send it to every matching subscriber."""
        self._check_open()
        with self._lock:
            assign_uuid(update)
            self._store_update(update)
            for subscriber in self._subscribers.match_any(update):
                subscriber.dispatch(update, False)

    def _dispatch_history(self, subscriber: Subscriber) -> None:
        key = "0-0"
        try:
            value = self.client.get(subscriber.request_last_event_id)
        except redis.exceptions.RedisError:
            self.logger.error(
                "Can't find RequestLastEventID %s", subscriber.request_last_event_id
            )
        else:
            if value is not None:
                key = _text(value)

        self.logger.debug(
            "dispatchHistory: RequestLastEventID=%s key=%s",
            subscriber.request_last_event_id,
            key,
        )

        try:
            result = self.client.xread({self.stream: key})
        except redis.exceptions.RedisError as exc:
            raise RedisTransportError(f"XREAD error: {exc}") from exc
        if not result:
            raise RedisTransportError("XREAD error: redis: nil")
        messages = _stream_messages(result)
        self.logger.debug("dispatchHistory: message count %d", len(messages))

        response_last_event_id = EARLIEST_LAST_EVENT_ID
        error: Exception | None = None
        for message_id, fields in messages:
            value = _field(fields, "update")
            if value is _MISSING:
                error = RedisTransportError(f"Malformed update message for {key}")
                break
            if isinstance(value, bytes):
                value = value.decode()
            if not isinstance(value, str):
                error = RedisTransportError(f"Bad update type for {key}")
                break
            self.logger.debug("dispatchHistory: update %s", value)
            try:
                update = Update.from_json(value)
            except ValueError as exc:
                error = exc
                break
            if subscriber.match(update) and subscriber.dispatch(update, True):
                response_last_event_id = _text(message_id)

        self.logger.debug("dispatchHistory: responseLastEventID=%s", response_last_event_id)
        subscriber.history_dispatched(response_last_event_id)
        if error is not None:
            raise error

    def add_subscriber(self, subscriber: Subscriber) -> None:
        """Add a subscriber, sending it the history it asked for first."""
        self._check_open()
        self.logger.debug(
            "AddSubscriber: ID=%s RequestLastEventID=%s",
            subscriber.id,
            subscriber.request_last_event_id,
        )
        with self._lock:
            self._subscribers.add(subscriber)

        if subscriber.request_last_event_id:
            try:
                self._dispatch_history(subscriber)
            except Exception as exc:
                self.logger.error("Dispatch error: %s", exc)
                raise

        subscriber.ready()

    def remove_subscriber(self, subscriber: Subscriber) -> None:
        """Remove a subscriber from the transport."""
        self._check_open()
        with self._lock:
            self._subscribers.remove(subscriber)

    def close(self) -> None:
        """Disconnect every subscriber and close the Redis connection."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()

        def disconnect(subscriber: Subscriber) -> bool:
            subscriber.disconnect()
            return True

        with self._lock:
            self._subscribers.walk(0, disconnect)
            if self.client is not None:
                self.client.close()

    def _last_event_id(self) -> str:
        info = self.client.xinfo_stream(self.stream)
        value = self.client.get(_text(info["last-generated-id"]))
        return EARLIEST_LAST_EVENT_ID if value is None else _text(value)

    def get_subscribers(self) -> tuple[str, list[Subscriber]]:
        """Return the last event ID and the active subscribers."""
        with self._lock:
            subscribers: list[Subscriber] = []

            def collect(subscriber: Subscriber) -> bool:
                subscribers.append(subscriber)
                return True

            self._subscribers.walk(0, collect)
            try:
                last_event_id = self._last_event_id()
            except (redis.exceptions.RedisError, KeyError) as exc:
                self.logger.error("Can't find LastEventID: %s", exc)
                last_event_id = EARLIEST_LAST_EVENT_ID
            return last_event_id, subscribers

    def trim(self) -> tuple[int, int]:
        """Delete events older than the event TTL.

        Returns the number of deleted ID keys and of deleted stream entries.
        Redis errors are logged, not raised.
        """
        self._check_open()
        with self._lock:
            try:
                seconds, microseconds = self.client.time()
            except redis.exceptions.RedisError as exc:
                self.logger.error("Can't get server time: %s", exc)
                return 0, 0

            now_ns = int(seconds) * 1_000_000_000 + int(microseconds) * 1_000
            min_id = str((now_ns - round(self.event_ttl * 1e9)) // 1_000_000)
            self.logger.debug("Redis minID %s", min_id)

            try:
                entries = self.client.xrange(self.stream, min="0", max=min_id)
            except redis.exceptions.RedisError as exc:
                self.logger.error("Can't find minID %s for trimming: %s", min_id, exc)
                return 0, 0
            if not entries:
                self.logger.debug("Redis trim: nothing to trim")

            ids: list[str] = []
            for entry_id, fields in entries or ():
                value = _field(fields, "update")
                if value is _MISSING:
                    self.logger.error("Malformed update message %s", _text(entry_id))
                    continue
                if isinstance(value, bytes):
                    value = value.decode()
                if not isinstance(value, str):
                    continue
                try:
                    ids.append(Update.from_json(value).id)
                except ValueError as exc:
                    self.logger.error(
                        "Unmarshal error for %s (%s): %s", _text(entry_id), value, exc
                    )

            deleted_ids = 0
            if ids:
                try:
                    deleted_ids = int(self.client.delete(*ids))
                except redis.exceptions.RedisError as exc:
                    self.logger.error("Deleting %d IDs: %s", len(ids), exc)

            deleted_events = 0
            try:
                deleted_events = int(
                    self.client.xtrim(self.stream, minid=min_id, approximate=False)
                )
            except redis.exceptions.RedisError as exc:
                self.logger.error("Deleting entries: %s", exc)

            self.logger.info(
                "Redis trim: %d IDs deleted, %d events deleted", deleted_ids, deleted_events
            )
            return deleted_ids, deleted_events

    def _cleanup(self) -> None:
        self.logger.debug(
            "Redis cleanup: interval %ss, event TTL %ss", self.cleanup_interval, self.event_ttl
        )
        while True:
            try:
                self.trim()
            except ClosedTransportError:
                return
            if self._closed.wait(self.cleanup_interval):
                return

    def start_cleanup(self) -> None:
        """Run periodic trims in a background thread if a cleanup interval is set."""
        if self.cleanup_interval > 0:
            threading.Thread(target=self._cleanup, name="redis-cleanup", daemon=True).start()


def make_redis_transport(url: str, logger: logging.Logger | None = None) -> RedisTransport:
    """Create an unconnected transport from the URL.

    The stream, event_ttl and cleanup_interval parameters are read and removed;
    the remaining URL is kept as the transport's url.
    """
    logger = logger or logging.getLogger(__name__)
    parts = urlsplit(url)
    query: dict[str, list[str]] = {}
    for name, value in parse_qsl(parts.query, keep_blank_values=True):
        query.setdefault(name, []).append(value)

    def first(name: str) -> str:
        values = query.get(name)
        return values[0] if values else ""

    stream = DEFAULT_STREAM
    if value := first("stream"):
        stream = value
        del query["stream"]

    event_ttl = DEFAULT_EVENT_TTL
    if value := first("event_ttl"):
        try:
            event_ttl = abs(parse_duration(value))
        except ValueError:
            logger.error("unparsable redis event TTL: %s", value)
        del query["event_ttl"]

    cleanup_interval = 0.0
    if value := first("cleanup_interval"):
        try:
            cleanup_interval = parse_duration(value)
        except ValueError:
            logger.error("unparsable redis cleanup interval: %s", value)
        del query["cleanup_interval"]

    cleaned = urlunsplit(parts._replace(query=urlencode(sorted(query.items()), doseq=True)))
    return RedisTransport(
        url=cleaned,
        logger=logger,
        stream=stream,
        event_ttl=event_ttl,
        cleanup_interval=cleanup_interval,
    )


def new_redis_tcp_transport(
    url: str,
    logger: logging.Logger | None,
    topic_selector_store: TopicSelectorStore | None = None,
) -> RedisTransport:
    """Create a transport for a redis:// or rediss:// URL and connect it."""
    transport = make_redis_transport(url, logger)
    transport.connect(transport.url)
    transport.start_cleanup()
    return transport


def new_redis_unix_transport(
    url: str,
    logger: logging.Logger | None,
    topic_selector_store: TopicSelectorStore | None = None,
) -> RedisTransport:
    """Create a transport for a redis+unix:// socket URL and connect it."""
    transport = make_redis_transport(url, logger)
    socket_url = urlunsplit(urlsplit(transport.url)._replace(scheme="unix"))
    transport.connect(socket_url)
    transport.start_cleanup()
    return transport


register_transport_factory("redis", new_redis_tcp_transport)
register_transport_factory("rediss", new_redis_tcp_transport)
register_transport_factory("redis+unix", new_redis_unix_transport)