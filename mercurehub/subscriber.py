"""Subscribers: clients subscribed to a list of topic selectors."""

from __future__ import annotations

import logging
import queue
import re
import threading
import uuid
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from itertools import chain, repeat
from typing import Any
from urllib.parse import quote_plus

from .topic_selector import template_regexp
from .update import Update

JSONLD_CONTEXT = "https://mercure.rocks/"
SUBSCRIPTIONS_PATH = "/.well-known/mercure/subscriptions"
OUT_CAPACITY = 1000


def _query_escape(text: str) -> str:
    return quote_plus(text, safe="")


def _compile_selectors(selectors: Iterable[str]) -> list[re.Pattern[str] | None]:
    return [template_regexp(selector) for selector in selectors]


def _any_match(
    selectors: Sequence[str] | None,
    regexps: Sequence[re.Pattern[str] | None],
    topic: str,
) -> bool:
    pairs = zip(selectors or (), chain(regexps, repeat(None)))
    return any(
        selector == "*"
        or selector == topic
        or (regexp is not None and regexp.match(topic) is not None)
        for selector, regexp in pairs
    )


@dataclass
class Subscription:
    """A subscription of one subscriber to one topic selector."""

    id: str
    subscriber: str
    topic: str
    active: bool
    type: str = "Subscription"
    context: str = ""
    last_event_id: str = ""
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-LD representation; empty optional fields are omitted."""
        document: dict[str, Any] = {}
        if self.context:
            document["@context"] = self.context
        document.update(
            {
                "id": self.id,
                "type": self.type,
                "subscriber": self.subscriber,
                "topic": self.topic,
                "active": self.active,
            }
        )
        if self.last_event_id:
            document["lastEventID"] = self.last_event_id
        if self.payload is not None:
            document["payload"] = self.payload
        return document


class Subscriber:
    """A client subscribed to a list of topics.

    Live updates dispatched before the subscriber is ready are held back and
    delivered after the history, when ready() is called.
    """

    def __init__(self, last_event_id: str = "", logger: logging.Logger | None = None) -> None:
        self.id = f"urn:uuid:{uuid.uuid4()}"
        self.escaped_id = _query_escape(self.id)
        self.claims: Mapping[str, Any] | None = None
        self.escaped_topics: list[str] = []
        self.request_last_event_id = last_event_id
        self.remote_addr = ""
        self.topics: list[str] | None = None
        self.topic_regexps: list[re.Pattern[str] | None] = []
        self.private_topics: list[str] | None = None
        self.private_regexps: list[re.Pattern[str] | None] = []
        self.debug = False
        self.logger = logger or logging.getLogger(__name__)

        self._out: deque[Update] = deque()
        self._out_cond = threading.Condition()
        self._disconnected = False
        self._ready = False
        self._live_queue: list[Update] = []
        self._live_lock = threading.Lock()
        self._response_last_event_id: queue.Queue[str] = queue.Queue(maxsize=1)

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _put(self, update: Update) -> bool:
        # The caller holds self._out_cond.
        while len(self._out) >= OUT_CAPACITY and not self._disconnected:
            self._out_cond.wait()
        if self._disconnected:
            return False
        self._out.append(update)
        self._out_cond.notify_all()
        return True

    def dispatch(self, update: Update, from_history: bool = False) -> bool:
        """Queue an update for the subscriber; return False once disconnected.

        Topic matching must be checked beforehand, for instance with match().
        """
        if self._disconnected:
            return False

        if not from_history and not self._ready:
            with self._live_lock:
                if not self._ready:
                    self._live_queue.append(update)
                    return True

        with self._out_cond:
            return self._put(update)

    def ready(self) -> int:
        """Mark the subscriber ready and flush held-back live updates; return their number."""
        with self._live_lock, self._out_cond:
            queued, self._live_queue = self._live_queue, []
            for update in queued:
                self._put(update)
            self._ready = True
            return len(queued)

    def receive(self, timeout: float | None = None) -> Update | None:
        """Return the next update, or None once disconnected and drained.

        Raises TimeoutError if nothing arrives within the timeout.
        """
        with self._out_cond:
            if not self._out_cond.wait_for(lambda: self._out or self._disconnected, timeout):
                raise TimeoutError("no update received")
            if self._out:
                update = self._out.popleft()
                self._out_cond.notify_all()
                return update
            return None

    def history_dispatched(self, response_last_event_id: str) -> None:
        """Record the last event ID sent once the whole history has been dispatched."""
        self._response_last_event_id.put(response_last_event_id)

    def wait_response_last_event_id(self, timeout: float | None = None) -> str:
        """Wait for the value given to history_dispatched()."""
        try:
            return self._response_last_event_id.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("history not dispatched") from None

    def disconnect(self) -> None:
        """Disconnect the subscriber; further dispatches are refused."""
        with self._out_cond:
            if self._disconnected:
                return
            self._disconnected = True
            self._out_cond.notify_all()

    def set_topics(self, topics: Sequence[str], private_topics: Sequence[str] | None) -> None:
        """Set the topic selectors and compile their templates."""
        self.topics = list(topics)
        self.topic_regexps = _compile_selectors(self.topics)
        self.private_topics = None if private_topics is None else list(private_topics)
        self.private_regexps = _compile_selectors(self.private_topics or ())
        self.escaped_topics = [_query_escape(topic) for topic in self.topics]

    def match_topic(self, topic: str, private: bool) -> bool:
        """Tell whether the subscriber may receive updates for the topic."""
        if not _any_match(self.topics, self.topic_regexps, topic):
            return False
        if not private:
            return True
        return _any_match(self.private_topics, self.private_regexps, topic)

    def match(self, update: Update) -> bool:
        """Tell whether the subscriber may receive the update."""
        return any(self.match_topic(topic, update.private) for topic in update.topics)

    def _payload(self) -> Any:
        if not self.claims:
            return None
        mercure = self.claims.get("mercure")
        if not isinstance(mercure, Mapping):
            return None
        return mercure.get("payload")

    def get_subscriptions(self, topic: str = "", context: str = "", active: bool = True) -> list[Subscription]:
        """Return the subscriptions of this subscriber, limited to a topic if one is given."""
        if topic and not self.match_topic(topic, False):
            return []
        payload = self._payload()
        return [
            Subscription(
                context=context,
                id=f"{SUBSCRIPTIONS_PATH}/{escaped}/{self.escaped_id}",
                subscriber=self.id,
                topic=selector,
                active=active,
                payload=payload,
            )
            for selector, escaped in zip(self.topics or (), self.escaped_topics)
        ]

    def log_fields(self) -> dict[str, Any]:
        """Return the structured fields used when logging this subscriber."""
        fields: dict[str, Any] = {
            "id": self.id,
            "last_event_id": self.request_last_event_id,
        }
        if self.remote_addr:
            fields["remote_addr"] = self.remote_addr
        if self.private_topics is not None:
            fields["topic_selectors"] = list(self.private_topics)
        if self.topics is not None:
            fields["topics"] = list(self.topics)
        return fields