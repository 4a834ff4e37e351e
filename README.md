# mercurehub

The building blocks of a Mercure hub: the updates that publishers send,
the subscribers that receive them, URI-template topic selectors with
caching, and a transport that keeps update history in a Redis stream.

## What is in the package

- `mercurehub.update` – `Update`, the event sent to subscribers
  (`topics`, `private`, `debug`, `id`, `data`, `type`, `retry`), with
  JSON round trips (`to_json` / `Update.from_json`), `log_fields` for
  structured logging, and `assign_uuid`, which gives an update a
  `urn:uuid:` identifier when it has none.
- `mercurehub.subscriber` – `Subscriber`, a client subscribed to topic
  selectors. Live updates dispatched before `ready()` is called are held
  back, so that updates replayed from history always arrive first.
  `receive(timeout)` returns the next update, `None` once the subscriber
  is disconnected and drained, and raises `TimeoutError` if nothing
  arrives in time. `match` and `match_topic` decide whether a subscriber
  may see an update, taking private topics into account.
  `get_subscriptions` lists its subscriptions as `Subscription` objects,
  whose `to_dict()` gives the JSON-LD document.
- `mercurehub.subscriber_list` – `SubscriberList`, the subscribers of a
  transport in insertion order, with `match_any` to find who gets an
  update and `walk` to visit them.
- `mercurehub.topic_selector` – `TopicSelectorStore`, which matches a
  topic against a selector: `*`, an exact topic, or a URI template such
  as `https://example.com/books/{id}`; `template_regexp` compiles a
  template into a regular expression.
- `mercurehub.topic_selector_lru` and `mercurehub.topic_selector_cost` –
  selector stores backed by a sharded LRU cache
  (`new_topic_selector_store_lru`, `ShardedLRUCache`) or a cost-bounded
  cache (`new_topic_selector_store_cost`, `CostBoundedCache`). Passing
  zero entries or zero counters gives a store without a cache.
- `mercurehub.transport` – the `Transport` and `TransportSubscribers`
  interfaces, `register_transport_factory` / `new_transport` to pick a
  transport by URL scheme, `EARLIEST_LAST_EVENT_ID`, and the
  `TransportError` and `ClosedTransportError` exceptions.
- `mercurehub.redis_transport` – `RedisTransport`, registered for the
  `redis`, `rediss` and `redis+unix` schemes when the module is
  imported, and `parse_duration`.

## Matching topics

```python
from mercurehub.topic_selector_lru import new_topic_selector_store_lru

store = new_topic_selector_store_lru(10_000, 256)
store.match("https://example.com/foo/bar", "https://example.com/{foo}/bar")      # True
store.match("https://example.com/foo/bar/baz", "https://example.com/{foo}/bar")  # False
store.match("anything", "*")                                                     # True
```

## Using the Redis transport

```python
import logging

import mercurehub.redis_transport  # registers the redis schemes
from mercurehub.subscriber import Subscriber
from mercurehub.transport import new_transport
from mercurehub.update import Update

logger = logging.getLogger("mercurehub")
transport = new_transport(
    "redis://localhost:6379/0?stream=mercure&cleanup_interval=1h&event_ttl=24h",
    logger,
    None,
)

subscriber = Subscriber("", logger)
subscriber.set_topics(["https://example.com/books/{id}"], [])
transport.add_subscriber(subscriber)

transport.dispatch(Update(topics=["https://example.com/books/1"], data="hello"))
print(subscriber.receive(1.0).data)  # "hello"

transport.close()
```

Query parameters understood by the Redis transport, and removed before
the URL is handed to the Redis client:

- `stream` – name of the Redis stream (default `mercure`);
- `cleanup_interval` – time between two trims of old events, for
  example `30m`; without it no background cleanup runs;
- `event_ttl` – how long an event is kept (default `24h`; a negative
  value counts as positive).

Durations use the `1h30m`, `500ms`, `20s` notation (units `ns`, `us`,
`ms`, `s`, `m`, `h`). An unparsable value is logged and the default is
kept. Any other query parameter is passed on to the Redis client.

Each dispatched update is added to the stream and its ID is stored as a
key pointing at the stream entry. A subscriber created with a last event
ID first receives the matching updates stored after that event (or all
of them for `earliest`), then the live ones; `wait_response_last_event_id`
gives the ID of the last entry replayed. `trim()` deletes entries older
than the event TTL and returns the number of deleted ID keys and stream
entries. `get_subscribers()` returns the last event ID and the active
subscribers.

After `close()`, `dispatch`, `add_subscriber`, `remove_subscriber` and
`trim` raise `ClosedTransportError`.

## What the package does not do

The package holds no HTTP server: it has no publish, subscribe or
subscription endpoints, writes no Server-Sent Events responses, and does
no JWT authorization. It has no command to run. The only transport it
provides is the Redis one; other storage is left to transports
registered with `register_transport_factory`.