"""Updates, subscribers, topic selectors and a Redis-backed transport for a Mercure hub."""

__version__ = "0.1.0"