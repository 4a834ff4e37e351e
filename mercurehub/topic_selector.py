"""Topic selector matching with URI templates and an optional cache."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

_UNRESERVED = r"A-Za-z0-9\-._~"
_GEN_DELIMS = ":/?#[]"
_SUB_DELIMS = "!$&'()*+,;="
_PCT = r"%[0-9A-Fa-f]{2}"

_TEMPLATE_PART = re.compile(r"\{([^{}]*)\}|([^{}]+)|([{}])")
_LITERAL = re.compile(r"(?:[^\x00-\x20\"'%<>\\^`{|}\x7f]|%[0-9A-Fa-f]{2})*")
_VARSPEC = re.compile(
    r"(?P<name>(?:[A-Za-z0-9_]|%[0-9A-Fa-f]{2})+(?:\.(?:[A-Za-z0-9_]|%[0-9A-Fa-f]{2})+)*)"
    r"(?::(?P<prefix>[1-9][0-9]{0,3})|(?P<explode>\*))?"
)
_UNSUPPORTED_OPERATORS = frozenset("=,!@|")

# operator -> (prefix, separator, named, allow_reserved)
_OPERATORS = {
    "": ("", ",", False, False),
    "+": ("", ",", False, True),
    "#": ("#", ",", False, True),
    ".": (".", ".", False, False),
    "/": ("/", "/", False, False),
    ";": (";", ";", True, False),
    "?": ("?", "&", True, False),
    "&": ("&", "&", True, False),
}


def _char(allow_reserved: bool) -> str:
    chars = _UNRESERVED + (re.escape(_GEN_DELIMS + "@" + _SUB_DELIMS) if allow_reserved else "")
    return f"(?:[{chars}]|{_PCT})"


def _expression_pattern(body: str) -> str | None:
    op = body[:1]
    if op in _UNSUPPORTED_OPERATORS:
        return None
    if op not in _OPERATORS:
        op = ""
    prefix, separator, named, allow_reserved = _OPERATORS[op]

    varspecs = [_VARSPEC.fullmatch(spec) for spec in body[len(op):].split(",")]
    if not all(varspecs):
        return None

    char = _char(allow_reserved)
    prefixes = [m["prefix"] for m in varspecs]
    value = f"{char}{{0,{max(map(int, prefixes))}}}" if all(prefixes) else f"{char}*"
    sep, lead = re.escape(separator), re.escape(prefix)

    if named:
        keys = [re.escape(m["name"]) for m in varspecs]
        if any(m["explode"] for m in varspecs):
            keys.append(f"{_char(False)}+")
        item = f"(?:{'|'.join(keys)})(?:={value}(?:,{value})*)?"
        return f"(?:{lead}{item}(?:{sep}{item})*)?"

    joiner = sep if separator == "," else f"(?:{sep}|,)"
    return f"(?:{lead}{value}(?:{joiner}{value})*)?"


def template_regexp(template: str) -> re.Pattern[str] | None:
    """Compile a URI template into an anchored regular expression, or None if invalid."""
    parts = [r"\A"]
    for piece in _TEMPLATE_PART.finditer(template):
        expression, literal, stray = piece.groups()
        if stray is not None:
            return None
        if literal is not None:
            if not _LITERAL.fullmatch(literal):
                return None
            parts.append(re.escape(literal))
            continue
        pattern = _expression_pattern(expression)
        if pattern is None:
            return None
        parts.append(pattern)
    parts.append(r"\Z")
    return re.compile("".join(parts))


class TopicSelectorStoreCache(Protocol):
    """A key-value cache used by TopicSelectorStore."""

    def get(self, key: str) -> tuple[Any, bool]: ...

    def set(self, key: str, value: Any, cost: int) -> bool: ...


@dataclass
class TopicSelectorStore:
    """Matches topics against selectors, caching compiled templates and results."""

    cache: TopicSelectorStoreCache | None = None
    skip_select: bool = False

    def match(self, topic: str, topic_selector: str) -> bool:
        """Tell whether the topic is matched by the selector."""
        if topic_selector == "*" or topic == topic_selector:
            return True

        key = f"m_{topic_selector}_{topic}"
        if self.cache is not None:
            value, found = self.cache.get(key)
            if found:
                return bool(value)

        regexp = self.get_regexp(topic_selector)
        if regexp is None:
            return False

        matched = regexp.match(topic) is not None
        if self.cache is not None:
            self.cache.set(key, matched, 4)
        return matched

    def get_regexp(self, topic_selector: str) -> re.Pattern[str] | None:
        """Return the compiled template for the selector, or None for a raw string."""
        if "{" not in topic_selector:
            return None

        key = f"t_{topic_selector}"
        if self.cache is not None:
            value, found = self.cache.get(key)
            if found:
                return value

        regexp = template_regexp(topic_selector)
        if regexp is not None and self.cache is not None:
            self.cache.set(key, regexp, 19)
        return regexp