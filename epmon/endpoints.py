"""
Endpoint resolvers.

An endpoint resolver turns a file path (during analysis) or a visited URL
(during a test) into an endpoint identifier, or None when the input does not
belong to any endpoint. The configuration module picks one variant per use:

- ``PathRegexResolver``: the path itself is the endpoint when it matches.
- ``UrlRegexResolver``: the matched part of the URL path is the endpoint.
- ``CallbackResolver``: a user-supplied function decides.
"""
import re
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

from epmon.common import Endpoint


class EndpointResolver:
    def resolve(self, value: str) -> Optional[Endpoint]:
        raise NotImplementedError

    def __call__(self, value: str) -> Optional[Endpoint]:
        return self.resolve(value)


class PathRegexResolver(EndpointResolver):
    def __init__(self, pattern):
        self.regex = re.compile(pattern) if isinstance(pattern, str) else pattern

    def resolve(self, value):
        if self.regex.search(value):
            return value
        return None

    def __repr__(self):
        return f"PathRegexResolver({self.regex.pattern!r})"


class UrlRegexResolver(EndpointResolver):
    def __init__(self, pattern):
        self.regex = re.compile(pattern) if isinstance(pattern, str) else pattern

    def resolve(self, value):
        try:
            path = urlsplit(value).path
        except ValueError:
            return None
        match = self.regex.search(path)
        if match:
            return match.group(0)
        return None

    def __repr__(self):
        return f"UrlRegexResolver({self.regex.pattern!r})"


class CallbackResolver(EndpointResolver):
    def __init__(self, callback: Callable[[str], Optional[Endpoint]]):
        self.callback = callback

    def resolve(self, value):
        endpoint = self.callback(value)
        return endpoint or None

    def __repr__(self):
        return f"CallbackResolver({getattr(self.callback, '__name__', self.callback)!r})"


class NullResolver(EndpointResolver):
    def resolve(self, value):
        return None

    def __repr__(self):
        return "NullResolver()"


def endpoints_match(first: Endpoint, second: Endpoint) -> bool:
    """Equality or substring containment in either direction."""
    if not first or not second:
        return False
    return first in second or second in first


def any_endpoint_matches(expected: Iterable[Endpoint], modified: Iterable[Endpoint]) -> bool:
    modified = list(modified)
    return any(
        endpoints_match(endpoint, changed) for endpoint in expected for changed in modified
    )
