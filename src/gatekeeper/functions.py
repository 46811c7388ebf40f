"""Built-in matching functions callable from matcher expressions.

Every predicate here is pure and stateless. Malformed input (an invalid
regex, an unparsable IP address, a bad timestamp, a non-string argument)
yields ``False`` (or an empty string for the ``key_get`` family) and never
raises.

Function families:
    - keyMatch 1-5: URL path patterns (``*``, ``:param``, ``{param}``)
    - keyGet 1-3: extract the text bound by a path pattern
    - globMatch 1-3: shell globs, segment-aware in variants 2 and 3
    - regexMatch: regular expression search
    - ipMatch 1-3: IP, CIDR and range membership
    - timeMatch: current time within an ISO-8601 window

The ``FunctionMap`` registry is what the expression evaluator dispatches
through; it is injected at construction so new predicates can be added
without touching the interpreter.
"""

from __future__ import annotations

import ipaddress
import re
from datetime import datetime, timezone
from functools import lru_cache, wraps
from typing import Any, Callable, Iterator, Mapping, TypeVar

from gatekeeper.core import RoleManager


F = TypeVar("F", bound=Callable[..., Any])


def string_arguments(default: Any) -> Callable[[F], F]:
    """Return `default` instead of calling the function with non-string arguments.

    Example:
        >>> @string_arguments(False)
        ... def starts_with(a, b):
        ...     return a.startswith(b)
        >>> starts_with("abc", 5)
        False
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any) -> Any:
            if not all(isinstance(arg, str) for arg in args):
                return default
            return func(*args)

        return wrapper  # type: ignore[return-value]

    return decorator


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _full_match(key: str, pattern: str) -> bool:
    compiled = _compile(pattern)
    if compiled is None:
        return False
    return compiled.fullmatch(key) is not None


def _translate(pattern: str, rules: Mapping[str, str], token: re.Pattern[str]) -> str:
    """Translate `pattern` to a regex, escaping everything but the tokens."""
    parts: list[str] = []
    position = 0
    for match in token.finditer(pattern):
        parts.append(re.escape(pattern[position:match.start()]))
        text = match.group(0)
        parts.append(rules.get(text, rules.get(text[:1], re.escape(text))))
        position = match.end()
    parts.append(re.escape(pattern[position:]))
    return "".join(parts)


# =============================================================================
# keyMatch family
# =============================================================================


@string_arguments(False)
def key_match(key1: str, key2: str) -> bool:
    """Match a path against a pattern where ``*`` matches anything.

    Example:
        >>> key_match("/foo/bar", "/foo/*")
        True
        >>> key_match("/foo/bar", "/baz/*")
        False
    """
    regex = _translate(key2, {"*": ".*"}, re.compile(r"\*"))
    return _full_match(key1, regex)


@string_arguments(False)
def key_match2(key1: str, key2: str) -> bool:
    """Like ``key_match`` with ``:param`` matching one path segment.

    Example:
        >>> key_match2("/foo/123", "/foo/:id")
        True
    """
    regex = _translate(key2, {"*": ".*", ":": "[^/]+"}, re.compile(r"\*|:[^/]+"))
    return _full_match(key1, regex)


@string_arguments(False)
def key_match3(key1: str, key2: str) -> bool:
    """Like ``key_match`` with ``{param}`` matching one path segment."""
    regex = _translate(key2, {"*": ".*", "{": "[^/]+?"}, re.compile(r"\*|\{[^/}]+\}"))
    return _full_match(key1, regex)


@string_arguments(False)
def key_match4(key1: str, key2: str) -> bool:
    """Brace syntax where repeated parameter names must bind equal values.

    Example:
        >>> key_match4("/parent/123/child/123", "/parent/{id}/child/{id}")
        True
        >>> key_match4("/parent/123/child/456", "/parent/{id}/child/{id}")
        False
    """
    names: list[str] = []
    parts: list[str] = []
    position = 0
    for match in re.finditer(r"\*|\{([^/}]+)\}", key2):
        parts.append(re.escape(key2[position:match.start()]))
        if match.group(0) == "*":
            parts.append(".*")
        else:
            names.append(match.group(1))
            parts.append("([^/]+)")
        position = match.end()
    parts.append(re.escape(key2[position:]))

    compiled = _compile("".join(parts))
    if compiled is None:
        return False
    found = compiled.fullmatch(key1)
    if found is None:
        return False

    bound: dict[str, str] = {}
    for name, value in zip(names, found.groups()):
        if bound.setdefault(name, value) != value:
            return False
    return True


@string_arguments(False)
def key_match5(key1: str, key2: str) -> bool:
    """Wildcard match without regex translation.

    ``*`` matches any run of characters, including an empty one. Every other
    character, regex metacharacters included, matches itself. Uses greedy
    matching with single-point backtracking to the most recent star.

    Example:
        >>> key_match5("/a.b/c(d)/e", "/a.b/*/e")
        True
    """
    i = j = 0
    star = -1
    resume = 0
    while i < len(key1):
        if j < len(key2) and key2[j] == "*":
            star = j
            resume = i
            j += 1
        elif j < len(key2) and key1[i] == key2[j]:
            i += 1
            j += 1
        elif star != -1:
            j = star + 1
            resume += 1
            i = resume
        else:
            return False

    while j < len(key2) and key2[j] == "*":
        j += 1
    return j == len(key2)


# =============================================================================
# keyGet family
# =============================================================================


@string_arguments("")
def key_get(key1: str, key2: str) -> str:
    """Return the part of `key1` matched by the ``*`` in `key2`.

    Example:
        >>> key_get("/foo/bar/baz", "/foo/*")
        'bar/baz'
    """
    index = key2.find("*")
    if index == -1:
        return ""
    if len(key1) > index and key1[:index] == key2[:index]:
        return key1[index:]
    return ""


def _key_get_named(key1: str, key2: str, name: str, token: re.Pattern[str]) -> str:
    names: list[str] = []
    parts: list[str] = []
    position = 0
    for match in token.finditer(key2):
        parts.append(re.escape(key2[position:match.start()]))
        text = match.group(0)
        if text == "*":
            parts.append(".*")
        else:
            names.append(match.group(1))
            parts.append("([^/]+?)")
        position = match.end()
    parts.append(re.escape(key2[position:]))

    if name not in names:
        return ""
    compiled = _compile("".join(parts))
    if compiled is None:
        return ""
    found = compiled.fullmatch(key1)
    if found is None:
        return ""
    return found.group(names.index(name) + 1)


@string_arguments("")
def key_get2(key1: str, key2: str, name: str) -> str:
    """Return the value bound to ``:name`` in `key2`.

    Example:
        >>> key_get2("/user/alice", "/user/:id", "id")
        'alice'
    """
    return _key_get_named(key1, key2, name, re.compile(r"\*|:([^/]+)"))


@string_arguments("")
def key_get3(key1: str, key2: str, name: str) -> str:
    """Return the value bound to ``{name}`` in `key2`."""
    return _key_get_named(key1, key2, name, re.compile(r"\*|\{([^/}]+)\}"))


# =============================================================================
# globMatch family
# =============================================================================


def _glob_classes(pattern: str, position: int) -> tuple[str, int] | None:
    """Translate a bracket class starting at `position`.

    Returns the regex fragment and the index after the closing bracket,
    or None when the bracket is unterminated.
    """
    end = pattern.find("]", position + 1)
    if end == -1:
        return None
    body = pattern[position + 1:end]
    negate = body.startswith("!")
    if negate:
        body = body[1:]
    if not body:
        return None
    body = body.replace("\\", "\\\\").replace("^", "\\^")
    return ("[^" if negate else "[") + body + "]", end + 1


def _glob_to_regex(pattern: str, *, segments: bool, classes: bool) -> str | None:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if segments and pattern.startswith("**", i):
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*" if segments else ".*")
        elif char == "?":
            parts.append("[^/]" if segments else ".")
        elif char == "[" and classes:
            translated = _glob_classes(pattern, i)
            if translated is None:
                return None
            fragment, i = translated
            parts.append(fragment)
            continue
        else:
            parts.append(re.escape(char))
        i += 1
    return "".join(parts)


@string_arguments(False)
def glob_match(key1: str, key2: str) -> bool:
    """Shell-style glob where ``*`` and ``?`` may cross ``/``."""
    regex = _glob_to_regex(key2, segments=False, classes=False)
    return regex is not None and _full_match(key1, regex)


@string_arguments(False)
def glob_match2(key1: str, key2: str) -> bool:
    """Glob where ``*`` stays within a path segment and ``**`` crosses them.

    Example:
        >>> glob_match2("/data/a/b/file.txt", "/data/**/*.txt")
        True
        >>> glob_match2("/data/a/b/file.txt", "/data/*.txt")
        False
    """
    regex = _glob_to_regex(key2, segments=True, classes=False)
    return regex is not None and _full_match(key1, regex)


@string_arguments(False)
def glob_match3(key1: str, key2: str) -> bool:
    """``glob_match2`` plus bracket classes ``[abc]``, ``[a-z]``, ``[!abc]``."""
    regex = _glob_to_regex(key2, segments=True, classes=True)
    return regex is not None and _full_match(key1, regex)


# =============================================================================
# regexMatch
# =============================================================================


@string_arguments(False)
def regex_match(key1: str, key2: str) -> bool:
    """Search `key1` for the regular expression `key2`.

    An invalid pattern is a non-match.
    """
    compiled = _compile(key2)
    if compiled is None:
        return False
    return compiled.search(key1) is not None


# =============================================================================
# ipMatch family
# =============================================================================


def _parse_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError:
        return None


def _mask(length: int, bits: int) -> int:
    return ((1 << bits) - 1) ^ ((1 << (bits - length)) - 1)


def _prefix_length(prefix: str, bits: int) -> int | None:
    """Parse a CIDR prefix length in ``[0, bits]``, ASCII digits only."""
    prefix = prefix.strip()
    if not (prefix.isascii() and prefix.isdigit()):
        return None
    length = int(prefix)
    if length > bits:
        return None
    return length


def _within(
    address: ipaddress.IPv4Address | ipaddress.IPv6Address,
    base: ipaddress.IPv4Address | ipaddress.IPv6Address,
    prefix: str | None,
) -> bool:
    """Compare `address` with `base`, masked to `prefix` when one is given."""
    if address.version != base.version:
        return False
    if prefix is None:
        return address == base
    bits = base.max_prefixlen
    length = _prefix_length(prefix, bits)
    if length is None:
        return False
    mask = _mask(length, bits)
    return (int(address) & mask) == (int(base) & mask)


def _split_cidr(text: str) -> tuple[str, str | None]:
    address, slash, prefix = text.partition("/")
    return address, prefix if slash else None


@string_arguments(False)
def ip_match(ip1: str, ip2: str) -> bool:
    """Check address `ip1` against an address or CIDR block `ip2`.

    Both IPv4 and IPv6 are accepted. CIDR membership is decided by masking
    both addresses to the prefix length; an out-of-range prefix or an
    address family mismatch is a non-match. When `ip2` is not IP-shaped at
    all (a role name, say) the check passes: that branch is expected to
    have been decided by ``g()``.

    Example:
        >>> ip_match("192.168.2.130", "192.168.2.0/24")
        True
        >>> ip_match("192.168.3.1", "192.168.2.0/24")
        False
        >>> ip_match("10.0.0.1", "10.0.0.0/33")
        False
    """
    address = _parse_ip(ip1)
    if address is None:
        return False

    text, prefix = _split_cidr(ip2)
    base = _parse_ip(text)
    if base is None:
        return True
    return _within(address, base, prefix)


@string_arguments(False)
def ip_match2(ip1: str, ip2: str) -> bool:
    """IPv4 or IPv6 membership with an explicit prefix-length comparison.

    Unparsable input on either side is a non-match, as is a version
    mismatch between the two sides.
    """
    address = _parse_ip(ip1)
    if address is None:
        return False

    text, prefix = _split_cidr(ip2)
    base = _parse_ip(text)
    if base is None:
        return False
    return _within(address, base, prefix)


@string_arguments(False)
def ip_match3(ip1: str, ip2: str) -> bool:
    """``ip_match2`` plus inclusive ``start-end`` ranges.

    Example:
        >>> ip_match3("10.0.0.5", "10.0.0.1-10.0.0.9")
        True
    """
    if "-" in ip2 and "/" not in ip2:
        start_text, _, end_text = ip2.partition("-")
        address = _parse_ip(ip1)
        start = _parse_ip(start_text)
        end = _parse_ip(end_text)
        if address is None or start is None or end is None:
            return False
        if not (address.version == start.version == end.version):
            return False
        return int(start) <= int(address) <= int(end)
    return ip_match2(ip1, ip2)


# =============================================================================
# timeMatch
# =============================================================================


def _parse_time(text: str) -> datetime | None:
    try:
        moment = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@string_arguments(False)
def time_match(start: str, end: str) -> bool:
    """Check that the current time lies within ``[start, end]``.

    Either bound may be ``_`` to leave it open.
    """
    now = datetime.now(timezone.utc)
    if start != "_":
        lower = _parse_time(start)
        if lower is None or now < lower:
            return False
    if end != "_":
        upper = _parse_time(end)
        if upper is None or now > upper:
            return False
    return True


# =============================================================================
# Function Registry
# =============================================================================


BUILTIN_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "keyMatch": key_match,
    "keyMatch2": key_match2,
    "keyMatch3": key_match3,
    "keyMatch4": key_match4,
    "keyMatch5": key_match5,
    "keyGet": key_get,
    "keyGet2": key_get2,
    "keyGet3": key_get3,
    "globMatch": glob_match,
    "globMatch2": glob_match2,
    "globMatch3": glob_match3,
    "regexMatch": regex_match,
    "ipMatch": ip_match,
    "ipMatch2": ip_match2,
    "ipMatch3": ip_match3,
    "timeMatch": time_match,
}


class FunctionMap:
    """Registry of functions a matcher may call.

    Example:
        >>> functions = FunctionMap.default()
        >>> functions.add_function("startsWith", lambda a, b: str(a).startswith(b))
        >>> functions.get("keyMatch")("/foo/bar", "/foo/*")
        True
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(functions or {})

    @classmethod
    def default(cls) -> "FunctionMap":
        """Registry pre-loaded with the built-in matching functions."""
        return cls(BUILTIN_FUNCTIONS)

    def add_function(self, name: str, function: Callable[..., Any]) -> None:
        """Register or replace a function."""
        if not callable(function):
            raise TypeError(f"Function '{name}' is not callable")
        self._functions[name] = function

    def remove_function(self, name: str) -> bool:
        return self._functions.pop(name, None) is not None

    def get(self, name: str) -> Callable[..., Any] | None:
        return self._functions.get(name)

    def copy(self) -> "FunctionMap":
        return FunctionMap(self._functions)

    def names(self) -> list[str]:
        return sorted(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)

    def __len__(self) -> int:
        return len(self._functions)


def generate_g_function(role_manager: RoleManager | None) -> Callable[..., bool]:
    """Build the ``g(name1, name2[, domain])`` predicate for a role manager.

    Without a role manager the predicate degrades to name equality.
    """

    def g(name1: Any, name2: Any, *domain: Any) -> bool:
        if role_manager is None:
            return name1 == name2
        if len(domain) > 1:
            raise TypeError(f"g() takes at most 3 arguments ({2 + len(domain)} given)")
        return role_manager.has_link(str(name1), str(name2), str(domain[0]) if domain else "")

    return g
