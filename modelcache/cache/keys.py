"""Cache key construction.

A key is an ordered sequence of components:

    scope / content_digest? / call_site / instance_id? / *fragments / override?

Examples:
    Post/d1/cached_comments/42
    Comment/cached_for_post/1/1

Stores that need a flat string render it with ``render_key``:

    cache:Comment:cached_for_post:9f86d081884c7d659a2feaa0c55ad015
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Sequence
from uuid import UUID

import orjson

OVERRIDE_FIELD = "cache_key"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class CacheKey:
    """Immutable, hashable sequence of normalized key components.

    Identity is the canonical JSON encoding of the components, so ``1``,
    ``"1"`` and ``True`` never compare equal and dict fragments are
    order-insensitive.
    """

    __slots__ = ("components", "encoded")

    def __init__(self, components: Iterable[Any]):
        self.components = tuple(components)
        self.encoded = _encode(list(self.components))

    def __iter__(self) -> Iterator[Any]:
        return iter(self.components)

    def __len__(self) -> int:
        return len(self.components)

    def __getitem__(self, index):
        return self.components[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, CacheKey):
            return NotImplemented
        return self.encoded == other.encoded

    def __hash__(self) -> int:
        return hash(self.encoded)

    def __str__(self) -> str:
        return "/".join(str(c) for c in self.components)

    def __repr__(self) -> str:
        return f"CacheKey({list(self.components)!r})"

    def digest(self, length: int = 32) -> str:
        """SHA-256 hex digest of the encoded components."""
        return hashlib.sha256(self.encoded).hexdigest()[:length]


def build_cache_key(
    scope_name: Optional[str],
    call_site: Optional[str] = None,
    *,
    content_digest: Optional[str] = None,
    instance_id: Optional[str] = None,
    fragments: Sequence[Any] = (),
    override: Any = None,
    skip_auto_key: bool = False,
) -> CacheKey:
    """Compose the key for one cached-call invocation.

    Args:
        scope_name: Logical namespace, normally the model class name
        call_site: Name of the cached operation (e.g. "cached_comments")
        content_digest: Version tag of the scope's implementation
        instance_id: Identity of the record the call is bound to
        fragments: Caller-supplied values folded into the key, in order.
            If the last one is a mapping holding ``cache_key``, that value
            is taken out and appended after the other fragments.
        override: Explicit override fragment, appended after the one found
            in ``fragments`` (if any)
        skip_auto_key: Leave out scope, digest, call site and instance id

    Returns:
        CacheKey with blank components dropped and nested sequences
        flattened one level.
    """
    fragments, extracted = extract_override(fragments)

    components: list = []
    if not skip_auto_key:
        if not scope_name:
            raise ValueError("scope_name is required unless skip_auto_key is set")
        components.extend([scope_name, content_digest, call_site, instance_id])
    components.extend(fragments)
    components.append(extracted)
    components.append(override)

    return CacheKey(
        _normalize(item)
        for item in _flatten_once(components)
        if not _is_blank(item)
    )


def extract_override(fragments: Sequence[Any]) -> tuple[list, Any]:
    """Split the reserved ``cache_key`` field off the trailing mapping.

    The caller's mapping is not mutated. A mapping left empty once the
    override is removed is dropped as a blank component.
    """
    fragments = list(fragments)
    if not fragments or not isinstance(fragments[-1], Mapping):
        return fragments, None
    last = fragments[-1]
    if OVERRIDE_FIELD not in last:
        return fragments, None

    fragments[-1] = {k: v for k, v in last.items() if k != OVERRIDE_FIELD}
    return fragments, last[OVERRIDE_FIELD]


def render_key(key: CacheKey, prefix: str = "cache", digest_length: int = 32) -> str:
    """Render a key as a flat store string.

    Up to two leading string components are kept readable; the digest
    covers the whole key, so distinct keys never share a rendering.
    """
    head = [c for c in key.components[:3] if isinstance(c, str) and _is_readable(c)][:2]
    return ":".join([prefix, *head, key.digest(digest_length)])


def _flatten_once(items: Iterable[Any]) -> Iterator[Any]:
    for item in items:
        if isinstance(item, (list, tuple)):
            yield from item
        else:
            yield item


def _is_blank(item: Any) -> bool:
    if item is None:
        return True
    if isinstance(item, (str, bytes, list, tuple, dict, set, frozenset)):
        return len(item) == 0
    return False


def _is_readable(text: str) -> bool:
    return 0 < len(text) <= 64 and not any(ch in text for ch in ":*?[] ")


def _encode(value: Any) -> bytes:
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)


def _normalize(obj):
    """Normalize a key component for deterministic hashing."""
    from pydantic import BaseModel

    if isinstance(obj, int) and not isinstance(obj, bool) and not _INT64_MIN <= obj <= _INT64_MAX:
        return {"__int__": str(obj)}
    elif isinstance(obj, (str, int, float, bool, type(None))):
        return obj
    elif isinstance(obj, Enum):
        return _normalize(obj.value)
    elif isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    elif isinstance(obj, (Decimal, UUID)):
        return str(obj)
    elif isinstance(obj, bytes):
        return obj.hex()
    elif hasattr(obj, "__cache_key__") and not isinstance(obj, type):
        return _normalize(obj.__cache_key__())
    elif isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    elif is_dataclass(obj) and not isinstance(obj, type):
        return _normalize(asdict(obj))
    elif isinstance(obj, Mapping):
        if all(isinstance(k, str) for k in obj):
            return {k: _normalize(v) for k, v in obj.items()}
        # non-str keys keep their type: {1: x} and {"1": x} differ
        pairs = [[_normalize(k), _normalize(v)] for k, v in obj.items()]
        return {"__items__": sorted(pairs, key=lambda pair: _encode(pair[0]))}
    elif isinstance(obj, list):
        return [_normalize(item) for item in obj]
    elif isinstance(obj, tuple):
        return {"__tuple__": [_normalize(item) for item in obj]}
    elif isinstance(obj, (set, frozenset)):
        return sorted((_normalize(item) for item in obj), key=repr)
    elif isinstance(obj, type):
        return f"{obj.__module__}.{obj.__qualname__}"
    else:
        return str(obj)
