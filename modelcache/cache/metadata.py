"""Model metadata: content digests and instance identity.

Both lookups are best-effort. A missing digest means keys are not
versioned; a missing identity means an instance-bound call is keyed like
a class-level one.
"""

from __future__ import annotations

import hashlib
import inspect
from typing import Any, Optional, Protocol, runtime_checkable

from modelcache.logging_config import get_logger

logger = get_logger(name=__name__)


@runtime_checkable
class ModelMetadataSource(Protocol):
    """What the key builder needs to know about a scope and its records."""

    def source_digest(self, scope_name: str) -> Optional[str]:
        ...

    def instance_identity(self, instance: Any) -> Optional[str]:
        ...


def source_digest(obj: Any) -> Optional[str]:
    """MD5 of the source file defining ``obj``, or None if unreadable."""
    try:
        path = inspect.getsourcefile(obj)
        if path is None:
            return None
        with open(path, "rb") as f:
            return hashlib.md5(f.read()).hexdigest()
    except (OSError, TypeError) as e:
        logger.debug("No source digest for {}: {}", obj, e)
        return None


class DefaultMetadataSource:
    """Metadata for plain Python objects.

    The digest is an explicit version tag, optionally falling back to the
    digest of the file defining ``source``. Instances are identified by a
    ``cache_id`` attribute (value or zero-argument callable) when present.
    """

    identity_attribute = "cache_id"

    def __init__(self, version: Optional[str] = None, source: Any = None):
        self.version = version
        self.source = source

    def source_digest(self, scope_name: str) -> Optional[str]:
        if self.version:
            return str(self.version)
        if self.source is not None:
            return source_digest(self.source)
        return None

    def instance_identity(self, instance: Any) -> Optional[str]:
        if instance is None or isinstance(instance, type):
            return None
        value = getattr(instance, self.identity_attribute, None)
        if callable(value):
            value = value()
        if value is None or value == "":
            return None
        return str(value)
