"""Exceptions raised by the caching layer.

Store errors raised while fetching or computing are never wrapped; they
reach the caller unchanged.
"""


class CacheError(Exception):
    """Base class for modelcache errors."""


class CacheConfigurationError(CacheError):
    """Raised at registration time when a scope or operation is misconfigured."""


class ScopeNotRegisteredError(CacheConfigurationError):
    """Raised when an operation refers to a scope that was never registered."""

    def __init__(self, scope_name: str):
        self.scope_name = scope_name
        super().__init__(
            f"Cache scope '{scope_name}' is not registered. "
            f"Call register_scope('{scope_name}') first."
        )
