"""Cached operations.

An operation is a compute function registered under a scope and a name.
Calling it builds the key, asks the store to fetch-or-compute, and on a
miss records the key so the next write to the scope deletes it.

Usage:
    from modelcache.cache import cached

    @cached("Comment", bound="class", expires_in=600)
    def for_post(cls, post_id):
        ...

    Comment.cached_for_post(1, cache_key=1)
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Mapping
from typing import Any, Callable, Optional, Sequence

from modelcache.config.settings import get_settings
from modelcache.logging_config import get_logger

from .exceptions import CacheConfigurationError
from .keys import OVERRIDE_FIELD, CacheKey, build_cache_key
from .registry import InvalidationRegistry, ScopeRef, get_registry
from .scope import Scope

logger = get_logger(name=__name__)

BINDINGS = (None, "instance", "class")

# Frames that never name an operation: lambdas, comprehensions, module code
ANONYMOUS_FRAMES = frozenset({
    "<lambda>", "<listcomp>", "<dictcomp>", "<setcomp>", "<genexpr>", "<module>",
})


class CachedOperation:
    """Descriptor for one cached operation.

    ``bound`` decides what the compute function receives first:
        None        nothing, it is called with the call arguments only
        "instance"  the record the operation is accessed through
        "class"     the class the operation is accessed through

    Bound operations work as class attributes: ``post.cached_comments()``
    or ``Comment.cached_for_post(1)``.
    """

    def __init__(
        self,
        registry: InvalidationRegistry,
        scope_name: str,
        name: str,
        compute: Callable,
        *,
        extra_key_fragments: Sequence[Any] = (),
        store_options: Optional[dict] = None,
        skip_auto_key: bool = False,
        debug: bool = False,
        key_args: bool = True,
        bound: Optional[str] = None,
    ):
        self.registry = registry
        self.scope_name = scope_name
        self.name = name
        self.compute = compute
        self.extra_key_fragments = tuple(extra_key_fragments)
        self.store_options = dict(store_options or {})
        self.skip_auto_key = skip_auto_key
        self.debug = debug
        self.key_args = key_args
        self.bound = bound
        functools.update_wrapper(self, compute, updated=())
        self.__name__ = self.__qualname__ = self.call_site

    @property
    def call_site(self) -> str:
        return f"cached_{self.name}"

    @property
    def scope(self) -> Scope:
        return self.registry.get_scope(self.scope_name)

    def __repr__(self) -> str:
        return f"<CachedOperation {self.scope_name}.{self.call_site}>"

    def __get__(self, obj, objtype=None):
        if self.bound == "instance":
            if obj is None:
                return self
            return BoundOperation(self, obj)
        if self.bound == "class":
            return BoundOperation(self, objtype if objtype is not None else type(obj))
        return self

    def __call__(self, *args, **kwargs):
        if self.bound is None:
            return self.invoke(None, args, kwargs)
        if not args:
            raise TypeError(f"{self.call_site}() needs the {self.bound} it is bound to")
        return self.invoke(args[0], args[1:], kwargs)

    def key_for(self, receiver: Any, args: tuple, kwargs: dict) -> CacheKey:
        """Key an invocation would use, without touching the store."""
        args, kwargs, override = split_override(args, kwargs)
        return self._build_key(self.scope, receiver, args, kwargs, override)

    def invoke(self, receiver: Any, args: tuple, kwargs: dict) -> Any:
        scope = self.scope
        args, kwargs, override = split_override(args, kwargs)
        key = self._build_key(scope, receiver, args, kwargs, override)

        if self.bound is None:
            compute = functools.partial(self.compute, *args, **kwargs)
        else:
            compute = functools.partial(self.compute, receiver, *args, **kwargs)

        return run_cached(self.registry, scope, key, self.store_options, compute, self.debug)

    def _build_key(self, scope, receiver, args, kwargs, override) -> CacheKey:
        fragments = list(self.extra_key_fragments)
        if self.key_args and (args or kwargs):
            # one component per call, so flattening never merges argument boundaries
            fragments.append({"args": list(args), "kwargs": dict(kwargs)})

        instance_id = None
        if self.bound == "instance" and not self.skip_auto_key:
            instance_id = scope.instance_identity(receiver)

        return build_cache_key(
            scope.name,
            self.call_site,
            content_digest=scope.content_digest,
            instance_id=instance_id,
            fragments=fragments,
            override=override,
            skip_auto_key=self.skip_auto_key,
        )


class BoundOperation:
    """A CachedOperation bound to the record or class it was accessed on."""

    __slots__ = ("operation", "receiver")

    def __init__(self, operation: CachedOperation, receiver: Any):
        self.operation = operation
        self.receiver = receiver

    def __call__(self, *args, **kwargs):
        return self.operation.invoke(self.receiver, args, kwargs)

    def __repr__(self) -> str:
        return f"<bound {self.operation!r} of {self.receiver!r}>"

    @property
    def __name__(self) -> str:
        return self.operation.call_site

    def key_for(self, *args, **kwargs) -> CacheKey:
        return self.operation.key_for(self.receiver, args, kwargs)


def define_cached_operation(
    scope_name: str,
    operation_name: str,
    compute: Callable,
    *,
    registry: Optional[InvalidationRegistry] = None,
    extra_key_fragments: Sequence[Any] = (),
    skip_auto_key: bool = False,
    debug: bool = False,
    key_args: bool = True,
    bound: Optional[str] = None,
    **store_options,
) -> CachedOperation:
    """Register ``compute`` as the cached operation ``cached_<operation_name>``.

    Args:
        scope_name: Registered scope whose writes invalidate the results
        operation_name: Operation name; the call site is "cached_<name>"
        compute: Function producing the value on a cache miss
        registry: Registry to use (defaults to the process-wide one)
        extra_key_fragments: Values folded into every key of the operation
        skip_auto_key: Key only by fragments, arguments and override
        debug: Log every composed key
        key_args: Fold call arguments into the key
        bound: None, "instance" or "class" (see CachedOperation)
        **store_options: Passed to the store verbatim (e.g. expires_in)

    Raises:
        ScopeNotRegisteredError: If ``scope_name`` was never registered
        CacheConfigurationError: For any other misconfiguration
    """
    registry = registry or get_registry()
    if not callable(compute):
        raise CacheConfigurationError(f"compute for '{operation_name}' is not callable: {compute!r}")
    if not operation_name or not str(operation_name).isidentifier():
        raise CacheConfigurationError(f"Invalid operation name: {operation_name!r}")
    if bound not in BINDINGS:
        raise CacheConfigurationError(f"bound must be one of {BINDINGS}, got {bound!r}")
    if isinstance(extra_key_fragments, (str, bytes, Mapping)):
        raise CacheConfigurationError("extra_key_fragments must be a sequence of fragments")

    settings = get_settings()
    if settings.default_expires_in and "expires_in" not in store_options:
        store_options["expires_in"] = settings.default_expires_in

    scope = registry.get_scope(scope_name)
    operation = CachedOperation(
        registry,
        scope.name,
        str(operation_name),
        compute,
        extra_key_fragments=extra_key_fragments,
        store_options=store_options,
        skip_auto_key=skip_auto_key,
        debug=debug,
        key_args=key_args,
        bound=bound,
    )
    if (scope.name, operation.name) in registry.operations:
        logger.debug("Redefining cached operation {}.{}", scope.name, operation.call_site)
    registry.operations[(scope.name, operation.name)] = operation
    return operation


def cached(
    scope: str,
    name: Optional[str] = None,
    *,
    registry: Optional[InvalidationRegistry] = None,
    **options,
) -> Callable[[Callable], CachedOperation]:
    """Decorator form of define_cached_operation.

    The decorated function becomes the compute function; the operation
    name defaults to the function name.
    """
    def decorator(func: Callable) -> CachedOperation:
        return define_cached_operation(scope, name or func.__name__, func, registry=registry, **options)
    return decorator


def cover(
    scope: ScopeRef,
    compute: Callable[[], Any],
    *fragments: Any,
    receiver: Any = None,
    call_site: Optional[str] = None,
    registry: Optional[InvalidationRegistry] = None,
    skip_auto_key: bool = False,
    debug: bool = False,
    **store_options,
) -> Any:
    """Cache the result of an ad-hoc block inside any function.

    Without ``call_site`` the key uses the name of the nearest named
    function on the call stack, so ``cover`` called from ``Post.comments``
    (even through a lambda) is keyed by "comments".
    """
    registry = registry or get_registry()
    scope = registry.get_scope(scope)
    if call_site is None and not skip_auto_key:
        call_site = caller_name(skip=1)

    key = build_cache_key(
        scope.name,
        call_site,
        content_digest=scope.content_digest,
        instance_id=scope.instance_identity(receiver) if receiver is not None else None,
        fragments=fragments,
        skip_auto_key=skip_auto_key,
    )
    return run_cached(registry, scope, key, store_options, compute, debug)


def run_cached(
    registry: InvalidationRegistry,
    scope: Scope,
    key: CacheKey,
    store_options: dict,
    compute: Callable[[], Any],
    debug: bool = False,
) -> Any:
    """Fetch-or-compute ``key`` and record it on a miss."""
    if debug or get_settings().debug_keys:
        logger.debug("[{}] generated cache key: {}", scope.name, key)

    value, was_hit = registry.store.fetch_or_compute(key, store_options, compute)
    if was_hit:
        logger.debug("Cache HIT: {}", key)
    else:
        logger.debug("Cache MISS: {}", key)
        registry.record(scope, key)
    return value


def split_override(args: tuple, kwargs: dict) -> tuple[tuple, dict, Any]:
    """Take the reserved ``cache_key`` argument out of a call.

    Looks in the keyword arguments first, then in a trailing mapping
    argument. The override is not passed on to the compute function.
    """
    kwargs = dict(kwargs)
    if OVERRIDE_FIELD in kwargs:
        return tuple(args), kwargs, kwargs.pop(OVERRIDE_FIELD)

    if args and isinstance(args[-1], Mapping) and OVERRIDE_FIELD in args[-1]:
        last = {k: v for k, v in args[-1].items() if k != OVERRIDE_FIELD}
        rest = tuple(args[:-1]) + ((last,) if last else ())
        return rest, kwargs, args[-1][OVERRIDE_FIELD]

    return tuple(args), kwargs, None


def caller_name(skip: int = 0) -> Optional[str]:
    """Name of the nearest named function above the caller's frame.

    Args:
        skip: Extra frames to skip above the function calling caller_name
    """
    frame = inspect.currentframe()
    try:
        frame = frame.f_back if frame is not None else None
        for _ in range(skip):
            if frame is None:
                break
            frame = frame.f_back
        while frame is not None:
            name = frame.f_code.co_name
            if name not in ANONYMOUS_FRAMES and not name.startswith("<"):
                return name
            frame = frame.f_back
        return None
    finally:
        del frame
