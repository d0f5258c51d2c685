"""Cache support for SQLAlchemy declarative models.

Usage:
    @covers_with_cache(version="2")
    class Post(Base):
        __tablename__ = "posts"
        id: Mapped[int] = mapped_column(primary_key=True)
        comments: Mapped[list["Comment"]] = relationship(back_populates="post")

        @cached_method(expires_in=60)
        def comment_texts(self):
            return [c.text for c in self.comments]

    post.cached_comment_texts()     # cached, keyed by ("Post", "2", "cached_comment_texts", "<id>")

    Comment.class_define_cached(
        "for_post",
        compute=lambda cls, session, post_id: session.scalars(
            select(cls).where(cls.post_id == post_id)
        ).all(),
        key_args=False,
    )
    Comment.cached_for_post(session, 1, cache_key=1)

Committing a session that inserted, updated or deleted a Post flushes
every key recorded for the Post scope.
"""

import functools
from typing import Any, Callable, Optional

from sqlalchemy import inspect as sa_inspect

from modelcache.cache.exceptions import CacheConfigurationError
from modelcache.cache.metadata import source_digest
from modelcache.cache.operations import caller_name, cover, define_cached_operation
from modelcache.cache.registry import InvalidationRegistry, get_registry
from modelcache.logging_config import get_logger

from .hooks import install_write_hooks

logger = get_logger(name=__name__)


class SQLAlchemyMetadataSource:
    """Digest and identity lookups for a mapped class."""

    def __init__(self, model: type, version: Optional[str] = None, digest_source: bool = False):
        self.model = model
        self.version = version
        self.digest_source = digest_source

    def source_digest(self, scope_name: str) -> Optional[str]:
        if self.version is not None:
            return str(self.version)
        if self.digest_source:
            return source_digest(self.model)
        return None

    def instance_identity(self, instance: Any) -> Optional[str]:
        """Primary key of a persistent instance, e.g. "42" or "7-3"."""
        state = sa_inspect(instance, raiseerr=False)
        identity = getattr(state, "identity", None)
        if not identity:
            return None
        return "-".join(str(part) for part in identity)


class _hybrid:
    """Method callable on both the class and its instances."""

    def __init__(self, func: Callable):
        self.func = func
        functools.update_wrapper(self, func)

    def __get__(self, obj, objtype=None):
        return functools.partial(self.func, obj if obj is not None else objtype)


class cached_method:
    """Define ``cached_<name>`` for a method inside the class body.

    The method itself stays available under its own name. Definitions are
    completed by ``covers_with_cache``.
    """

    def __init__(self, *fragments: Any, **options):
        if len(fragments) == 1 and callable(fragments[0]) and not options:
            self.func, self.fragments = fragments[0], ()
        else:
            self.func, self.fragments = None, fragments
        self.options = options

    def __call__(self, func: Callable) -> "cached_method":
        self.func = func
        return self

    def __set_name__(self, owner: type, name: str) -> None:
        setattr(owner, name, self.func)
        if "__cached_method_definitions__" not in owner.__dict__:
            owner.__cached_method_definitions__ = []
        owner.__cached_method_definitions__.append((name, self.fragments, self.options))


def covers_with_cache(
    cls: Optional[type] = None,
    *,
    version: Optional[str] = None,
    digest_source: bool = False,
    scope_name: Optional[str] = None,
    registry: Optional[InvalidationRegistry] = None,
):
    """Class decorator adding cached operations and write invalidation.

    Args:
        version: Content version tag folded into every key of the model
        digest_source: Without ``version``, use the MD5 of the model's
            source file as the version
        scope_name: Scope name (defaults to the class name)
        registry: Registry to use (defaults to the process-wide one)
    """
    def decorate(model: type) -> type:
        reg = registry or get_registry()
        metadata = SQLAlchemyMetadataSource(model, version=version, digest_source=digest_source)
        scope = reg.register_scope(scope_name or model.__name__, version=version, metadata=metadata)

        model.__cache_scope__ = scope
        model.__cache_registry__ = reg
        for attr in ("define_cached", "class_define_cached", "flush_cache", "cache_keys", "__cache_key__"):
            setattr(model, attr, _MODEL_HELPERS[attr])
        model.cover = _hybrid(_cover)

        for name, fragments, options in model.__dict__.get("__cached_method_definitions__", ()):
            model.define_cached(name, *fragments, **options)

        install_write_hooks()
        logger.debug("Model {} covered by cache scope '{}'", model.__name__, scope.name)
        return model

    if cls is not None:
        return decorate(cls)
    return decorate


def _define_cached(cls, method: str, *fragments: Any, compute: Optional[Callable] = None, **options):
    """Wrap instance method ``method`` (or ``compute(record, *args)``) as ``cached_<method>``."""
    if compute is None:
        compute = _method_caller(cls, method)
    operation = define_cached_operation(
        cls.__cache_scope__.name,
        method,
        compute,
        registry=cls.__cache_registry__,
        extra_key_fragments=fragments,
        bound="instance",
        **options,
    )
    setattr(cls, operation.call_site, operation)
    return operation


def _class_define_cached(cls, method: str, *fragments: Any, compute: Optional[Callable] = None, **options):
    """Wrap class-level ``method`` (or ``compute(cls, *args)``) as ``cached_<method>``."""
    if compute is None:
        compute = _method_caller(cls, method)
    operation = define_cached_operation(
        cls.__cache_scope__.name,
        method,
        compute,
        registry=cls.__cache_registry__,
        extra_key_fragments=fragments,
        bound="class",
        **options,
    )
    setattr(cls, operation.call_site, operation)
    return operation


def _method_caller(cls, method: str) -> Callable:
    if not callable(getattr(cls, method, None)):
        raise CacheConfigurationError(
            f"{cls.__name__}.{method} is not a method; pass compute= to define it"
        )

    def call(receiver, *args, **kwargs):
        return getattr(receiver, method)(*args, **kwargs)

    call.__name__ = method
    return call


def _flush_cache(cls) -> int:
    return cls.__cache_registry__.flush(cls.__cache_scope__)


def _cache_keys(cls) -> list:
    return cls.__cache_scope__.keys()


def _cache_key(self) -> str:
    scope = type(self).__cache_scope__
    identity = scope.instance_identity(self)
    if identity is None:
        # unsaved records have no stable identity; never share a key
        return f"{scope.name}/transient-{id(self)}"
    return f"{scope.name}/{identity}"


def _cover(receiver, compute: Callable[[], Any], *fragments: Any, **options) -> Any:
    """Cache an ad-hoc block, keyed by the calling method's name."""
    model = receiver if isinstance(receiver, type) else type(receiver)
    options.setdefault("call_site", caller_name(skip=1))
    return cover(
        model.__cache_scope__,
        compute,
        *fragments,
        receiver=None if isinstance(receiver, type) else receiver,
        registry=model.__cache_registry__,
        **options,
    )


_MODEL_HELPERS = {
    "define_cached": classmethod(_define_cached),
    "class_define_cached": classmethod(_class_define_cached),
    "flush_cache": classmethod(_flush_cache),
    "cache_keys": classmethod(_cache_keys),
    "__cache_key__": _cache_key,
}
