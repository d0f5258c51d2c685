"""SQLAlchemy integration: covered models and commit-time invalidation."""

from .hooks import install_write_hooks, pending_scopes, uninstall_write_hooks
from .models import SQLAlchemyMetadataSource, cached_method, covers_with_cache

__all__ = [
    "SQLAlchemyMetadataSource",
    "cached_method",
    "covers_with_cache",
    "install_write_hooks",
    "pending_scopes",
    "uninstall_write_hooks",
]
