"""SQLAlchemy write hooks.

Covered model scopes are flushed after the transaction that wrote them
commits:

- after_flush collects the scopes of new, dirty and deleted covered
  instances into ``session.info``
- after_commit calls ``on_write`` once per collected scope
- a rollback of the outermost transaction discards the collected scopes
"""

import threading
from itertools import chain

from sqlalchemy import event
from sqlalchemy.orm import Session

from modelcache.logging_config import get_logger

logger = get_logger(name=__name__)

PENDING_SCOPES_KEY = "modelcache.pending_scopes"

_installed = False
_install_lock = threading.Lock()


def install_write_hooks() -> None:
    """Register the Session listeners (once per process)."""
    global _installed
    with _install_lock:
        if _installed:
            return
        event.listen(Session, "after_flush", _collect_written_scopes)
        event.listen(Session, "after_commit", _flush_written_scopes)
        event.listen(Session, "after_soft_rollback", _discard_written_scopes)
        _installed = True
    logger.debug("Installed modelcache write hooks on sqlalchemy Session")


def uninstall_write_hooks() -> None:
    """Remove the Session listeners."""
    global _installed
    with _install_lock:
        if not _installed:
            return
        event.remove(Session, "after_flush", _collect_written_scopes)
        event.remove(Session, "after_commit", _flush_written_scopes)
        event.remove(Session, "after_soft_rollback", _discard_written_scopes)
        _installed = False


def pending_scopes(session: Session) -> list:
    """Scopes written in the session's current transaction."""
    return [scope for _, scope in session.info.get(PENDING_SCOPES_KEY, {}).values()]


def _collect_written_scopes(session: Session, flush_context) -> None:
    # new/dirty/deleted still hold their pre-flush state here
    dirty = (obj for obj in session.dirty if session.is_modified(obj))
    for instance in chain(session.new, dirty, session.deleted):
        model = type(instance)
        scope = getattr(model, "__cache_scope__", None)
        if scope is None:
            continue
        registry = model.__cache_registry__
        pending = session.info.setdefault(PENDING_SCOPES_KEY, {})
        pending[(id(registry), scope.name)] = (registry, scope)


def _flush_written_scopes(session: Session) -> None:
    pending = session.info.pop(PENDING_SCOPES_KEY, None)
    if not pending:
        return
    for registry, scope in pending.values():
        registry.on_write(scope)


def _discard_written_scopes(session: Session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        session.info.pop(PENDING_SCOPES_KEY, None)
