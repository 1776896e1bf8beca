"""SQLAlchemy wiring for the upload lifecycle.

``install_upload_listeners`` attaches an ``UploadListener`` to a
``sessionmaker`` (or ``Session`` class).  Each session transaction gets its
own ``UploadCoordinator``, kept in ``Session.info`` until the outermost
transaction ends:

==========================  ==========================================
event                       action
==========================  ==========================================
before_flush                assign names for ``session.new``/``dirty``,
                            queue files of ``session.deleted``
before_insert (mapper)      assign names for the row being inserted
after_insert/after_update   move staged bytes into place
after_commit                delete queued files (outermost transaction)
                            or fold a released savepoint into its parent
after_rollback              forget queued files, move bytes back
                            and remember the restored objects
after_transaction_end       a transaction closed without committing is
                            treated as rolled back; restored objects
                            are flagged dirty again so a retried
                            commit stores their uploads
==========================  ==========================================

Mapper events are registered once for all mappers and only act on
carriers whose session has a coordinator.
"""
from __future__ import annotations

import logging
from itertools import chain
from typing import Any, Callable, Optional

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper, Session, object_session
from sqlalchemy.orm.attributes import flag_dirty

from .carrier import UploadCarrier
from .core.config import settings
from .lifecycle import UploadCoordinator, new_token

logger = logging.getLogger("fileupload.listeners")

COORDINATOR_KEY = "fileupload.coordinator"
RESTORED_KEY = "fileupload.restored"

_SESSION_EVENTS = ("before_flush", "after_commit", "after_rollback", "after_transaction_end")


def _enclosing_scope(transaction) -> Optional[Any]:
    """The nearest SAVEPOINT above ``transaction``, or None for the outermost one."""
    parent = transaction.parent
    while parent is not None and not parent.nested:
        parent = parent.parent
    return parent


def coordinator_for(session: Session) -> Optional[UploadCoordinator]:
    return session.info.get(COORDINATOR_KEY)


class UploadListener:
    """Drives an UploadCoordinator per transaction from session events."""

    def __init__(self, base_path: str, token_factory: Callable[[], str] = new_token):
        self.base_path = base_path
        self.token_factory = token_factory

    def attach(self, target) -> "UploadListener":
        for name in _SESSION_EVENTS:
            event.listen(target, name, getattr(self, name))
        return self

    def detach(self, target) -> None:
        for name in _SESSION_EVENTS:
            event.remove(target, name, getattr(self, name))

    def before_flush(self, session, flush_context, instances):
        coordinator = coordinator_for(session)
        if coordinator is None:
            coordinator = UploadCoordinator(self.base_path, self.token_factory)
            session.info[COORDINATOR_KEY] = coordinator
        scope = session.get_nested_transaction()
        coordinator.prepare_all(list(chain(session.new, session.dirty)), scope)
        for obj in session.deleted:
            if isinstance(obj, UploadCarrier):
                coordinator.schedule_removal(obj, scope)

    def after_commit(self, session):
        coordinator = coordinator_for(session)
        if coordinator is None:
            return
        savepoint = session.get_nested_transaction()
        if savepoint is not None:
            coordinator.release(savepoint, _enclosing_scope(savepoint))
            return
        del session.info[COORDINATOR_KEY]
        failures = coordinator.commit()
        if failures:
            logger.warning("%d superseded file(s) could not be deleted", len(failures))

    def after_rollback(self, session):
        coordinator = coordinator_for(session)
        if coordinator is None:
            return
        savepoint = session.get_nested_transaction()
        _remember_restored(session, coordinator.rollback(savepoint))
        if savepoint is None:
            del session.info[COORDINATOR_KEY]

    def after_transaction_end(self, session, transaction):
        if transaction.parent is None:
            coordinator = session.info.pop(COORDINATOR_KEY, None)
            if coordinator is not None:
                logger.info("Transaction ended without commit; discarding upload work")
                _remember_restored(session, coordinator.rollback())
        elif not transaction.nested:
            return
        # the rollback expired these rows after their uploads were put back
        _flag_restored(session)


def _remember_restored(session, carriers) -> None:
    if carriers:
        session.info.setdefault(RESTORED_KEY, []).extend(carriers)


def _flag_restored(session) -> None:
    restored = session.info.pop(RESTORED_KEY, None)
    if not restored:
        return
    waiting = []
    for carrier in restored:
        if object_session(carrier) is not session or not carrier.get_file_uploads():
            continue
        if any(carrier is other for other in waiting):
            continue
        waiting.append(carrier)
        if sa_inspect(carrier).persistent:
            flag_dirty(carrier)
    if waiting:
        session.info[RESTORED_KEY] = waiting


def _carrier_context(target):
    if not isinstance(target, UploadCarrier):
        return None, None
    session = object_session(target)
    if session is None:
        return None, None
    return coordinator_for(session), session.get_nested_transaction()


@event.listens_for(Mapper, "before_insert")
def _prepare_inserted_carrier(mapper, connection, target):
    coordinator, scope = _carrier_context(target)
    if coordinator is not None:
        coordinator.prepare_one(target, scope)


@event.listens_for(Mapper, "after_insert")
@event.listens_for(Mapper, "after_update")
def _materialize_written_carrier(mapper, connection, target):
    coordinator, scope = _carrier_context(target)
    if coordinator is not None:
        coordinator.materialize(target, scope)


def install_upload_listeners(session_factory, base_path: Optional[str] = None,
                             token_factory: Callable[[], str] = new_token) -> Optional[UploadListener]:
    """Attach upload handling to ``session_factory``.

    ``base_path`` defaults to ``settings.FILE_UPLOAD_PATH``.  Without a base
    path nothing is registered and None is returned.
    """
    if base_path is None:
        base_path = settings.FILE_UPLOAD_PATH
    if not base_path:
        logger.info("FILE_UPLOAD_PATH is not set; upload handling is disabled")
        return None
    listener = UploadListener(base_path, token_factory).attach(session_factory)
    logger.info("Upload handling enabled, storing files under %s", base_path)
    return listener
