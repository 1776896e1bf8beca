"""Upload lifecycle coordination.

The pieces in here decide what happens to uploaded files around a save:

* ``ReferenceAssigner`` gives each pending upload a fresh stored file name
  before the row is written and queues the file it replaces in the
  ``DeletionLedger``.
* ``Materializer`` moves the staged bytes into place once the row write
  has been accepted, and can move them back if the transaction is rolled
  back.
* ``Committer`` removes the queued files once the transaction has
  committed, along with the staged bytes of deleted rows that never got
  stored.

``UploadCoordinator`` bundles one of each for a single transaction.  Nothing
here knows about SQLAlchemy sessions; ``app.listeners`` drives these calls
from session and mapper events.

Entries may be tagged with a ``scope`` (the SAVEPOINT they were produced
in, ``None`` for the outermost transaction) so that rolling back a
savepoint only forgets what that savepoint did.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Optional, Set

from .carrier import PendingUpload, UploadCarrier
from .exceptions import DeletionFailure, FileUploadError, MaterializationFailure
from .storage import PathNamer, delete_file, move_file

logger = logging.getLogger("fileupload.lifecycle")

MAX_NAME_ATTEMPTS = 8


def new_token() -> str:
    """128-bit uuid4 rendered as 32 hex characters (122 random bits)."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class DeletionCandidate:
    path: str
    scope: Any = None


class DeletionLedger:
    """Files to remove once the owning transaction has committed."""

    def __init__(self) -> None:
        self._entries: List[DeletionCandidate] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths())

    def paths(self) -> List[str]:
        return [entry.path for entry in self._entries]

    def add(self, path: str, scope: Any = None) -> None:
        self._entries.append(DeletionCandidate(path, scope))

    def promote(self, scope: Any, parent: Any) -> None:
        """Hand entries of a released savepoint to its enclosing scope."""
        self._entries = [
            DeletionCandidate(entry.path, parent) if entry.scope is scope else entry
            for entry in self._entries
        ]

    def discard(self, scope: Any = None) -> List[str]:
        """Forget entries without touching the filesystem.

        With no scope every entry is dropped.
        """
        if scope is None:
            dropped, self._entries = self._entries, []
        else:
            dropped = [entry for entry in self._entries if entry.scope is scope]
            self._entries = [entry for entry in self._entries if entry.scope is not scope]
        return [entry.path for entry in dropped]

    def drain(self) -> List[str]:
        """Empty the ledger and return its paths in order, without repeats."""
        entries, self._entries = self._entries, []
        return list(dict.fromkeys(entry.path for entry in entries))


class ReferenceAssigner:
    """Assigns stored file names to pending uploads before the row is written."""

    def __init__(self, namer: PathNamer, ledger: DeletionLedger,
                 token_factory: Callable[[], str] = new_token,
                 abandoned: Optional[DeletionLedger] = None):
        self.namer = namer
        self.ledger = ledger
        self.token_factory = token_factory
        # staged bytes of deleted carriers, dropped once the delete commits
        self.abandoned = abandoned if abandoned is not None else DeletionLedger()
        self._assigned: Set[str] = set()

    def prepare_all(self, carriers: Iterable[Any], scope: Any = None) -> int:
        """Prepare every carrier in ``carriers`` that has uploads pending.

        Objects that are not carriers are ignored.  Returns the number of
        fields that received a new name.
        """
        assigned = 0
        for carrier in carriers:
            if isinstance(carrier, UploadCarrier) and carrier.get_file_uploads():
                assigned += self.prepare_one(carrier, scope)
        return assigned

    def prepare_one(self, carrier: UploadCarrier, scope: Any = None) -> int:
        carrier.set_file_upload_path(self.namer.base_path)
        type_name = type(carrier).__name__
        assigned = 0
        for field_name, upload in carrier.get_file_uploads().items():
            previous = carrier.get_stored_file_name(field_name)
            if upload.assigned_name is not None and previous == upload.assigned_name:
                continue
            if previous:
                superseded = self.namer.full_path(type_name, field_name, previous)
                self.ledger.add(superseded, scope)
                logger.debug("Queued %s for deletion (replaced on %s.%s)",
                             superseded, type_name, field_name)
            name = self._unique_name(upload)
            carrier.set_stored_file_name(field_name, name)
            upload.assigned_name = name
            assigned += 1
        return assigned

    def schedule_removal(self, carrier: UploadCarrier, scope: Any = None) -> int:
        """Queue every stored file of a carrier whose row is being deleted."""
        type_name = type(carrier).__name__
        queued = 0
        for field_name in carrier.upload_field_names():
            stored_name = carrier.get_stored_file_name(field_name)
            if stored_name:
                self.ledger.add(self.namer.full_path(type_name, field_name, stored_name), scope)
                queued += 1
        for upload in carrier.get_file_uploads().values():
            self.abandoned.add(upload.source, scope)
        return queued

    def _unique_name(self, upload: PendingUpload) -> str:
        extension = upload.guess_extension()
        for _ in range(MAX_NAME_ATTEMPTS):
            name = f"{self.token_factory()}.{extension}"
            if name not in self._assigned:
                self._assigned.add(name)
                return name
            logger.warning("Stored name %s already assigned in this transaction, regenerating", name)
        raise FileUploadError(
            f"could not generate a unique file name after {MAX_NAME_ATTEMPTS} attempts"
        )


@dataclass
class Materialization:
    carrier: UploadCarrier
    field_name: str
    upload: PendingUpload
    target: str
    scope: Any = None


class Materializer:
    """Moves staged upload bytes to their assigned location."""

    def __init__(self, namer: PathNamer):
        self.namer = namer
        self.materialized: List[Materialization] = []

    def materialize(self, carrier: UploadCarrier, scope: Any = None) -> List[str]:
        type_name = type(carrier).__name__
        written = []
        for field_name, upload in carrier.get_file_uploads().items():
            stored_name = carrier.get_stored_file_name(field_name)
            if not stored_name:
                raise MaterializationFailure(
                    f"{type_name}.{field_name} has a pending upload but no stored file name",
                    source=upload.source,
                )
            target = self.namer.full_path(type_name, field_name, stored_name)
            try:
                move_file(upload.source, target)
            except OSError as exc:
                raise MaterializationFailure(
                    f"could not store {type_name}.{field_name} upload at {target}: {exc}",
                    source=upload.source,
                    target=target,
                ) from exc
            carrier.set_pending_upload(field_name, None)
            self.materialized.append(Materialization(carrier, field_name, upload, target, scope))
            logger.info("Stored %s.%s upload at %s", type_name, field_name, target)
            written.append(target)
        return written

    def promote(self, scope: Any, parent: Any) -> None:
        for record in self.materialized:
            if record.scope is scope:
                record.scope = parent

    def forget(self) -> None:
        self.materialized = []

    def revert(self, scope: Any = None) -> List[UploadCarrier]:
        """Move bytes stored within ``scope`` back to staging.

        The pending upload is put back on its carrier so the save can be
        retried.  Runs during rollback, so failures are logged rather than
        raised.  Returns the carriers whose upload was put back.
        """
        undo = [r for r in self.materialized if scope is None or r.scope is scope]
        self.materialized = [r for r in self.materialized if not (scope is None or r.scope is scope)]
        restored: List[UploadCarrier] = []
        for record in reversed(undo):
            try:
                move_file(record.target, record.upload.source)
            except OSError as exc:
                logger.error("Could not return %s to staging after rollback: %s",
                             record.target, exc)
                continue
            record.carrier.set_pending_upload(record.field_name, record.upload)
            logger.warning("Rolled back stored upload %s", record.target)
            if not any(carrier is record.carrier for carrier in restored):
                restored.append(record.carrier)
        return restored


class Committer:
    """Deletes the files queued in a ledger once the transaction has committed."""

    def __init__(self, namer: PathNamer, ledger: DeletionLedger,
                 abandoned: Optional[DeletionLedger] = None):
        self.namer = namer
        self.ledger = ledger
        self.abandoned = abandoned if abandoned is not None else DeletionLedger()

    def commit(self) -> List[DeletionFailure]:
        failures = []
        for path in self.ledger.drain():
            if not self.namer.contains(path):
                failure = DeletionFailure(path, f"outside upload directory {self.namer.base_path}")
                logger.warning("Refusing to delete %s: %s", path, failure.reason)
                failures.append(failure)
                continue
            try:
                removed = delete_file(path)
            except OSError as exc:
                failure = DeletionFailure(path, str(exc))
                logger.error("%s", failure)
                failures.append(failure)
                continue
            if removed:
                logger.info("Deleted superseded file %s", path)
            else:
                logger.debug("Superseded file %s was already gone", path)
        for path in self.abandoned.drain():
            try:
                delete_file(path)
            except OSError as exc:
                failure = DeletionFailure(path, str(exc))
                logger.error("%s", failure)
                failures.append(failure)
            else:
                logger.debug("Dropped staged upload %s of a deleted row", path)
        return failures


class UploadCoordinator:
    """The upload pipeline for one transaction."""

    def __init__(self, base_path: str, token_factory: Callable[[], str] = new_token):
        self.namer = PathNamer(base_path)
        self.ledger = DeletionLedger()
        self.abandoned = DeletionLedger()
        self.assigner = ReferenceAssigner(self.namer, self.ledger, token_factory, self.abandoned)
        self.materializer = Materializer(self.namer)
        self.committer = Committer(self.namer, self.ledger, self.abandoned)

    def prepare_all(self, carriers: Iterable[Any], scope: Any = None) -> int:
        return self.assigner.prepare_all(carriers, scope)

    def prepare_one(self, carrier: UploadCarrier, scope: Any = None) -> int:
        return self.assigner.prepare_one(carrier, scope)

    def schedule_removal(self, carrier: UploadCarrier, scope: Any = None) -> int:
        return self.assigner.schedule_removal(carrier, scope)

    def materialize(self, carrier: UploadCarrier, scope: Any = None) -> List[str]:
        return self.materializer.materialize(carrier, scope)

    def commit(self) -> List[DeletionFailure]:
        failures = self.committer.commit()
        self.materializer.forget()
        return failures

    def release(self, scope: Any, parent: Optional[Any] = None) -> None:
        """A savepoint was released; its work now belongs to ``parent``."""
        self.ledger.promote(scope, parent)
        self.abandoned.promote(scope, parent)
        self.materializer.promote(scope, parent)

    def rollback(self, scope: Any = None) -> List[UploadCarrier]:
        """Undo the work of ``scope`` and return the carriers whose pending
        upload was restored."""
        dropped = self.ledger.discard(scope)
        self.abandoned.discard(scope)
        restored = self.materializer.revert(scope)
        if dropped or restored:
            logger.info("Rollback kept %d superseded file(s) and returned uploads of %d object(s) to staging",
                        len(dropped), len(restored))
        return restored
