"""Upload carrier contract.

A carrier is any model that stores uploaded files by name.  Each
upload-capable attribute is declared with an ``UploadField`` next to the
string column that holds the stored file name:

    class Document(UploadCarrier, Base):
        attachment = Column(String(255), nullable=True)
        attachment_upload = UploadField("attachment")

Assigning a ``PendingUpload`` to ``attachment_upload`` queues the staged
bytes; the lifecycle listeners give it a name, move it into place and clear
the pending value again.
"""
from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm.attributes import flag_dirty

from .exceptions import ContractViolation

DEFAULT_EXTENSION = "bin"


@dataclass
class PendingUpload:
    """Staged, not yet stored upload bytes."""

    source: str
    extension: Optional[str] = None
    content_type: Optional[str] = None
    original_filename: Optional[str] = None
    # stored file name handed out by the assigner for this upload
    assigned_name: Optional[str] = field(default=None, compare=False)

    def guess_extension(self) -> str:
        """Pick the stored file suffix, without the leading dot."""
        if self.extension:
            return self.extension.lstrip(".").lower()
        if self.content_type:
            guessed = mimetypes.guess_extension(self.content_type.split(";")[0].strip())
            if guessed:
                return guessed.lstrip(".").lower()
        if self.original_filename:
            _, ext = os.path.splitext(self.original_filename)
            if ext:
                return ext.lstrip(".").lower()
        return DEFAULT_EXTENSION


class UploadField:
    """Descriptor holding the pending upload for one stored-name attribute."""

    def __init__(self, stored_attr: str):
        self.field_name = stored_attr
        self.attr_name: Optional[str] = None

    def __set_name__(self, owner, name):
        self.attr_name = name

    @property
    def _key(self) -> str:
        return f"_pending_{self.field_name}"

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return instance.__dict__.get(self._key)

    def __set__(self, instance, upload: Optional[PendingUpload]):
        instance.__dict__[self._key] = upload
        if upload is not None:
            # a clean persistent row would otherwise be skipped by the flush
            state = sa_inspect(instance, raiseerr=False)
            if state is not None and state.persistent:
                flag_dirty(instance)


class UploadCarrier:
    """Mixin exposing the upload capability of a model."""

    __upload_fields__: Dict[str, UploadField] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        fields: Dict[str, UploadField] = {}
        for klass in reversed(cls.__mro__):
            for value in vars(klass).values():
                if isinstance(value, UploadField):
                    fields[value.field_name] = value
        for field_name, upload_field in fields.items():
            if not hasattr(cls, field_name):
                raise ContractViolation(
                    f"{cls.__name__}.{upload_field.attr_name} stores its name in "
                    f"'{field_name}', which {cls.__name__} does not define"
                )
        cls.__upload_fields__ = fields

    @classmethod
    def upload_field_names(cls):
        return list(cls.__upload_fields__)

    def _upload_field(self, field_name: str) -> UploadField:
        try:
            return type(self).__upload_fields__[field_name]
        except KeyError:
            raise ContractViolation(
                f"{type(self).__name__} has no upload field '{field_name}'"
            ) from None

    def set_file_upload_path(self, path: str) -> None:
        self._file_upload_path = path

    def get_file_upload_path(self) -> Optional[str]:
        return getattr(self, "_file_upload_path", None)

    def get_file_uploads(self) -> Dict[str, PendingUpload]:
        """Return field name -> pending upload for every field with one queued."""
        uploads = {}
        for field_name, upload_field in type(self).__upload_fields__.items():
            upload = upload_field.__get__(self)
            if upload is not None:
                uploads[field_name] = upload
        return uploads

    def get_stored_file_name(self, field_name: str) -> Optional[str]:
        return getattr(self, self._upload_field(field_name).field_name)

    def set_stored_file_name(self, field_name: str, name: Optional[str]) -> None:
        setattr(self, self._upload_field(field_name).field_name, name)

    def get_pending_upload(self, field_name: str) -> Optional[PendingUpload]:
        return self._upload_field(field_name).__get__(self)

    def set_pending_upload(self, field_name: str, upload: Optional[PendingUpload]) -> None:
        self._upload_field(field_name).__set__(self, upload)

    def stored_file_path(self, field_name: str, base_path: Optional[str] = None) -> Optional[str]:
        """Full path of the stored file for ``field_name``, or None if unset."""
        from .storage import PathNamer

        stored_name = self.get_stored_file_name(field_name)
        base_path = base_path or self.get_file_upload_path()
        if not stored_name or not base_path:
            return None
        return PathNamer(base_path).full_path(type(self).__name__, field_name, stored_name)
