import os
import re
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from fileupload_backend.app.core.config import settings
from fileupload_backend.app.exceptions import MaterializationFailure
from fileupload_backend.app.listeners import (
    COORDINATOR_KEY,
    UploadListener,
    coordinator_for,
    install_upload_listeners,
)
from fileupload_backend.app.models import ChatMessage, Collection, Document, User


def stored_path(upload_root, type_dir, field_name, name):
    return os.path.join(upload_root, type_dir, field_name, name)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def document_with_file(session, upload_root):
    """A committed document whose attachment abc123.pdf exists on disk."""
    doc = Document(title="Contract", attachment="abc123.pdf")
    session.add(doc)
    session.commit()
    path = Path(stored_path(upload_root, "document", "attachment", "abc123.pdf"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"%PDF old")
    return doc, path


def test_new_document_attachment_is_stored_on_commit(session, upload_root, stage):
    doc = Document(title="Manual")
    upload = doc.attachment_upload = stage(b"%PDF-1.7 manual", "pdf")
    session.add(doc)

    session.commit()

    assert re.fullmatch(r"[0-9a-f]{32}\.pdf", doc.attachment)
    path = stored_path(upload_root, "document", "attachment", doc.attachment)
    assert Path(path).read_bytes() == b"%PDF-1.7 manual"
    assert not os.path.exists(upload.source)
    assert doc.attachment_upload is None
    assert COORDINATOR_KEY not in session.info


def test_stored_name_is_persisted(session_factory, session, stage):
    doc = Document(title="Manual")
    doc.attachment_upload = stage(b"body", "txt")
    session.add(doc)
    session.commit()
    doc_id, name = doc.id, doc.attachment

    other = session_factory()
    try:
        assert other.get(Document, doc_id).attachment == name
    finally:
        other.close()


def test_replacing_an_attachment_deletes_the_old_file(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    doc.attachment_upload = stage(b"\x89PNG new", "png")

    session.commit()

    assert doc.attachment.endswith(".png")
    assert not old_path.exists()
    new_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    assert Path(new_path).read_bytes() == b"\x89PNG new"


def test_many_carriers_in_one_transaction(session, upload_root, stage):
    user = User(email="ada@example.com")
    user.avatar_upload = stage(b"avatar", "jpg")
    docs = [Document(title=f"doc {i}") for i in range(3)]
    for i, doc in enumerate(docs):
        doc.attachment_upload = stage(f"doc {i}".encode(), "txt")
        doc.owner = user
    session.add(user)

    session.commit()

    assert Path(stored_path(upload_root, "user", "avatar", user.avatar)).read_bytes() == b"avatar"
    for i, doc in enumerate(docs):
        assert Path(stored_path(upload_root, "document", "attachment", doc.attachment)).read_bytes() == f"doc {i}".encode()
    assert len({doc.attachment for doc in docs}) == 3


def test_same_field_on_different_types_uses_separate_directories(session, upload_root, stage):
    doc = Document(title="Shared")
    doc.attachment_upload = stage(b"doc", "txt")
    message = ChatMessage(body="see attached", document=doc)
    message.attachment_upload = stage(b"msg", "txt")
    session.add(doc)

    session.commit()

    assert os.listdir(os.path.join(upload_root, "document", "attachment")) == [doc.attachment]
    assert os.listdir(os.path.join(upload_root, "chatmessage", "attachment")) == [message.attachment]


def test_rollback_after_flush_restores_previous_state(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    upload = doc.attachment_upload = stage(b"replacement", "png")
    session.flush()
    new_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    assert os.path.exists(new_path)
    assert len(coordinator_for(session).ledger) == 1

    session.rollback()

    assert not os.path.exists(new_path)
    assert old_path.exists()
    assert Path(upload.source).read_bytes() == b"replacement"
    assert doc.attachment == "abc123.pdf"
    assert COORDINATOR_KEY not in session.info


def test_commit_after_rollback_stores_the_restored_upload(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    upload = doc.attachment_upload = stage(b"\x89PNG retry", "png")
    session.flush()
    session.rollback()
    assert doc in session.dirty
    assert doc.attachment_upload is upload

    session.commit()

    assert doc.attachment != "abc123.pdf"
    assert doc.attachment.endswith(".png")
    assert not old_path.exists()
    assert Path(stored_path(upload_root, "document", "attachment", doc.attachment)).read_bytes() == b"\x89PNG retry"
    assert not os.path.exists(upload.source)


def test_closing_without_commit_discards_upload_work(session_factory, upload_root, stage):
    session = session_factory()
    doc = Document(title="Draft")
    upload = doc.attachment_upload = stage(b"draft", "txt")
    session.add(doc)
    session.flush()
    new_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    assert os.path.exists(new_path)

    session.close()

    assert not os.path.exists(new_path)
    assert os.path.exists(upload.source)
    assert COORDINATOR_KEY not in session.info


def test_failed_materialization_aborts_the_commit(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    upload = doc.attachment_upload = stage(b"vanishing", "png")
    os.remove(upload.source)

    with pytest.raises(MaterializationFailure):
        session.commit()
    session.rollback()

    assert old_path.exists()
    assert os.listdir(old_path.parent) == ["abc123.pdf"]
    assert doc.attachment == "abc123.pdf"
    assert COORDINATOR_KEY not in session.info


def test_failed_insert_leaves_no_files(session, upload_root, stage):
    first = Document(title="ok")
    first.attachment_upload = stage(b"first", "txt")
    second = Document(title="broken")
    second.attachment_upload = stage(b"second", "txt")
    os.remove(second.attachment_upload.source)
    session.add_all([first, second])

    with pytest.raises(MaterializationFailure):
        session.commit()
    session.rollback()

    directory = os.path.join(upload_root, "document", "attachment")
    assert not os.path.exists(directory) or os.listdir(directory) == []
    assert os.path.exists(first.attachment_upload.source)


def test_deleting_a_document_removes_its_files(session, upload_root, stage):
    doc = Document(title="Temporary")
    doc.attachment_upload = stage(b"temp", "txt")
    message = ChatMessage(body="note", document=doc)
    message.attachment_upload = stage(b"note", "txt")
    session.add(doc)
    session.commit()
    doc_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    message_path = stored_path(upload_root, "chatmessage", "attachment", message.attachment)
    assert os.path.exists(doc_path) and os.path.exists(message_path)

    session.delete(doc)
    session.commit()

    assert not os.path.exists(doc_path)
    assert not os.path.exists(message_path)


def test_commit_without_uploads_leaves_files_alone(session, document_with_file):
    doc, old_path = document_with_file
    doc.title = "Renamed"

    session.commit()

    assert doc.attachment == "abc123.pdf"
    assert old_path.exists()


def test_sessions_keep_separate_ledgers(session, other_engine, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    doc.attachment_upload = stage(b"never committed", "png")
    session.flush()

    other_factory = sessionmaker(autoflush=False, bind=other_engine)
    install_upload_listeners(other_factory, upload_root)
    other = other_factory()
    try:
        unrelated = Document(title="Elsewhere")
        unrelated.attachment_upload = stage(b"other", "txt")
        other.add(unrelated)
        other.commit()
    finally:
        other.close()

    assert old_path.exists()
    session.rollback()
    assert old_path.exists()


def test_sessions_without_listeners_ignore_uploads(engine, stage):
    plain = sessionmaker(autoflush=False, bind=engine)()
    doc = Document(title="Untracked")
    upload = doc.attachment_upload = stage(b"staged", "txt")
    plain.add(doc)
    plain.commit()

    assert doc.attachment is None
    assert doc.attachment_upload is upload
    assert os.path.exists(upload.source)
    plain.close()


def test_install_without_base_path_is_inert(engine, monkeypatch):
    factory = sessionmaker(bind=engine)
    monkeypatch.setattr(settings, "FILE_UPLOAD_PATH", None)

    assert install_upload_listeners(factory, "") is None
    assert install_upload_listeners(factory) is None


def test_install_defaults_to_configured_path(engine, upload_root, monkeypatch):
    factory = sessionmaker(bind=engine)
    monkeypatch.setattr(settings, "FILE_UPLOAD_PATH", upload_root)

    listener = install_upload_listeners(factory)

    assert isinstance(listener, UploadListener)
    assert listener.base_path == upload_root
    listener.detach(factory)


def test_detached_listener_stops_handling_uploads(engine, upload_root, stage):
    factory = sessionmaker(autoflush=False, bind=engine)
    listener = install_upload_listeners(factory, upload_root)
    listener.detach(factory)

    session = factory()
    doc = Document(title="Detached")
    doc.attachment_upload = stage(b"x", "txt")
    session.add(doc)
    session.commit()

    assert doc.attachment is None
    session.close()


def test_savepoint_rollback_keeps_the_outer_state(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    nested = session.begin_nested()
    upload = doc.attachment_upload = stage(b"inner", "png")
    session.flush()
    new_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    assert os.path.exists(new_path)

    nested.rollback()

    assert not os.path.exists(new_path)
    assert old_path.exists()
    assert len(coordinator_for(session).ledger) == 0
    assert doc.attachment == "abc123.pdf"
    assert doc.attachment_upload is upload

    # the restored upload is stored by the outer commit
    session.commit()

    assert not old_path.exists()
    assert Path(stored_path(upload_root, "document", "attachment", doc.attachment)).read_bytes() == b"inner"


def test_released_savepoint_is_committed_with_the_outer_transaction(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    nested = session.begin_nested()
    doc.attachment_upload = stage(b"released", "png")
    session.flush()
    nested.commit()

    assert old_path.exists()
    assert coordinator_for(session).ledger.paths() == [str(old_path)]

    session.commit()

    assert not old_path.exists()
    assert Path(stored_path(upload_root, "document", "attachment", doc.attachment)).read_bytes() == b"released"


def test_released_inner_savepoint_rolls_back_with_its_parent(session, upload_root, stage, document_with_file):
    doc, old_path = document_with_file
    outer = session.begin_nested()
    inner = session.begin_nested()
    doc.attachment_upload = stage(b"inner", "png")
    session.flush()
    new_path = stored_path(upload_root, "document", "attachment", doc.attachment)
    inner.commit()

    outer.rollback()

    assert not os.path.exists(new_path)
    assert old_path.exists()
    assert len(coordinator_for(session).ledger) == 0
    session.rollback()
    assert old_path.exists()


def test_non_carriers_in_the_same_flush_are_left_alone(session, upload_root, stage):
    user = User(email="grace@example.com")
    collection = Collection(name="Reports", owner=user)
    doc = Document(title="Q3", owner=user, collection=collection)
    doc.attachment_upload = stage(b"q3 figures", "pdf")
    session.add(user)

    session.commit()

    assert doc.collection_id == collection.id
    assert user.avatar is None
    assert os.listdir(upload_root) == ["document"]
    assert os.listdir(os.path.join(upload_root, "document", "attachment")) == [doc.attachment]


def test_deleting_a_row_with_a_pending_upload_drops_the_staged_bytes(session, stage, document_with_file):
    doc, old_path = document_with_file
    upload = doc.attachment_upload = stage(b"never stored", "png")

    session.delete(doc)
    session.commit()

    assert not old_path.exists()
    assert not os.path.exists(upload.source)
    assert os.listdir(old_path.parent) == []
