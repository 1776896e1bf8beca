import itertools
import os

import pytest
from sqlalchemy.orm import sessionmaker

from fileupload_backend.app import models  # noqa: F401  (registers tables)
from fileupload_backend.app.carrier import PendingUpload
from fileupload_backend.app.database import Base, make_engine
from fileupload_backend.app.listeners import install_upload_listeners


@pytest.fixture
def upload_root(tmp_path):
    return str(tmp_path / "uploads")


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return str(path)


@pytest.fixture
def stage(staging_dir):
    """Write bytes into the staging directory and wrap them in a PendingUpload."""
    counter = itertools.count()

    def _stage(content: bytes, extension=None, **kwargs) -> PendingUpload:
        path = os.path.join(staging_dir, f"staged-{next(counter)}")
        with open(path, "wb") as f:
            f.write(content)
        return PendingUpload(source=path, extension=extension, **kwargs)

    return _stage


def _make_engine(path):
    engine = make_engine(f"sqlite:///{path}")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def engine(tmp_path):
    engine = _make_engine(tmp_path / "test.db")
    yield engine
    engine.dispose()


@pytest.fixture
def other_engine(tmp_path):
    engine = _make_engine(tmp_path / "other.db")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, upload_root):
    factory = sessionmaker(autoflush=False, bind=engine)
    install_upload_listeners(factory, upload_root)
    return factory
