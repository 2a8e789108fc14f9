import os
import tempfile
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# The app module builds its engine at import time; keep it off the working tree.
_TMP = tempfile.mkdtemp(prefix="vericall-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/vericall.db")
os.environ["PIPELINE_MODE"] = "inline"
os.environ.pop("WITNESS_ARCHIVE_BUCKET", None)
os.environ.pop("API_KEY", None)

from vericall.db import Base  # noqa: E402
from vericall import models  # noqa: E402,F401


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()
