"""
Shared fixtures.

The Flask apps create their engine from PG_DSN when they are imported, so the
test database has to be configured here, before any test module imports them.
We don't want to use the real database, so a temporary SQLite file is used.
"""

import os
import tempfile
from pathlib import Path

_tmp_dir = tempfile.TemporaryDirectory()
os.environ["PG_DSN"] = f"sqlite+pysqlite:///{Path(_tmp_dir.name) / 'wijkagent_test.db'}"
# Never poll a real feed during tests
os.environ.pop("FEED_URL", None)

import pytest  # noqa: E402
from sqlalchemy import create_engine, delete  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.write_service.db.session import Base  # noqa: E402
from src.write_service.db.models import Crime  # noqa: E402
from src.write_service.services.crime_service import CrimeService  # noqa: E402


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def crime_service(session_factory):
    return CrimeService(session_factory)


@pytest.fixture
def clean_app_db():
    """Empty the crimes table the Flask apps use, before and after a test."""
    from src.write_service.db.session import SessionLocal

    def wipe():
        with SessionLocal() as session:
            session.execute(delete(Crime))
            session.commit()

    wipe()
    yield SessionLocal
    wipe()
