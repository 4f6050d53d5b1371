from __future__ import annotations

import os
import tempfile
from typing import Generator, Any

# 사용자 DB/원격 설정을 건드리지 않도록 import 전에 환경 고정
_fd, _APP_DB = tempfile.mkstemp(prefix="budgetbook_app_", suffix=".sqlite3")
os.close(_fd)
os.environ["BUDGETBOOK_DATABASE_URL"] = f"sqlite:///{_APP_DB}"
os.environ["BUDGETBOOK_SUPABASE_URL"] = ""
os.environ["BUDGETBOOK_SUPABASE_ANON_KEY"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from budgetbook.core.database import Base, get_db
from budgetbook.core.deps import get_coordinator
from budgetbook.main import app
from budgetbook import models  # noqa: F401


@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    fd, path = tempfile.mkstemp(prefix="budgetbook_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    for p in (path, _APP_DB):
        try:
            os.remove(p)
        except OSError:
            pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(engine, session_factory) -> Generator[Any, Any, Any]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
        # 테이블 데이터 정리 (SQLAlchemy 2.x 스타일)
        with engine.begin() as conn:
            for tbl in Base.metadata.tables.values():
                conn.execute(tbl.delete())


@pytest.fixture(autouse=True)
def override_dependency(db_session):
    # FastAPI DI override
    def _get_db_override():
        yield db_session

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_coordinator] = lambda: None
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
