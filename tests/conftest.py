from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from almoxarifado.auth import ensure_user
from almoxarifado.db import build_engine, init_db
from almoxarifado.deps import session_dep
from almoxarifado.main import app
from almoxarifado.models import Product, User
from almoxarifado.schemas import ProductCreate
from almoxarifado.services.product_service import ProductService


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    # File-backed so that worker threads can each open their own connection.
    eng = build_engine(f"sqlite+pysqlite:///{tmp_path / 'almoxarifado_test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def admin(db) -> User:
    return ensure_user(db, "admin-test", "secret", role="admin")


@pytest.fixture
def make_product(db) -> Callable[..., Product]:
    def _make(name: str = "Widget", min_stock: int = 0, description: Optional[str] = None) -> Product:
        return ProductService(db).create(
            ProductCreate(name=name, description=description, min_stock=min_stock)
        )

    return _make


def _client_for(session_factory, username: str, password: str, role: str) -> TestClient:
    setup = session_factory()
    try:
        ensure_user(setup, username, password, role=role)
    finally:
        setup.close()

    def override_session() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[session_dep] = override_session
    client = TestClient(app)
    resp = client.post("/auth/login", data={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture
def client(session_factory) -> Generator[TestClient, None, None]:
    yield _client_for(session_factory, "api-admin", "admin-pass", "admin")
    app.dependency_overrides.clear()


@pytest.fixture
def operator_client(session_factory) -> Generator[TestClient, None, None]:
    yield _client_for(session_factory, "api-operator", "operator-pass", "operator")
    app.dependency_overrides.clear()
