from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from estatecrm.ai.client import get_chat_client
from estatecrm.core.auth import issue_session_token
from estatecrm.core.config import get_settings
from estatecrm.core.database import Base, get_db
from estatecrm.crm.api import get_current_user
from estatecrm.crm.service import ActorUser
from estatecrm.main import app
from estatecrm.middleware.rate_limit import reset_rate_limiter
from estatecrm.objects.storage import LocalObjectStore, ObjectNotFoundError


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("OBJECT_STORAGE_DIR", str(tmp_path))
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def actor() -> dict[str, str]:
    return {"user_id": "agent-1"}


@pytest.fixture()
def client(db_session: Session, actor: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=actor["user_id"],
            roles={"agent"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_chat_client] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def _upload(client: TestClient, content: bytes = b"\x89PNG-data") -> str:
    reserved = client.post("/api/objects/upload")
    assert reserved.status_code == 200
    upload_url = reserved.json()["upload_url"]
    assert upload_url.startswith("/objects/uploads/")

    stored = client.put(upload_url, content=content, headers={"Content-Type": "image/png"})
    assert stored.status_code == 200
    assert stored.json() == {"object_path": upload_url, "size": len(content), "content_type": "image/png"}
    return upload_url


def _create_property(client: TestClient) -> dict:
    response = client.post(
        "/api/properties",
        json={
            "title": "Harbor Loft",
            "address": "8 Pier Rd",
            "city": "Seattle",
            "state": "WA",
            "property_type": "apartment",
            "price": "420000",
        },
    )
    assert response.status_code == 201
    return response.json()


def test_owner_can_download_private_object(client: TestClient) -> None:
    object_path = _upload(client)

    response = client.get(object_path, headers=_bearer("agent-1"))
    assert response.status_code == 200
    assert response.content == b"\x89PNG-data"
    assert response.headers["content-type"] == "image/png"
    assert response.headers["cache-control"] == "private, max-age=3600"


def test_private_object_requires_owner(client: TestClient) -> None:
    object_path = _upload(client)

    anonymous = client.get(object_path)
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "unauthorized"

    stranger = client.get(object_path, headers=_bearer("agent-2"))
    assert stranger.status_code == 403
    assert stranger.json()["code"] == "object_forbidden"

    cookie = f"{get_settings().session_cookie_name}={issue_session_token('agent-1')}"
    with_cookie = client.get(object_path, headers={"Cookie": cookie})
    assert with_cookie.status_code == 200


def test_missing_object_is_not_found(client: TestClient) -> None:
    response = client.get("/objects/uploads/does-not-exist", headers=_bearer("agent-1"))
    assert response.status_code == 404
    assert response.json()["code"] == "object_not_found"


def test_public_objects_are_searched_in_public_dirs(client: TestClient, tmp_path: Path) -> None:
    public_dir = tmp_path / "public" / "brand"
    public_dir.mkdir(parents=True)
    (public_dir / "logo.svg").write_text("<svg/>", encoding="utf-8")

    response = client.get("/public-objects/brand/logo.svg")
    assert response.status_code == 200
    assert response.text == "<svg/>"
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert response.headers["cache-control"] == "public, max-age=3600"

    missing = client.get("/public-objects/brand/missing.svg")
    assert missing.status_code == 404


def test_attach_image_makes_object_public_and_updates_property(client: TestClient) -> None:
    object_path = _upload(client)
    prop = _create_property(client)

    response = client.put(
        "/api/property-images",
        json={"property_image_url": f"http://testserver{object_path}?sig=abc", "property_id": prop["id"]},
    )
    assert response.status_code == 200
    assert response.json() == {"object_path": object_path}

    updated = client.get(f"/api/properties/{prop['id']}").json()
    assert updated["images"] == [object_path]

    anonymous = client.get(object_path)
    assert anonymous.status_code == 200
    assert anonymous.headers["cache-control"] == "public, max-age=3600"


def test_attach_image_rejects_foreign_object(client: TestClient, actor: dict[str, str]) -> None:
    object_path = _upload(client)

    actor["user_id"] = "agent-2"
    response = client.put("/api/property-images", json={"property_image_url": object_path})
    assert response.status_code == 403
    assert response.json()["code"] == "object_forbidden"


def test_attach_image_unknown_property(client: TestClient) -> None:
    object_path = _upload(client)
    response = client.put(
        "/api/property-images",
        json={"property_image_url": object_path, "property_id": "00000000-0000-4000-8000-000000000000"},
    )
    assert response.status_code == 404
    assert response.json()["code"] == "property_image_failed"


def test_store_refuses_paths_outside_root(tmp_path: Path) -> None:
    store = LocalObjectStore(root=tmp_path, private_dir="private", public_dirs=["public"])
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")

    with pytest.raises(ObjectNotFoundError):
        store.get("/objects/../secret.txt")
    with pytest.raises(ObjectNotFoundError):
        store.search_public("../secret.txt")
    with pytest.raises(ObjectNotFoundError):
        store.get("/elsewhere/file.txt")


def test_store_hides_acl_sidecars(tmp_path: Path) -> None:
    store = LocalObjectStore(root=tmp_path, private_dir="private", public_dirs=["public"])
    store.write("/objects/uploads/a", b"data", owner="agent-1")

    with pytest.raises(ObjectNotFoundError):
        store.get("/objects/uploads/a.acl.json")
    assert store.get("/objects/uploads/a").acl.owner == "agent-1"


def test_normalize_object_path(tmp_path: Path) -> None:
    store = LocalObjectStore(root=tmp_path, private_dir="private", public_dirs=["public"])
    assert store.normalize_object_path("https://cdn.example.com/private/uploads/x?token=1") == "/objects/uploads/x"
    assert store.normalize_object_path("/objects/uploads/y") == "/objects/uploads/y"
    assert store.normalize_object_path("relative/name.png") == "relative/name.png"
