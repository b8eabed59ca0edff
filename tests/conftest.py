import base64
import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# 1x1 PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.fixture()
def upload_dir(tmp_path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture()
def app_client(tmp_path, upload_dir, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("UPLOAD_DIR", str(upload_dir))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.delenv("DB_BACKEND", raising=False)

    import app.database as database_module
    import app.main as main_module

    importlib.reload(database_module)
    importlib.reload(main_module)

    with TestClient(main_module.app) as client:
        yield client


def register_and_login(client: TestClient, email: str = "consultant@example.com", name: str = "Ana Consultant") -> dict:
    registered = client.post("/api/auth/register", json={"email": email, "password": "secret123", "name": name})
    assert registered.status_code == 201, registered.text
    logged_in = client.post("/api/auth/login", json={"email": email, "password": "secret123"})
    assert logged_in.status_code == 200, logged_in.text
    return {"Authorization": f"Bearer {logged_in.json()['token']}"}


@pytest.fixture()
def auth_headers(app_client: TestClient) -> dict:
    return register_and_login(app_client)


@pytest.fixture()
def company(app_client: TestClient, auth_headers: dict) -> dict:
    created = app_client.post(
        "/api/companies",
        headers=auth_headers,
        json={"name": "Acme Industrial", "cuit": "30-12345678-9", "address": "Av. Siempre Viva 742", "industry": "Manufacturing"},
    )
    assert created.status_code == 201, created.text
    return created.json()
