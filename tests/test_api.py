import json
from urllib.parse import urlparse

from fastapi.testclient import TestClient

from conftest import PNG_BYTES, register_and_login


def _create_report(client: TestClient, headers: dict, company_id: str, with_image: bool = True) -> dict:
    observations = [
        {"observation": "Missing guard on hydraulic press", "riskLevel": "low"},
        {"observation": "Exposed wiring near the loading dock", "riskLevel": "high"},
    ]
    files = [("images", ("press.png", PNG_BYTES, "image/png"))] if with_image else None
    created = client.post(
        "/api/reports",
        headers=headers,
        data={
            "companyId": company_id,
            "date": "2025-05-27",
            "description": "Quarterly inspection of the main plant floor.",
            "visitConfirmation": "true",
            "observations": json.dumps(observations),
        },
        files=files,
    )
    assert created.status_code == 201, created.text
    return created.json()


def _local_path(upload_dir, url: str):
    user_id, name = urlparse(url).path.split("/")[-2:]
    return upload_dir / user_id / name


def test_root_banner(app_client: TestClient) -> None:
    root = app_client.get("/")
    assert root.status_code == 200
    assert root.json()["message"] == "Health & Safety Reports API"


def test_register_login_refresh_and_me(app_client: TestClient) -> None:
    registered = app_client.post(
        "/api/auth/register",
        json={"email": "Ana@Example.com", "password": "secret123", "name": "Ana"},
    )
    assert registered.status_code == 201
    assert registered.json()["message"] == "User registered successfully"
    assert registered.json()["user"]["email"] == "ana@example.com"

    duplicate = app_client.post(
        "/api/auth/register",
        json={"email": "ana@example.com", "password": "secret123", "name": "Ana"},
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Email already registered"

    bad_login = app_client.post("/api/auth/login", json={"email": "ana@example.com", "password": "wrong-pass"})
    assert bad_login.status_code == 401
    assert bad_login.json()["detail"] == "Invalid credentials"

    login = app_client.post("/api/auth/login", json={"email": "ana@example.com", "password": "secret123"})
    assert login.status_code == 200
    body = login.json()
    assert body["message"] == "Login successful"
    assert body["token"] and body["refreshToken"]

    me = app_client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json() == {"id": body["user"]["id"], "email": "ana@example.com", "name": "Ana"}

    refreshed = app_client.post("/api/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["user"]["id"] == body["user"]["id"]

    # an access token is not accepted as a refresh token
    wrong_type = app_client.post("/api/auth/refresh", json={"refreshToken": body["token"]})
    assert wrong_type.status_code == 401


def test_auth_gate_messages(app_client: TestClient) -> None:
    missing = app_client.get("/api/companies")
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Unauthorized: No token provided"

    invalid = app_client.get("/api/reports", headers={"Authorization": "Bearer not-a-token"})
    assert invalid.status_code == 401
    assert invalid.json()["detail"] == "Unauthorized: Invalid token"


def test_register_validation_is_400(app_client: TestClient) -> None:
    short = app_client.post("/api/auth/register", json={"email": "x@example.com", "password": "123", "name": "Xavier"})
    assert short.status_code == 400
    assert "password" in short.json()["detail"]


def test_company_create_is_idempotent_on_cuit(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    other_headers = register_and_login(app_client, email="second@example.com", name="Second User")
    linked = app_client.post(
        "/api/companies",
        headers=other_headers,
        json={"name": "Some Other Name", "cuit": company["cuit"], "address": "Different street 1", "industry": "Retail"},
    )
    assert linked.status_code == 201
    assert linked.json()["id"] == company["id"]
    assert linked.json()["name"] == "Acme Industrial"

    again = app_client.post(
        "/api/companies",
        headers=other_headers,
        json={"name": "Some Other Name", "cuit": company["cuit"], "address": "Different street 1", "industry": "Retail"},
    )
    assert again.status_code == 201

    listed = app_client.get("/api/companies", headers=other_headers)
    assert [c["id"] for c in listed.json()] == [company["id"]]
    assert len(app_client.get("/api/companies", headers=auth_headers).json()) == 1


def test_company_update_and_association_removal(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    renamed = app_client.put(f"/api/companies/{company['id']}", headers=auth_headers, json={"name": "Acme Renamed", "address": ""})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Acme Renamed"
    assert renamed.json()["address"] == company["address"]

    second = app_client.post(
        "/api/companies",
        headers=auth_headers,
        json={"name": "Beta Foods", "cuit": "30-99999999-1", "address": "Ruta 8 km 50", "industry": "Food"},
    )
    clash = app_client.put(f"/api/companies/{second.json()['id']}", headers=auth_headers, json={"cuit": company["cuit"]})
    assert clash.status_code == 400
    assert clash.json()["detail"] == "A company with this CUIT already exists"

    bad_cuit = app_client.post(
        "/api/companies",
        headers=auth_headers,
        json={"name": "Gamma", "cuit": "ABC", "address": "Somewhere 123", "industry": "Energy"},
    )
    assert bad_cuit.status_code == 400

    removed = app_client.delete(f"/api/companies/{company['id']}", headers=auth_headers)
    assert removed.status_code == 200
    assert removed.json()["message"] == "Company association removed successfully"
    assert app_client.get(f"/api/companies/{company['id']}", headers=auth_headers).status_code == 404
    assert app_client.delete(f"/api/companies/{company['id']}", headers=auth_headers).status_code == 404


def test_report_round_trip(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    created = _create_report(app_client, auth_headers, company["id"])

    fetched = app_client.get(f"/api/reports/{created['id']}", headers=auth_headers)
    assert fetched.status_code == 200
    report = fetched.json()
    assert report["company"]["name"] == "Acme Industrial"
    assert report["status"] == "draft"
    assert report["visit_confirmation"] is True
    assert report["contact"] == ""

    observations = report["observations"]
    assert [o["risk_level"] for o in observations] == ["low", "high"]
    assert observations[0]["image_url"].startswith("http://testserver/uploads/")
    assert observations[1]["image_url"] is None

    image = app_client.get(urlparse(observations[0]["image_url"]).path)
    assert image.status_code == 200
    assert image.content == PNG_BYTES


def test_report_create_validation(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    base = {"companyId": company["id"], "date": "2025-05-27", "description": "Inspection of the warehouse."}

    unknown = app_client.post("/api/reports", headers=auth_headers, json={**base, "companyId": "nope"})
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "Company not found"

    short = app_client.post("/api/reports", headers=auth_headers, json={**base, "description": "short"})
    assert short.status_code == 400

    risk = app_client.post(
        "/api/reports",
        headers=auth_headers,
        json={**base, "observations": [{"observation": "Wet floor", "riskLevel": "extreme"}]},
    )
    assert risk.status_code == 400

    not_image = app_client.post(
        "/api/reports",
        headers=auth_headers,
        data={**base, "observations": json.dumps([{"observation": "Wet floor"}])},
        files=[("images", ("notes.txt", b"hello", "text/plain"))],
    )
    assert not_image.status_code == 400
    assert not_image.json()["detail"] == "Only image files are allowed"

    assert app_client.get("/api/reports", headers=auth_headers).json() == []


def test_update_echo_is_a_no_op(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"])
    echo = [
        {"id": o["id"], "observation": o["observation"], "riskLevel": o["risk_level"]}
        for o in report["observations"]
    ]
    updated = app_client.put(f"/api/reports/{report['id']}", headers=auth_headers, json={"observations": echo})
    assert updated.status_code == 200
    assert updated.json()["observations"] == report["observations"]


def test_update_rejects_delete_and_edit_of_same_observation(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"])
    target = report["observations"][0]["id"]
    conflict = app_client.put(
        f"/api/reports/{report['id']}",
        headers=auth_headers,
        json={"deletionIds": [target], "observations": [{"id": target, "observation": "x"}]},
    )
    assert conflict.status_code == 400

    unchanged = app_client.get(f"/api/reports/{report['id']}", headers=auth_headers).json()
    assert unchanged["observations"] == report["observations"]


def test_update_edit_insert_and_delete_in_one_request(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"])
    with_image, without_image = report["observations"]

    updated = app_client.put(
        f"/api/reports/{report['id']}",
        headers=auth_headers,
        data={
            "status": "finalized",
            "contact": "Plant manager",
            "observations": json.dumps(
                [
                    {"id": with_image["id"], "observation": "Guard reinstalled, signage missing", "riskLevel": "medium"},
                    {"tempId": "t1", "observation": "Blocked fire exit", "riskLevel": "high"},
                ]
            ),
            "observationsToDelete": json.dumps([without_image["id"]]),
        },
        files=[("image_new_t1", ("exit.png", PNG_BYTES, "image/png"))],
    )
    assert updated.status_code == 200, updated.text
    body = updated.json()
    assert body["status"] == "finalized"
    assert body["contact"] == "Plant manager"

    by_text = {o["observation"]: o for o in body["observations"]}
    assert set(by_text) == {"Guard reinstalled, signage missing", "Blocked fire exit"}
    edited = by_text["Guard reinstalled, signage missing"]
    assert edited["id"] == with_image["id"]
    assert edited["risk_level"] == "medium"
    # no new image and no url supplied: the stored image is kept
    assert edited["image_url"] == with_image["image_url"]
    assert by_text["Blocked fire exit"]["image_url"].startswith("http://testserver/uploads/")


def test_update_with_unknown_id_inserts(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"], with_image=False)
    updated = app_client.put(
        f"/api/reports/{report['id']}",
        headers=auth_headers,
        json={"observations": [{"id": "stale-id", "observation": "Stale edit from another tab"}]},
    )
    assert updated.status_code == 200
    observations = updated.json()["observations"]
    assert len(observations) == 3
    inserted = observations[-1]
    assert inserted["observation"] == "Stale edit from another tab"
    assert inserted["id"] != "stale-id"
    assert inserted["risk_level"] == "low"


def test_update_replaces_and_clears_images(app_client: TestClient, auth_headers: dict, company: dict, upload_dir) -> None:
    report = _create_report(app_client, auth_headers, company["id"])
    target = report["observations"][0]
    old_file = _local_path(upload_dir, target["image_url"])
    assert old_file.exists()

    replaced = app_client.put(
        f"/api/reports/{report['id']}",
        headers=auth_headers,
        data={"observations": json.dumps([{"id": target["id"], "newImage": True}])},
        files=[(f"image_{target['id']}", ("new.png", PNG_BYTES, "image/png"))],
    )
    assert replaced.status_code == 200
    new_url = replaced.json()["observations"][0]["image_url"]
    assert new_url and new_url != target["image_url"]
    assert replaced.json()["observations"][0]["observation"] == target["observation"]
    assert not old_file.exists()

    cleared = app_client.put(
        f"/api/reports/{report['id']}",
        headers=auth_headers,
        json={"observations": [{"id": target["id"], "imageUrl": None}]},
    )
    assert cleared.status_code == 200
    assert cleared.json()["observations"][0]["image_url"] is None
    assert not _local_path(upload_dir, new_url).exists()


def test_list_reports_filters(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    first = _create_report(app_client, auth_headers, company["id"], with_image=False)
    _create_report(app_client, auth_headers, company["id"], with_image=False)
    app_client.put(f"/api/reports/{first['id']}", headers=auth_headers, json={"status": "finalized"})

    everything = app_client.get("/api/reports", headers=auth_headers)
    assert len(everything.json()) == 2

    finalized = app_client.get("/api/reports", headers=auth_headers, params={"status": "finalized"})
    assert [r["id"] for r in finalized.json()] == [first["id"]]

    by_company = app_client.get("/api/reports", headers=auth_headers, params={"companyId": "other"})
    assert by_company.json() == []

    bogus = app_client.get("/api/reports", headers=auth_headers, params={"status": "archived"})
    assert bogus.status_code == 400


def test_delete_report_removes_images(app_client: TestClient, auth_headers: dict, company: dict, upload_dir) -> None:
    report = _create_report(app_client, auth_headers, company["id"])
    image_file = _local_path(upload_dir, report["observations"][0]["image_url"])
    assert image_file.exists()

    deleted = app_client.delete(f"/api/reports/{report['id']}", headers=auth_headers)
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Report deleted successfully"}
    assert not image_file.exists()
    assert app_client.get(f"/api/reports/{report['id']}", headers=auth_headers).status_code == 404
    assert app_client.delete(f"/api/reports/{report['id']}", headers=auth_headers).status_code == 404


def test_reports_are_invisible_to_other_users(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"], with_image=False)
    intruder = register_and_login(app_client, email="intruder@example.com", name="Intruder")

    assert app_client.get(f"/api/reports/{report['id']}", headers=intruder).status_code == 404
    assert app_client.put(f"/api/reports/{report['id']}", headers=intruder, json={"status": "finalized"}).status_code == 404
    assert app_client.get(f"/api/pdf/{report['id']}", headers=intruder).status_code == 404
    assert app_client.get("/api/reports", headers=intruder).json() == []


def test_pdf_export(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    report = _create_report(app_client, auth_headers, company["id"], with_image=False)
    pdf = app_client.get(f"/api/pdf/{report['id']}", headers=auth_headers)
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.headers["content-disposition"] == f'attachment; filename="report_{report["id"]}.pdf"'
    assert pdf.content.startswith(b"%PDF")

    assert app_client.get("/api/pdf/missing", headers=auth_headers).status_code == 404


def test_max_image_size(app_client: TestClient, auth_headers: dict, company: dict, upload_dir, monkeypatch) -> None:
    import app.main as main_module

    monkeypatch.setattr(main_module, "MAX_IMAGE_BYTES", 10)
    too_big = app_client.post(
        "/api/reports",
        headers=auth_headers,
        data={
            "companyId": company["id"],
            "date": "2025-05-27",
            "description": "Inspection of the warehouse.",
            "observations": json.dumps([{"observation": "Wet floor"}]),
        },
        files=[("images", ("big.png", PNG_BYTES, "image/png"))],
    )
    assert too_big.status_code == 400
    assert not upload_dir.exists() or not any(upload_dir.iterdir())


def test_foreign_image_url_is_never_deleted(app_client: TestClient, auth_headers: dict, company: dict, upload_dir) -> None:
    victim_report = _create_report(app_client, auth_headers, company["id"])
    victim_url = victim_report["observations"][0]["image_url"]
    victim_file = _local_path(upload_dir, victim_url)
    assert victim_file.exists()

    attacker = register_and_login(app_client, email="attacker@example.com", name="Attacker")
    attacker_company = app_client.post(
        "/api/companies",
        headers=attacker,
        json={"name": "Other Works", "cuit": "30-55555555-5", "address": "Calle 1", "industry": "Logistics"},
    ).json()
    borrowed = app_client.post(
        "/api/reports",
        headers=attacker,
        json={
            "companyId": attacker_company["id"],
            "date": "2025-05-27",
            "description": "Inspection pointing at someone else's photo.",
            "observations": [{"observation": "Borrowed photo", "imageUrl": victim_url}],
        },
    )
    assert borrowed.status_code == 201, borrowed.text
    borrowed_report = borrowed.json()
    assert borrowed_report["observations"][0]["image_url"] == victim_url

    # clearing the image drops only the reference
    cleared = app_client.put(
        f"/api/reports/{borrowed_report['id']}",
        headers=attacker,
        json={"observations": [{"id": borrowed_report["observations"][0]["id"], "imageUrl": None}]},
    )
    assert cleared.status_code == 200
    assert victim_file.exists()

    relinked = app_client.put(
        f"/api/reports/{borrowed_report['id']}",
        headers=attacker,
        json={"observations": [{"id": borrowed_report["observations"][0]["id"], "imageUrl": victim_url}]},
    )
    assert relinked.status_code == 200
    deleted = app_client.delete(f"/api/reports/{borrowed_report['id']}", headers=attacker)
    assert deleted.status_code == 200
    assert victim_file.exists()

    still_there = app_client.get(f"/api/reports/{victim_report['id']}", headers=auth_headers).json()
    assert still_there["observations"][0]["image_url"] == victim_url
    assert app_client.get(urlparse(victim_url).path).status_code == 200


def test_failed_upload_leaves_report_unchanged(app_client: TestClient, auth_headers: dict, company: dict) -> None:
    from app.storage import get_image_store

    report = _create_report(app_client, auth_headers, company["id"], with_image=False)

    class BrokenStore:
        def upload(self, data, filename, content_type, user_id):
            raise RuntimeError("bucket unavailable")

        def delete(self, url, user_id):
            return False

    app_client.app.dependency_overrides[get_image_store] = lambda: BrokenStore()
    try:
        failed = app_client.put(
            f"/api/reports/{report['id']}",
            headers=auth_headers,
            data={
                "status": "finalized",
                "observations": json.dumps([{"tempId": "t1", "observation": "Blocked fire exit"}]),
            },
            files=[("image_new_t1", ("exit.png", PNG_BYTES, "image/png"))],
        )
    finally:
        app_client.app.dependency_overrides.clear()
    assert failed.status_code == 500
    assert failed.json()["detail"].startswith("Error uploading image")

    current = app_client.get(f"/api/reports/{report['id']}", headers=auth_headers).json()
    assert current["status"] == "draft"
    assert current["observations"] == report["observations"]
