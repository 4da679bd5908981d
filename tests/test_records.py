import time

from sqlmodel import Session

from datadrop import models


def _upload(client, headers, **body):
    payload = {"fileName": "notes.txt", "fileType": "text/plain", "fileSize": 64}
    payload.update(body)
    response = client.post("/api/upload", json=payload, headers=headers)
    assert response.status_code == 200
    return response.json()["fileId"]


def _update(client, file_id, **fields):
    with Session(client.engine) as session:
        record = session.get(models.FileRecord, file_id)
        for name, value in fields.items():
            setattr(record, name, value)
        session.add(record)
        session.commit()


def _record(client, file_id):
    with Session(client.engine) as session:
        return session.get(models.FileRecord, file_id)


def test_listing_shows_only_own_files_with_derived_fields(client, auth_headers):
    mine = auth_headers(user_id="alice")
    fresh = _upload(client, mine, maxDownloads=3)
    stale = _upload(client, mine, fileName="old.txt")
    _upload(client, auth_headers(user_id="bob"))
    _update(client, fresh, download_count=1)
    _update(client, stale, ttl=int(time.time()) - 10)

    response = client.get("/api/files", headers=mine)
    assert response.status_code == 200
    files = {item["id"]: item for item in response.json()["files"]}

    assert set(files) == {fresh, stale}
    assert files[fresh]["downloadsRemaining"] == 2
    assert files[fresh]["isExpired"] is False
    assert files[stale]["isExpired"] is True
    assert files[stale]["downloadsRemaining"] is None


def test_listing_reports_open_multipart_state(client, auth_headers):
    headers = auth_headers(roles=["fileUser", "fileSize_20"])
    file_id = _upload(client, headers, fileSize=6 * 1024 * 1024 * 1024)

    (item,) = client.get("/api/files", headers=headers).json()["files"]
    assert item["id"] == file_id
    assert item["multipart"]["uploadId"] == "upload-1"


def test_edit_sets_limit_and_resets_count(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers, maxDownloads=2)
    _update(client, file_id, download_count=2)

    response = client.patch(f"/api/files/{file_id}", json={"maxDownloads": 5}, headers=headers)
    assert response.status_code == 200
    assert response.json()["maxDownloads"] == 5
    assert response.json()["downloadsRemaining"] == 5
    assert _record(client, file_id).download_count == 0


def test_edit_null_limit_removes_both_fields(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers, maxDownloads=2)

    for unlimited in (None, "unlimited"):
        response = client.patch(f"/api/files/{file_id}", json={"maxDownloads": unlimited}, headers=headers)
        assert response.status_code == 200
        assert response.json()["maxDownloads"] is None
        assert response.json()["downloadsRemaining"] is None

    record = _record(client, file_id)
    assert record.max_downloads is None
    assert record.download_count is None


def test_edit_expiry_writes_ttl_and_expires_at_together(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers)

    response = client.patch(f"/api/files/{file_id}", json={"expiresInSeconds": 3600}, headers=headers)
    assert response.status_code == 200

    record = _record(client, file_id)
    assert abs(record.ttl - int(time.time()) - 3600) <= 5
    assert response.json()["expiresAt"] == record.expires_at
    assert record.max_downloads is None


def test_edit_without_changes_is_rejected(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers)

    response = client.patch(f"/api/files/{file_id}", json={}, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "No valid updates provided"


def test_edit_rejects_bad_limits(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers)

    for bad in (0, -1, "lots"):
        response = client.patch(f"/api/files/{file_id}", json={"maxDownloads": bad}, headers=headers)
        assert response.status_code == 400
        assert response.json()["field"] == "maxDownloads"


def test_cdn_files_cannot_be_edited(client, auth_headers):
    headers = auth_headers(roles=["cdnUser"])
    file_id = _upload(client, headers, uploadType="cdn")

    response = client.patch(f"/api/files/{file_id}", json={"maxDownloads": 3}, headers=headers)
    assert response.status_code == 400


def test_edit_of_foreign_file_is_404(client, auth_headers):
    file_id = _upload(client, auth_headers(user_id="alice"))
    response = client.patch(
        f"/api/files/{file_id}", json={"maxDownloads": 3}, headers=auth_headers(user_id="mallory")
    )
    assert response.status_code == 404


def test_clearing_a_partly_used_limit_reports_unlimited_in_listing(client, auth_headers):
    headers = auth_headers()
    file_id = _upload(client, headers, maxDownloads=5)
    _update(client, file_id, download_count=3)

    response = client.patch(f"/api/files/{file_id}", json={"maxDownloads": None}, headers=headers)
    assert response.status_code == 200

    record = _record(client, file_id)
    assert record.max_downloads is None
    assert record.download_count is None

    listed = {item["id"]: item for item in client.get("/api/files", headers=headers).json()["files"]}
    assert listed[file_id]["downloadsRemaining"] is None
