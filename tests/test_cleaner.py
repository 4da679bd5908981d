import time

from sqlmodel import Session, select

from datadrop import cleaner, deletion, models


def _upload(client, headers, **body):
    payload = {"fileName": "archive.zip", "fileType": "application/zip", "fileSize": 100}
    payload.update(body)
    return client.post("/api/upload", json=payload, headers=headers).json()["fileId"]


def _set(client, file_id, **fields):
    with Session(client.engine) as session:
        record = session.get(models.FileRecord, file_id)
        for name, value in fields.items():
            setattr(record, name, value)
        session.add(record)
        session.commit()


def _ids(client):
    with Session(client.engine) as session:
        return {record.id for record in session.exec(select(models.FileRecord)).all()}


def test_sweep_reclaims_only_expired_private_files(client, auth_headers):
    headers = auth_headers(roles=["fileUser", "cdnUser"])
    expired = _upload(client, headers)
    alive = _upload(client, headers)
    cdn = _upload(client, headers, uploadType="cdn")
    _set(client, expired, ttl=int(time.time()) - 60)

    coordinator = deletion.DeletionCoordinator(client.storage, client.invalidator)
    assert cleaner.reclaim_expired_files(client.engine, coordinator) == 1

    assert _ids(client) == {alive, cdn}
    assert client.storage.deleted == [("private-bucket", f"uploads/{expired}/archive.zip")]


def test_sweep_purges_expired_cli_requests(client):
    now = int(time.time())
    with Session(client.engine) as session:
        session.add(models.CliAuthRequest(id="cli_old", display_code="OLD", ttl=now - 1))
        session.add(models.CliAuthRequest(id="cli_new", display_code="NEW", ttl=now + 600))
        session.commit()

    coordinator = deletion.DeletionCoordinator(client.storage, client.invalidator)
    cleaner.reclaim_expired_files(client.engine, coordinator, now=now)

    with Session(client.engine) as session:
        remaining = [request.id for request in session.exec(select(models.CliAuthRequest)).all()]
    assert remaining == ["cli_new"]


def test_stale_multipart_sessions_are_aborted(client, auth_headers):
    headers = auth_headers(roles=["fileUser", "fileSize_20"])
    stale = _upload(client, headers, fileSize=6 * 1024 * 1024 * 1024)
    fresh = _upload(client, headers, fileSize=6 * 1024 * 1024 * 1024)
    _set(client, stale, created_at="2020-01-01T00:00:00.000Z")

    assert cleaner.reap_stale_multipart(client.engine, client.storage, max_age_hours=24) == 1

    with Session(client.engine) as session:
        stale_record = session.get(models.FileRecord, stale)
        fresh_record = session.get(models.FileRecord, fresh)
    assert stale_record.status == "aborted"
    assert stale_record.upload_id is None
    assert fresh_record.status == "pending"
    assert len(client.storage.aborted) == 1


def test_failing_record_does_not_stall_the_sweep(client, auth_headers):
    headers = auth_headers()
    stuck = _upload(client, headers, fileName="stuck.zip")
    others = [_upload(client, headers, fileName=f"other-{n}.zip") for n in range(2)]
    now = int(time.time())
    for file_id in [stuck, *others]:
        _set(client, file_id, ttl=now - 60)
    with Session(client.engine) as session:
        session.add(models.CliAuthRequest(id="cli_old", display_code="OLD", ttl=now - 1))
        session.commit()
    client.storage.fail_keys.add(f"uploads/{stuck}/stuck.zip")

    coordinator = deletion.DeletionCoordinator(client.storage, client.invalidator)
    assert cleaner.reclaim_expired_files(client.engine, coordinator, now=now) == 2

    assert _ids(client) == {stuck}
    assert sorted(key for _, key in client.storage.deleted) == sorted(
        f"uploads/{file_id}/other-{n}.zip" for n, file_id in enumerate(others)
    )
    with Session(client.engine) as session:
        assert session.exec(select(models.CliAuthRequest)).all() == []

    # Retried on the next sweep once storage recovers
    client.storage.fail_keys.clear()
    assert cleaner.reclaim_expired_files(client.engine, coordinator, now=now) == 1
    assert _ids(client) == set()


def test_expired_multipart_upload_is_aborted_by_the_sweep(client, auth_headers):
    headers = auth_headers(roles=["fileUser", "fileSize_20"])
    file_id = _upload(client, headers, fileSize=6 * 1024 * 1024 * 1024)
    _set(client, file_id, ttl=int(time.time()) - 60)

    coordinator = deletion.DeletionCoordinator(client.storage, client.invalidator)
    assert cleaner.reclaim_expired_files(client.engine, coordinator) == 1
    assert client.storage.aborted == [("private-bucket", f"uploads/{file_id}/archive.zip", "upload-1")]
