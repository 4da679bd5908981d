from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from datadrop.config import (
    CLEANER_INTERVAL_MINUTES,
    DELETION_POLL_SECONDS,
    STALE_MULTIPART_HOURS,
)
from datadrop.core.exceptions import StorageError
from datadrop.core.expiry import iso_from_ts, now_ts
from datadrop.db import ensure_connection
from datadrop.deletion import DeletionCoordinator, ExpiredDeletion, ExplicitDeletion, FileSnapshot
from datadrop.models import STATUS_ABORTED, STATUS_PENDING, UPLOAD_TYPE_PRIVATE, CliAuthRequest, FileRecord

logger = logging.getLogger("datadrop.cleaner")

DELETION_BATCH_SIZE = 10


def process_deletion_queue(engine, deletion_queue, coordinator: DeletionCoordinator) -> list[dict]:
    """Drain one batch of deletion triggers.

    Every received message is either acked after its teardown succeeds or
    released back to the queue. Failures do not stop the rest of the batch;
    the first one is re-raised once the batch is settled, so delivery stays
    at-least-once.
    """
    results = []
    first_error = None
    for handle, message in deletion_queue.receive(DELETION_BATCH_SIZE):
        try:
            trigger = ExplicitDeletion.from_message(message)
        except KeyError:
            logger.error("event=deletion_message_invalid message=%s", message)
            deletion_queue.ack(handle)
            continue
        try:
            with Session(engine) as session:
                results.append(coordinator.handle(session, trigger))
        except Exception as exc:
            logger.error("event=deletion_failed file_id=%s error=%s", trigger.file_id, exc)
            deletion_queue.release(handle)
            if first_error is None:
                first_error = exc
            continue
        deletion_queue.ack(handle)
    if first_error is not None:
        raise first_error
    return results


def reclaim_expired_files(engine, coordinator: DeletionCoordinator, now: int | None = None) -> int:
    """Stand-in for the metadata store's native TTL.

    Each expired private record is handed to the coordinator as a before-image,
    then removed. A record whose teardown fails stays for the next sweep and
    the rest of the sweep carries on.
    """
    now = now_ts() if now is None else now
    with Session(engine) as session:
        expired = session.exec(
            select(FileRecord).where(
                FileRecord.upload_type == UPLOAD_TYPE_PRIVATE,
                FileRecord.ttl.is_not(None),
                FileRecord.ttl < now,
            )
        ).all()
        snapshots = [FileSnapshot.from_record(record) for record in expired]

        reclaimed = 0
        for snapshot in snapshots:
            try:
                coordinator.handle(session, ExpiredDeletion(before_image=snapshot))
            except StorageError as exc:
                logger.error("event=ttl_deletion_failed file_id=%s code=%s error=%s", snapshot.id, exc.code, exc)
                continue
            session.execute(delete(FileRecord).where(FileRecord.id == snapshot.id))
            session.commit()
            reclaimed += 1

        purged = session.execute(delete(CliAuthRequest).where(CliAuthRequest.ttl < now)).rowcount
        session.commit()

    if reclaimed or purged or len(snapshots) > reclaimed:
        logger.info(
            "event=ttl_sweep reclaimed=%s retained=%s cli_requests_purged=%s",
            reclaimed,
            len(snapshots) - reclaimed,
            purged,
        )
    return reclaimed


def reap_stale_multipart(engine, storage, max_age_hours: int = STALE_MULTIPART_HOURS, now: int | None = None) -> int:
    """Abort multipart sessions left pending for longer than ``max_age_hours``."""
    now = now_ts() if now is None else now
    cutoff = iso_from_ts(now - max_age_hours * 3600)
    with Session(engine) as session:
        stale = session.exec(
            select(FileRecord).where(
                FileRecord.status == STATUS_PENDING,
                FileRecord.upload_id.is_not(None),
                FileRecord.created_at < cutoff,
            )
        ).all()
        for record in stale:
            storage.abort_multipart_upload(record.bucket, record.s3_key, record.upload_id)
            record.status = STATUS_ABORTED
            record.clear_multipart()
            session.add(record)
            session.commit()
            logger.info("event=stale_multipart_aborted file_id=%s created_at=%s", record.id, record.created_at)
        return len(stale)


def start_cleaner(engine, logger, storage, invalidator, deletion_queue):
    scheduler = BackgroundScheduler(timezone=timezone.utc)
    coordinator = DeletionCoordinator(storage, invalidator)
    try:
        deletion_queue.requeue_inflight()
    except StorageError as e:
        logger.error("Could not requeue in-flight deletion triggers: %s", str(e))

    def _deletion_job():
        try:
            results = process_deletion_queue(engine, deletion_queue, coordinator)
            if results:
                logger.info("event=deletion_batch processed=%s", len(results))
        except OperationalError as e:
            logger.error("Database connection error in deletion job: %s", str(e))
        except Exception as e:
            # The message was released; the next poll retries it
            logger.error("Unexpected error in deletion job: %s", str(e))

    def _ttl_job():
        if not ensure_connection():
            logger.warning("event=ttl_sweep_skipped reason=database_unreachable")
            return
        try:
            reclaim_expired_files(engine, coordinator)
        except OperationalError as e:
            logger.error("Database connection error in cleanup job: %s", str(e))
        except Exception as e:
            logger.error("Unexpected error in cleanup job: %s", str(e))

    def _multipart_job():
        try:
            reaped = reap_stale_multipart(engine, storage)
            if reaped:
                logger.info("event=stale_multipart_reaped count=%s", reaped)
        except Exception as e:
            logger.error("Unexpected error in multipart reaper: %s", str(e))

    now = datetime.now(timezone.utc)
    scheduler.add_job(_deletion_job, "interval", seconds=DELETION_POLL_SECONDS, next_run_time=now)
    scheduler.add_job(_ttl_job, "interval", minutes=CLEANER_INTERVAL_MINUTES, next_run_time=now)
    scheduler.add_job(_multipart_job, "interval", hours=1, next_run_time=now + timedelta(minutes=1))
    scheduler.start()
    logger.info("event=cleaner_started poll_seconds=%s sweep_minutes=%s", DELETION_POLL_SECONDS, CLEANER_INTERVAL_MINUTES)
    return scheduler
