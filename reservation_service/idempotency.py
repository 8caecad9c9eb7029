"""
Idempotency store for booking creation.

A record is keyed by (idempotency key, guest id) and goes
in_flight -> completed, or in_flight -> failed -> in_flight (retry).
The in_flight marker is committed before the ledger is touched, so a crash
mid-request leaves a visible marker instead of a silent duplicate.
"""
import datetime
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .errors import IdempotencyKeyReused, RequestInProgress

logger = logging.getLogger("booking_service")


@dataclass(frozen=True)
class Fresh:
    """No usable prior attempt: the caller owns the key and must complete() or fail() it."""


@dataclass(frozen=True)
class Replay:
    booking_id: Optional[str]
    response: dict


Outcome = Union[Fresh, Replay]


def fingerprint_request(payload: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the request, minus the key itself."""
    body = {k: v for k, v in payload.items() if k != "idempotency_key"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _record_filter(key: str, guest_id: int):
    return (
        models.IdempotencyRecord.idempotency_key == key,
        models.IdempotencyRecord.guest_id == guest_id,
    )


def begin_or_replay(
        db: Session,
        key: str,
        guest_id: int,
        fingerprint: str,
        now: Optional[datetime.datetime] = None,
) -> Outcome:
    now = now or models.utcnow()
    ttl = datetime.timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)

    record = db.get(models.IdempotencyRecord, (key, guest_id))
    if record is not None and record.expires_at <= now:
        logger.info(f"Idempotency key {key!r} for guest {guest_id} expired; starting over.")
        db.delete(record)
        db.commit()
        record = None

    if record is None:
        db.add(models.IdempotencyRecord(
            idempotency_key=key,
            guest_id=guest_id,
            fingerprint=fingerprint,
            state=models.IdempotencyState.IN_FLIGHT,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
        ))
        try:
            db.commit()
            return Fresh()
        except IntegrityError:
            # A concurrent request with the same key got there first.
            db.rollback()
            record = db.get(models.IdempotencyRecord, (key, guest_id))
            if record is None:
                raise RequestInProgress("A request with this idempotency key is being processed.")

    if record.fingerprint != fingerprint:
        logger.warning(f"Idempotency key {key!r} reused by guest {guest_id} with a different payload.")
        raise IdempotencyKeyReused("Idempotency key was already used with a different request payload.")

    if record.state == models.IdempotencyState.COMPLETED:
        logger.info(f"Replaying stored response for idempotency key {key!r}.")
        return Replay(booking_id=record.booking_id, response=json.loads(record.response))

    in_flight_timeout = datetime.timedelta(seconds=settings.IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS)
    abandoned = (
        record.state == models.IdempotencyState.IN_FLIGHT
        and record.updated_at <= now - in_flight_timeout
    )
    if record.state == models.IdempotencyState.FAILED or abandoned:
        previous_state = record.state
        # Compare-and-swap so only one retry takes the key over.
        result = db.execute(
            update(models.IdempotencyRecord)
            .where(
                *_record_filter(key, guest_id),
                models.IdempotencyRecord.state == record.state,
                models.IdempotencyRecord.updated_at == record.updated_at,
            )
            .values(
                state=models.IdempotencyState.IN_FLIGHT,
                updated_at=now,
                expires_at=now + ttl,
            )
            .execution_options(synchronize_session=False)
        )
        taken_over = result.rowcount == 1
        db.commit()
        if taken_over:
            logger.info(f"Taking over idempotency key {key!r} from a {previous_state.value} attempt.")
            return Fresh()

    raise RequestInProgress("A request with this idempotency key is being processed.")


def complete(db: Session, key: str, guest_id: int, booking_id: str, response: dict) -> None:
    """Stores the outcome. Completed records are never touched again."""
    db.execute(
        update(models.IdempotencyRecord)
        .where(
            *_record_filter(key, guest_id),
            models.IdempotencyRecord.state == models.IdempotencyState.IN_FLIGHT,
        )
        .values(
            state=models.IdempotencyState.COMPLETED,
            booking_id=booking_id,
            response=json.dumps(response, default=str),
            updated_at=models.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def fail(db: Session, key: str, guest_id: int) -> None:
    """Marks the attempt failed-but-retryable with the same key and payload."""
    db.execute(
        update(models.IdempotencyRecord)
        .where(
            *_record_filter(key, guest_id),
            models.IdempotencyRecord.state == models.IdempotencyState.IN_FLIGHT,
        )
        .values(state=models.IdempotencyState.FAILED, updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def purge_expired(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """
    Deletes records past their retention window.
    Note: Does NOT commit. The calling scheduler is responsible for the commit.
    """
    now = now or models.utcnow()
    result = db.execute(
        delete(models.IdempotencyRecord)
        .where(models.IdempotencyRecord.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
