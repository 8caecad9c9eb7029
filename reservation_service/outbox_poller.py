import asyncio
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from sqlalchemy.orm import Session
from sqlalchemy.sql import select

from .database import SessionLocal
from .models import OutboxEvent
from .config import settings

logger = logging.getLogger("outbox_poller")

BATCH_SIZE = 100


async def connect_producer(retry_delay: int = 5, max_retries: int = 5) -> Optional[AIOKafkaProducer]:
    """
    Starts a Kafka producer, retrying the initial connection.
    Returns None if Kafka stays unreachable.
    """
    for attempt in range(1, max_retries + 1):
        producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
        try:
            await producer.start()
            logger.info(f"Outbox poller connected to Kafka on attempt {attempt}.")
            return producer
        except KafkaConnectionError as e:
            logger.warning(
                f"Kafka connection attempt {attempt}/{max_retries} failed: {e}. Retrying in {retry_delay} seconds...")
            await producer.stop()
            if attempt < max_retries:
                await asyncio.sleep(retry_delay)
    logger.error("Outbox poller failed to connect to Kafka after multiple retries.")
    return None


def _partition_key(event: OutboxEvent) -> Optional[bytes]:
    # Events for one booking share a partition so consumers see them in order.
    try:
        booking_id = json.loads(event.payload).get("booking_id")
    except (ValueError, AttributeError):
        return None
    return booking_id.encode("utf-8") if booking_id else None


async def relay_pending_events(db: Session, producer: AIOKafkaProducer) -> int:
    """
    Sends one batch of pending outbox events, oldest first, and deletes the
    ones Kafka acknowledged. Unsent events stay for the next round.
    """
    stmt = select(OutboxEvent).where(
        OutboxEvent.status == "PENDING"
    ).order_by(OutboxEvent.id).limit(BATCH_SIZE).with_for_update()

    pending_events = db.execute(stmt).scalars().all()
    if not pending_events:
        return 0

    logger.info(f"Relaying {len(pending_events)} outbox events.")
    events_processed = 0
    for event in pending_events:
        try:
            await producer.send_and_wait(
                topic=event.topic,
                value=event.payload.encode("utf-8"),
                key=_partition_key(event),
            )
            db.delete(event)
            events_processed += 1
        except Exception as e:
            logger.error(f"Kafka rejected outbox event {event.id} ({event.topic}): {e}")
            # Keep per-booking order: stop at the first failure, retry next loop
            break

    db.commit()
    if events_processed > 0:
        logger.info(f"Relayed {events_processed} outbox events to Kafka.")
    return events_processed


async def run_outbox_poller(poll_interval: int = 5, retry_delay: int = 5, max_retries: int = 5):
    """
    Relays booking, payout and notification events from the outbox to Kafka
    until cancelled.
    """
    logger.info("Outbox poller starting.")
    producer = await connect_producer(retry_delay=retry_delay, max_retries=max_retries)
    if producer is None:
        return

    try:
        while True:
            db: Session = SessionLocal()
            try:
                await relay_pending_events(db, producer)
            except Exception as e:
                logger.error(f"Outbox relay round failed: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
    finally:
        logger.info("Stopping Kafka producer...")
        await producer.stop()
        logger.info("Outbox poller shut down.")
