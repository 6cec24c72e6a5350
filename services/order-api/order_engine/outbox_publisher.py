import json
import time

import pika
import pika.exceptions
import structlog
from sqlalchemy.exc import OperationalError

from . import config, models
from .database import SessionLocal, utcnow
from .utils.logging import configure_logging

logger = structlog.get_logger(__name__)


def connect_rabbitmq_with_retry(max_wait_sec: int = 60):
    attempt = 0
    while True:
        try:
            params = pika.URLParameters(config.RABBITMQ_URL)
            # connection resilience
            params.heartbeat = 30
            params.blocked_connection_timeout = 300
            params.connection_attempts = 5
            params.retry_delay = 2

            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="direct", durable=True)
            return conn, ch
        except pika.exceptions.AMQPError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("rabbitmq connect failed", error=str(e), retry_in=sleep)
            time.sleep(sleep)


def wait_for_db(factory=SessionLocal, max_wait_sec: int = 60):
    attempt = 0
    while True:
        try:
            with factory() as db:
                db.query(models.EventOutbox.id).limit(1).all()
            return
        except OperationalError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("db connect failed", error=str(e), retry_in=sleep)
            time.sleep(sleep)


def fetch_new(db, limit: int):
    return (
        db.query(models.EventOutbox)
        .filter(models.EventOutbox.status == "NEW")
        .order_by(models.EventOutbox.id)
        .with_for_update(skip_locked=True)
        .limit(limit)
        .all()
    )


def publish_event(channel, row):
    channel.basic_publish(
        exchange=config.EVENTS_EXCHANGE,
        routing_key=row.event_type,
        body=json.dumps(row.payload).encode("utf-8"),
        properties=pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            message_id=str(row.event_id),
        ),
    )


def publish_batch(channel, rows, reconnect=None):
    """Publish ``rows`` in id order, marking each one PUBLISHED as it goes.

    A failed publish is retried once on a fresh channel from ``reconnect``;
    rows that still fail stay NEW for the next poll. Returns the channel to
    keep using and the number of rows published.
    """
    published = 0
    for r in rows:
        for attempt in range(2):  # first try + 1 retry
            try:
                publish_event(channel, r)
                r.status = "PUBLISHED"
                r.published_at = utcnow()
                published += 1
                logger.info("event published", event_type=r.event_type, outbox_id=r.id)
                break
            except pika.exceptions.AMQPError as e:
                logger.warning("publish failed", outbox_id=r.id, attempt=attempt + 1, error=str(e))
                if reconnect is None:
                    break
                channel = reconnect()
        else:
            logger.warning("giving up for now; will retry on next loop", outbox_id=r.id)
    return channel, published


def relay_once(db, channel, reconnect=None, batch_size: int = None):
    rows = fetch_new(db, batch_size or config.OUTBOX_BATCH_SIZE)
    if not rows:
        return channel, 0
    channel, published = publish_batch(channel, rows, reconnect)
    db.commit()
    return channel, published


def loop(factory=SessionLocal):
    conn, channel = connect_rabbitmq_with_retry()
    logger.info("connected to rabbitmq", exchange=config.EVENTS_EXCHANGE)
    wait_for_db(factory)
    logger.info("connected to db")

    def reconnect():
        nonlocal conn
        for closable in (channel, conn):
            try:
                closable.close()
            except pika.exceptions.AMQPError:
                pass
        conn, ch = connect_rabbitmq_with_retry()
        return ch

    while True:
        try:
            with factory() as db:
                channel, _ = relay_once(db, channel, reconnect)
        except (OperationalError, pika.exceptions.AMQPError) as e:
            logger.error("relay loop error", error=str(e))
            channel = reconnect()
        time.sleep(config.OUTBOX_POLL_SEC)


if __name__ == "__main__":
    configure_logging()
    loop()
