from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Iterable

import pika

from .config import EVENTS_ENABLED, EVENTS_EXCHANGE, RABBITMQ_URL

logger = logging.getLogger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(RABBITMQ_URL)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def occurred_at() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def publish_event(routing_key: str, payload: dict) -> None:
    if not EVENTS_ENABLED:
        logger.debug("events disabled, dropping %s", routing_key)
        return

    connection = _connect()
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False, default=_json_default).encode("utf-8")
        ch.basic_publish(
            exchange=EVENTS_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def publish_event_safely(routing_key: str, payload: dict) -> bool:
    """Publish without letting a broker failure reach the caller."""
    try:
        publish_event(routing_key, payload)
        return True
    except Exception:
        logger.exception("failed to publish %s", routing_key)
        return False


def emit_event(event: str, payload: dict) -> bool:
    """Publish ``payload`` under ``event`` with the common envelope fields."""
    return publish_event_safely(event, {"event": event, "occurred_at": occurred_at(), **payload})


def start_consumer_in_thread(
    *,
    queue_name: str,
    binding_keys: Iterable[str],
    handler: Callable[[dict], None],
    prefetch_count: int = 10,
    daemon: bool = True,
) -> threading.Thread:
    def _run() -> None:
        while True:
            connection = None
            try:
                connection = _connect()
                ch = connection.channel()
                ch.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="topic", durable=True)

                ch.queue_declare(queue=queue_name, durable=True)
                for key in binding_keys:
                    ch.queue_bind(exchange=EVENTS_EXCHANGE, queue=queue_name, routing_key=key)

                ch.basic_qos(prefetch_count=prefetch_count)

                def _on_message(ch_, method, properties, body: bytes):
                    try:
                        payload = json.loads(body.decode("utf-8"))
                        handler(payload)
                        ch_.basic_ack(delivery_tag=method.delivery_tag)
                    except Exception:
                        logger.exception("consumer handler failed. queue=%s", queue_name)
                        # no requeue, poison messages would loop forever
                        ch_.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

                ch.basic_consume(queue=queue_name, on_message_callback=_on_message, auto_ack=False)
                ch.start_consuming()
            except Exception:
                logger.warning("consumer %s lost its broker connection, retrying", queue_name, exc_info=True)
                time.sleep(3)
            finally:
                if connection is not None and connection.is_open:
                    try:
                        connection.close()
                    except Exception:
                        logger.debug("error while closing consumer connection", exc_info=True)

    t = threading.Thread(target=_run, name=f"consumer:{queue_name}", daemon=daemon)
    t.start()
    return t
