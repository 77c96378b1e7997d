"""Connection to the message broker: queue declaration, publishing and consuming."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import pika
import pika.exceptions
from pika.spec import PERSISTENT_DELIVERY_MODE

from imgqueue.logging_setup import get_logger

_log = get_logger("rabbitmq")

CONSUME_POLL_INTERVAL = 1.0

_BROKER_ERRORS = (pika.exceptions.AMQPError, OSError)


@dataclass
class BrokerSettings:
    """Broker and queue settings shared by connections and consumers."""

    queue_in: str = "images_to_process"
    queue_out: str = "processed_images"
    queue_dlx: str = "images_failed"
    queue_durable: bool = True
    prefetch_count: int = 1
    heartbeat: int = 60
    connection_timeout: int = 30000
    debug: bool = False


class ConnectionError_(Exception):
    """Raised when the broker cannot be reached or used."""


@dataclass
class _Delivery:
    """A message received from a queue, with acknowledgement helpers."""

    body: bytes
    delivery_tag: int
    correlation_id: str
    properties: Any = field(repr=False)
    _channel: Any = field(repr=False)

    def ack(self) -> None:
        self._channel.basic_ack(delivery_tag=self.delivery_tag)

    def nack(self, requeue: bool = False) -> None:
        self._channel.basic_nack(delivery_tag=self.delivery_tag, requeue=requeue)


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception:  # closing a broken resource may fail in many ways
        pass


class RabbitMQConnection:
    """A single broker connection with one channel."""

    def __init__(self, url: str, settings: BrokerSettings | None = None) -> None:
        self.url = url
        self.settings = settings if settings is not None else BrokerSettings()
        self._connection: Any = None
        self._channel: Any = None
        self._connected = False
        self._lock = threading.RLock()

    def _usable(self) -> bool:
        return bool(
            self._connected
            and self._connection is not None
            and self._connection.is_open
            and self._channel is not None
            and self._channel.is_open
        )

    def _parameters(self) -> pika.URLParameters:
        try:
            params = pika.URLParameters(self.url)
        except ValueError as exc:
            raise ConnectionError_(f"invalid broker URL: {exc}") from exc
        params.heartbeat = self.settings.heartbeat
        params.socket_timeout = self.settings.connection_timeout / 1000
        params.client_properties = {
            "connection_name": f"image-processor-{int(time.time())}",
            "product": "image-processing-service",
            "version": "1.0",
        }
        return params

    def connect(self) -> None:
        """Open the connection and channel, set QoS and declare the queues."""
        with self._lock:
            if self._connected and self._connection is not None and self._connection.is_open:
                _log.debug("already connected")
                return

            _log.info("connecting to %s", self.url)
            params = self._parameters()
            try:
                connection = pika.BlockingConnection(params)
            except _BROKER_ERRORS as exc:
                raise ConnectionError_(f"could not connect to broker: {exc}") from exc

            try:
                channel = connection.channel()
            except _BROKER_ERRORS as exc:
                _close_quietly(connection)
                raise ConnectionError_(f"could not open channel: {exc}") from exc

            try:
                channel.basic_qos(prefetch_count=self.settings.prefetch_count)
            except _BROKER_ERRORS as exc:
                _close_quietly(channel)
                _close_quietly(connection)
                raise ConnectionError_(f"could not set QoS: {exc}") from exc

            try:
                self._declare_queues(channel)
            except ConnectionError_ as exc:
                _close_quietly(channel)
                _close_quietly(connection)
                raise ConnectionError_(f"could not declare queues: {exc}") from exc

            self._connection = connection
            self._channel = channel
            self._connected = True
            _log.info("connected to broker")

    def _declare_queues(self, channel: Any) -> None:
        s = self.settings
        declarations = [
            ("dead-letter", s.queue_dlx, None),
            (
                "input",
                s.queue_in,
                {"x-dead-letter-exchange": "", "x-dead-letter-routing-key": s.queue_dlx},
            ),
            ("output", s.queue_out, None),
        ]
        for role, name, arguments in declarations:
            try:
                channel.queue_declare(
                    queue=name,
                    durable=s.queue_durable,
                    exclusive=False,
                    auto_delete=False,
                    arguments=arguments,
                )
            except _BROKER_ERRORS as exc:
                raise ConnectionError_(f"could not declare {role} queue {name!r}: {exc}") from exc
        _log.info("all queues declared")

    def is_connected(self) -> bool:
        """Return whether the connection and channel are both open."""
        with self._lock:
            return self._usable()

    def close(self) -> None:
        """Close the channel and connection."""
        with self._lock:
            if self._channel is not None:
                _close_quietly(self._channel)
                self._channel = None
            if self._connection is not None:
                _close_quietly(self._connection)
                self._connection = None
            self._connected = False
            _log.info("broker connection closed")

    def publish_message(self, queue: str, message: bytes | str, correlation_id: str = "") -> None:
        """Publish a persistent JSON message to the named queue."""
        body = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        with self._lock:
            if not self._usable():
                raise ConnectionError_("no connection available to publish message")
            now_ns = time.time_ns()
            properties = pika.BasicProperties(
                delivery_mode=PERSISTENT_DELIVERY_MODE,
                content_type="application/json",
                correlation_id=correlation_id or None,
                timestamp=now_ns // 1_000_000_000,
                message_id=f"{now_ns // 1_000_000_000}-{now_ns % 1_000_000}",
            )
            try:
                self._channel.basic_publish(
                    exchange="", routing_key=queue, body=body, properties=properties
                )
            except _BROKER_ERRORS as exc:
                raise ConnectionError_(f"could not publish message: {exc}") from exc
            if self.settings.debug:
                _log.debug("sent %d bytes to queue %s", len(body), queue)

    def subscribe(self, queue: str, auto_ack: bool = False) -> Iterator[_Delivery | None]:
        """Start consuming a queue.

        The returned iterator yields deliveries, and None whenever no message
        arrived within the poll interval; it ends when the channel is lost.
        """
        with self._lock:
            _log.info("subscribing to queue %r, auto_ack=%s", queue, auto_ack)
            if not (self._connected and self._channel is not None and self._channel.is_open):
                raise ConnectionError_("no connection available to subscribe")
            channel = self._channel
        return self._consume(channel, queue, auto_ack)

    @staticmethod
    def _consume(channel: Any, queue: str, auto_ack: bool) -> Iterator[_Delivery | None]:
        try:
            for method, properties, body in channel.consume(
                queue, auto_ack=auto_ack, inactivity_timeout=CONSUME_POLL_INTERVAL
            ):
                if method is None:
                    yield None
                    continue
                correlation_id = getattr(properties, "correlation_id", None) or ""
                yield _Delivery(
                    body=body,
                    delivery_tag=method.delivery_tag,
                    correlation_id=correlation_id,
                    properties=properties,
                    _channel=channel,
                )
        except _BROKER_ERRORS as exc:
            _log.warning("consuming from %r stopped: %s", queue, exc)