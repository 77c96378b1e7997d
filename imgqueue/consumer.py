"""Background consumer that feeds queue messages to a handler."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from typing import Any

from imgqueue.connection import (
    _BROKER_ERRORS,
    BrokerSettings,
    ConnectionError_,
    RabbitMQConnection,
)
from imgqueue.logging_setup import get_logger

Handler = Callable[[bytes, Any], Any]


class Consumer:
    """Consume the input queue on a background thread.

    Each message is passed to the handler as (body, delivery). A handler that
    returns normally gets the message acknowledged; one that raises gets it
    rejected without requeue, so it goes to the dead-letter queue.
    """

    reconnect_delay = 5.0

    def __init__(self, handler: Handler, url: str, settings: BrokerSettings | None = None) -> None:
        self._handler = handler
        self._url = url
        self._settings = settings if settings is not None else BrokerSettings()
        self._connection: RabbitMQConnection | None = None
        self._running = False
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._log = get_logger("rabbitmq-consumer")

    def running(self) -> bool:
        """Return whether the consumer is running."""
        with self._lock:
            return self._running

    def _open(self) -> tuple[RabbitMQConnection, Iterator]:
        connection = RabbitMQConnection(self._url, self._settings)
        try:
            connection.connect()
        except ConnectionError_ as exc:
            raise ConnectionError_(f"could not connect to broker: {exc}") from exc
        try:
            deliveries = connection.subscribe(self._settings.queue_in, False)
        except ConnectionError_ as exc:
            connection.close()
            raise ConnectionError_(f"could not subscribe to queue: {exc}") from exc
        return connection, deliveries

    def start(self) -> None:
        """Connect, subscribe to the input queue and start processing."""
        with self._lock:
            if self._running:
                self._log.info("consumer already running")
                return

        connection, deliveries = self._open()

        with self._lock:
            self._connection = connection
            self._stop_event = threading.Event()
            self._running = True
            self._thread = threading.Thread(
                target=self._run,
                args=(deliveries, self._stop_event),
                name="imgqueue-consumer",
                daemon=True,
            )
            self._thread.start()
        self._log.info("consumer started", extra={"queue": self._settings.queue_in})

    def stop(self) -> None:
        """Stop processing and close the broker connection."""
        with self._lock:
            if not self._running:
                return
            self._log.info("stopping consumer")
            self._running = False
            self._stop_event.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._log.info("consumer stopped")

    def _run(self, deliveries: Iterator, stop_event: threading.Event) -> None:
        try:
            while deliveries is not None:
                self._drain(deliveries, stop_event)
                if stop_event.is_set():
                    break
                self._log.warning("message stream closed, reconnecting")
                if stop_event.wait(self.reconnect_delay):
                    break
                deliveries = self._reconnect(stop_event)
        finally:
            connection = self._connection
            if connection is not None:
                connection.close()

    def _drain(self, deliveries: Iterator, stop_event: threading.Event) -> None:
        for delivery in deliveries:
            if stop_event.is_set():
                self._log.info("stop requested, leaving message loop")
                return
            if delivery is None:
                continue
            self._handle(delivery)

    def _handle(self, delivery: Any) -> None:
        self._log.debug("message received: %d bytes", len(delivery.body))
        try:
            self._handler(delivery.body, delivery)
        except Exception as exc:
            self._log.error("error processing message: %s", exc)
            settle = lambda: delivery.nack(requeue=False)  # noqa: E731
        else:
            settle = delivery.ack
        try:
            settle()
        except _BROKER_ERRORS as exc:
            self._log.error("could not settle message: %s", exc)

    def _reconnect(self, stop_event: threading.Event) -> Iterator | None:
        while not stop_event.is_set():
            self._log.info("attempting to reconnect")
            if self._connection is not None:
                self._connection.close()
            try:
                connection, deliveries = self._open()
            except ConnectionError_ as exc:
                self._log.error("reconnect failed: %s; retrying", exc)
                if stop_event.wait(self.reconnect_delay):
                    return None
                continue
            self._connection = connection
            return deliveries
        return None