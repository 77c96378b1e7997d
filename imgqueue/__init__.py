"""Queue-driven image resizing and re-encoding worker over RabbitMQ."""

__version__ = "1.0.0"