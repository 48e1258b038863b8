"""Observability: logging and metrics for the subscription registry."""

from redis_pubsub.observability.logger import get_logger
from redis_pubsub.observability.metrics import Metrics

__all__ = ["get_logger", "Metrics"]
