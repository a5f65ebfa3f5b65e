"""Time-window batching of normal-priority notifications."""

from .batcher import BATCH_SEPARATOR, MessageBatcher, QueuedMessage, batch_notifications, compose_batch

__all__ = [
    "BATCH_SEPARATOR",
    "MessageBatcher",
    "QueuedMessage",
    "batch_notifications",
    "compose_batch",
]
