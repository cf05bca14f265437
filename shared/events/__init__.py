from shared.events.base import BaseEvent
from shared.events.document_events import DocumentChunkedEvent, DocumentIngestionFailedEvent

__all__ = [
    "BaseEvent",
    "DocumentChunkedEvent",
    "DocumentIngestionFailedEvent",
]
