from .checkpoint_store import ICheckpointStore
from .event_store import IEventStore, INotifyingEventStore, StoredEvent

__all__ = [
    "ICheckpointStore",
    "IEventStore",
    "INotifyingEventStore",
    "StoredEvent",
]
