from .checkpoint_store import InMemoryCheckpointStore
from .event_store import InMemoryEventStore

__all__ = [
    "InMemoryCheckpointStore",
    "InMemoryEventStore",
]
