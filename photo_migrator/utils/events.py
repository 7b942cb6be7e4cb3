from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
import asyncio
import logging

from ..models import ItemStatus, utcnow

logger = logging.getLogger(__name__)

# Event names emitted by the orchestrator
BATCH_STARTED = "batch_started"
ITEM_TRANSITIONED = "item_transitioned"
BATCH_FINISHED = "batch_finished"


@dataclass(frozen=True)
class ItemTransition:
    """Payload of an item_transitioned event."""
    item_id: str
    filename: str
    from_status: ItemStatus
    to_status: ItemStatus
    size_bytes: int = 0
    reason: Optional[str] = None
    at: datetime = None

    def __post_init__(self):
        if self.at is None:
            object.__setattr__(self, "at", utcnow())


class EventEmitter:
    """Simple event emitter for migration events."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, callback: Callable):
        """Subscribe to an event."""
        listeners = self._listeners.setdefault(event_name, [])
        if callback not in listeners:
            listeners.append(callback)

    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if callback in self._listeners.get(event_name, []):
            self._listeners[event_name].remove(callback)

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, []))

    async def emit(self, event_name: str, *args, **kwargs):
        """Emit an event to all listeners; a failing listener never breaks the caller."""
        for callback in self._listeners.get(event_name, [])[:]:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(*args, **kwargs)
                else:
                    callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
