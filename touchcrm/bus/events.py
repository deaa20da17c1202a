"""
In-process event bus.

The CRUD layer announces what it wrote (an interaction logged, a contact
edited, a card moved) and the scoring and action pipelines react. crm.py
never imports the engine; the engine subscribes here instead.
"""

from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


# =============================================================================
# STANDARD EVENTS
# =============================================================================

# Contact store
EVENT_CONTACT_UPDATED = 'contact_updated'
EVENT_INTERACTION_LOGGED = 'interaction_logged'

# Action pipeline / scoring
EVENT_ACTION_EMITTED = 'action_emitted'
EVENT_SYSTEM_EVENT_EMITTED = 'system_event_emitted'
EVENT_SCORE_RECALCULATED = 'score_recalculated'

# Deck
EVENT_DECK_BUILT = 'deck_built'
EVENT_CARD_STATUS_CHANGED = 'card_status_changed'
EVENT_DECK_ARCHIVED = 'deck_archived'

# Outcome notes
EVENT_OUTCOME_RECORDED = 'outcome_recorded'
EVENT_OUTCOME_STATUS_CHANGED = 'outcome_status_changed'

STANDARD_EVENTS = (
    EVENT_CONTACT_UPDATED, EVENT_INTERACTION_LOGGED,
    EVENT_ACTION_EMITTED, EVENT_SYSTEM_EVENT_EMITTED, EVENT_SCORE_RECALCULATED,
    EVENT_DECK_BUILT, EVENT_CARD_STATUS_CHANGED, EVENT_DECK_ARCHIVED,
    EVENT_OUTCOME_RECORDED, EVENT_OUTCOME_STATUS_CHANGED,
)


class EventBus:
    """
    Synchronous publish/subscribe keyed by event name.

    Handlers run in registration order on the emitting thread. A handler that
    raises is logged and skipped; the write that triggered the event has
    already been committed and must not be undone by a listener.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event_name: str, handler: Handler):
        self._handlers.setdefault(event_name, []).append(handler)
        if event_name not in STANDARD_EVENTS:
            logger.debug(f"Handler {_name(handler)} subscribed to non-standard event '{event_name}'")

    def off(self, event_name: str, handler: Handler):
        """Unsubscribe; a handler that was never registered is ignored."""
        registered = self._handlers.get(event_name)
        if registered and handler in registered:
            registered.remove(handler)

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, ()))

    def emit(self, event_name: str, event_data: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver event_data (default {}) to every handler of event_name.

        Returns the number of handlers that raised.
        """
        payload = {} if event_data is None else event_data
        # snapshot: handlers may unsubscribe themselves while running
        handlers = list(self._handlers.get(event_name, ()))
        logger.debug(f"Event '{event_name}' → {len(handlers)} handler(s): {payload}")

        failures = 0
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                failures += 1
                logger.error(f"Handler {_name(handler)} failed on '{event_name}': {e}")
        return failures

    def clear(self):
        """Drop every subscription (tests reset the shared bus with this)."""
        self._handlers.clear()


def _name(handler) -> str:
    return getattr(handler, '__qualname__', repr(handler))


bus = EventBus()
