"""
Outcome Notes
What the user wrote down after a touch, and its enrichment lifecycle:

    pending → processing → completed
                        ↘ failed → (retry) → pending

Recording a note may also score an outcome action (replied, scheduled, ...)
for each contact it mentions.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from touchcrm.engine import crm
from touchcrm.engine.action_events import EmitParams
from touchcrm.engine.errors import InvalidTransitionError
from touchcrm.engine.timeutil import utcnow
from touchcrm.models import OutcomeNote

logger = logging.getLogger(__name__)

SENTIMENTS = ('positive', 'neutral', 'negative', 'mixed')
OUTCOME_KINDS = ('sent', 'vm', 'scheduled', 'replied', 'no_answer')

NOTE_TRANSITIONS = {
    'pending': {'processing', 'failed'},
    'processing': {'completed', 'failed'},
    'failed': {'pending'},
}


class OutcomeService:

    def __init__(self, store=crm, pipeline=None):
        self.store = store
        self.pipeline = pipeline

    def record(self, user_id: str, raw_text: str, sentiment: str = 'neutral',
               contact_ids: Optional[List[str]] = None, linked_card_id: Optional[str] = None,
               outcome: Optional[str] = None, now: Optional[datetime] = None) -> OutcomeNote:
        """Store a new note (status pending). `outcome` also emits outcome_<kind> per contact."""
        if sentiment not in SENTIMENTS:
            raise ValueError(f"Unknown sentiment '{sentiment}', expected one of {SENTIMENTS}")
        if outcome is not None and outcome not in OUTCOME_KINDS:
            raise ValueError(f"Unknown outcome '{outcome}', expected one of {OUTCOME_KINDS}")
        if not raw_text or not raw_text.strip():
            raise ValueError("Outcome note text is empty")

        note = self.store.create_outcome_note(OutcomeNote(
            user_id=user_id,
            raw_text=raw_text.strip(),
            user_sentiment=sentiment,
            contact_ids=list(contact_ids or []),
            linked_card_id=linked_card_id,
            processing_status='pending',
            recorded_at=now,
        ))

        if outcome and self.pipeline is not None:
            for contact_id in note.contact_ids:
                self.pipeline.emit(EmitParams(
                    user_id=user_id,
                    contact_id=contact_id,
                    action_id=f"outcome_{outcome}",
                    linked_card_id=linked_card_id,
                    metadata={'outcome_note_id': note.id, 'sentiment': sentiment},
                    timestamp=now,
                ))
        return note

    def _transition(self, user_id: str, note_id: int, status: str, **updates) -> OutcomeNote:
        note = self.store.get_outcome_note(user_id, note_id)
        if note is None:
            raise ValueError(f"Outcome note {note_id} not found")
        if status not in NOTE_TRANSITIONS.get(note.processing_status, set()):
            raise InvalidTransitionError('outcome note', note.processing_status, status)

        updates['processing_status'] = status
        self.store.update_outcome_note(user_id, note_id, updates)
        for name, value in updates.items():
            setattr(note, name, value)
        return note

    def mark_processing(self, user_id: str, note_id: int) -> OutcomeNote:
        return self._transition(user_id, note_id, 'processing')

    def complete(self, user_id: str, note_id: int, summary: str, next_steps: Optional[List[str]] = None,
                 entities: Optional[List[str]] = None, now: Optional[datetime] = None) -> OutcomeNote:
        return self._transition(
            user_id, note_id, 'completed',
            ai_summary=summary,
            ai_next_steps=list(next_steps or []),
            ai_entities=list(entities or []),
            processing_error=None,
            processed_at=now or utcnow(),
        )

    def mark_failed(self, user_id: str, note_id: int, error: str) -> OutcomeNote:
        return self._transition(user_id, note_id, 'failed', processing_error=error)

    def retry(self, user_id: str, note_id: int) -> OutcomeNote:
        """Only failed notes go back to the queue."""
        return self._transition(user_id, note_id, 'pending', processing_error=None)

    def pending_notes(self, user_id: str, limit: int = 50) -> List[OutcomeNote]:
        try:
            return self.store.list_outcome_notes(user_id, status='pending', limit=limit)
        except Exception as e:
            logger.error(f"Could not load pending notes for {user_id}: {e}")
            return []

    def pending_counts(self, user_id: str) -> Dict[str, int]:
        """Notes still waiting on enrichment: pending, processing, failed."""
        try:
            counts = self.store.count_outcome_notes_by_status(user_id)
        except Exception as e:
            logger.error(f"Could not count outcome notes for {user_id}: {e}")
            counts = {}
        return {status: counts.get(status, 0) for status in ('pending', 'processing', 'failed')}
