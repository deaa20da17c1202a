"""
CRM Engine - Row Store
All SQL lives here. Scoring, deck and history modules call these functions and
never open a cursor themselves. Writes announce themselves on the event bus.
"""

import logging
from datetime import date, datetime
from typing import List, Optional, Dict, Any, Iterable

from psycopg2.extras import Json

from touchcrm.db.connection import get_db_cursor
from touchcrm.models import (
    Contact, InteractionEvent, ActionEvent, OutcomeNote, DeckCard,
    DeckHistoryRecord, RHSFactors, ContactScore,
)
from touchcrm.bus.events import (
    bus, EVENT_CONTACT_UPDATED, EVENT_INTERACTION_LOGGED, EVENT_CARD_STATUS_CHANGED,
    EVENT_OUTCOME_RECORDED, EVENT_OUTCOME_STATUS_CHANGED, EVENT_DECK_ARCHIVED,
)
from touchcrm.engine.taxonomy import MEANINGFUL_INTERACTIONS
from touchcrm.config import config

logger = logging.getLogger(__name__)

# Allowlists for dynamic UPDATE queries; column names never come from user input directly
_CONTACT_COLUMNS = {
    'display_name', 'phone_numbers', 'emails', 'organization', 'job_title', 'city',
    'notes', 'tags', 'mutuality_score', 'cadence_days', 'do_not_contact',
    'first_engagement_at',
}
_CARD_COLUMNS = {
    'status', 'suggested_channel', 'drafted_at', 'sent_at', 'completed_at', 'linked_outcome_id',
}
_OUTCOME_COLUMNS = {
    'processing_status', 'processing_error', 'ai_summary', 'ai_next_steps',
    'ai_entities', 'processed_at',
}


def _validate_columns(updates: Dict[str, Any], allowed: set, entity: str) -> None:
    """Raise ValueError if any key in updates is not an allowed column name."""
    invalid = set(updates.keys()) - allowed
    if invalid:
        raise ValueError(f"Invalid {entity} fields: {invalid}")


def _set_clause(updates: Dict[str, Any]) -> str:
    # Keys are validated against an allowlist before this is called
    return ', '.join(f"{key} = %({key})s" for key in updates.keys())


# =============================================================================
# CONTACT OPERATIONS
# =============================================================================

def create_contact(contact: Contact) -> str:
    """
    Create a contact. The caller supplies the id (contacts come from the device address book).
    Returns: contact_id
    """
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO contacts (
                id, user_id, display_name, phone_numbers, emails, organization,
                job_title, city, notes, tags, mutuality_score, first_seen_at,
                first_engagement_at, cadence_days, do_not_contact, created_at, updated_at
            ) VALUES (
                %(id)s, %(user_id)s, %(display_name)s, %(phone_numbers)s, %(emails)s,
                %(organization)s, %(job_title)s, %(city)s, %(notes)s, %(tags)s,
                %(mutuality_score)s, COALESCE(%(first_seen_at)s, NOW()),
                %(first_engagement_at)s, %(cadence_days)s, %(do_not_contact)s, NOW(), NOW()
            ) RETURNING id
        """, contact.__dict__)

        contact_id = cur.fetchone()['id']
        logger.info(f"Created contact {contact_id}: {contact.display_name}")
        return contact_id


def get_contact(user_id: str, contact_id: str) -> Optional[Contact]:
    """Get contact by ID."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM contacts
            WHERE user_id = %s AND id = %s
        """, (user_id, contact_id))

        row = cur.fetchone()
        if row:
            return Contact(**row)
        logger.debug(f"get_contact: contact_id={contact_id} not found")
        return None


def get_contacts_by_ids(user_id: str, contact_ids: Iterable[str]) -> Dict[str, Contact]:
    """Contacts keyed by id; unknown ids are simply absent from the result."""
    ids = list(contact_ids)
    if not ids:
        return {}
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM contacts
            WHERE user_id = %(user_id)s AND id = ANY(%(ids)s)
        """, {'user_id': user_id, 'ids': ids})
        return {row['id']: Contact(**row) for row in cur.fetchall()}


def find_contact_by_email(user_id: str, email: str) -> Optional[Contact]:
    """Case-insensitive match against any of the contact's email addresses."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM contacts
            WHERE user_id = %(user_id)s
              AND lower(%(email)s) = ANY(SELECT lower(e) FROM unnest(emails) AS e)
            LIMIT 1
        """, {'user_id': user_id, 'email': email})
        row = cur.fetchone()
        return Contact(**row) if row else None


def list_contacts(user_id: str, name: Optional[str] = None, include_dnc: bool = True,
                  limit: Optional[int] = None) -> List[Contact]:
    """
    List a user's contacts, optionally filtered by name.
    include_dnc=False hides contacts flagged do-not-contact (used by the deck).
    """
    conditions = ["user_id = %(user_id)s"]
    params: Dict[str, Any] = {'user_id': user_id}

    if name:
        conditions.append("display_name ILIKE %(name)s")
        params['name'] = f"%{name}%"

    if not include_dnc:
        conditions.append("NOT do_not_contact")

    limit_clause = ''
    if limit:
        limit_clause = 'LIMIT %(limit)s'
        params['limit'] = limit

    where_clause = " AND ".join(conditions)

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT * FROM contacts
            WHERE {where_clause}
            ORDER BY display_name ASC
            {limit_clause}
        """, params)

        rows = cur.fetchall()
        logger.debug(f"list_contacts: {len(rows)} contacts for user {user_id}")
        return [Contact(**row) for row in rows]


def update_contact(user_id: str, contact_id: str, updates: Dict[str, Any]) -> bool:
    """
    Update contact fields.
    Emits EVENT_CONTACT_UPDATED with the contact as it was before the change,
    so listeners can tell what actually changed.
    Returns: True if updated, False if not found
    """
    if not updates:
        return False

    # Guard: only known columns may appear in the SET clause
    _validate_columns(updates, _CONTACT_COLUMNS, 'contact')

    params = dict(updates)
    params['user_id'] = user_id
    params['contact_id'] = contact_id

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM contacts
            WHERE user_id = %(user_id)s AND id = %(contact_id)s
            FOR UPDATE
        """, params)
        row = cur.fetchone()
        if not row:
            logger.debug(f"update_contact: contact_id={contact_id} not found")
            return False
        previous = Contact(**row)

        cur.execute(f"""
            UPDATE contacts
            SET {_set_clause(updates)}, updated_at = NOW()
            WHERE user_id = %(user_id)s AND id = %(contact_id)s
        """, params)
        updated = cur.rowcount > 0

    if updated:
        logger.info(f"Updated contact {contact_id}: {list(updates.keys())}")
        bus.emit(EVENT_CONTACT_UPDATED, {
            'user_id': user_id,
            'contact_id': contact_id,
            'previous': previous,
            'updates': updates,
        })
    return updated


def update_contact_field(user_id: str, contact_id: str, field: str, value: Any) -> bool:
    return update_contact(user_id, contact_id, {field: value})


# =============================================================================
# INTERACTION LOG
# =============================================================================

def append_interaction(event: InteractionEvent) -> int:
    """
    Append a raw touch to the interaction log.
    A meaningful touch also stamps first_engagement_at on contacts that had none.
    Returns: interaction id
    """
    params = dict(event.__dict__)
    params['metadata'] = Json(event.metadata or {})

    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO interaction_events (
                user_id, type, contact_ids, linked_card_id, metadata, timestamp
            ) VALUES (
                %(user_id)s, %(type)s, %(contact_ids)s, %(linked_card_id)s,
                %(metadata)s, COALESCE(%(timestamp)s, NOW())
            ) RETURNING id, timestamp
        """, params)
        row = cur.fetchone()

        if event.type in MEANINGFUL_INTERACTIONS:
            cur.execute("""
                UPDATE contacts
                SET first_engagement_at = %(ts)s, updated_at = NOW()
                WHERE user_id = %(user_id)s AND id = ANY(%(contact_ids)s)
                  AND first_engagement_at IS NULL
            """, {'ts': row['timestamp'], 'user_id': event.user_id, 'contact_ids': event.contact_ids})

    interaction_id = row['id']
    logger.info(f"Logged {event.type} (ID {interaction_id}) for contacts {event.contact_ids}")

    bus.emit(EVENT_INTERACTION_LOGGED, {
        'interaction_id': interaction_id,
        'user_id': event.user_id,
        'contact_ids': event.contact_ids,
        'type': event.type,
    })
    return interaction_id


def get_interactions_by_contact(user_id: str, contact_id: str, limit: int = 50,
                                meaningful_only: bool = False) -> List[InteractionEvent]:
    """Interactions touching a contact, newest first."""
    conditions = ["user_id = %(user_id)s", "%(contact_id)s = ANY(contact_ids)"]
    params: Dict[str, Any] = {'user_id': user_id, 'contact_id': contact_id, 'limit': limit}
    if meaningful_only:
        conditions.append("type = ANY(%(types)s)")
        params['types'] = sorted(MEANINGFUL_INTERACTIONS)

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT * FROM interaction_events
            WHERE {' AND '.join(conditions)}
            ORDER BY timestamp DESC
            LIMIT %(limit)s
        """, params)

        rows = cur.fetchall()
        logger.debug(f"get_interactions_by_contact: contact_id={contact_id} → {len(rows)} interactions")
        return [InteractionEvent(**row) for row in rows]


def get_last_interaction(user_id: str, contact_id: str) -> Optional[InteractionEvent]:
    """Most recent meaningful touch (sms, call, email, facetime, slack) of a contact."""
    events = get_interactions_by_contact(user_id, contact_id, limit=1, meaningful_only=True)
    return events[0] if events else None


def get_interactions_for_cards(user_id: str, card_ids: List[str]) -> List[InteractionEvent]:
    if not card_ids:
        return []
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM interaction_events
            WHERE user_id = %(user_id)s AND linked_card_id = ANY(%(card_ids)s)
            LIMIT 500
        """, {'user_id': user_id, 'card_ids': card_ids})
        return [InteractionEvent(**row) for row in cur.fetchall()]


# =============================================================================
# ACTION EVENT LOG
# =============================================================================

def append_action_event(event: ActionEvent) -> ActionEvent:
    """Persist a scored action. Returns the stored event with id and timestamp filled in."""
    params = dict(event.__dict__)
    params['multipliers_applied'] = Json(event.multipliers_applied or {})
    params['metadata'] = Json(event.metadata or {})

    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO action_events (
                user_id, contact_id, action_id, base_points, multipliers_applied,
                final_points, channel, customization_level, is_multi_contact,
                linked_card_id, metadata, timestamp
            ) VALUES (
                %(user_id)s, %(contact_id)s, %(action_id)s, %(base_points)s,
                %(multipliers_applied)s, %(final_points)s, %(channel)s,
                %(customization_level)s, %(is_multi_contact)s, %(linked_card_id)s,
                %(metadata)s, COALESCE(%(timestamp)s, NOW())
            ) RETURNING *
        """, params)
        row = cur.fetchone()

    stored = ActionEvent(**row)
    logger.debug(f"Stored action {stored.action_id} (ID {stored.id}) for contact {stored.contact_id}")
    return stored


def get_action_events(user_id: str, contact_id: str, since: Optional[datetime] = None,
                      until: Optional[datetime] = None, limit: int = 1000) -> List[ActionEvent]:
    """Action events of one contact, newest first, optionally limited to [since, until]."""
    conditions = ["user_id = %(user_id)s", "contact_id = %(contact_id)s"]
    params: Dict[str, Any] = {'user_id': user_id, 'contact_id': contact_id, 'limit': limit}

    if since:
        conditions.append("timestamp >= %(since)s")
        params['since'] = since

    if until:
        conditions.append("timestamp <= %(until)s")
        params['until'] = until

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT * FROM action_events
            WHERE {' AND '.join(conditions)}
            ORDER BY timestamp DESC
            LIMIT %(limit)s
        """, params)

        rows = cur.fetchall()
        logger.debug(f"get_action_events: contact_id={contact_id} → {len(rows)} events")
        return [ActionEvent(**row) for row in rows]


def get_recent_action_events(user_id: str, limit: int = 50) -> List[ActionEvent]:
    """Latest action events across all of a user's contacts."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM action_events
            WHERE user_id = %s
            ORDER BY timestamp DESC
            LIMIT %s
        """, (user_id, limit))
        return [ActionEvent(**row) for row in cur.fetchall()]


# =============================================================================
# OUTCOME NOTES
# =============================================================================

def create_outcome_note(note: OutcomeNote) -> OutcomeNote:
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO outcome_notes (
                user_id, raw_text, user_sentiment, contact_ids, linked_card_id,
                processing_status, recorded_at, updated_at
            ) VALUES (
                %(user_id)s, %(raw_text)s, %(user_sentiment)s, %(contact_ids)s,
                %(linked_card_id)s, %(processing_status)s,
                COALESCE(%(recorded_at)s, NOW()), NOW()
            ) RETURNING *
        """, note.__dict__)
        stored = OutcomeNote(**cur.fetchone())

    logger.info(f"Recorded outcome note ID {stored.id} ({stored.user_sentiment}) for {stored.contact_ids}")
    bus.emit(EVENT_OUTCOME_RECORDED, {
        'user_id': stored.user_id,
        'note_id': stored.id,
        'contact_ids': stored.contact_ids,
    })
    return stored


def get_outcome_note(user_id: str, note_id: int) -> Optional[OutcomeNote]:
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM outcome_notes
            WHERE user_id = %s AND id = %s
        """, (user_id, note_id))
        row = cur.fetchone()
        return OutcomeNote(**row) if row else None


def get_outcome_notes_by_contact(user_id: str, contact_id: str, limit: int = 20) -> List[OutcomeNote]:
    """Outcome notes mentioning a contact, newest first."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM outcome_notes
            WHERE user_id = %(user_id)s AND %(contact_id)s = ANY(contact_ids)
            ORDER BY recorded_at DESC
            LIMIT %(limit)s
        """, {'user_id': user_id, 'contact_id': contact_id, 'limit': limit})
        return [OutcomeNote(**row) for row in cur.fetchall()]


def get_outcome_notes_for_date(user_id: str, day: date) -> List[OutcomeNote]:
    """Notes recorded on a calendar day in the configured timezone."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM outcome_notes
            WHERE user_id = %(user_id)s
              AND (recorded_at AT TIME ZONE %(tz)s)::date = %(day)s
            LIMIT 100
        """, {'user_id': user_id, 'day': day, 'tz': config.TIMEZONE})
        return [OutcomeNote(**row) for row in cur.fetchall()]


def list_outcome_notes(user_id: str, status: Optional[str] = None, limit: int = 50) -> List[OutcomeNote]:
    conditions = ["user_id = %(user_id)s"]
    params: Dict[str, Any] = {'user_id': user_id, 'limit': limit}
    if status:
        conditions.append("processing_status = %(status)s")
        params['status'] = status

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT * FROM outcome_notes
            WHERE {' AND '.join(conditions)}
            ORDER BY recorded_at DESC
            LIMIT %(limit)s
        """, params)
        return [OutcomeNote(**row) for row in cur.fetchall()]


def update_outcome_note(user_id: str, note_id: int, updates: Dict[str, Any]) -> bool:
    if not updates:
        return False

    _validate_columns(updates, _OUTCOME_COLUMNS, 'outcome note')

    params = dict(updates)
    params['user_id'] = user_id
    params['note_id'] = note_id

    with get_db_cursor() as cur:
        cur.execute(f"""
            UPDATE outcome_notes
            SET {_set_clause(updates)}, updated_at = NOW()
            WHERE user_id = %(user_id)s AND id = %(note_id)s
        """, params)
        updated = cur.rowcount > 0

    if updated and 'processing_status' in updates:
        logger.info(f"Outcome note ID {note_id} → {updates['processing_status']}")
        bus.emit(EVENT_OUTCOME_STATUS_CHANGED, {
            'user_id': user_id,
            'note_id': note_id,
            'status': updates['processing_status'],
        })
    return updated


def count_outcome_notes_by_status(user_id: str) -> Dict[str, int]:
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT processing_status, COUNT(*) AS n
            FROM outcome_notes
            WHERE user_id = %s
            GROUP BY processing_status
        """, (user_id,))
        return {row['processing_status']: row['n'] for row in cur.fetchall()}


# =============================================================================
# DECK CARDS
# =============================================================================

_CARD_FIELDS = (
    'user_id', 'card_id', 'contact_id', 'date', 'position', 'status',
    'suggested_channel', 'reason', 'score', 'is_fresh',
)


def get_deck_cards(user_id: str, day: date) -> List[DeckCard]:
    """A day's deck rows in deck order (no contact hydration)."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM deck_cards
            WHERE user_id = %s AND date = %s
            ORDER BY position ASC, id ASC
        """, (user_id, day))
        rows = cur.fetchall()
        logger.debug(f"get_deck_cards: {day} → {len(rows)} cards")
        return [DeckCard(**row) for row in rows]


def get_deck_card(user_id: str, card_id: str) -> Optional[DeckCard]:
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM deck_cards
            WHERE user_id = %s AND card_id = %s
        """, (user_id, card_id))
        row = cur.fetchone()
        return DeckCard(**row) if row else None


def has_deck_for_date(user_id: str, day: date) -> bool:
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT 1 FROM deck_cards
            WHERE user_id = %s AND date = %s
            LIMIT 1
        """, (user_id, day))
        return cur.fetchone() is not None


def insert_deck_cards(cards: List[DeckCard]) -> int:
    """
    Insert deck rows in one transaction.
    Rows whose (user_id, card_id) already exists are left untouched, so two
    builders racing on the same day end up with the same deck.
    Returns: number of rows actually inserted
    """
    if not cards:
        return 0

    inserted = 0
    with get_db_cursor() as cur:
        for card in cards:
            cur.execute("""
                INSERT INTO deck_cards (
                    user_id, card_id, contact_id, date, position, status,
                    suggested_channel, reason, score, is_fresh, created_at
                ) VALUES (
                    %(user_id)s, %(card_id)s, %(contact_id)s, %(date)s, %(position)s,
                    %(status)s, %(suggested_channel)s, %(reason)s, %(score)s,
                    %(is_fresh)s, NOW()
                )
                ON CONFLICT (user_id, card_id) DO NOTHING
            """, {name: getattr(card, name) for name in _CARD_FIELDS})
            inserted += cur.rowcount

    logger.info(f"Inserted {inserted}/{len(cards)} deck cards")
    return inserted


def update_deck_card(user_id: str, card_id: str, updates: Dict[str, Any]) -> bool:
    if not updates:
        return False

    _validate_columns(updates, _CARD_COLUMNS, 'deck card')

    params = dict(updates)
    params['user_id'] = user_id
    params['card_id'] = card_id

    with get_db_cursor() as cur:
        cur.execute(f"""
            UPDATE deck_cards
            SET {_set_clause(updates)}
            WHERE user_id = %(user_id)s AND card_id = %(card_id)s
        """, params)
        updated = cur.rowcount > 0

    if updated and 'status' in updates:
        logger.info(f"Card {card_id} → {updates['status']}")
        bus.emit(EVENT_CARD_STATUS_CHANGED, {
            'user_id': user_id,
            'card_id': card_id,
            'status': updates['status'],
        })
    return updated


def get_deck_dates_before(user_id: str, day: date) -> List[date]:
    """Dates that still have un-archived deck rows, oldest first."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT DISTINCT date FROM deck_cards
            WHERE user_id = %s AND date < %s
            ORDER BY date ASC
        """, (user_id, day))
        return [row['date'] for row in cur.fetchall()]


# =============================================================================
# DECK HISTORY
# =============================================================================

_HISTORY_FIELDS = (
    'user_id', 'date', 'max_cards', 'total_cards', 'completed_cards', 'skipped_cards',
    'snoozed_cards', 'sms_count', 'call_count', 'email_count', 'facetime_count',
    'slack_count', 'fresh_contacts_shown', 'fresh_contacts_engaged', 'outcomes_recorded',
    'positive_outcomes', 'neutral_outcomes', 'negative_outcomes', 'first_card_opened_at',
    'last_card_completed_at', 'deck_generated_at', 'is_premium', 'completion_rate', 'avg_score',
)


def archive_deck(record: DeckHistoryRecord) -> Dict[str, int]:
    """
    Write a day's history record and delete that day's deck rows, atomically.
    If anything fails the transaction rolls back and the cards stay in place.
    Returns: {'history_id': ..., 'cards_deleted': ...}
    """
    columns = ', '.join(_HISTORY_FIELDS)
    values = ', '.join(f"%({name})s" for name in _HISTORY_FIELDS)
    # A leftover record for the same date (earlier partial run) is overwritten
    updates = ', '.join(f"{name} = EXCLUDED.{name}" for name in _HISTORY_FIELDS[2:])

    with get_db_cursor() as cur:
        cur.execute(f"""
            INSERT INTO deck_history ({columns}, archived_at)
            VALUES ({values}, NOW())
            ON CONFLICT (user_id, date) DO UPDATE
            SET {updates}, archived_at = NOW()
            RETURNING id
        """, {name: getattr(record, name) for name in _HISTORY_FIELDS})
        history_id = cur.fetchone()['id']

        cur.execute("""
            DELETE FROM deck_cards
            WHERE user_id = %s AND date = %s
        """, (record.user_id, record.date))
        deleted = cur.rowcount

    logger.info(f"Archived deck {record.date} as history ID {history_id}, deleted {deleted} cards")
    bus.emit(EVENT_DECK_ARCHIVED, {
        'user_id': record.user_id,
        'date': record.date,
        'history_id': history_id,
        'cards_deleted': deleted,
    })
    return {'history_id': history_id, 'cards_deleted': deleted}


def get_history(user_id: str, limit: int = 30) -> List[DeckHistoryRecord]:
    """History records, newest date first."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM deck_history
            WHERE user_id = %s
            ORDER BY date DESC
            LIMIT %s
        """, (user_id, limit))
        return [DeckHistoryRecord(**row) for row in cur.fetchall()]


def get_history_for_date(user_id: str, day: date) -> Optional[DeckHistoryRecord]:
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM deck_history
            WHERE user_id = %s AND date = %s
        """, (user_id, day))
        row = cur.fetchone()
        return DeckHistoryRecord(**row) if row else None


def get_history_range(user_id: str, start: date, end: date, limit: int = 100) -> List[DeckHistoryRecord]:
    """History records with start <= date <= end, newest first."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM deck_history
            WHERE user_id = %(user_id)s AND date >= %(start)s AND date <= %(end)s
            ORDER BY date DESC
            LIMIT %(limit)s
        """, {'user_id': user_id, 'start': start, 'end': end, 'limit': limit})
        return [DeckHistoryRecord(**row) for row in cur.fetchall()]


# =============================================================================
# SCORE SNAPSHOTS
# =============================================================================

def upsert_rhs_metrics(user_id: str, contact_id: str, factors: RHSFactors,
                       engagement_history_factor: float,
                       last_engagement_at: Optional[datetime] = None) -> None:
    """Overwrite the latest RHS snapshot of a contact."""
    params = dict(factors.__dict__)
    params.update({
        'user_id': user_id,
        'contact_id': contact_id,
        'rhs_score': factors.total_score,
        'engagement_history_factor': engagement_history_factor,
        'last_engagement_at': last_engagement_at,
    })
    params.pop('total_score')

    columns = [k for k in params if k not in ('user_id', 'contact_id')]
    with get_db_cursor() as cur:
        cur.execute(f"""
            INSERT INTO rhs_metrics (user_id, contact_id, {', '.join(columns)}, calculated_at)
            VALUES (%(user_id)s, %(contact_id)s, {', '.join(f'%({c})s' for c in columns)}, NOW())
            ON CONFLICT (user_id, contact_id) DO UPDATE
            SET {', '.join(f'{c} = EXCLUDED.{c}' for c in columns)}, calculated_at = NOW()
        """, params)
    logger.debug(f"Saved RHS snapshot for {contact_id}: {factors.total_score}")


def list_rhs_metrics(user_id: str) -> List[Dict[str, Any]]:
    """All latest RHS snapshots of a user, as rows."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT m.*, c.display_name, c.first_seen_at
            FROM rhs_metrics m
            JOIN contacts c ON c.id = m.contact_id AND c.user_id = m.user_id
            WHERE m.user_id = %s
        """, (user_id,))
        return [dict(row) for row in cur.fetchall()]


def upsert_contact_score(score: ContactScore) -> None:
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO contact_scores (
                user_id, contact_id, current_score, peak_score, last_action_timestamp,
                decay_started_at, total_actions, positive_actions, negative_actions, last_updated
            ) VALUES (
                %(user_id)s, %(contact_id)s, %(current_score)s, %(peak_score)s,
                %(last_action_timestamp)s, %(decay_started_at)s, %(total_actions)s,
                %(positive_actions)s, %(negative_actions)s, NOW()
            )
            ON CONFLICT (user_id, contact_id) DO UPDATE SET
                current_score = EXCLUDED.current_score,
                peak_score = GREATEST(contact_scores.peak_score, EXCLUDED.peak_score),
                last_action_timestamp = EXCLUDED.last_action_timestamp,
                decay_started_at = EXCLUDED.decay_started_at,
                total_actions = EXCLUDED.total_actions,
                positive_actions = EXCLUDED.positive_actions,
                negative_actions = EXCLUDED.negative_actions,
                last_updated = NOW()
        """, score.__dict__)
    logger.debug(f"Saved contact score for {score.contact_id}: {score.current_score}")
