"""
Deck History
Closes out finished days: each old deck is rolled into one deck_history row and
its working cards are deleted. Also answers the read-only questions asked of
that history (streak, completion rate, fresh-contact conversion).
"""

import logging
import threading
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from touchcrm.config import config
from touchcrm.engine import crm
from touchcrm.engine.timeutil import local_today
from touchcrm.models import ArchiveResult, DeckCard, DeckHistoryRecord, InteractionEvent, OutcomeNote

logger = logging.getLogger(__name__)

STREAK_LOOKBACK = 100

CHANNEL_COUNT_FIELDS = {
    'sms_sent': 'sms_count',
    'call_made': 'call_count',
    'email_sent': 'email_count',
    'facetime_made': 'facetime_count',
    'slack_sent': 'slack_count',
}


def deck_size(is_premium: bool) -> int:
    return config.PREMIUM_DECK_SIZE if is_premium else config.FREE_DECK_SIZE


def _percent(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole else 0


def summarize_deck(user_id: str, day: date, cards: List[DeckCard], interactions: List[InteractionEvent],
                   outcomes: List[OutcomeNote], is_premium: bool) -> DeckHistoryRecord:
    """Roll one day's cards, their linked touches and the day's outcome notes into a history record."""
    statuses = Counter(c.status for c in cards)
    record = DeckHistoryRecord(
        user_id=user_id,
        date=day,
        max_cards=deck_size(is_premium),
        total_cards=len(cards),
        completed_cards=statuses['completed'],
        skipped_cards=statuses['skipped'],
        snoozed_cards=statuses['snoozed'],
        is_premium=is_premium,
        completion_rate=_percent(statuses['completed'], len(cards)),
        avg_score=round(sum(c.score or 0 for c in cards) / len(cards)) if cards else 0,
    )

    types = Counter(e.type for e in interactions)
    for interaction_type, name in CHANNEL_COUNT_FIELDS.items():
        setattr(record, name, types[interaction_type])

    engaged_cards = {e.linked_card_id for e in interactions if e.linked_card_id}
    record.fresh_contacts_shown = sum(1 for c in cards if c.is_fresh)
    record.fresh_contacts_engaged = sum(1 for c in cards if c.is_fresh and c.card_id in engaged_cards)

    sentiments = Counter(o.user_sentiment for o in outcomes)
    record.outcomes_recorded = len(outcomes)
    record.positive_outcomes = sentiments['positive']
    # history keeps three buckets; mixed reads as neutral
    record.neutral_outcomes = sentiments['neutral'] + sentiments['mixed']
    record.negative_outcomes = sentiments['negative']

    drafted = sorted(c.drafted_at for c in cards if c.drafted_at)
    completed = sorted(c.completed_at for c in cards if c.completed_at)
    created = sorted(c.created_at for c in cards if c.created_at)
    record.first_card_opened_at = drafted[0] if drafted else None
    record.last_card_completed_at = completed[-1] if completed else None
    record.deck_generated_at = created[0] if created else None
    return record


class ArchiveGuard:
    """Remembers, per user, the last day old decks were archived so it runs once a day."""

    def __init__(self):
        self._last_archive: Dict[str, date] = {}
        self._lock = threading.Lock()

    def should_archive_today(self, user_id: str, today: date) -> bool:
        with self._lock:
            return self._last_archive.get(user_id) != today

    def mark_completed(self, user_id: str, today: date):
        with self._lock:
            self._last_archive[user_id] = today

    def reset(self, user_id: str):
        with self._lock:
            self._last_archive.pop(user_id, None)

    def clear(self):
        with self._lock:
            self._last_archive.clear()

    def stats(self) -> Dict:
        with self._lock:
            return {
                'tracked_users': len(self._last_archive),
                'entries': {user: day.isoformat() for user, day in self._last_archive.items()},
            }


class DeckHistoryService:

    def __init__(self, store=crm, tz: Optional[str] = None):
        self.store = store
        self.tz = tz or config.TIMEZONE

    def today(self, now: Optional[datetime] = None) -> date:
        return local_today(self.tz, now)

    # =========================================================================
    # ARCHIVAL
    # =========================================================================

    def archive_deck_session(self, user_id: str, day: date, is_premium: bool) -> ArchiveResult:
        """
        Archive one date's deck. The history write and the card deletion share a
        transaction, so a failure leaves every card of that date in place.
        Never raises: failures come back in ArchiveResult.error.
        """
        try:
            cards = self.store.get_deck_cards(user_id, day)
            if not cards:
                return ArchiveResult(archived=False, error="No deck found")

            interactions = self.store.get_interactions_for_cards(user_id, [c.card_id for c in cards])
            outcomes = self.store.get_outcome_notes_for_date(user_id, day)
            record = summarize_deck(user_id, day, cards, interactions, outcomes, is_premium)

            result = self.store.archive_deck(record)
            logger.info(f"Archived {day} for {user_id}: {record.completed_cards}/{record.total_cards} "
                        f"completed ({record.completion_rate}%)")
            return ArchiveResult(archived=True, history_id=result['history_id'],
                                 cards_deleted=result['cards_deleted'])
        except Exception as e:
            logger.error(f"Failed to archive deck {day} for {user_id}: {type(e).__name__}: {e}")
            return ArchiveResult(archived=False, error=str(e) or type(e).__name__)

    def archive_old_decks(self, user_id: str, is_premium: bool, today: Optional[date] = None) -> Dict[str, List]:
        """
        Archive every deck dated strictly before today, one date at a time.
        Returns: {'archived_dates': [...], 'errors': ['<date>: <message>', ...]}
        """
        today = today or self.today()
        try:
            dates = self.store.get_deck_dates_before(user_id, today)
        except Exception as e:
            logger.error(f"Could not list old decks for {user_id}: {e}")
            return {'archived_dates': [], 'errors': [str(e)]}

        archived, errors = [], []
        for day in dates:
            result = self.archive_deck_session(user_id, day, is_premium)
            if result.archived:
                archived.append(day)
            elif result.error:
                errors.append(f"{day.isoformat()}: {result.error}")

        if dates:
            logger.info(f"Archived {len(archived)}/{len(dates)} old decks for {user_id}")
        return {'archived_dates': archived, 'errors': errors}

    # =========================================================================
    # READS
    # =========================================================================

    def get_history(self, user_id: str, limit: int = 30) -> List[DeckHistoryRecord]:
        try:
            return self.store.get_history(user_id, limit)
        except Exception as e:
            logger.error(f"Could not load deck history for {user_id}: {e}")
            return []

    def get_history_for_date(self, user_id: str, day: date) -> Optional[DeckHistoryRecord]:
        try:
            return self.store.get_history_for_date(user_id, day)
        except Exception as e:
            logger.error(f"Could not load deck history for {user_id} on {day}: {e}")
            return None

    def get_history_range(self, user_id: str, start: date, end: date) -> List[DeckHistoryRecord]:
        try:
            return self.store.get_history_range(user_id, start, end)
        except Exception as e:
            logger.error(f"Could not load deck history for {user_id} {start}..{end}: {e}")
            return []

    def calculate_streak(self, user_id: str, today: Optional[date] = None) -> int:
        """Consecutive days, counting back from today, with at least one completed card."""
        today = today or self.today()
        by_date = {h.date: h for h in self.get_history(user_id, STREAK_LOOKBACK)}

        streak = 0
        day = today
        while streak < len(by_date):
            record = by_date.get(day)
            if record is None or record.completed_cards == 0:
                break
            streak += 1
            day -= timedelta(days=1)
        return streak

    def _recent(self, user_id: str, days: int, today: Optional[date]) -> List[DeckHistoryRecord]:
        today = today or self.today()
        return self.get_history_range(user_id, today - timedelta(days=days), today)

    def average_completion_rate(self, user_id: str, days: int = 7, today: Optional[date] = None) -> int:
        history = self._recent(user_id, days, today)
        if not history:
            return 0
        return round(sum(h.completion_rate for h in history) / len(history))

    def fresh_contact_metrics(self, user_id: str, days: int = 7, today: Optional[date] = None) -> Dict[str, int]:
        history = self._recent(user_id, days, today)
        shown = sum(h.fresh_contacts_shown for h in history)
        engaged = sum(h.fresh_contacts_engaged for h in history)
        return {
            'total_shown': shown,
            'total_engaged': engaged,
            'conversion_rate': _percent(engaged, shown),
        }
