"""
Deck Builder
Assembles the user's daily deck: the contacts most in need of a touch today,
with 1 to 2 fresh contacts guaranteed a place.

  1. Archive decks from earlier days (once per user per day, failures logged)
  2. Today's deck exists → return it, or extend it if the quota grew; never shrink
  3. Otherwise rank every contact and persist the top `max_cards`

Ranking is RHS by default; Config.DECK_STRATEGY = composite switches to the
legacy weighted ordering in card_order.py. Rows are keyed '{date}-{contact_id}'
and inserted with ON CONFLICT DO NOTHING so concurrent builders converge.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from touchcrm.bus.events import bus, EVENT_DECK_BUILT
from touchcrm.config import config
from touchcrm.engine import crm
from touchcrm.engine.card_order import CardOrdering, select_with_fresh_quota
from touchcrm.engine.deck_history import ArchiveGuard, DeckHistoryService, deck_size
from touchcrm.engine.errors import InvalidTransitionError
from touchcrm.engine.scoring import ScoringService
from touchcrm.engine.taxonomy import is_fresh_contact
from touchcrm.engine.timeutil import local_today, utcnow
from touchcrm.models import Contact, DeckCard, RHSFactors

logger = logging.getLogger(__name__)

CARD_TRANSITIONS = {
    'pending': {'active', 'completed', 'skipped', 'snoozed'},
    'active': {'completed', 'skipped', 'snoozed'},
}


@dataclass
class Candidate:
    contact: Contact
    score: float
    is_fresh: bool
    reason: str


def card_id_for(day: date, contact_id: str) -> str:
    return f"{day.isoformat()}-{contact_id}"


def suggested_channel(contact: Contact) -> str:
    if contact.primary_phone:
        return 'sms'
    if contact.primary_email:
        return 'email'
    return 'call'


def rhs_reason(factors: RHSFactors) -> str:
    """Which part of the score put the contact on the deck, in words."""
    if factors.freshness_boost > 0:
        return "New connection - reach out while it's fresh!"
    if factors.recency_score >= 100:
        return "You haven't connected yet"
    if factors.recency_score >= 80:
        return "It's been over 3 weeks"
    if factors.recency_score >= 60:
        return "Time to reconnect"
    return "Keep the momentum going"


class DeckBuilder:

    def __init__(self, store=crm, scoring: Optional[ScoringService] = None,
                 history: Optional[DeckHistoryService] = None, guard: Optional[ArchiveGuard] = None,
                 strategy: Optional[str] = None, tz: Optional[str] = None):
        self.store = store
        self.scoring = scoring or ScoringService(store=store)
        self.tz = tz or config.TIMEZONE
        self.history = history or DeckHistoryService(store=store, tz=self.tz)
        self.guard = guard or ArchiveGuard()
        self.strategy = strategy or config.DECK_STRATEGY

    def today(self, now: Optional[datetime] = None) -> date:
        return local_today(self.tz, now)

    # =========================================================================
    # BUILD
    # =========================================================================

    def build_deck(self, user_id: str, max_cards: Optional[int] = None, is_premium: Optional[bool] = None,
                   now: Optional[datetime] = None) -> List[DeckCard]:
        """
        Today's deck, built on first call and returned unchanged afterwards.
        A larger max_cards later in the day appends cards for contacts not yet
        on the deck.
        """
        now = now or utcnow()
        is_premium = config.IS_PREMIUM if is_premium is None else is_premium
        max_cards = deck_size(is_premium) if max_cards is None else max_cards
        today = self.today(now)

        self._archive_old_decks(user_id, is_premium, today)

        existing = self.store.get_deck_cards(user_id, today)
        if existing and max_cards <= len(existing):
            logger.debug(f"Deck for {today} already has {len(existing)} cards")
            return self._hydrate(user_id, existing)

        on_deck = {c.contact_id for c in existing}
        contacts = [c for c in self.store.list_contacts(user_id, include_dnc=False) if c.id not in on_deck]
        if not contacts:
            logger.info(f"No contacts available for {user_id}'s deck on {today}")
            return self._hydrate(user_id, existing)

        ranked = self.rank(user_id, contacts, is_premium, now)
        fresh_already = sum(1 for c in existing if c.is_fresh)
        picked = select_with_fresh_quota(ranked, max_cards - len(existing), fresh_already)

        cards = [
            DeckCard(
                user_id=user_id,
                card_id=card_id_for(today, item.contact.id),
                contact_id=item.contact.id,
                date=today,
                position=len(existing) + position,
                status='pending',
                suggested_channel=suggested_channel(item.contact),
                reason=item.reason,
                score=round(item.score, 2),
                is_fresh=item.is_fresh,
            )
            for position, item in enumerate(picked, start=1)
        ]
        inserted = self.store.insert_deck_cards(cards)

        deck = self.store.get_deck_cards(user_id, today)
        logger.info(f"Deck for {user_id} on {today}: {len(deck)} cards ({inserted} new, "
                    f"{sum(1 for c in deck if c.is_fresh)} fresh, strategy={self.strategy})")
        bus.emit(EVENT_DECK_BUILT, {
            'user_id': user_id,
            'date': today,
            'card_count': len(deck),
            'added': inserted,
            'extended': bool(existing),
        })
        return self._hydrate(user_id, deck)

    def _archive_old_decks(self, user_id: str, is_premium: bool, today: date):
        if not self.guard.should_archive_today(user_id, today):
            return
        result = self.history.archive_old_decks(user_id, is_premium, today)
        if result['errors']:
            logger.warning(f"Archiving old decks for {user_id} failed for: {result['errors']}")
        else:
            self.guard.mark_completed(user_id, today)

    def rank(self, user_id: str, contacts: Sequence[Contact], is_premium: bool,
             now: datetime) -> List[Candidate]:
        """Candidates sorted by score, best first (stable for equal scores)."""
        if self.strategy == 'composite':
            candidates = self._rank_composite(user_id, contacts, is_premium, now)
        else:
            candidates = self._rank_rhs(user_id, contacts, now)
        return sorted(candidates, key=lambda c: c.score, reverse=True)

    def _rank_rhs(self, user_id: str, contacts: Sequence[Contact], now: datetime) -> List[Candidate]:
        scores = self.scoring.get_rhs_bulk(user_id, contacts, now)
        return [
            Candidate(c, scores[c.id].total_score, is_fresh_contact(c, now), rhs_reason(scores[c.id]))
            for c in contacts
        ]

    def _rank_composite(self, user_id: str, contacts: Sequence[Contact], is_premium: bool,
                        now: datetime) -> List[Candidate]:
        ordering = CardOrdering(now)
        candidates = []
        for contact in contacts:
            ranked = ordering.rank(contact, self._last_touch(user_id, contact.id), is_premium)
            candidates.append(Candidate(contact, ranked.score, ranked.is_fresh, ranked.reason))
        return candidates

    def _last_touch(self, user_id: str, contact_id: str) -> Optional[datetime]:
        try:
            last = self.store.get_last_interaction(user_id, contact_id)
        except Exception as e:
            logger.error(f"Could not load last touch for {contact_id}: {e}")
            return None
        return last.timestamp if last else None

    def _hydrate(self, user_id: str, cards: List[DeckCard]) -> List[DeckCard]:
        if not cards:
            return cards
        contacts = self.store.get_contacts_by_ids(user_id, [c.contact_id for c in cards])
        for card in cards:
            card.contact = contacts.get(card.contact_id)
        return cards

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_today_deck(self, user_id: str, now: Optional[datetime] = None) -> List[DeckCard]:
        try:
            return self._hydrate(user_id, self.store.get_deck_cards(user_id, self.today(now)))
        except Exception as e:
            logger.error(f"Could not load today's deck for {user_id}: {e}")
            return []

    def is_daily_quota_exhausted(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """True once any card exists for today, whatever the count."""
        try:
            return self.store.has_deck_for_date(user_id, self.today(now))
        except Exception as e:
            logger.error(f"Could not check today's deck for {user_id}: {e}")
            return False

    def deck_status(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        cards = self.get_today_deck(user_id, now)
        counts = {status: 0 for status in ('pending', 'active', 'completed', 'skipped', 'snoozed')}
        for card in cards:
            counts[card.status] = counts.get(card.status, 0) + 1
        counts['total'] = len(cards)
        counts['fresh'] = sum(1 for c in cards if c.is_fresh)
        return counts

    # =========================================================================
    # CARD LIFECYCLE
    # =========================================================================

    def _transition(self, user_id: str, card_id: str, status: str, **updates) -> DeckCard:
        card = self.store.get_deck_card(user_id, card_id)
        if card is None:
            raise ValueError(f"Deck card {card_id} not found")
        if status not in CARD_TRANSITIONS.get(card.status, set()):
            raise InvalidTransitionError('deck card', card.status, status)

        updates['status'] = status
        self.store.update_deck_card(user_id, card_id, updates)
        for name, value in updates.items():
            setattr(card, name, value)
        return card

    def activate_card(self, user_id: str, card_id: str, now: Optional[datetime] = None) -> DeckCard:
        return self._transition(user_id, card_id, 'active', drafted_at=now or utcnow())

    def complete_card(self, user_id: str, card_id: str, channel: Optional[str] = None,
                      outcome_id: Optional[int] = None, now: Optional[datetime] = None) -> DeckCard:
        now = now or utcnow()
        updates = {'completed_at': now, 'sent_at': now}
        if channel:
            updates['suggested_channel'] = channel
        if outcome_id is not None:
            updates['linked_outcome_id'] = outcome_id
        return self._transition(user_id, card_id, 'completed', **updates)

    def skip_card(self, user_id: str, card_id: str) -> DeckCard:
        return self._transition(user_id, card_id, 'skipped')

    def snooze_card(self, user_id: str, card_id: str) -> DeckCard:
        return self._transition(user_id, card_id, 'snoozed')
