"""
Composite card ordering (DECK_STRATEGY=composite)

    score = clamp((50 + 0.3*recency + 0.25*cadence_fit + 0.15*tags
                      + 0.15*mutuality + 0.15*fresh) * fatigue, 0, 100)

Works from the contact plus the timestamp of its last touch, no history queries.
Day counts round up (a touch 2 hours ago is 1 day ago).
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from touchcrm.engine.taxonomy import CADENCE_PRESETS
from touchcrm.engine.timeutil import as_utc, utcnow
from touchcrm.models import Contact

HIGH_PRIORITY_TAGS = {'vip', 'investor', 'client', 'family'}
MEDIUM_PRIORITY_TAGS = {'colleague', 'friend', 'mentor'}

FRESH_WINDOW_DAYS = 14
FRESH_BOOST_MAX = 25
FRESH_DECAY_DAYS = 21
MAX_FRESH_CARDS = 2


@dataclass
class CompositeFactors:
    recency_decay: float = 0
    cadence_fit: float = 0
    tag_priority: float = 0
    manual_mutuality: float = 0
    fatigue_guard: float = 1.0
    fresh_boost: float = 0


@dataclass
class ChannelOption:
    type: str
    label: str
    value: str
    is_premium: bool = False
    is_available: bool = True


@dataclass
class RankedContact:
    contact: Contact
    score: float
    factors: CompositeFactors
    is_fresh: bool = False
    reason: str = ''
    last_touch_context: Optional[str] = None
    suggested_channels: List[ChannelOption] = field(default_factory=list)
    priority: int = 0


def days_between(a: datetime, b: datetime) -> int:
    return math.ceil(abs((as_utc(b) - as_utc(a)).total_seconds()) / 86400)


def cadence_label(days: int) -> str:
    for name, preset in CADENCE_PRESETS.items():
        if preset == days:
            return name
    return f"{days}-day"


def select_with_fresh_quota(ranked: Sequence, needed: int, fresh_already: int = 0) -> List:
    """
    Pick `needed` items from a list sorted best first. Fresh items (`.is_fresh`)
    get up to MAX_FRESH_CARDS slots, minus the fresh cards already on the deck,
    ahead of everything else. Regular items fill the rest; leftover fresh items
    only backfill slots that are still empty.
    """
    if needed <= 0:
        return []
    fresh = [r for r in ranked if r.is_fresh]
    regular = [r for r in ranked if not r.is_fresh]

    fresh_count = min(max(0, MAX_FRESH_CARDS - fresh_already), len(fresh), needed)
    picked = fresh[:fresh_count]
    picked += regular[:needed - len(picked)]
    if len(picked) < needed:
        picked += fresh[fresh_count:fresh_count + needed - len(picked)]
    return picked


class CardOrdering:

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    # -------------------------------------------------------------------------
    # Factors
    # -------------------------------------------------------------------------

    def _days_since(self, ts: Optional[datetime]) -> Optional[int]:
        return days_between(ts, self.now) if ts else None

    def recency_decay(self, last_touch: Optional[datetime]) -> int:
        days = self._days_since(last_touch)
        if days is None:
            return -20
        if days <= 7:
            return 20
        if days <= 14:
            return 10
        if days <= 30:
            return 0
        if days <= 60:
            return -10
        return -20

    def cadence_fit(self, contact: Contact, last_touch: Optional[datetime]) -> int:
        if not contact.cadence_days or contact.cadence_days <= 0 or last_touch is None:
            return 0
        deviation = abs(self._days_since(last_touch) - contact.cadence_days)
        if deviation <= 2:
            return 15
        if deviation <= 7:
            return 10
        if deviation <= 14:
            return 5
        return -5

    @staticmethod
    def tag_priority(contact: Contact) -> int:
        tags = {t.lower() for t in contact.tags or []}
        if tags & HIGH_PRIORITY_TAGS:
            return 15
        if tags & MEDIUM_PRIORITY_TAGS:
            return 8
        return 0

    def fatigue_guard(self, last_touch: Optional[datetime]) -> float:
        days = self._days_since(last_touch)
        if days is None:
            return 1.0
        if days <= 1:
            return 0.3
        if days <= 3:
            return 0.7
        if days <= 7:
            return 0.9
        return 1.0

    def is_fresh(self, contact: Contact, last_touch: Optional[datetime]) -> bool:
        if contact.first_seen_at is None or last_touch is not None:
            return False
        return days_between(contact.first_seen_at, self.now) <= FRESH_WINDOW_DAYS

    def fresh_boost(self, contact: Contact, last_touch: Optional[datetime]) -> float:
        if not self.is_fresh(contact, last_touch):
            return 0.0
        days = days_between(contact.first_seen_at, self.now)
        return FRESH_BOOST_MAX * max(0.0, 1 - days / FRESH_DECAY_DAYS)

    def factors(self, contact: Contact, last_touch: Optional[datetime]) -> CompositeFactors:
        return CompositeFactors(
            recency_decay=self.recency_decay(last_touch),
            cadence_fit=self.cadence_fit(contact, last_touch),
            tag_priority=self.tag_priority(contact),
            manual_mutuality=contact.mutuality_score or 0,
            fatigue_guard=self.fatigue_guard(last_touch),
            fresh_boost=self.fresh_boost(contact, last_touch),
        )

    @staticmethod
    def composite_score(f: CompositeFactors) -> float:
        score = (50 + f.recency_decay * 0.3 + f.cadence_fit * 0.25 + f.tag_priority * 0.15
                 + f.manual_mutuality * 0.15 + f.fresh_boost * 0.15)
        return max(0.0, min(100.0, score * f.fatigue_guard))

    # -------------------------------------------------------------------------
    # Presentation
    # -------------------------------------------------------------------------

    @staticmethod
    def reason(contact: Contact, f: CompositeFactors, is_fresh: bool) -> str:
        if is_fresh:
            return "New connection - reach out while they remember you!"
        if f.cadence_fit > 10:
            return f"Perfect timing for your {cadence_label(contact.cadence_days)} check-in"
        if f.recency_decay < -10:
            return "It's been a while - time to reconnect"
        if f.tag_priority > 10:
            return "High priority contact"
        return "Good time to reach out"

    def last_touch_context(self, last_touch: Optional[datetime]) -> Optional[str]:
        if last_touch is None:
            return None
        days = self._days_since(last_touch)
        if days == 0:
            return "Contacted today"
        if days == 1:
            return "Contacted yesterday"
        if days <= 7:
            return f"Contacted {days} days ago"
        if days <= 30:
            return f"Contacted {days // 7} weeks ago"
        return f"Contacted {days // 30} months ago"

    @staticmethod
    def suggested_channels(contact: Contact, is_premium: bool) -> List[ChannelOption]:
        channels = []
        if contact.primary_phone:
            channels.append(ChannelOption('sms', 'Text', contact.primary_phone))
            channels.append(ChannelOption('call', 'Call', contact.primary_phone))
        if contact.primary_email:
            # Sending email from the app is a premium feature
            channels.append(ChannelOption('email', 'Email', contact.primary_email,
                                          is_premium=True, is_available=is_premium))
        return channels

    # -------------------------------------------------------------------------
    # Deck
    # -------------------------------------------------------------------------

    def rank(self, contact: Contact, last_touch: Optional[datetime], is_premium: bool) -> RankedContact:
        f = self.factors(contact, last_touch)
        fresh = self.is_fresh(contact, last_touch)
        return RankedContact(
            contact=contact,
            score=self.composite_score(f),
            factors=f,
            is_fresh=fresh,
            reason=self.reason(contact, f, fresh),
            last_touch_context=self.last_touch_context(last_touch),
            suggested_channels=self.suggested_channels(contact, is_premium),
        )

    def generate_deck(self, contacts: Sequence[Contact], deck_size: int, is_premium: bool,
                      last_touches: Optional[Dict[str, datetime]] = None) -> List[RankedContact]:
        """
        Highest composite score first, with 1 to 2 fresh contacts placed at the
        top whenever any exist. Extra fresh contacts only backfill empty slots.
        """
        last_touches = last_touches or {}
        ranked = sorted(
            (self.rank(c, last_touches.get(c.id), is_premium) for c in contacts),
            key=lambda r: r.score,
            reverse=True,
        )
        deck = select_with_fresh_quota(ranked, deck_size)
        for position, item in enumerate(deck, start=1):
            item.priority = position
        return deck
