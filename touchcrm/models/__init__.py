"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
Field names match the table columns so rows unpack straight into them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass
class Contact:
    """A person the user wants to stay in touch with. First phone/email is the primary one."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    display_name: str = ''
    phone_numbers: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    organization: Optional[str] = None
    job_title: Optional[str] = None
    city: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    mutuality_score: int = 0
    first_seen_at: Optional[datetime] = None
    first_engagement_at: Optional[datetime] = None
    cadence_days: Optional[int] = None
    do_not_contact: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def primary_phone(self) -> Optional[str]:
        return self.phone_numbers[0] if self.phone_numbers else None

    @property
    def primary_email(self) -> Optional[str]:
        return self.emails[0] if self.emails else None


@dataclass
class InteractionEvent:
    """Raw touch from the legacy interaction log. Append-only."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    type: str = 'sms_sent'
    contact_ids: List[str] = field(default_factory=list)
    linked_card_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class ActionEvent:
    """Scored action. final_points = base_points x multipliers + freshness bonus."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    action_id: str = ''
    base_points: float = 0.0
    multipliers_applied: Dict[str, float] = field(default_factory=dict)
    final_points: float = 0.0
    channel: Optional[str] = None
    customization_level: Optional[str] = None
    is_multi_contact: bool = False
    linked_card_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class OutcomeNote:
    """What happened after a touch, as recorded by the user (plus AI enrichment)."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    raw_text: str = ''
    user_sentiment: str = 'neutral'
    contact_ids: List[str] = field(default_factory=list)
    linked_card_id: Optional[str] = None
    processing_status: str = 'pending'
    processing_error: Optional[str] = None
    ai_summary: Optional[str] = None
    ai_next_steps: List[str] = field(default_factory=list)
    ai_entities: List[str] = field(default_factory=list)
    recorded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# SCORES
# =============================================================================

@dataclass
class RHSFactors:
    """Relationship Health Score: heuristic factor sum, higher = more in need of a touch."""
    recency_score: float = 0
    freshness_boost: float = 0
    fatigue_guard_penalty: float = 0
    cadence_weight: float = 0
    cadence_adherence_score: float = 0
    cadence_consistency_score: float = 0
    cadence_trend_score: float = 0
    target_cadence_days: Optional[int] = None
    actual_average_interval: float = 0
    engagement_quality_bonus: float = 0
    conversation_depth_bonus: float = 0
    total_score: float = 0
    days_since_last_engagement: Optional[float] = None
    total_engagements: int = 0
    positive_outcomes: int = 0
    negative_outcomes: int = 0
    average_engagement_frequency: float = 0
    is_overdue_by_cadence: bool = False
    days_overdue: int = 0

    @property
    def total(self) -> float:
        return self.total_score


@dataclass
class ContactScore:
    """Contact Score: 90-day point accumulation with time decay."""
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    current_score: float = 0
    peak_score: float = 0
    raw_score: float = 0
    decay_penalty: float = 0
    fatigue_penalty: float = 0
    last_action_timestamp: Optional[datetime] = None
    decay_started_at: Optional[datetime] = None
    total_actions: int = 0
    positive_actions: int = 0
    negative_actions: int = 0
    last_updated: Optional[datetime] = None

    @property
    def total(self) -> float:
        return self.current_score


@dataclass
class ChannelStat:
    channel: str = ''
    count: int = 0
    points: float = 0.0


@dataclass
class ScoreBreakdown:
    """Where a Contact Score came from. Informational only, not part of the total."""
    base_score: float = 0
    multiplier_bonus: float = 0
    decay_penalty: float = 0
    final_score: float = 0
    intent_points: float = 0
    interaction_points: float = 0
    reciprocity_points: float = 0
    context_points: float = 0
    cadence_points: float = 0
    freshness_points: float = 0
    top_channels: List[ChannelStat] = field(default_factory=list)
    recent_actions: List[ActionEvent] = field(default_factory=list)


@dataclass
class MultiplierResult:
    channel_depth: float = 1.0
    customization: float = 1.0
    group_intro: float = 1.0
    freshness_bonus: float = 0.0
    total_multiplier: float = 1.0
    applied: Dict[str, float] = field(default_factory=dict)


@dataclass
class EditDistanceResult:
    distance: int = 0
    percent_changed: float = 0.0
    level: str = 'untouched'


@dataclass
class CacheEntry:
    """Immutable once stored; the cache replaces entries, never mutates them."""
    value: Any = None
    cached_at: float = 0.0
    marker: Optional[str] = None


# =============================================================================
# DECK
# =============================================================================

@dataclass
class DeckCard:
    """One contact on one day's deck. card_id = '{date}-{contact_id}'."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    card_id: str = ''
    contact_id: Optional[str] = None
    date: Optional[date] = None
    position: int = 0
    status: str = 'pending'
    suggested_channel: str = 'call'
    reason: str = ''
    score: float = 0
    is_fresh: bool = False
    drafted_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    linked_outcome_id: Optional[int] = None
    created_at: Optional[datetime] = None
    contact: Optional[Contact] = None


@dataclass
class DeckHistoryRecord:
    """End-of-day rollup of one date's deck."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    date: Optional[date] = None
    max_cards: int = 0
    total_cards: int = 0
    completed_cards: int = 0
    skipped_cards: int = 0
    snoozed_cards: int = 0
    sms_count: int = 0
    call_count: int = 0
    email_count: int = 0
    facetime_count: int = 0
    slack_count: int = 0
    fresh_contacts_shown: int = 0
    fresh_contacts_engaged: int = 0
    outcomes_recorded: int = 0
    positive_outcomes: int = 0
    neutral_outcomes: int = 0
    negative_outcomes: int = 0
    first_card_opened_at: Optional[datetime] = None
    last_card_completed_at: Optional[datetime] = None
    deck_generated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    is_premium: bool = False
    completion_rate: int = 0
    avg_score: int = 0


@dataclass
class ArchiveResult:
    archived: bool = False
    cards_deleted: int = 0
    history_id: Optional[int] = None
    error: Optional[str] = None
