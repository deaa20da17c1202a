"""
Relationship Health Score (RHS)
Heuristic 0-100 factor sum; higher means the contact is more in need of a touch.

  recency        20 / 40 / 60 / 80 / 100 by days since the last meaningful touch
  freshness      +25 for new, never-engaged contacts (decays day 14 to 21)
  fatigue        -20 when the last touch was under 3 days ago
  cadence        adherence + consistency + trend, only when a cadence is set
  quality        -5 .. +20 from the outcome-quality score of recent notes
  depth          0 .. +15 from the average gap between recent touches

Pure: everything is computed from the arguments, `now` included.
"""

from dataclasses import dataclass
from datetime import datetime
from statistics import mean, pstdev
from typing import List, Optional, Sequence, Tuple

from touchcrm.engine.taxonomy import MEANINGFUL_INTERACTIONS
from touchcrm.engine.timeutil import SECONDS_PER_DAY, as_utc, days_since, utcnow
from touchcrm.models import Contact, InteractionEvent, OutcomeNote, RHSFactors


@dataclass(frozen=True)
class RHSConfig:
    recency_bands: Tuple[Tuple[int, int], ...] = ((7, 20), (14, 40), (21, 60), (30, 80))
    recency_max: int = 100
    fresh_boost_max: int = 25
    fresh_window_days: int = 14
    fresh_decay_days: int = 21
    fatigue_window_days: int = 3
    fatigue_penalty: int = 20
    cadence_overdue_boost_max: int = 30
    cadence_early_penalty_max: int = 15
    consistency_max: int = 20
    trend_max: int = 10
    engagement_quality_max: int = 20
    conversation_depth_max: int = 15
    quality_notes: int = 5
    depth_events: int = 10


DEFAULT_RHS_CONFIG = RHSConfig()


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def _meaningful(events: Sequence[InteractionEvent]) -> List[InteractionEvent]:
    return [e for e in events if e.type in MEANINGFUL_INTERACTIONS and e.timestamp is not None]


def _gaps_in_days(timestamps: Sequence[datetime]) -> List[float]:
    """Absolute gaps between consecutive timestamps, in the order given."""
    return [
        abs((as_utc(a) - as_utc(b)).total_seconds()) / SECONDS_PER_DAY
        for a, b in zip(timestamps, timestamps[1:])
    ]


# =============================================================================
# CORE FACTORS
# =============================================================================

def recency_score(days: Optional[float], cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    if days is None:
        return cfg.recency_max
    for limit, score in cfg.recency_bands:
        if days <= limit:
            return score
    return cfg.recency_max


def freshness_boost(contact: Contact, now: datetime, cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    if contact.first_seen_at is None or contact.first_engagement_at is not None:
        return 0
    days = days_since(contact.first_seen_at, now)
    if days >= cfg.fresh_decay_days:
        return 0
    if days > cfg.fresh_window_days:
        progress = (days - cfg.fresh_window_days) / (cfg.fresh_decay_days - cfg.fresh_window_days)
        return round(cfg.fresh_boost_max * (1 - progress))
    return cfg.fresh_boost_max


def fatigue_penalty(days: Optional[float], cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    if days is not None and days < cfg.fatigue_window_days:
        return cfg.fatigue_penalty
    return 0


# =============================================================================
# CADENCE
# =============================================================================

def cadence_adherence(cadence_days: Optional[int], days: Optional[float],
                      cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> Tuple[int, bool, int]:
    """
    Returns (score, is_overdue, days_overdue).
    Overdue ratio >= 1.5 earns the full boost, 1.0 to 1.5 scales up to it,
    0.5 to 1.0 is neutral and touching again too early costs up to -15.
    """
    if not cadence_days or cadence_days <= 0:
        return 0, False, 0
    if days is None:
        return cfg.cadence_overdue_boost_max, True, cadence_days

    # a touch stamped in the future counts as just touched
    ratio = max(days, 0) / cadence_days
    if ratio >= 1.5:
        return cfg.cadence_overdue_boost_max, True, round(days - cadence_days)
    if ratio >= 1.0:
        return round(cfg.cadence_overdue_boost_max * (ratio - 1.0) / 0.5), True, round(days - cadence_days)
    if ratio >= 0.5:
        return 0, False, 0
    return -round(cfg.cadence_early_penalty_max * (0.5 - ratio) / 0.5), False, 0


def cadence_consistency(intervals: Sequence[float], cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    """Coefficient of variation of the touch intervals: CV <= 0.2 is full score, >= 0.8 is none."""
    if len(intervals) < 3:
        return 0
    avg = mean(intervals)
    if avg <= 0:
        return 0
    cv = pstdev(intervals) / avg
    if cv <= 0.2:
        return cfg.consistency_max
    if cv >= 0.8:
        return 0
    return round(cfg.consistency_max * (0.8 - cv) / 0.6)


def cadence_trend(intervals: Sequence[float], cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    """
    Early half vs late half of the (chronological) intervals.
    Intervals shrinking by 20% or more earn +10, growing by 20% or more costs -10.
    """
    if len(intervals) < 3:
        return 0
    half = len(intervals) // 2
    early = mean(intervals[:half])
    late = mean(intervals[half:])
    if early <= 0:
        return 0
    change = (late - early) / early
    if change <= -0.2:
        return cfg.trend_max
    if change >= 0.2:
        return -cfg.trend_max
    return round(-change / 0.2 * cfg.trend_max)


# =============================================================================
# QUALITY & DEPTH
# =============================================================================

def note_quality(note: OutcomeNote) -> float:
    score = 50
    if note.user_sentiment == 'positive':
        score += 30
    elif note.user_sentiment == 'negative':
        score -= 30
    elif note.user_sentiment == 'mixed':
        score += 10
    if note.ai_next_steps:
        score += 10
    if len(note.ai_entities or []) >= 2:
        score += 10
    return _clamp(score)


def outcome_quality_score(outcomes: Sequence[OutcomeNote], cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    """0-100, recent notes weighted 1, 1/2, 1/3...; 50 when there are no notes."""
    recent = list(outcomes)[:cfg.quality_notes]
    if not recent:
        return 50
    weights = [1 / (i + 1) for i in range(len(recent))]
    weighted = sum(note_quality(n) * w for n, w in zip(recent, weights))
    return round(weighted / sum(weights))


def engagement_quality_bonus(quality: float, cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    if quality >= 70:
        return cfg.engagement_quality_max
    if quality >= 50:
        return round((quality - 50) / 20 * cfg.engagement_quality_max)
    if quality < 30:
        return -5
    return 0


def average_gap(events: Sequence[InteractionEvent]) -> float:
    """Mean days between consecutive events (given newest first). 0 with fewer than two."""
    if len(events) < 2:
        return 0.0
    return mean(_gaps_in_days([e.timestamp for e in events]))


def conversation_depth_bonus(avg_gap: float, cfg: RHSConfig = DEFAULT_RHS_CONFIG) -> int:
    if avg_gap <= 0:
        return 0
    if 7 <= avg_gap <= 30:
        return cfg.conversation_depth_max
    if avg_gap < 7:
        return round(cfg.conversation_depth_max * 0.6)
    if avg_gap <= 90:
        return round(cfg.conversation_depth_max * 0.3)
    return 0


def engagement_history_factor(total_engagements: int) -> float:
    if total_engagements >= 10:
        return 0.6
    if total_engagements >= 5:
        return 0.8
    if total_engagements >= 1:
        return 0.9
    return 1.0


# =============================================================================
# ENTRY POINT
# =============================================================================

def calculate_rhs(
    contact: Contact,
    last_event: Optional[InteractionEvent],
    events: Sequence[InteractionEvent],
    outcomes: Sequence[OutcomeNote],
    now: Optional[datetime] = None,
    config: RHSConfig = DEFAULT_RHS_CONFIG,
) -> RHSFactors:
    """
    Score one contact.

    Args:
        contact: the contact (first_seen_at / first_engagement_at / cadence_days are read)
        last_event: most recent meaningful touch, or None if never touched
        events: recent interaction events, newest first
        outcomes: recent outcome notes, newest first
    """
    now = now or utcnow()
    days = days_since(last_event.timestamp, now) if last_event and last_event.timestamp else None

    recency = recency_score(days, config)
    fresh = freshness_boost(contact, now, config)
    fatigue = fatigue_penalty(days, config)

    meaningful = _meaningful(events)
    chronological = sorted((e.timestamp for e in meaningful), key=as_utc)
    intervals = _gaps_in_days(chronological)

    adherence, is_overdue, days_overdue = cadence_adherence(contact.cadence_days, days, config)
    if contact.cadence_days and contact.cadence_days > 0:
        consistency = cadence_consistency(intervals, config)
        trend = cadence_trend(intervals, config)
    else:
        consistency = trend = 0
    cadence = adherence + consistency + trend

    quality = engagement_quality_bonus(outcome_quality_score(outcomes, config), config)
    avg_gap = average_gap(meaningful[:config.depth_events])
    depth = conversation_depth_bonus(avg_gap, config)

    total = _clamp(recency + fresh + cadence + quality + depth - fatigue)

    return RHSFactors(
        recency_score=recency,
        freshness_boost=fresh,
        fatigue_guard_penalty=fatigue,
        cadence_weight=cadence,
        cadence_adherence_score=adherence,
        cadence_consistency_score=consistency,
        cadence_trend_score=trend,
        target_cadence_days=contact.cadence_days if contact.cadence_days and contact.cadence_days > 0 else None,
        actual_average_interval=mean(intervals) if intervals else 0,
        engagement_quality_bonus=quality,
        conversation_depth_bonus=depth,
        total_score=total,
        days_since_last_engagement=days,
        total_engagements=len(meaningful),
        positive_outcomes=sum(1 for o in outcomes if o.user_sentiment == 'positive'),
        negative_outcomes=sum(1 for o in outcomes if o.user_sentiment == 'negative'),
        average_engagement_frequency=average_gap(meaningful),
        is_overdue_by_cadence=is_overdue,
        days_overdue=days_overdue,
    )


def neutral_rhs() -> RHSFactors:
    """Stand-in when a contact can't be scored; sinks to the bottom of the deck."""
    return RHSFactors()
