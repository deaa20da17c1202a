"""
Contact Score - rolling 90-day accumulation of action points with time decay.

    raw      = sum(final_points) over the window
    decayed  = raw                                            (last action <= 14 whole days ago)
             = raw * (0.25 + 0.75 * e^(-0.01 * (days - 14)))  (afterwards)
    final    = clamp(decayed - fatigue, 0, 100)               (fatigue 20 if last action < 3 days ago)

Pure: the caller supplies the events and `now`.
"""

import math
from collections import defaultdict
from datetime import datetime
from typing import List, Optional, Sequence

from touchcrm.engine.taxonomy import BREAKDOWN_CATEGORIES
from touchcrm.engine.timeutil import as_utc, utcnow, whole_days_since
from touchcrm.models import ActionEvent, ChannelStat, ContactScore, ScoreBreakdown

WINDOW_DAYS = 90
EVENT_LIMIT = 1000

DECAY_GRACE_DAYS = 14
DECAY_FLOOR = 0.25
DECAY_RATE = 0.01

FATIGUE_WINDOW_DAYS = 3
FATIGUE_PENALTY = 20

TOP_CHANNELS = 5
RECENT_ACTIONS = 10


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def _newest_first(events: Sequence[ActionEvent]) -> List[ActionEvent]:
    return sorted(events, key=lambda e: as_utc(e.timestamp), reverse=True)


def decay_multiplier(days_since_last: int) -> float:
    """1.0 inside the grace period, then exponential decay towards the 0.25 floor."""
    if days_since_last <= DECAY_GRACE_DAYS:
        return 1.0
    overdue = days_since_last - DECAY_GRACE_DAYS
    return DECAY_FLOOR + (1 - DECAY_FLOOR) * math.exp(-DECAY_RATE * overdue)


def peak_score(events: Sequence[ActionEvent]) -> float:
    """Highest running total reached, walking the events oldest to newest."""
    running = 0.0
    peak = 0.0
    for event in reversed(_newest_first(events)):
        running += event.final_points
        peak = max(peak, running)
    return _clamp(peak)


def calculate_contact_score(events: Sequence[ActionEvent], now: Optional[datetime] = None,
                            user_id: Optional[str] = None,
                            contact_id: Optional[str] = None) -> ContactScore:
    now = now or utcnow()

    if not events:
        return ContactScore(
            user_id=user_id,
            contact_id=contact_id,
            last_action_timestamp=now,
            last_updated=now,
        )

    ordered = _newest_first(events)
    last_ts = ordered[0].timestamp
    days = whole_days_since(last_ts, now)

    raw = sum(e.final_points for e in ordered)
    decayed = raw * decay_multiplier(days)
    fatigue = FATIGUE_PENALTY if days < FATIGUE_WINDOW_DAYS else 0

    return ContactScore(
        user_id=user_id,
        contact_id=contact_id,
        current_score=_clamp(decayed - fatigue),
        peak_score=peak_score(ordered),
        raw_score=raw,
        decay_penalty=raw - decayed,
        fatigue_penalty=fatigue,
        last_action_timestamp=last_ts,
        decay_started_at=last_ts if days > DECAY_GRACE_DAYS else None,
        total_actions=len(ordered),
        positive_actions=sum(1 for e in ordered if e.final_points > 0),
        negative_actions=sum(1 for e in ordered if e.final_points < 0),
        last_updated=now,
    )


def calculate_breakdown(events: Sequence[ActionEvent], now: Optional[datetime] = None) -> ScoreBreakdown:
    """Where the points came from. Informational; the total is computed by calculate_contact_score."""
    ordered = _newest_first(events)
    score = calculate_contact_score(ordered, now)

    category_points = {name: 0.0 for name in BREAKDOWN_CATEGORIES}
    for event in ordered:
        for name, action_ids in BREAKDOWN_CATEGORIES.items():
            if event.action_id in action_ids:
                category_points[name] += event.final_points

    channels = defaultdict(ChannelStat)
    for event in ordered:
        if not event.channel:
            continue
        stat = channels[event.channel]
        stat.channel = event.channel
        stat.count += 1
        stat.points += event.final_points
    top = sorted(channels.values(), key=lambda s: s.points, reverse=True)[:TOP_CHANNELS]

    base = sum(e.base_points for e in ordered)
    return ScoreBreakdown(
        base_score=base,
        multiplier_bonus=sum(e.final_points - e.base_points for e in ordered),
        decay_penalty=score.decay_penalty,
        final_score=score.current_score,
        intent_points=category_points['intent'],
        interaction_points=category_points['interaction'],
        reciprocity_points=category_points['reciprocity'],
        context_points=category_points['context'],
        cadence_points=category_points['cadence'],
        freshness_points=category_points['freshness'],
        top_channels=top,
        recent_actions=ordered[:RECENT_ACTIONS],
    )
