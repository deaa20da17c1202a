"""
System Events
Actions the engine derives on its own from a contact's recent action history
(90-day window), run after every score recalculation.

  fresh_first_touch       new contact reached out to while still fresh         once per window
  fast_first_touch        reached out to within 48h of first seen              once per window
  missed_cadence          last outreach older than twice the cadence           7 day cooldown
  defer_repeats           deferred 3+ times in 14 days                         7 day cooldown
  multi_channel_no_reply  3+ channels tried in 30 days, no reply               14 day cooldown
  impressions_no_action   shown 3+ times in 7 days, never acted on             7 day cooldown

Each check runs on its own; a failing check is logged and the rest still run.
Derived events are emitted without triggering another system-event pass.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from touchcrm.engine.action_events import EmitParams
from touchcrm.engine.taxonomy import is_fresh
from touchcrm.engine.timeutil import as_utc, hours_since, utcnow, whole_days_since
from touchcrm.models import ActionEvent, Contact

logger = logging.getLogger(__name__)

FIRST_TOUCH_ACTIONS = {'swipe_ping', 'composer_opened', 'call_placed', 'facetime_started', 'send_email', 'send_slack'}
FAST_TOUCH_ACTIONS = {'swipe_ping', 'composer_opened', 'call_placed', 'facetime_started'}
OUTREACH_ACTIONS = {'composer_opened', 'call_placed', 'facetime_started', 'send_email', 'send_slack'}
SEND_ACTIONS = {'composer_opened', 'send_email', 'send_slack', 'call_placed'}
REPLY_ACTIONS = {'outcome_replied', 'email_reply', 'slack_dm_reply'}
ENGAGE_ACTIONS = {'swipe_ping', 'open_more_context', 'composer_opened'}

FAST_TOUCH_HOURS = 48
ENGAGEMENT_STAMP_SLACK = timedelta(minutes=1)


def _within(event: ActionEvent, days: int, now: datetime) -> bool:
    return whole_days_since(event.timestamp, now) <= days


def _emitted_within(events: Sequence[ActionEvent], action_id: str, days: int, now: datetime) -> bool:
    return any(e.action_id == action_id and _within(e, days, now) for e in events)


def _has_action(events: Sequence[ActionEvent], action_id: str) -> bool:
    return any(e.action_id == action_id for e in events)


def _first_touch(events: Sequence[ActionEvent], action_ids) -> Optional[ActionEvent]:
    touches = [e for e in events if e.action_id in action_ids]
    return min(touches, key=lambda e: as_utc(e.timestamp)) if touches else None


def _unengaged_before(contact: Contact, touch: ActionEvent) -> bool:
    """
    True when the contact had no meaningful engagement before this touch.
    Logging the touch stamps first_engagement_at, so a stamp at (or after) the
    touch itself still counts as unengaged.
    """
    if contact.first_engagement_at is None:
        return True
    return as_utc(contact.first_engagement_at) >= as_utc(touch.timestamp) - ENGAGEMENT_STAMP_SLACK


# =============================================================================
# CHECKS (events newest first; each returns the event to emit, or None)
# =============================================================================

def check_fresh_first_touch(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                            now: datetime) -> Optional[EmitParams]:
    touch = _first_touch(events, FIRST_TOUCH_ACTIONS)
    if touch is None or not _unengaged_before(contact, touch):
        return None
    # fresh as of the touch, not as of this recalculation
    if not is_fresh(contact.first_seen_at, None, touch.timestamp):
        return None
    if _has_action(events, 'fresh_first_touch'):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='fresh_first_touch',
        is_fresh=True,
        days_since_first_seen=whole_days_since(contact.first_seen_at, now),
        metadata={
            'first_seen_at': contact.first_seen_at.isoformat(),
            'first_engagement_type': touch.action_id,
        },
    )


def check_fast_first_touch(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                           now: datetime) -> Optional[EmitParams]:
    if contact.first_seen_at is None:
        return None
    touch = _first_touch(events, FAST_TOUCH_ACTIONS)
    if touch is None or not _unengaged_before(contact, touch):
        return None
    hours = hours_since(contact.first_seen_at, touch.timestamp)
    if hours > FAST_TOUCH_HOURS or _has_action(events, 'fast_first_touch'):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='fast_first_touch',
        is_fresh=True,
        days_since_first_seen=0,
        metadata={'hours_since_first_seen': int(hours), 'first_engagement_type': touch.action_id},
    )


def check_missed_cadence(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                         now: datetime) -> Optional[EmitParams]:
    if not contact.cadence_days or contact.cadence_days <= 0:
        return None
    last = next((e for e in events if e.action_id in OUTREACH_ACTIONS), None)
    if last is None:
        return None
    days = whole_days_since(last.timestamp, now)
    if days <= contact.cadence_days * 2 or _emitted_within(events, 'missed_cadence', 7, now):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='missed_cadence',
        metadata={
            'cadence_days': contact.cadence_days,
            'days_since_last_contact': days,
            'days_overdue': days - contact.cadence_days,
        },
    )


def check_defer_repeats(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                        now: datetime) -> Optional[EmitParams]:
    defers = [e for e in events if e.action_id == 'swipe_defer' and _within(e, 14, now)]
    if len(defers) < 3 or _emitted_within(events, 'defer_repeats', 7, now):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='defer_repeats',
        metadata={'defer_count': len(defers), 'time_window': '14 days'},
    )


def check_multi_channel_no_reply(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                                 now: datetime) -> Optional[EmitParams]:
    sends = [e for e in events if e.action_id in SEND_ACTIONS and _within(e, 30, now)]
    channels = {e.channel for e in sends if e.channel}
    if len(channels) < 3:
        return None
    if any(e.action_id in REPLY_ACTIONS and _within(e, 30, now) for e in events):
        return None
    if _emitted_within(events, 'multi_channel_no_reply', 14, now):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='multi_channel_no_reply',
        metadata={'channels_used': sorted(channels), 'attempt_count': len(sends)},
    )


def check_impressions_no_action(user_id: str, contact: Contact, events: Sequence[ActionEvent],
                                now: datetime) -> Optional[EmitParams]:
    impressions = [e for e in events if e.action_id == 'impression' and _within(e, 7, now)]
    if len(impressions) < 3:
        return None
    if any(e.action_id in ENGAGE_ACTIONS and _within(e, 7, now) for e in events):
        return None
    if _emitted_within(events, 'impressions_no_action', 7, now):
        return None
    return EmitParams(
        user_id=user_id,
        contact_id=contact.id,
        action_id='impressions_no_action',
        metadata={'impression_count': len(impressions), 'time_window': '7 days'},
    )


CHECKS: List[Callable] = [
    check_fresh_first_touch,
    check_fast_first_touch,
    check_missed_cadence,
    check_defer_repeats,
    check_multi_channel_no_reply,
    check_impressions_no_action,
]


def calculate_system_events(pipeline, user_id: str, contact: Contact, events: Sequence[ActionEvent],
                            now: Optional[datetime] = None) -> List[ActionEvent]:
    """Run every check and emit what they find. Never raises."""
    now = now or utcnow()
    emitted = []
    for check in CHECKS:
        try:
            params = check(user_id, contact, events, now)
            if params is not None:
                emitted.append(pipeline.emit(params, derive_system_events=False))
        except Exception as e:
            logger.error(f"System event check {check.__name__} failed for {contact.id}: {e}")
    if emitted:
        logger.info(f"Derived {len(emitted)} system events for {contact.id}: {[e.action_id for e in emitted]}")
    return emitted
