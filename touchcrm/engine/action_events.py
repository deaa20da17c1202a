"""
Action Event Pipeline
Turns "the user (or an integration) did X with contact Y" into a scored,
persisted ActionEvent, then hands the contact to the scoring service's
background worker. The caller never waits for the recalculation.

Emitters for integrations (calendar, email, Slack, occasions) are premium-gated;
profile-hygiene emitters react to contact updates announced on the event bus.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from touchcrm.bus.events import (
    bus, EventBus, EVENT_ACTION_EMITTED, EVENT_SYSTEM_EVENT_EMITTED, EVENT_CONTACT_UPDATED,
)
from touchcrm.engine import crm
from touchcrm.engine.edit_distance import customization_for
from touchcrm.engine.multipliers import compute_multipliers, apply_multipliers
from touchcrm.engine.taxonomy import (
    CHANNELS, INTERACTION_TYPES, INTERACTION_CHANNEL, SYSTEM_ACTIONS,
    base_points, is_premium_action, is_fresh_contact,
)
from touchcrm.engine.timeutil import days_since, utcnow
from touchcrm.models import ActionEvent, Contact, InteractionEvent

logger = logging.getLogger(__name__)


class _NotEmitted:
    """Returned when a gated action was refused. Falsy, and distinct from None."""

    def __repr__(self):
        return 'NOT_EMITTED'

    def __bool__(self):
        return False


NOT_EMITTED = _NotEmitted()


@dataclass
class EmitParams:
    user_id: str
    contact_id: str
    action_id: str
    linked_card_id: Optional[str] = None
    channel: Optional[str] = None
    customization_level: Optional[str] = None
    is_multi_contact: bool = False
    is_fresh: bool = False
    days_since_first_seen: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


# Which action a logged touch counts as
TOUCH_ACTIONS = {
    'sms_sent': 'composer_opened',
    'call_made': 'call_placed',
    'email_sent': 'send_email',
    'facetime_made': 'facetime_started',
    'slack_sent': 'send_slack',
    'note_added': 'note_manual',
    'card_dismissed': 'swipe_archive',
    'card_snoozed': 'swipe_defer',
}

MEETING_KEYWORDS = ('pitch', 'demo', 'interview', 'proposal', 'presentation')

EMAIL_EVENT_ACTIONS = {
    'delivered': 'email_delivered',
    'reply': 'email_reply',
    'reply_fast': 'email_reply_fast',
    'thread_depth': 'email_thread_depth',
    'link_click': 'email_link_click',
    'bounce': 'email_bounce',
    'unsub': 'email_unsub',
}

SLACK_EVENT_ACTIONS = {
    'dm_sent': 'slack_dm_sent',
    'dm_reply': 'slack_dm_reply',
    'reaction': 'slack_reaction',
    'mention': 'slack_mention',
    'thread_depth': 'slack_thread_depth',
}

# Email provider webhook events → email event types
WEBHOOK_EVENTS = {
    'delivered': 'delivered',
    'opened': 'delivered',
    'replied': 'reply',
    'bounced': 'bounce',
    'unsubscribed': 'unsub',
}

# Contact fields compared by detect_contact_changes; only the first four earn points
PROFILE_FIELDS = ('display_name', 'phone_numbers', 'emails', 'job_title', 'organization', 'notes')
PROFILE_POINT_FIELDS = ('phone_numbers', 'emails', 'job_title', 'organization')


def can_emit(action_id: str, is_premium: bool) -> bool:
    return is_premium or not is_premium_action(action_id)


def detect_contact_changes(old: Contact, new: Dict[str, Any]) -> Dict[str, Any]:
    """Profile fields whose value in `new` differs from the contact as it was."""
    return {
        name: new[name]
        for name in PROFILE_FIELDS
        if name in new and new[name] != getattr(old, name)
    }


class ActionEventPipeline:

    def __init__(self, store=crm, scoring=None):
        self.store = store
        self.scoring = scoring
        if scoring is not None:
            scoring.attach_pipeline(self)

    # =========================================================================
    # CORE EMISSION
    # =========================================================================

    def emit(self, params: EmitParams, derive_system_events: bool = True) -> ActionEvent:
        """
        Score, persist and announce one action.
        Raises ValueError for action ids, channels or customization levels outside the vocabulary.
        """
        base = base_points(params.action_id)
        if params.channel and params.channel not in CHANNELS:
            raise ValueError(f"Unknown channel: {params.channel!r}")

        multipliers = compute_multipliers(
            channel=params.channel,
            customization_level=params.customization_level,
            is_multi_contact=params.is_multi_contact,
            is_fresh=params.is_fresh,
            days_since_first_seen=params.days_since_first_seen,
        )

        event = self.store.append_action_event(ActionEvent(
            user_id=params.user_id,
            contact_id=params.contact_id,
            action_id=params.action_id,
            base_points=base,
            multipliers_applied=multipliers.applied,
            final_points=apply_multipliers(base, multipliers),
            channel=params.channel,
            customization_level=params.customization_level,
            is_multi_contact=params.is_multi_contact,
            linked_card_id=params.linked_card_id,
            metadata=params.metadata,
            timestamp=params.timestamp,
        ))
        logger.info(f"Action {event.action_id} for {event.contact_id}: {event.final_points:.2f} pts")

        name = EVENT_SYSTEM_EVENT_EMITTED if params.action_id in SYSTEM_ACTIONS else EVENT_ACTION_EMITTED
        bus.emit(name, {'user_id': params.user_id, 'contact_id': params.contact_id, 'event': event})

        if self.scoring is not None:
            self.scoring.submit_recalculation(params.user_id, params.contact_id,
                                              derive_system_events=derive_system_events)
        return event

    def emit_with_gating(self, params: EmitParams, is_premium: bool, **kwargs):
        """Like emit(), but premium-only actions return NOT_EMITTED for free users and persist nothing."""
        if not can_emit(params.action_id, is_premium):
            logger.warning(f"Action {params.action_id} requires premium, not emitted")
            return NOT_EMITTED
        return self.emit(params, **kwargs)

    def log_touch(self, user_id: str, contact_id: str, interaction_type: str,
                  linked_card_id: Optional[str] = None, original_draft: Optional[str] = None,
                  sent_text: Optional[str] = None, contact_ids: Optional[List[str]] = None,
                  now: Optional[datetime] = None) -> ActionEvent:
        """
        Record a touch: append it to the interaction log and emit the matching action.
        Freshness is read before the touch is logged, since a meaningful touch ends it.
        """
        if interaction_type not in INTERACTION_TYPES:
            raise ValueError(f"Unknown interaction type: {interaction_type!r}")

        contact = self.store.get_contact(user_id, contact_id)
        if contact is None:
            raise ValueError(f"Contact {contact_id} not found")

        now = now or utcnow()
        fresh = is_fresh_contact(contact, now)
        touched = contact_ids or [contact_id]

        self.store.append_interaction(InteractionEvent(
            user_id=user_id,
            type=interaction_type,
            contact_ids=touched,
            linked_card_id=linked_card_id,
            timestamp=now,
        ))

        customization = None
        if sent_text is not None:
            customization = customization_for(original_draft, sent_text)

        return self.emit(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id=TOUCH_ACTIONS[interaction_type],
            linked_card_id=linked_card_id,
            channel=INTERACTION_CHANNEL.get(interaction_type),
            customization_level=customization,
            is_multi_contact=len(touched) >= 2,
            is_fresh=fresh,
            days_since_first_seen=days_since(contact.first_seen_at, now) if contact.first_seen_at else 0,
            timestamp=now,
        ))

    # =========================================================================
    # PREMIUM SIGNALS (calendar, email, Slack, occasions)
    # =========================================================================

    def _emit_signal(self, params: EmitParams, is_premium: bool, label: str):
        # Integration signals are best effort: a failure is logged, never raised to the integration
        try:
            return self.emit_with_gating(params, is_premium)
        except Exception as e:
            logger.error(f"Failed to emit {label} for {params.contact_id}: {e}")
            return None

    def emit_meeting_event(self, user_id: str, contact_id: str, is_premium: bool,
                           duration: int, attendee_count: int, keywords: Optional[List[str]] = None,
                           calendar_event_id: Optional[str] = None, meeting_title: Optional[str] = None):
        action_id = 'meeting_group'
        if attendee_count == 2:
            action_id = 'meeting_1to1'
        elif duration < 15:
            action_id = 'meeting_short'
        words = [k.lower() for k in (keywords or [])]
        if any(kw in word for word in words for kw in MEETING_KEYWORDS):
            action_id = 'meeting_keyword'

        return self._emit_signal(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id=action_id,
            metadata={
                'duration': duration,
                'attendee_count': attendee_count,
                'keywords': keywords or [],
                'calendar_event_id': calendar_event_id,
                'meeting_title': meeting_title,
            },
        ), is_premium, 'meeting event')

    def emit_calendar_event(self, user_id: str, contact_id: str, is_premium: bool,
                            calendar_event_id: str, event_title: str, scheduled_date: str):
        return self._emit_signal(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='event_created',
            metadata={
                'calendar_event_id': calendar_event_id,
                'event_title': event_title,
                'scheduled_date': scheduled_date,
            },
        ), is_premium, 'calendar event')

    def emit_email_event(self, user_id: str, contact_id: str, is_premium: bool, event_type: str,
                         **details):
        if event_type not in EMAIL_EVENT_ACTIONS:
            raise ValueError(f"Unknown email event type: {event_type!r}")
        return self._emit_signal(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id=EMAIL_EVENT_ACTIONS[event_type],
            channel='email',
            metadata=details,
        ), is_premium, 'email event')

    def emit_slack_event(self, user_id: str, contact_id: str, is_premium: bool, event_type: str,
                         **details):
        if event_type not in SLACK_EVENT_ACTIONS:
            raise ValueError(f"Unknown Slack event type: {event_type!r}")
        return self._emit_signal(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id=SLACK_EVENT_ACTIONS[event_type],
            channel='slack',
            metadata=details,
        ), is_premium, 'Slack event')

    def emit_occasion_ping(self, user_id: str, contact_id: str, is_premium: bool,
                           occasion_type: str, occasion_date: str, occasion_title: Optional[str] = None):
        return self._emit_signal(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='occasion_ping',
            metadata={
                'occasion_type': occasion_type,
                'occasion_date': occasion_date,
                'occasion_title': occasion_title,
            },
        ), is_premium, 'occasion ping')

    def handle_email_webhook(self, payload: Dict[str, Any], is_premium: bool):
        """
        Email provider callback: {'user_id', 'contact_email', 'event', 'email_id'}.
        Unknown senders and unknown events are logged and ignored.
        """
        event_type = WEBHOOK_EVENTS.get(payload.get('event'))
        if event_type is None:
            logger.warning(f"Ignoring email webhook event {payload.get('event')!r}")
            return None

        contact = self.store.find_contact_by_email(payload['user_id'], payload['contact_email'])
        if contact is None:
            logger.warning(f"Contact not found for email webhook: {payload['contact_email']}")
            return None

        return self.emit_email_event(payload['user_id'], contact.id, is_premium, event_type,
                                     email_id=payload.get('email_id'))

    # =========================================================================
    # PROFILE HYGIENE
    # =========================================================================

    def emit_profile_update(self, user_id: str, contact_id: str, changes: Dict[str, Any]):
        """Points only for contact details that make reaching the person easier."""
        fields_changed = [name for name in changes if name in PROFILE_POINT_FIELDS]
        if not fields_changed:
            return None
        return self.emit(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='profile_update',
            metadata={'fields_changed': fields_changed, 'update_count': len(fields_changed)},
        ))

    def emit_preference_update(self, user_id: str, contact_id: str, preferences: Dict[str, Any]):
        return self.emit(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='set_pref',
            metadata={'preferences': preferences, 'preference_type': sorted(preferences)},
        ))

    def emit_location_update(self, user_id: str, contact_id: str, city: str):
        return self.emit(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='set_city',
            metadata={'city': city},
        ))

    def emit_do_not_contact(self, user_id: str, contact_id: str, reason: Optional[str] = None):
        return self.emit(EmitParams(
            user_id=user_id,
            contact_id=contact_id,
            action_id='set_dnc',
            metadata={'reason': reason, 'marked_at': utcnow().isoformat()},
        ))

    def handle_contact_update(self, event_data: Dict[str, Any]) -> List[ActionEvent]:
        """Bus listener for EVENT_CONTACT_UPDATED: emit the profile-hygiene actions the change earns."""
        previous: Contact = event_data['previous']
        updates: Dict[str, Any] = event_data['updates']
        user_id = event_data['user_id']
        contact_id = event_data['contact_id']
        emitted = []

        changes = detect_contact_changes(previous, updates)
        if changes:
            event = self.emit_profile_update(user_id, contact_id, changes)
            if event is not None:
                emitted.append(event)

        if 'city' in updates and updates['city'] and updates['city'] != previous.city:
            emitted.append(self.emit_location_update(user_id, contact_id, updates['city']))

        if 'cadence_days' in updates and updates['cadence_days'] != previous.cadence_days:
            emitted.append(self.emit_preference_update(user_id, contact_id,
                                                       {'cadence_days': updates['cadence_days']}))

        if updates.get('do_not_contact') and not previous.do_not_contact:
            emitted.append(self.emit_do_not_contact(user_id, contact_id))

        return emitted

    # =========================================================================
    # PASSIVE SIGNALS
    # =========================================================================

    def emit_impression(self, user_id: str, contact_id: str, card_id: str,
                        metadata: Optional[Dict[str, Any]] = None):
        """A card was surfaced. Best effort: failures are logged."""
        try:
            return self.emit(EmitParams(
                user_id=user_id,
                contact_id=contact_id,
                action_id='impression',
                linked_card_id=card_id,
                metadata={**(metadata or {}), 'impression_type': 'card_surfaced'},
            ))
        except Exception as e:
            logger.error(f"Failed to emit impression for card {card_id}: {e}")
            return None

    def emit_impressions(self, user_id: str, cards) -> int:
        """One impression per deck card. Returns how many were recorded."""
        recorded = 0
        for card in cards:
            if self.emit_impression(user_id, card.contact_id, card.card_id) is not None:
                recorded += 1
        logger.debug(f"Recorded {recorded}/{len(cards)} impressions")
        return recorded

    def listen(self, event_bus: EventBus = bus):
        event_bus.on(EVENT_CONTACT_UPDATED, self.handle_contact_update)
