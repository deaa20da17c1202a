"""
Action taxonomy - the closed, versioned vocabulary of the scoring engine.

Adding an action id means giving it a base point value here AND a category.
Categories:
  A deck & intent          G slack signals (premium)
  B compose                H occasions & system nudges
  C send & outcomes        I contact graph & intros
  D notes & context        J profile hygiene
  E calendar (premium)     K negative signals
  F email signals (prem.)  L passive / exposure signals
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from touchcrm.engine.timeutil import days_since

TAXONOMY_VERSION = 1

# =============================================================================
# BASE POINTS
# =============================================================================

ACTION_CATEGORIES: Dict[str, Dict[str, float]] = {
    'A': {
        'card_view': 0.5,
        'swipe_ping': 2,
        'swipe_defer': 0.5,
        'swipe_archive': -1,
        'open_more_context': 1,
        'pick_suggested_channel': 1,
    },
    'B': {
        'draft_ai_untouched': 2,
        'draft_ai_light': 3,
        'draft_ai_heavy': 5,
        'draft_custom': 7,
        'attach_artifact': 2,
        'choose_cta': 2,
        'generate_ai_draft': 1,
        'copy_suggested_draft': 2,
    },
    'C': {
        'composer_opened': 1,
        'send_email': 4,
        'send_slack': 3,
        'call_placed': 2,
        'facetime_started': 2,
        'outcome_sent': 1,
        'outcome_vm': 1,
        'outcome_scheduled': 6,
        'outcome_replied': 10,
        'outcome_no_answer': -0.5,
    },
    'D': {
        'note_manual': 3,
        'note_group': 5,
        'note_pin': 1,
        'note_tag': 1,
        'note_voice': 4,
        'note_edit': 1,
        'accept_suggestion': 2,
        'reject_suggestion': 0.5,
    },
    'E': {
        'meeting_1to1': 12,
        'meeting_short': 6,
        'meeting_group': 6,
        'meeting_keyword': 3,
        'event_created': 4,
    },
    'F': {
        'email_delivered': 1,
        'email_reply': 10,
        'email_reply_fast': 3,
        'email_thread_depth': 4,
        'email_link_click': 2,
        'email_bounce': -6,
        'email_unsub': -12,
    },
    'G': {
        'slack_dm_sent': 3,
        'slack_dm_reply': 8,
        'slack_reaction': 2,
        'slack_mention': 4,
        'slack_thread_depth': 3,
    },
    'H': {
        'occasion_ping': 4,
        'fresh_first_touch': 8,
        'fast_first_touch': 4,
        'missed_cadence': -3,
    },
    'I': {
        'intro_create': 8,
        'intro_thanks': 4,
        'intro_hub': 3,
    },
    'J': {
        'profile_update': 2,
        'set_pref': 2,
        'set_city': 1,
        'set_dnc': -8,
    },
    'K': {
        'defer_repeats': -2,
        'multi_channel_no_reply': -5,
        'mark_not_relevant': -6,
    },
    'L': {
        'impression': 0.2,
        'impressions_no_action': -1,
        'quiet_window_send': 1,
    },
}

BASE_POINTS: Dict[str, float] = {
    action_id: points
    for actions in ACTION_CATEGORIES.values()
    for action_id, points in actions.items()
}

# Calendar, email and Slack signals plus occasion ingestion need a premium plan
PREMIUM_ACTIONS: FrozenSet[str] = frozenset(
    list(ACTION_CATEGORIES['E']) + list(ACTION_CATEGORIES['F'])
    + list(ACTION_CATEGORIES['G']) + ['occasion_ping']
)

# Derived by the engine itself, never by the user
SYSTEM_ACTIONS: FrozenSet[str] = frozenset({
    'fresh_first_touch', 'fast_first_touch', 'missed_cadence',
    'defer_repeats', 'multi_channel_no_reply', 'impressions_no_action',
})

# Breakdown buckets (an action may count in more than one)
BREAKDOWN_CATEGORIES: Dict[str, FrozenSet[str]] = {
    'intent': frozenset(ACTION_CATEGORIES['A']),
    'interaction': frozenset({
        'draft_ai_untouched', 'draft_ai_light', 'draft_ai_heavy', 'draft_custom',
        'attach_artifact', 'choose_cta', 'composer_opened', 'send_email',
        'send_slack', 'call_placed', 'facetime_started',
    }),
    'reciprocity': frozenset({
        'outcome_replied', 'email_reply', 'email_reply_fast', 'slack_dm_reply',
        'email_thread_depth', 'slack_thread_depth',
    }),
    'context': frozenset(ACTION_CATEGORIES['D']),
    'cadence': frozenset(ACTION_CATEGORIES['H']),
    'freshness': frozenset({'fresh_first_touch', 'fast_first_touch'}),
}

# =============================================================================
# CHANNELS, CUSTOMIZATION, INTERACTION TYPES
# =============================================================================

CHANNELS = ('sms', 'email', 'slack', 'call', 'facetime', 'meet', 'deeplink')
CUSTOMIZATION_LEVELS = ('untouched', 'light', 'heavy', 'custom')

INTERACTION_TYPES = (
    'sms_sent', 'call_made', 'email_sent', 'facetime_made', 'slack_sent',
    'note_added', 'card_dismissed', 'card_snoozed',
)
# Interaction types that count as a real touch
MEANINGFUL_INTERACTIONS = frozenset({
    'sms_sent', 'call_made', 'email_sent', 'facetime_made', 'slack_sent',
})
INTERACTION_CHANNEL = {
    'sms_sent': 'sms',
    'call_made': 'call',
    'email_sent': 'email',
    'facetime_made': 'facetime',
    'slack_sent': 'slack',
}

CADENCE_PRESETS = {'weekly': 7, 'biweekly': 14, 'monthly': 30, 'quarterly': 90}

# =============================================================================
# FRESHNESS
# =============================================================================

FRESH_WINDOW_DAYS = 14


def base_points(action_id: str) -> float:
    """Static point value for an action id. Raises ValueError for ids outside the vocabulary."""
    try:
        return BASE_POINTS[action_id]
    except KeyError:
        raise ValueError(f"Unknown action id: {action_id!r}") from None


def category_of(action_id: str) -> str:
    for category, actions in ACTION_CATEGORIES.items():
        if action_id in actions:
            return category
    raise ValueError(f"Unknown action id: {action_id!r}")


def is_premium_action(action_id: str) -> bool:
    return action_id in PREMIUM_ACTIONS


def is_fresh(first_seen_at: Optional[datetime], first_engagement_at: Optional[datetime],
             now: Optional[datetime] = None) -> bool:
    """Fresh = never engaged and first seen no more than 14 days ago."""
    if first_engagement_at is not None or first_seen_at is None:
        return False
    return days_since(first_seen_at, now) <= FRESH_WINDOW_DAYS


def is_fresh_contact(contact, now: Optional[datetime] = None) -> bool:
    return is_fresh(contact.first_seen_at, contact.first_engagement_at, now)
