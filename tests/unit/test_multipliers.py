"""
Unit tests for the action taxonomy and point multipliers
(touchcrm/engine/taxonomy.py, touchcrm/engine/multipliers.py).
Pure functions, no mocking.
"""

from datetime import datetime, timedelta, timezone

import pytest

from touchcrm.engine.multipliers import (
    apply_multipliers, channel_multiplier, compute_multipliers, customization_multiplier,
    final_points, freshness_bonus,
)
from touchcrm.engine.taxonomy import (
    ACTION_CATEGORIES, BASE_POINTS, PREMIUM_ACTIONS, SYSTEM_ACTIONS, base_points,
    category_of, is_fresh, is_premium_action,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

def test_base_points_known_actions():
    assert base_points('outcome_replied') == 10
    assert base_points('swipe_ping') == 2
    assert base_points('email_unsub') == -12
    assert base_points('impression') == 0.2


def test_base_points_unknown_action_raises():
    with pytest.raises(ValueError, match='Unknown action id'):
        base_points('teleport')


def test_every_action_has_exactly_one_category():
    seen = [a for actions in ACTION_CATEGORIES.values() for a in actions]
    assert len(seen) == len(set(seen)) == len(BASE_POINTS)


def test_category_of():
    assert category_of('meeting_1to1') == 'E'
    assert category_of('set_dnc') == 'J'
    with pytest.raises(ValueError):
        category_of('nope')


def test_premium_actions_cover_calendar_email_slack():
    for category in ('E', 'F', 'G'):
        for action_id in ACTION_CATEGORIES[category]:
            assert is_premium_action(action_id)
    assert is_premium_action('occasion_ping')
    assert not is_premium_action('swipe_ping')


def test_system_actions_are_in_vocabulary():
    assert SYSTEM_ACTIONS <= set(BASE_POINTS)
    assert not SYSTEM_ACTIONS & PREMIUM_ACTIONS


def test_is_fresh_window():
    assert is_fresh(NOW - timedelta(days=3), None, NOW)
    assert is_fresh(NOW - timedelta(days=14), None, NOW)
    assert not is_fresh(NOW - timedelta(days=15), None, NOW)


def test_engaged_contact_is_never_fresh():
    assert not is_fresh(NOW - timedelta(days=1), NOW - timedelta(hours=2), NOW)


def test_contact_without_first_seen_is_not_fresh():
    assert not is_fresh(None, None, NOW)


# ---------------------------------------------------------------------------
# Individual multipliers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize('channel, expected', [
    ('call', 1.3), ('facetime', 1.3), ('meet', 1.3),
    ('email', 1.15), ('slack', 1.15), ('sms', 1.0), ('deeplink', 0.9),
    (None, 1.0),
])
def test_channel_multiplier(channel, expected):
    assert channel_multiplier(channel) == expected


@pytest.mark.parametrize('level, expected', [
    ('untouched', 1.0), ('light', 1.1), ('heavy', 1.25), ('custom', 1.4), (None, 1.0),
])
def test_customization_multiplier(level, expected):
    assert customization_multiplier(level) == expected


def test_unknown_customization_level_raises():
    with pytest.raises(ValueError):
        customization_multiplier('extreme')


def test_freshness_bonus_full_then_decays_then_zero():
    assert freshness_bonus(True, 0) == 25
    assert freshness_bonus(True, 14) == 25
    assert freshness_bonus(True, 17.5) == pytest.approx(12.5)
    assert freshness_bonus(True, 21) == 0
    assert freshness_bonus(True, 40) == 0


def test_freshness_bonus_requires_fresh_contact():
    assert freshness_bonus(False, 0) == 0


# ---------------------------------------------------------------------------
# Combined
# ---------------------------------------------------------------------------

def test_call_with_heavy_edit_scores_16_25():
    points, result = final_points(10, channel='call', customization_level='heavy')
    assert points == pytest.approx(16.25)
    assert result.total_multiplier == pytest.approx(1.625)


def test_group_intro_multiplies():
    result = compute_multipliers(is_multi_contact=True)
    assert result.group_intro == 1.2
    assert apply_multipliers(8, result) == pytest.approx(9.6)


def test_freshness_bonus_is_added_after_multiplying():
    result = compute_multipliers(channel='email', is_fresh=True, days_since_first_seen=2)
    assert apply_multipliers(4, result) == pytest.approx(4 * 1.15 + 25)


def test_applied_only_lists_non_default_multipliers():
    assert compute_multipliers(channel='sms', customization_level='untouched').applied == {}
    applied = compute_multipliers(channel='call', is_multi_contact=True).applied
    assert applied == {'channel_depth': 1.3, 'group_intro': 1.2}


def test_negative_base_points_stay_negative():
    points, _ = final_points(-6, channel='email')
    assert points == pytest.approx(-6.9)
