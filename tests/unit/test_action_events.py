"""
Unit tests for the action event pipeline (touchcrm/engine/action_events.py).
Runs against the in-memory FakeStore; the scoring service is a Mock so no
background thread is started.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from touchcrm.bus.events import bus, EVENT_ACTION_EMITTED, EVENT_CONTACT_UPDATED, EVENT_SYSTEM_EVENT_EMITTED
from touchcrm.engine.action_events import (
    NOT_EMITTED, ActionEventPipeline, EmitParams, can_emit, detect_contact_changes,
)
from touchcrm.models import Contact, DeckCard

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scoring():
    return Mock()


@pytest.fixture
def pipeline(store, scoring):
    store.add_contact('c1', 'Ada', emails=['ada@example.com'])
    store.add_contact('c2', 'Grace')
    return ActionEventPipeline(store=store, scoring=scoring)


def _actions(store):
    return [e.action_id for e in store.action_events]


# ---------------------------------------------------------------------------
# emit
# ---------------------------------------------------------------------------

def test_pipeline_registers_with_scoring(pipeline, scoring):
    scoring.attach_pipeline.assert_called_once_with(pipeline)


def test_emit_scores_and_persists(pipeline, store):
    event = pipeline.emit(EmitParams('u1', 'c1', 'send_email', channel='email', customization_level='heavy'))

    assert event.id is not None
    assert event.base_points == 4
    assert event.final_points == pytest.approx(4 * 1.15 * 1.25)
    assert event.multipliers_applied == {'channel_depth': 1.15, 'customization': 1.25}
    assert _actions(store) == ['send_email']


def test_emit_submits_background_recalculation(pipeline, scoring):
    pipeline.emit(EmitParams('u1', 'c1', 'swipe_ping'))
    scoring.submit_recalculation.assert_called_once_with('u1', 'c1', derive_system_events=True)


def test_emit_announces_user_actions(pipeline):
    received = []
    bus.on(EVENT_ACTION_EMITTED, received.append)
    pipeline.emit(EmitParams('u1', 'c1', 'swipe_ping'))
    assert received[0]['contact_id'] == 'c1'
    assert received[0]['event'].action_id == 'swipe_ping'


def test_emit_announces_system_actions_separately(pipeline):
    user, system = [], []
    bus.on(EVENT_ACTION_EMITTED, user.append)
    bus.on(EVENT_SYSTEM_EVENT_EMITTED, system.append)
    pipeline.emit(EmitParams('u1', 'c1', 'missed_cadence'), derive_system_events=False)
    assert user == []
    assert len(system) == 1


def test_emit_unknown_action_raises_and_persists_nothing(pipeline, store, scoring):
    with pytest.raises(ValueError, match='Unknown action id'):
        pipeline.emit(EmitParams('u1', 'c1', 'teleport'))
    assert store.action_events == []
    scoring.submit_recalculation.assert_not_called()


def test_emit_unknown_channel_raises(pipeline):
    with pytest.raises(ValueError, match='Unknown channel'):
        pipeline.emit(EmitParams('u1', 'c1', 'swipe_ping', channel='pigeon'))


def test_pipeline_without_scoring_still_emits(store):
    store.add_contact('c1')
    event = ActionEventPipeline(store=store).emit(EmitParams('u1', 'c1', 'card_view'))
    assert event.final_points == 0.5


# ---------------------------------------------------------------------------
# Premium gating
# ---------------------------------------------------------------------------

def test_can_emit():
    assert can_emit('swipe_ping', is_premium=False)
    assert not can_emit('meeting_1to1', is_premium=False)
    assert can_emit('meeting_1to1', is_premium=True)


def test_free_user_premium_action_is_not_emitted(pipeline, store):
    result = pipeline.emit_with_gating(EmitParams('u1', 'c1', 'email_reply'), is_premium=False)
    assert result is NOT_EMITTED
    assert not result
    assert result is not None
    assert store.action_events == []


def test_premium_user_premium_action_is_emitted(pipeline, store):
    result = pipeline.emit_with_gating(EmitParams('u1', 'c1', 'email_reply'), is_premium=True)
    assert result.final_points == 10
    assert _actions(store) == ['email_reply']


# ---------------------------------------------------------------------------
# log_touch
# ---------------------------------------------------------------------------

def test_log_touch_records_interaction_and_action(pipeline, store):
    event = pipeline.log_touch('u1', 'c2', 'call_made', now=NOW)

    assert event.action_id == 'call_placed'
    assert event.channel == 'call'
    assert event.final_points == pytest.approx(2.6)
    assert store.interactions[0].type == 'call_made'
    assert store.interactions[0].contact_ids == ['c2']


def test_log_touch_on_fresh_contact_gets_bonus_and_ends_freshness(pipeline, store):
    store.add_contact('c3', 'New', first_seen_at=NOW - timedelta(days=2))
    event = pipeline.log_touch('u1', 'c3', 'call_made', now=NOW)

    assert event.final_points == pytest.approx(2.6 + 25)
    assert event.multipliers_applied['freshness_boost'] == 25
    assert store.get_contact('u1', 'c3').first_engagement_at == NOW


def test_log_touch_classifies_draft_edits(pipeline):
    event = pipeline.log_touch('u1', 'c1', 'email_sent', original_draft="See you Friday!",
                               sent_text="See you Friday!", now=NOW)
    assert event.customization_level == 'untouched'
    assert event.final_points == pytest.approx(4 * 1.15)


def test_log_touch_without_draft_is_custom(pipeline):
    event = pipeline.log_touch('u1', 'c1', 'email_sent', sent_text="Wrote this myself", now=NOW)
    assert event.customization_level == 'custom'


def test_log_touch_group_message(pipeline, store):
    event = pipeline.log_touch('u1', 'c1', 'sms_sent', contact_ids=['c1', 'c2'], now=NOW)
    assert event.action_id == 'composer_opened'
    assert event.is_multi_contact is True
    assert event.multipliers_applied['group_intro'] == 1.2
    assert store.interactions[0].contact_ids == ['c1', 'c2']


def test_log_touch_unknown_type_raises(pipeline):
    with pytest.raises(ValueError, match='Unknown interaction type'):
        pipeline.log_touch('u1', 'c1', 'carrier_pigeon')


def test_log_touch_unknown_contact_raises(pipeline, store):
    with pytest.raises(ValueError, match='not found'):
        pipeline.log_touch('u1', 'ghost', 'sms_sent')
    assert store.interactions == []


# ---------------------------------------------------------------------------
# Integration signals
# ---------------------------------------------------------------------------

@pytest.mark.parametrize('duration, attendees, keywords, expected', [
    (30, 2, None, 'meeting_1to1'),
    (10, 4, None, 'meeting_short'),
    (60, 6, None, 'meeting_group'),
    (60, 2, ['Product DEMO'], 'meeting_keyword'),
])
def test_meeting_event_classification(pipeline, duration, attendees, keywords, expected):
    event = pipeline.emit_meeting_event('u1', 'c1', True, duration, attendees, keywords)
    assert event.action_id == expected
    assert event.metadata['attendee_count'] == attendees


def test_meeting_event_for_free_user_is_gated(pipeline, store):
    assert pipeline.emit_meeting_event('u1', 'c1', False, 30, 2) is NOT_EMITTED
    assert store.action_events == []


def test_email_event_maps_to_action(pipeline):
    event = pipeline.emit_email_event('u1', 'c1', True, 'bounce', email_id='m-1')
    assert event.action_id == 'email_bounce'
    assert event.channel == 'email'
    assert event.metadata == {'email_id': 'm-1'}


def test_unknown_email_event_type_raises(pipeline):
    with pytest.raises(ValueError):
        pipeline.emit_email_event('u1', 'c1', True, 'exploded')


def test_slack_event_maps_to_action(pipeline):
    event = pipeline.emit_slack_event('u1', 'c1', True, 'dm_reply')
    assert event.action_id == 'slack_dm_reply'
    assert event.channel == 'slack'


def test_occasion_ping_is_premium(pipeline):
    assert pipeline.emit_occasion_ping('u1', 'c1', False, 'birthday', '2026-11-02') is NOT_EMITTED
    event = pipeline.emit_occasion_ping('u1', 'c1', True, 'birthday', '2026-11-02')
    assert event.metadata['occasion_type'] == 'birthday'


def test_signal_store_failure_is_logged_not_raised(pipeline, store, caplog):
    store.append_action_event = Mock(side_effect=RuntimeError("db down"))
    assert pipeline.emit_calendar_event('u1', 'c1', True, 'evt-1', 'Lunch', '2026-10-20') is None
    assert any('db down' in r.message for r in caplog.records)


def test_email_webhook_reply(pipeline):
    event = pipeline.handle_email_webhook(
        {'user_id': 'u1', 'contact_email': 'ADA@example.com', 'event': 'replied', 'email_id': 'm-9'},
        is_premium=True,
    )
    assert event.action_id == 'email_reply'
    assert event.contact_id == 'c1'


def test_email_webhook_unknown_event_ignored(pipeline, store):
    payload = {'user_id': 'u1', 'contact_email': 'ada@example.com', 'event': 'spam_report'}
    assert pipeline.handle_email_webhook(payload, is_premium=True) is None
    assert store.action_events == []


def test_email_webhook_unknown_sender_ignored(pipeline):
    payload = {'user_id': 'u1', 'contact_email': 'nobody@example.com', 'event': 'delivered'}
    assert pipeline.handle_email_webhook(payload, is_premium=True) is None


# ---------------------------------------------------------------------------
# Profile hygiene
# ---------------------------------------------------------------------------

def test_detect_contact_changes_only_reports_differences():
    old = Contact(id='c1', display_name='Ada', job_title='CTO')
    changes = detect_contact_changes(old, {'display_name': 'Ada', 'job_title': 'CEO', 'city': 'Berlin'})
    assert changes == {'job_title': 'CEO'}


def test_contact_update_emits_hygiene_actions(pipeline, store):
    previous = Contact(id='c1', user_id='u1', display_name='Ada')
    emitted = pipeline.handle_contact_update({
        'user_id': 'u1', 'contact_id': 'c1', 'previous': previous,
        'updates': {'job_title': 'CTO', 'city': 'Berlin', 'cadence_days': 30, 'do_not_contact': True},
    })
    assert [e.action_id for e in emitted] == ['profile_update', 'set_city', 'set_pref', 'set_dnc']
    assert emitted[0].metadata['fields_changed'] == ['job_title']


def test_notes_change_earns_nothing(pipeline, store):
    previous = Contact(id='c1', user_id='u1', display_name='Ada')
    emitted = pipeline.handle_contact_update({
        'user_id': 'u1', 'contact_id': 'c1', 'previous': previous, 'updates': {'notes': 'met at PyCon'},
    })
    assert emitted == []
    assert store.action_events == []


def test_listen_wires_contact_updates(pipeline, store):
    pipeline.listen(bus)
    bus.emit(EVENT_CONTACT_UPDATED, {
        'user_id': 'u1', 'contact_id': 'c1',
        'previous': Contact(id='c1', user_id='u1', display_name='Ada'),
        'updates': {'city': 'Lisbon'},
    })
    assert _actions(store) == ['set_city']


# ---------------------------------------------------------------------------
# Impressions
# ---------------------------------------------------------------------------

def test_emit_impressions_counts_recorded(pipeline, store):
    cards = [DeckCard(card_id='2026-10-19-c1', contact_id='c1'), DeckCard(card_id='2026-10-19-c2', contact_id='c2')]
    assert pipeline.emit_impressions('u1', cards) == 2
    assert _actions(store) == ['impression', 'impression']
    assert store.action_events[0].linked_card_id == '2026-10-19-c1'
    assert store.action_events[0].metadata['impression_type'] == 'card_surfaced'


def test_failed_impression_is_skipped(pipeline, store):
    store.append_action_event = Mock(side_effect=RuntimeError("db down"))
    cards = [DeckCard(card_id='x', contact_id='c1')]
    assert pipeline.emit_impressions('u1', cards) == 0
