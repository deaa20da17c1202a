"""
Unit tests for the row store (touchcrm/engine/crm.py).

Strategy: patch touchcrm.engine.crm.get_db_cursor with a contextmanager that yields
a MagicMock cursor. Rows returned by the cursor are plain dicts, which unpack
cleanly into the model dataclasses. Bus events are verified by patching
touchcrm.engine.crm.bus.emit.
"""

import pytest
from contextlib import contextmanager
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

from psycopg2.extras import Json

from touchcrm.models import (
    ActionEvent, Contact, ContactScore, DeckCard, DeckHistoryRecord, InteractionEvent, OutcomeNote, RHSFactors,
)
from touchcrm.engine.crm import (
    _validate_columns,
    _CONTACT_COLUMNS,
    _CARD_COLUMNS,
    create_contact,
    get_contact,
    get_contacts_by_ids,
    list_contacts,
    update_contact,
    append_interaction,
    get_interactions_by_contact,
    get_last_interaction,
    get_interactions_for_cards,
    append_action_event,
    get_action_events,
    create_outcome_note,
    update_outcome_note,
    count_outcome_notes_by_status,
    get_deck_cards,
    has_deck_for_date,
    insert_deck_cards,
    update_deck_card,
    get_deck_dates_before,
    archive_deck,
    get_history,
    upsert_rhs_metrics,
    upsert_contact_score,
)
from touchcrm.bus.events import (
    EVENT_CONTACT_UPDATED, EVENT_INTERACTION_LOGGED, EVENT_CARD_STATUS_CHANGED,
    EVENT_OUTCOME_RECORDED, EVENT_OUTCOME_STATUS_CHANGED, EVENT_DECK_ARCHIVED,
)

TS = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
DAY = date(2026, 10, 19)


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

# A complete contact row as returned by RealDictCursor
CONTACT_ROW = {
    'id': 'c1', 'user_id': 'u1', 'display_name': 'Ada Lovelace',
    'phone_numbers': ['+4917612345'], 'emails': ['ada@example.com'],
    'organization': 'Analytical Engines', 'job_title': 'CTO', 'city': 'London',
    'notes': None, 'tags': ['vip'], 'mutuality_score': 3,
    'first_seen_at': TS, 'first_engagement_at': None, 'cadence_days': 30,
    'do_not_contact': False, 'created_at': TS, 'updated_at': TS,
}

INTERACTION_ROW = {
    'id': 10, 'user_id': 'u1', 'type': 'sms_sent', 'contact_ids': ['c1'],
    'linked_card_id': '2026-10-19-c1', 'metadata': {}, 'timestamp': TS,
}

ACTION_ROW = {
    'id': 20, 'user_id': 'u1', 'contact_id': 'c1', 'action_id': 'send_email',
    'base_points': 4, 'multipliers_applied': {'channel_depth': 1.15}, 'final_points': 4.6,
    'channel': 'email', 'customization_level': None, 'is_multi_contact': False,
    'linked_card_id': None, 'metadata': {}, 'timestamp': TS,
}

NOTE_ROW = {
    'id': 30, 'user_id': 'u1', 'raw_text': 'Coffee went well', 'user_sentiment': 'positive',
    'contact_ids': ['c1'], 'linked_card_id': None, 'processing_status': 'pending',
    'processing_error': None, 'ai_summary': None, 'ai_next_steps': [], 'ai_entities': [],
    'recorded_at': TS, 'processed_at': None, 'updated_at': TS,
}

CARD_ROW = {
    'id': 40, 'user_id': 'u1', 'card_id': '2026-10-19-c1', 'contact_id': 'c1', 'date': DAY,
    'position': 1, 'status': 'pending', 'suggested_channel': 'sms', 'reason': 'Time to reconnect',
    'score': 72.5, 'is_fresh': False, 'drafted_at': None, 'sent_at': None, 'completed_at': None,
    'linked_outcome_id': None, 'created_at': TS,
}


def make_cursor(fetchone=None, fetchall=None, rowcount=1):
    """Build a MagicMock cursor with preset return values."""
    cur = MagicMock()
    cur.fetchone.return_value = fetchone
    cur.fetchall.return_value = fetchall if fetchall is not None else []
    cur.rowcount = rowcount
    return cur


def cursor_patch(cur):
    """Return a patch context manager that replaces get_db_cursor with one yielding cur."""
    @contextmanager
    def _mock_ctx():
        yield cur

    return patch('touchcrm.engine.crm.get_db_cursor', _mock_ctx)


def executed_sql(cur, index=-1):
    return cur.execute.call_args_list[index][0][0]


def executed_params(cur, index=-1):
    return cur.execute.call_args_list[index][0][1]


# ---------------------------------------------------------------------------
# _validate_columns: pure function, no mock needed
# ---------------------------------------------------------------------------

def test_validate_columns_valid_passes():
    _validate_columns({'display_name': 'X', 'city': 'Y'}, _CONTACT_COLUMNS, 'contact')


def test_validate_columns_invalid_raises():
    with pytest.raises(ValueError, match='contact'):
        _validate_columns({'display_name': 'X', 'injected_col': 'bad'}, _CONTACT_COLUMNS, 'contact')


def test_validate_columns_card_invalid_raises():
    with pytest.raises(ValueError, match='deck card'):
        _validate_columns({'status': 'completed', 'DROP TABLE': 'x'}, _CARD_COLUMNS, 'deck card')


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

def test_create_contact_returns_id():
    cur = make_cursor(fetchone={'id': 'c1'})
    with cursor_patch(cur):
        assert create_contact(Contact(id='c1', user_id='u1', display_name='Ada')) == 'c1'
    assert 'INSERT INTO contacts' in executed_sql(cur)


def test_get_contact_found_returns_contact():
    cur = make_cursor(fetchone=CONTACT_ROW)
    with cursor_patch(cur):
        result = get_contact('u1', 'c1')
    assert isinstance(result, Contact)
    assert result.display_name == 'Ada Lovelace'
    assert result.primary_phone == '+4917612345'


def test_get_contact_not_found_returns_none():
    cur = make_cursor(fetchone=None)
    with cursor_patch(cur):
        assert get_contact('u1', 'ghost') is None


def test_get_contacts_by_ids_keys_by_id():
    cur = make_cursor(fetchall=[CONTACT_ROW])
    with cursor_patch(cur):
        result = get_contacts_by_ids('u1', ['c1', 'c9'])
    assert list(result) == ['c1']
    assert executed_params(cur)['ids'] == ['c1', 'c9']


def test_get_contacts_by_ids_empty_skips_query():
    with patch('touchcrm.engine.crm.get_db_cursor') as mock_ctx:
        assert get_contacts_by_ids('u1', []) == {}
    mock_ctx.assert_not_called()


def test_list_contacts_filters():
    cur = make_cursor(fetchall=[CONTACT_ROW])
    with cursor_patch(cur):
        results = list_contacts('u1', name='ada', include_dnc=False, limit=5)
    sql = executed_sql(cur)
    assert 'ILIKE' in sql
    assert 'NOT do_not_contact' in sql
    assert 'LIMIT' in sql
    assert executed_params(cur)['name'] == '%ada%'
    assert results[0].id == 'c1'


def test_list_contacts_default_has_no_filters():
    cur = make_cursor(fetchall=[])
    with cursor_patch(cur):
        assert list_contacts('u1') == []
    sql = executed_sql(cur)
    assert 'ILIKE' not in sql
    assert 'do_not_contact' not in sql


def test_update_contact_empty_dict_returns_false():
    with patch('touchcrm.engine.crm.get_db_cursor') as mock_ctx:
        assert update_contact('u1', 'c1', {}) is False
    mock_ctx.assert_not_called()


def test_update_contact_invalid_column_raises():
    with pytest.raises(ValueError):
        update_contact('u1', 'c1', {'evil_col': 'x'})


def test_update_contact_emits_previous_state():
    cur = make_cursor(fetchone=CONTACT_ROW, rowcount=1)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        assert update_contact('u1', 'c1', {'city': 'Berlin'}) is True

    assert 'FOR UPDATE' in executed_sql(cur, 0)
    assert 'city = %(city)s' in executed_sql(cur, 1)
    event_name, data = mock_emit.call_args[0]
    assert event_name == EVENT_CONTACT_UPDATED
    assert data['previous'].city == 'London'
    assert data['updates'] == {'city': 'Berlin'}


def test_update_contact_not_found_returns_false():
    cur = make_cursor(fetchone=None)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        assert update_contact('u1', 'ghost', {'city': 'Berlin'}) is False
    cur.execute.assert_called_once()
    mock_emit.assert_not_called()


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------

def test_append_meaningful_interaction_stamps_first_engagement():
    cur = make_cursor(fetchone={'id': 10, 'timestamp': TS})
    event = InteractionEvent(user_id='u1', type='sms_sent', contact_ids=['c1'], metadata={'len': 42})
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        assert append_interaction(event) == 10

    assert cur.execute.call_count == 2
    assert isinstance(executed_params(cur, 0)['metadata'], Json)
    assert 'first_engagement_at IS NULL' in executed_sql(cur, 1)
    assert executed_params(cur, 1)['ts'] == TS
    mock_emit.assert_called_once_with(EVENT_INTERACTION_LOGGED, {
        'interaction_id': 10, 'user_id': 'u1', 'contact_ids': ['c1'], 'type': 'sms_sent',
    })


def test_append_note_interaction_does_not_touch_contacts():
    cur = make_cursor(fetchone={'id': 11, 'timestamp': TS})
    event = InteractionEvent(user_id='u1', type='note_added', contact_ids=['c1'])
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit'):
        append_interaction(event)
    cur.execute.assert_called_once()


def test_get_interactions_meaningful_only():
    cur = make_cursor(fetchall=[INTERACTION_ROW])
    with cursor_patch(cur):
        results = get_interactions_by_contact('u1', 'c1', limit=5, meaningful_only=True)
    assert isinstance(results[0], InteractionEvent)
    params = executed_params(cur)
    assert 'sms_sent' in params['types']
    assert 'note_added' not in params['types']
    assert 'ORDER BY timestamp DESC' in executed_sql(cur)


def test_get_last_interaction():
    cur = make_cursor(fetchall=[INTERACTION_ROW])
    with cursor_patch(cur):
        assert get_last_interaction('u1', 'c1').id == 10
    assert executed_params(cur)['limit'] == 1


def test_get_last_interaction_none():
    cur = make_cursor(fetchall=[])
    with cursor_patch(cur):
        assert get_last_interaction('u1', 'c1') is None


def test_get_interactions_for_no_cards_skips_query():
    with patch('touchcrm.engine.crm.get_db_cursor') as mock_ctx:
        assert get_interactions_for_cards('u1', []) == []
    mock_ctx.assert_not_called()


# ---------------------------------------------------------------------------
# Action events
# ---------------------------------------------------------------------------

def test_append_action_event_returns_stored_row():
    cur = make_cursor(fetchone=ACTION_ROW)
    event = ActionEvent(user_id='u1', contact_id='c1', action_id='send_email', base_points=4,
                        final_points=4.6, multipliers_applied={'channel_depth': 1.15}, channel='email')
    with cursor_patch(cur):
        stored = append_action_event(event)
    assert stored.id == 20
    assert stored.timestamp == TS
    assert isinstance(executed_params(cur)['multipliers_applied'], Json)


def test_get_action_events_window():
    since = datetime(2026, 7, 21, tzinfo=timezone.utc)
    cur = make_cursor(fetchall=[ACTION_ROW])
    with cursor_patch(cur):
        results = get_action_events('u1', 'c1', since=since, until=TS, limit=100)
    sql = executed_sql(cur)
    assert 'timestamp >= %(since)s' in sql
    assert 'timestamp <= %(until)s' in sql
    assert results[0].final_points == 4.6


# ---------------------------------------------------------------------------
# Outcome notes
# ---------------------------------------------------------------------------

def test_create_outcome_note_emits_event():
    cur = make_cursor(fetchone=NOTE_ROW)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        note = create_outcome_note(OutcomeNote(user_id='u1', raw_text='Coffee went well', contact_ids=['c1']))
    assert note.id == 30
    mock_emit.assert_called_once_with(EVENT_OUTCOME_RECORDED, {'user_id': 'u1', 'note_id': 30, 'contact_ids': ['c1']})


def test_update_outcome_note_status_emits_event():
    cur = make_cursor(rowcount=1)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        assert update_outcome_note('u1', 30, {'processing_status': 'processing'}) is True
    mock_emit.assert_called_once_with(EVENT_OUTCOME_STATUS_CHANGED,
                                      {'user_id': 'u1', 'note_id': 30, 'status': 'processing'})


def test_update_outcome_note_rejects_unknown_columns():
    with pytest.raises(ValueError, match='outcome note'):
        update_outcome_note('u1', 30, {'raw_text': 'rewritten'})


def test_count_outcome_notes_by_status():
    cur = make_cursor(fetchall=[{'processing_status': 'pending', 'n': 3}, {'processing_status': 'failed', 'n': 1}])
    with cursor_patch(cur):
        assert count_outcome_notes_by_status('u1') == {'pending': 3, 'failed': 1}


# ---------------------------------------------------------------------------
# Deck cards
# ---------------------------------------------------------------------------

def test_get_deck_cards_in_position_order():
    cur = make_cursor(fetchall=[CARD_ROW])
    with cursor_patch(cur):
        cards = get_deck_cards('u1', DAY)
    assert isinstance(cards[0], DeckCard)
    assert cards[0].contact is None
    assert 'ORDER BY position' in executed_sql(cur)


def test_has_deck_for_date():
    with cursor_patch(make_cursor(fetchone={'?column?': 1})):
        assert has_deck_for_date('u1', DAY) is True
    with cursor_patch(make_cursor(fetchone=None)):
        assert has_deck_for_date('u1', DAY) is False


def test_insert_deck_cards_ignores_conflicts():
    cur = MagicMock()
    rowcounts = iter([1, 0])

    def execute(sql, params):
        cur.rowcount = next(rowcounts)

    cur.execute.side_effect = execute
    cards = [DeckCard(user_id='u1', card_id=f'2026-10-19-c{i}', contact_id=f'c{i}', date=DAY, position=i)
             for i in (1, 2)]
    with cursor_patch(cur):
        assert insert_deck_cards(cards) == 1
    assert 'ON CONFLICT (user_id, card_id) DO NOTHING' in executed_sql(cur)
    assert 'contact' not in executed_params(cur)


def test_insert_no_cards_skips_query():
    with patch('touchcrm.engine.crm.get_db_cursor') as mock_ctx:
        assert insert_deck_cards([]) == 0
    mock_ctx.assert_not_called()


def test_update_deck_card_status_emits_event():
    cur = make_cursor(rowcount=1)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        update_deck_card('u1', '2026-10-19-c1', {'status': 'completed', 'completed_at': TS})
    mock_emit.assert_called_once_with(EVENT_CARD_STATUS_CHANGED,
                                      {'user_id': 'u1', 'card_id': '2026-10-19-c1', 'status': 'completed'})


def test_update_deck_card_without_status_is_silent():
    cur = make_cursor(rowcount=1)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        update_deck_card('u1', '2026-10-19-c1', {'drafted_at': TS})
    mock_emit.assert_not_called()


def test_update_deck_card_rejects_unknown_columns():
    with pytest.raises(ValueError):
        update_deck_card('u1', '2026-10-19-c1', {'position': 1})


def test_get_deck_dates_before():
    cur = make_cursor(fetchall=[{'date': date(2026, 10, 17)}, {'date': date(2026, 10, 18)}])
    with cursor_patch(cur):
        assert get_deck_dates_before('u1', DAY) == [date(2026, 10, 17), date(2026, 10, 18)]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def test_archive_deck_writes_history_then_deletes_cards():
    cur = make_cursor(fetchone={'id': 99}, rowcount=5)
    record = DeckHistoryRecord(user_id='u1', date=date(2026, 10, 18), total_cards=5, completed_cards=3)
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        result = archive_deck(record)

    assert result == {'history_id': 99, 'cards_deleted': 5}
    assert 'INSERT INTO deck_history' in executed_sql(cur, 0)
    assert 'ON CONFLICT (user_id, date) DO UPDATE' in executed_sql(cur, 0)
    assert 'DELETE FROM deck_cards' in executed_sql(cur, 1)
    assert mock_emit.call_args[0][0] == EVENT_DECK_ARCHIVED


def test_archive_deck_failure_propagates_without_event():
    cur = make_cursor()
    cur.execute.side_effect = RuntimeError("deadlock")
    with cursor_patch(cur), patch('touchcrm.engine.crm.bus.emit') as mock_emit:
        with pytest.raises(RuntimeError):
            archive_deck(DeckHistoryRecord(user_id='u1', date=date(2026, 10, 18)))
    mock_emit.assert_not_called()


def test_get_history():
    cur = make_cursor(fetchall=[{'id': 1, 'user_id': 'u1', 'date': DAY, 'completed_cards': 2,
                                 'total_cards': 5, 'completion_rate': 40}])
    with cursor_patch(cur):
        history = get_history('u1', limit=7)
    assert history[0].completion_rate == 40
    assert 'ORDER BY date DESC' in executed_sql(cur)


# ---------------------------------------------------------------------------
# Score snapshots
# ---------------------------------------------------------------------------

def test_upsert_rhs_metrics_maps_total_to_rhs_score():
    cur = make_cursor()
    with cursor_patch(cur):
        upsert_rhs_metrics('u1', 'c1', RHSFactors(total_score=72, recency_score=60), 0.9, TS)
    params = executed_params(cur)
    assert params['rhs_score'] == 72
    assert 'total_score' not in params
    assert params['engagement_history_factor'] == 0.9
    assert 'ON CONFLICT (user_id, contact_id) DO UPDATE' in executed_sql(cur)


def test_upsert_contact_score_keeps_peak():
    cur = make_cursor()
    with cursor_patch(cur):
        upsert_contact_score(ContactScore(user_id='u1', contact_id='c1', current_score=30, peak_score=45))
    assert 'GREATEST(contact_scores.peak_score, EXCLUDED.peak_score)' in executed_sql(cur)
