"""
Shared fixtures and step definitions for BDD tests.

- runner, mock_crm, context: available to all scenario files in this directory
- now, scoring, builder, history: engine services over the in-memory store
- no_logging: autouse, prevents log file creation during tests
- contact setup and 'the output contains' steps: shared across all feature files
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import given, then, parsers

from touchcrm.engine.deck_builder import DeckBuilder
from touchcrm.engine.deck_history import DeckHistoryService
from touchcrm.engine.scoring import ScoringService
from touchcrm.models import InteractionEvent


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_crm():
    with patch("touchcrm.cli.main.crm") as mock:
        yield mock


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("touchcrm.cli.main.configure_logging"):
        yield


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scoring(store):
    service = ScoringService(store=store, scoring_model='rhs', batch_size=4, window_days=90)
    yield service
    service.shutdown()


@pytest.fixture
def history(store):
    return DeckHistoryService(store=store, tz='UTC')


@pytest.fixture
def builder(store, scoring, history):
    return DeckBuilder(store=store, scoring=scoring, history=history, strategy='rhs', tz='UTC')


def contact_id(name):
    return name.lower()


@given(parsers.parse('a contact "{name}" last touched {days:d} days ago'))
def touched_contact(store, now, name, days):
    store.add_contact(contact_id(name), name)
    store.append_interaction(InteractionEvent(user_id='u1', type='sms_sent', contact_ids=[contact_id(name)],
                                              timestamp=now - timedelta(days=days)))


@given(parsers.parse('a contact "{name}" who asked not to be contacted'))
def dnc_contact(store, name):
    store.add_contact(contact_id(name), name, do_not_contact=True)


@given(parsers.parse('a contact "{name}" met {days:d} days ago and never touched'))
def fresh_contact(store, now, name, days):
    store.add_contact(contact_id(name), name, first_seen_at=now - timedelta(days=days))


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )
