#!/usr/bin/env python3
"""
TouchCRM Terminal CLI
Command-line interface for contacts, scoring, the daily deck and its history.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

import click
from tqdm import tqdm

from touchcrm.bus.events import bus
from touchcrm.config import config
from touchcrm.engine import crm
from touchcrm.engine.action_events import ActionEventPipeline, EmitParams, NOT_EMITTED
from touchcrm.engine.analytics import live_analytics, snapshot_analytics
from touchcrm.engine.deck_builder import DeckBuilder
from touchcrm.engine.deck_history import DeckHistoryService
from touchcrm.engine.outcomes import OUTCOME_KINDS, SENTIMENTS, OutcomeService
from touchcrm.engine.scoring import ScoringService
from touchcrm.engine.taxonomy import CADENCE_PRESETS, CHANNELS, CUSTOMIZATION_LEVELS, INTERACTION_TYPES
from touchcrm.logging_config import configure_logging, log_call
from touchcrm.models import Contact

_EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

CARD_ACTIONS = ('activate', 'complete', 'skip', 'snooze')


@dataclass
class Services:
    scoring: ScoringService
    pipeline: ActionEventPipeline
    builder: DeckBuilder
    history: DeckHistoryService
    outcomes: OutcomeService

    def drain(self):
        """Let queued score recalculations finish before the process exits."""
        self.scoring.worker.join()
        self.scoring.shutdown()


def _services() -> Services:
    scoring = ScoringService(store=crm)
    pipeline = ActionEventPipeline(store=crm, scoring=scoring)
    scoring.listen(bus)
    pipeline.listen(bus)
    history = DeckHistoryService(store=crm)
    return Services(
        scoring=scoring,
        pipeline=pipeline,
        builder=DeckBuilder(store=crm, scoring=scoring, history=history),
        history=history,
        outcomes=OutcomeService(store=crm, pipeline=pipeline),
    )


def _user_id() -> str:
    return click.get_current_context().find_root().obj['user_id']


def _premium(flag: Optional[bool]) -> bool:
    return config.IS_PREMIUM if flag is None else flag


def _fail(message: str, exc: Exception):
    logging.getLogger("touchcrm").error(f"{message}: {exc}", exc_info=True)
    click.echo(f"Error: {exc}", err=True)


@log_call
def _prompt_email() -> Optional[str]:
    """Prompt for an email address, re-prompting on bad format. Returns None if left blank."""
    logger = logging.getLogger("touchcrm")
    while True:
        raw = click.prompt("Email", default="", show_default=False) or None
        if raw is None:
            return None
        if _EMAIL_RE.match(raw):
            return raw
        logger.debug(f"_prompt_email | rejected input={raw!r}")
        click.echo("  Invalid email address, please try again or press Enter to skip.", err=True)


def _parse_cadence(value: str) -> Optional[int]:
    """'monthly' → 30, '21' → 21, 'none' → None."""
    value = value.strip().lower()
    if value in ('none', 'off', '0'):
        return None
    if value in CADENCE_PRESETS:
        return CADENCE_PRESETS[value]
    try:
        days = int(value)
    except ValueError:
        raise click.BadParameter(f"use a number of days or one of {', '.join(CADENCE_PRESETS)}")
    if days < 0:
        raise click.BadParameter("cadence cannot be negative")
    return days


@click.group()
@click.option('--user', 'user_id', default=None, help='User id (default: DEFAULT_USER_ID from .env)')
@click.pass_context
def cli(ctx, user_id):
    """TouchCRM - stay in touch with the people who matter"""
    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj['user_id'] = user_id or config.DEFAULT_USER_ID


# =============================================================================
# DATABASE
# =============================================================================

@cli.group()
def db():
    """Database maintenance"""
    pass


@db.command('init')
@log_call
def db_init():
    """Create the tables (safe to run twice)"""
    from touchcrm.db.connection import init_schema
    try:
        init_schema()
        click.echo("✓ Schema ready")
    except Exception as e:
        _fail("db init failed", e)


# =============================================================================
# CONTACTS COMMANDS
# =============================================================================

@cli.group()
def contacts():
    """Manage contacts"""
    pass


@contacts.command('list')
@click.option('--name', help='Filter by name (substring)')
@click.option('--limit', default=500, help='Max results (default: 500)')
@log_call
def contacts_list(name, limit):
    """List all contacts"""
    results = crm.list_contacts(_user_id(), name=name, limit=limit)

    if not results:
        click.echo("No contacts found.")
        return

    click.echo(f"\nFound {len(results)} contacts:\n")
    click.echo(f"{'ID':<14} {'Name':<28} {'Phone':<16} {'Cadence':<10} {'First seen':<12}")
    click.echo("-" * 84)

    for c in results:
        cadence = f"{c.cadence_days}d" if c.cadence_days else '-'
        first_seen = c.first_seen_at.date().isoformat() if c.first_seen_at else ''
        click.echo(
            f"{c.id[:12]:<14} {c.display_name[:26]:<28} "
            f"{(c.primary_phone or '')[:14]:<16} {cadence:<10} {first_seen:<12}"
        )


@contacts.command('show')
@click.argument('contact_id')
@log_call
def contacts_show(contact_id):
    """Show full contact details and recent touches"""
    logger = logging.getLogger("touchcrm")
    user_id = _user_id()
    contact = crm.get_contact(user_id, contact_id)

    if not contact:
        logger.warning(f"contacts_show | contact_id={contact_id} not found")
        click.echo(f"Contact {contact_id} not found.", err=True)
        return

    click.echo(f"\n{'='*80}")
    click.echo(f"CONTACT {contact.id}: {contact.display_name}")
    click.echo(f"{'='*80}")
    click.echo(f"Phones:       {', '.join(contact.phone_numbers) or '(not set)'}")
    click.echo(f"Emails:       {', '.join(contact.emails) or '(not set)'}")
    click.echo(f"Organization: {contact.organization or '(not set)'}")
    click.echo(f"Job title:    {contact.job_title or '(not set)'}")
    click.echo(f"City:         {contact.city or '(not set)'}")
    click.echo(f"Tags:         {', '.join(contact.tags) or '(none)'}")
    click.echo(f"Cadence:      {f'every {contact.cadence_days} days' if contact.cadence_days else '(not set)'}")
    click.echo(f"First seen:   {contact.first_seen_at}")
    click.echo(f"First touch:  {contact.first_engagement_at or '(never)'}")
    if contact.do_not_contact:
        click.echo("Do not contact")

    if contact.notes:
        click.echo(f"\nNotes:\n{contact.notes}")

    click.echo(f"\n{'='*80}")
    click.echo("RECENT TOUCHES")
    click.echo(f"{'='*80}")

    interactions = crm.get_interactions_by_contact(user_id, contact_id, limit=10)
    if interactions:
        for i in interactions:
            click.echo(f"[{i.timestamp:%Y-%m-%d %H:%M}] {i.type}")
    else:
        click.echo("No touches yet.")

    click.echo()


@contacts.command('add')
@log_call
def contacts_add():
    """Add a new contact (interactive)"""
    click.echo("\n=== ADD NEW CONTACT ===\n")

    name = click.prompt("Name", type=str)
    phone = click.prompt("Phone", default="", show_default=False) or None
    email = _prompt_email()
    organization = click.prompt("Organization", default="", show_default=False) or None
    cadence = click.prompt("Cadence (days or weekly/biweekly/monthly/quarterly)",
                           default="none", value_proc=_parse_cadence)
    tags = click.prompt("Tags (comma separated)", default="", show_default=False)

    contact = Contact(
        id=uuid.uuid4().hex,
        user_id=_user_id(),
        display_name=name,
        phone_numbers=[phone] if phone else [],
        emails=[email] if email else [],
        organization=organization,
        cadence_days=cadence,
        tags=[t.strip() for t in tags.split(',') if t.strip()],
    )

    contact_id = crm.create_contact(contact)
    click.echo(f"\n✓ Created contact {contact_id}: {name}")


@contacts.command('cadence')
@click.argument('contact_id')
@click.argument('cadence')
@log_call
def contacts_cadence(contact_id, cadence):
    """Set how often to stay in touch (days, a preset, or 'none')"""
    days = _parse_cadence(cadence)
    services = _services()
    try:
        if crm.update_contact_field(_user_id(), contact_id, 'cadence_days', days):
            click.echo(f"✓ Cadence for {contact_id}: {f'{days} days' if days else 'none'}")
        else:
            click.echo(f"Contact {contact_id} not found", err=True)
    finally:
        services.drain()


@contacts.command('touch')
@click.argument('contact_id')
@click.argument('interaction_type', type=click.Choice(INTERACTION_TYPES))
@click.option('--card', 'card_id', help='Deck card this touch came from')
@click.option('--draft', help='Suggested draft text')
@click.option('--sent', help='Text actually sent (compared with --draft)')
@log_call
def contacts_touch(contact_id, interaction_type, card_id, draft, sent):
    """Log a touch (sms_sent, call_made, ...) and score it"""
    services = _services()
    try:
        event = services.pipeline.log_touch(_user_id(), contact_id, interaction_type,
                                            linked_card_id=card_id, original_draft=draft, sent_text=sent)
        click.echo(f"✓ Logged {interaction_type} → {event.action_id} ({event.final_points:.2f} pts)")
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
    except Exception as e:
        _fail(f"touch failed for {contact_id}", e)
    finally:
        services.drain()


# =============================================================================
# ACTION EVENTS
# =============================================================================

@cli.group()
def action():
    """Scored action events"""
    pass


@action.command('emit')
@click.argument('contact_id')
@click.argument('action_id')
@click.option('--channel', type=click.Choice(CHANNELS))
@click.option('--customization', type=click.Choice(CUSTOMIZATION_LEVELS))
@click.option('--card', 'card_id', help='Linked deck card')
@click.option('--multi', is_flag=True, help='Sent to several contacts at once')
@click.option('--premium/--free', default=None, help='Entitlement (default: IS_PREMIUM)')
@log_call
def action_emit(contact_id, action_id, channel, customization, card_id, multi, premium):
    """Emit one action for a contact"""
    services = _services()
    try:
        event = services.pipeline.emit_with_gating(EmitParams(
            user_id=_user_id(),
            contact_id=contact_id,
            action_id=action_id,
            channel=channel,
            customization_level=customization,
            linked_card_id=card_id,
            is_multi_contact=multi,
        ), _premium(premium))
        if event is NOT_EMITTED:
            click.echo(f"'{action_id}' is a premium action, not recorded.", err=True)
            return
        click.echo(f"✓ {event.action_id}: {event.base_points:g} base → {event.final_points:.2f} pts")
        for name, value in event.multipliers_applied.items():
            click.echo(f"    {name}: {value}")
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
    except Exception as e:
        _fail(f"action emit failed for {contact_id}", e)
    finally:
        services.drain()


@action.command('list')
@click.option('--contact', 'contact_id', help='Only this contact (last 90 days)')
@click.option('--limit', default=20, help='Max results (default: 20)')
@log_call
def action_list(contact_id, limit):
    """Recent action events"""
    user_id = _user_id()
    if contact_id:
        events = crm.get_action_events(user_id, contact_id, limit=limit)
    else:
        events = crm.get_recent_action_events(user_id, limit=limit)

    if not events:
        click.echo("No action events.")
        return

    click.echo(f"{'When':<17} {'Contact':<14} {'Action':<24} {'Channel':<9} {'Points':>7}")
    click.echo("-" * 75)
    for e in events:
        click.echo(f"{e.timestamp:%Y-%m-%d %H:%M} {e.contact_id[:12]:<14} {e.action_id:<24} "
                   f"{e.channel or '-':<9} {e.final_points:>7.2f}")


# =============================================================================
# SCORES
# =============================================================================

@cli.group()
def score():
    """Relationship scores"""
    pass


@score.command('show')
@click.argument('contact_id')
@log_call
def score_show(contact_id):
    """Both scores of a contact, with the factors behind them"""
    user_id = _user_id()
    services = _services()
    contact = crm.get_contact(user_id, contact_id)
    if not contact:
        click.echo(f"Contact {contact_id} not found.", err=True)
        return

    rhs = services.scoring.get_rhs(user_id, contact)
    cs = services.scoring.get_contact_score(user_id, contact_id)
    breakdown = services.scoring.get_breakdown(user_id, contact_id)

    click.echo(f"\n{contact.display_name}")
    click.echo(f"{'='*60}")
    click.echo(f"Relationship health: {rhs.total_score:.0f}/100 (higher = reach out sooner)")
    click.echo(f"  recency            {rhs.recency_score:g}")
    click.echo(f"  freshness          {rhs.freshness_boost:g}")
    click.echo(f"  fatigue            -{rhs.fatigue_guard_penalty:g}")
    click.echo(f"  cadence            {rhs.cadence_weight:g}")
    click.echo(f"  quality            {rhs.engagement_quality_bonus:g}")
    click.echo(f"  depth              {rhs.conversation_depth_bonus:g}")
    if rhs.is_overdue_by_cadence:
        click.echo(f"  overdue by {rhs.days_overdue} days")

    click.echo(f"\nContact score: {cs.current_score:.1f}/100 (peak {cs.peak_score:.1f})")
    click.echo(f"  base {breakdown.base_score:.1f}, multipliers +{breakdown.multiplier_bonus:.1f}, "
               f"decay -{breakdown.decay_penalty:.1f}")
    for category in ('intent', 'interaction', 'reciprocity', 'context', 'cadence', 'freshness'):
        points = getattr(breakdown, f"{category}_points")
        if points:
            click.echo(f"  {category:<12} {points:.1f}")
    if breakdown.top_channels:
        click.echo(f"  top channels: {', '.join(ch.channel for ch in breakdown.top_channels)}")
    click.echo()


@score.command('rescore')
@click.option('--contact', 'contact_id', help='Only this contact')
@log_call
def score_rescore(contact_id):
    """Recalculate and store scores (all contacts by default)"""
    user_id = _user_id()
    services = _services()
    ids = [contact_id] if contact_id else [c.id for c in crm.list_contacts(user_id)]
    failed = 0
    try:
        for cid in tqdm(ids, desc="Rescoring", unit="contact"):
            if services.scoring.recalculate(user_id, cid) is None:
                failed += 1
    finally:
        services.drain()
    click.echo(f"\n✓ Rescored {len(ids) - failed}/{len(ids)} contacts")


# =============================================================================
# DECK
# =============================================================================

def _print_deck(cards):
    click.echo(f"{'#':<3} {'Card':<26} {'Name':<24} {'Status':<10} {'Via':<6} {'Score':>6}  Reason")
    click.echo("-" * 110)
    for card in cards:
        name = card.contact.display_name if card.contact else card.contact_id
        fresh = '*' if card.is_fresh else ' '
        click.echo(f"{card.position:<3} {card.card_id[:24]:<26} {fresh}{name[:22]:<23} "
                   f"{card.status:<10} {card.suggested_channel:<6} {card.score:>6.1f}  {card.reason}")


@cli.group()
def deck():
    """Today's deck of people to reach out to"""
    pass


@deck.command('build')
@click.option('--max-cards', type=int, help='Deck size (default: 5 free / 10 premium)')
@click.option('--premium/--free', default=None, help='Entitlement (default: IS_PREMIUM)')
@log_call
def deck_build(max_cards, premium):
    """Build today's deck (returns the existing one if already built)"""
    user_id = _user_id()
    services = _services()
    try:
        cards = services.builder.build_deck(user_id, max_cards=max_cards, is_premium=_premium(premium))
        if not cards:
            click.echo("No contacts to put on the deck.")
            return
        services.pipeline.emit_impressions(user_id, cards)
        click.echo(f"\nToday's deck ({len(cards)} cards, * = new connection):\n")
        _print_deck(cards)
    except Exception as e:
        _fail("deck build failed", e)
    finally:
        services.drain()


@deck.command('show')
@log_call
def deck_show():
    """Show today's deck without building it"""
    cards = _services().builder.get_today_deck(_user_id())
    if not cards:
        click.echo("No deck for today yet. Run: touchcrm deck build")
        return
    _print_deck(cards)


@deck.command('status')
@log_call
def deck_status():
    """Progress through today's deck"""
    counts = _services().builder.deck_status(_user_id())
    if not counts['total']:
        click.echo("No deck for today yet.")
        return
    done = counts['completed'] + counts['skipped'] + counts['snoozed']
    click.echo(f"{done}/{counts['total']} cards handled")
    for status in ('pending', 'active', 'completed', 'skipped', 'snoozed'):
        click.echo(f"  {status:<10} {counts[status]}")
    click.echo(f"  fresh      {counts['fresh']}")


@deck.command('quota')
@log_call
def deck_quota():
    """Whether today's deck has already been generated"""
    if _services().builder.is_daily_quota_exhausted(_user_id()):
        click.echo("Today's deck has been generated. Come back tomorrow for a new one.")
    else:
        click.echo("No deck yet today.")


@deck.command('card')
@click.argument('card_id')
@click.argument('card_action', type=click.Choice(CARD_ACTIONS))
@click.option('--channel', type=click.Choice(CHANNELS), help='Channel used (complete only)')
@log_call
def deck_card(card_id, card_action, channel):
    """Move a card along: activate, complete, skip or snooze"""
    builder = _services().builder
    user_id = _user_id()
    try:
        if card_action == 'complete':
            card = builder.complete_card(user_id, card_id, channel=channel)
        else:
            card = getattr(builder, f"{card_action}_card")(user_id, card_id)
        click.echo(f"✓ {card.card_id} → {card.status}")
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)


# =============================================================================
# HISTORY
# =============================================================================

@cli.group()
def history():
    """Archived decks"""
    pass


@history.command('list')
@click.option('--limit', default=14, help='Days to show (default: 14)')
@log_call
def history_list(limit):
    """Past decks, newest first"""
    records = _services().history.get_history(_user_id(), limit)
    if not records:
        click.echo("No deck history yet.")
        return
    click.echo(f"{'Date':<12} {'Done':>5} {'Skip':>5} {'Snooze':>7} {'Total':>6} {'Rate':>6} {'Fresh':>7} {'Avg':>5}")
    click.echo("-" * 62)
    for h in records:
        click.echo(f"{h.date.isoformat():<12} {h.completed_cards:>5} {h.skipped_cards:>5} {h.snoozed_cards:>7} "
                   f"{h.total_cards:>6} {h.completion_rate:>5}% "
                   f"{h.fresh_contacts_engaged:>3}/{h.fresh_contacts_shown:<3} {h.avg_score:>5}")


@history.command('streak')
@log_call
def history_streak():
    """Consecutive days with at least one completed card"""
    streak = _services().history.calculate_streak(_user_id())
    click.echo(f"Current streak: {streak} day{'s' if streak != 1 else ''}")


@history.command('stats')
@click.option('--days', default=7, help='Window in days (default: 7)')
@log_call
def history_stats(days):
    """Completion and fresh-contact conversion over the last N days"""
    service = _services().history
    user_id = _user_id()
    rate = service.average_completion_rate(user_id, days)
    fresh = service.fresh_contact_metrics(user_id, days)
    click.echo(f"Last {days} days:")
    click.echo(f"  Average completion:   {rate}%")
    click.echo(f"  New connections:      {fresh['total_engaged']}/{fresh['total_shown']} reached "
               f"({fresh['conversion_rate']}%)")


@history.command('archive')
@click.option('--date', 'day', type=click.DateTime(formats=['%Y-%m-%d']), help='Archive only this date')
@click.option('--premium/--free', default=None, help='Entitlement (default: IS_PREMIUM)')
@log_call
def history_archive(day, premium):
    """Archive decks from earlier days"""
    service = _services().history
    user_id = _user_id()
    if day:
        result = service.archive_deck_session(user_id, day.date(), _premium(premium))
        if result.archived:
            click.echo(f"✓ Archived {day.date()} ({result.cards_deleted} cards)")
        else:
            click.echo(f"Not archived: {result.error}", err=True)
        return

    result = service.archive_old_decks(user_id, _premium(premium))
    click.echo(f"✓ Archived {len(result['archived_dates'])} decks")
    for error in result['errors']:
        click.echo(f"  failed {error}", err=True)


# =============================================================================
# OUTCOMES
# =============================================================================

@cli.group()
def outcomes():
    """Notes on how touches went"""
    pass


@outcomes.command('add')
@click.argument('text')
@click.option('--contact', 'contact_ids', multiple=True, required=True, help='Contact the note is about')
@click.option('--sentiment', type=click.Choice(SENTIMENTS), default='neutral', show_default=True)
@click.option('--outcome', type=click.Choice(OUTCOME_KINDS), help='Also score this outcome')
@click.option('--card', 'card_id', help='Linked deck card')
@log_call
def outcomes_add(text, contact_ids, sentiment, outcome, card_id):
    """Record an outcome note"""
    services = _services()
    try:
        note = services.outcomes.record(_user_id(), text, sentiment=sentiment, contact_ids=list(contact_ids),
                                        linked_card_id=card_id, outcome=outcome)
        click.echo(f"✓ Saved note #{note.id} ({note.user_sentiment})")
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
    except Exception as e:
        _fail("outcomes add failed", e)
    finally:
        services.drain()


@outcomes.command('retry')
@click.argument('note_id', type=int)
@log_call
def outcomes_retry(note_id):
    """Put a failed note back in the processing queue"""
    try:
        note = _services().outcomes.retry(_user_id(), note_id)
        click.echo(f"✓ Note #{note.id} → {note.processing_status}")
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)


@outcomes.command('pending')
@log_call
def outcomes_pending():
    """Notes still waiting to be processed"""
    service = _services().outcomes
    user_id = _user_id()
    counts = service.pending_counts(user_id)
    click.echo(f"pending {counts['pending']}, processing {counts['processing']}, failed {counts['failed']}")
    for note in service.pending_notes(user_id):
        click.echo(f"  #{note.id} [{note.user_sentiment}] {note.raw_text[:60]}")


# =============================================================================
# ANALYTICS
# =============================================================================

@cli.command('analytics')
@click.option('--snapshot', is_flag=True, help='Use stored scores instead of recalculating')
@log_call
def analytics(snapshot):
    """Relationship health across all contacts"""
    user_id = _user_id()
    try:
        if snapshot:
            stats = snapshot_analytics(user_id, store=crm)
        else:
            stats = live_analytics(user_id, _services().scoring, store=crm)
    except Exception as e:
        _fail("analytics failed", e)
        return

    click.echo(f"\nContacts: {stats['total_contacts']} "
               f"({stats['contacts_with_cadence']} with cadence, {stats['contacts_overdue']} overdue, "
               f"{stats['new_contacts_count']} new)")
    click.echo(f"Health score: average {stats['average_rhs']}, median {stats['median_rhs']}")
    click.echo(f"  high {stats['high_priority_count']} / medium {stats['medium_priority_count']} "
               f"/ low {stats['low_priority_count']}")
    click.echo(f"  at risk {stats['at_risk_count']}, strong {stats['strong_relationships_count']}, "
               f"needs attention {stats['needs_attention_count']}")

    if stats['top_cadence_overdue']:
        click.echo("\nMost overdue:")
        for item in stats['top_cadence_overdue']:
            click.echo(f"  {item['display_name']:<28} {item['days_overdue']} days")
    if stats['top_fresh_contacts']:
        click.echo("\nNew connections:")
        for item in stats['top_fresh_contacts']:
            click.echo(f"  {item['display_name']:<28} +{item['boost']:g}")
    click.echo()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    cli()
