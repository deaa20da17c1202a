"""
RHS Analytics
Portfolio view over every contact's Relationship Health Score: distribution,
the contacts most overdue or most fresh, and a few health counts.

Bands: high >= 70, medium 40-69, low < 40 (higher = more in need of a touch).
"""

import logging
import statistics
from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from touchcrm.engine import crm
from touchcrm.models import Contact, RHSFactors

logger = logging.getLogger(__name__)

HIGH_PRIORITY = 70
LOW_PRIORITY = 40
NEEDS_ATTENTION_SCORE = 60
NEEDS_ATTENTION_DAYS = 30
TOP_N = 10

_FACTOR_FIELDS = {f.name for f in fields(RHSFactors)}


def _top(items: List[Tuple[Contact, RHSFactors]], key, value_name: str) -> List[Dict[str, Any]]:
    ranked = sorted(items, key=lambda item: key(item[1]), reverse=True)[:TOP_N]
    return [
        {'contact_id': c.id, 'display_name': c.display_name, value_name: key(f)}
        for c, f in ranked
    ]


def generate_rhs_analytics(results: Sequence[Tuple[Contact, RHSFactors]]) -> Dict[str, Any]:
    results = list(results)
    scores = [f.total_score for _, f in results]

    overdue = [(c, f) for c, f in results if f.is_overdue_by_cadence]
    fresh = [(c, f) for c, f in results if f.freshness_boost > 0]

    return {
        'average_rhs': round(sum(scores) / len(scores)) if scores else 0,
        'median_rhs': round(statistics.median(scores)) if scores else 0,
        'high_priority_count': sum(1 for s in scores if s >= HIGH_PRIORITY),
        'medium_priority_count': sum(1 for s in scores if LOW_PRIORITY <= s < HIGH_PRIORITY),
        'low_priority_count': sum(1 for s in scores if s < LOW_PRIORITY),
        'top_recency_contacts': _top(results, lambda f: f.recency_score, 'score'),
        'top_cadence_overdue': _top(overdue, lambda f: f.days_overdue, 'days_overdue'),
        'top_fresh_contacts': _top(fresh, lambda f: f.freshness_boost, 'boost'),
        # Urgent and the last conversations went badly
        'at_risk_count': sum(1 for _, f in results
                             if f.total_score >= HIGH_PRIORITY and f.negative_outcomes > 0),
        'strong_relationships_count': sum(1 for _, f in results
                                          if f.total_score < LOW_PRIORITY and f.positive_outcomes > 0
                                          and f.total_engagements > 3),
        'needs_attention_count': sum(1 for _, f in results
                                     if f.total_score >= NEEDS_ATTENTION_SCORE
                                     and (f.days_since_last_engagement is None
                                          or f.days_since_last_engagement > NEEDS_ATTENTION_DAYS)),
        'total_contacts': len(results),
        'contacts_with_cadence': sum(1 for c, _ in results if c.cadence_days and c.cadence_days > 0),
        'contacts_overdue': len(overdue),
        'new_contacts_count': len(fresh),
    }


def live_analytics(user_id: str, scoring, store=crm, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Score every contact now (through the scoring service cache) and summarize."""
    contacts = store.list_contacts(user_id)
    scores = scoring.get_rhs_bulk(user_id, contacts, now)
    return generate_rhs_analytics([(c, scores[c.id]) for c in contacts])


def snapshot_analytics(user_id: str, store=crm) -> Dict[str, Any]:
    """Summarize the persisted RHS snapshots without recalculating anything."""
    results = []
    for row in store.list_rhs_metrics(user_id):
        factors = RHSFactors(**{k: v for k, v in row.items() if k in _FACTOR_FIELDS})
        factors.total_score = row['rhs_score']
        contact = Contact(
            id=row['contact_id'],
            user_id=user_id,
            display_name=row.get('display_name') or '',
            first_seen_at=row.get('first_seen_at'),
            cadence_days=row.get('target_cadence_days'),
        )
        results.append((contact, factors))
    logger.debug(f"snapshot_analytics: {len(results)} snapshots for {user_id}")
    return generate_rhs_analytics(results)
