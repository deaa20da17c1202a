"""
Scoring Service
Owns the score caches and the background recalculation worker, and fronts both
score models:

  rhs            Relationship Health Score (touchcrm.engine.rhs), drives the deck
  contact_score  90-day point accumulation (touchcrm.engine.contact_score)

compute_score() answers with whichever model Config.SCORING_MODEL names.
Read paths never raise: a failing store is logged and a neutral score returned.
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from touchcrm.bus.events import bus, EventBus, EVENT_INTERACTION_LOGGED, EVENT_SCORE_RECALCULATED
from touchcrm.config import config
from touchcrm.engine import crm
from touchcrm.engine.contact_score import EVENT_LIMIT, calculate_breakdown, calculate_contact_score
from touchcrm.engine.rhs import calculate_rhs, engagement_history_factor, neutral_rhs
from touchcrm.engine.score_cache import ScoreCache
from touchcrm.engine.system_events import calculate_system_events
from touchcrm.engine.timeutil import utcnow
from touchcrm.models import ActionEvent, Contact, ContactScore, RHSFactors, ScoreBreakdown

logger = logging.getLogger(__name__)

RHS_EVENT_LIMIT = 50
RHS_OUTCOME_LIMIT = 20

_STOP = object()


def engagement_marker(contact: Contact) -> Optional[str]:
    return contact.first_engagement_at.isoformat() if contact.first_engagement_at else None


def chunked(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class RecalculationWorker:
    """
    Bounded queue of (user_id, contact_id, derive_system_events) jobs consumed by
    one daemon thread. A full queue drops the job with a warning; a failing job
    is logged and the worker moves on.
    """

    def __init__(self, handler: Callable, maxsize: int = 100):
        self._handler = handler
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self):
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name='score-recalc', daemon=True)
                self._thread.start()

    def submit(self, user_id: str, contact_id: str, derive_system_events: bool = True) -> bool:
        self.start()
        try:
            self._queue.put_nowait((user_id, contact_id, derive_system_events))
            return True
        except queue.Full:
            logger.warning(f"Recalculation queue full, dropping job for {user_id}:{contact_id}")
            return False

    def join(self):
        """Block until every queued job has been processed."""
        self._queue.join()

    def stop(self, timeout: Optional[float] = None):
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def _run(self):
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                user_id, contact_id, derive = job
                self._handler(user_id, contact_id, derive_system_events=derive)
            except Exception as e:
                logger.error(f"Background recalculation failed: {type(e).__name__}: {e}")
            finally:
                self._queue.task_done()


class ScoringService:

    def __init__(self, store=crm, scoring_model: Optional[str] = None,
                 ttl_seconds: Optional[float] = None, max_entries: Optional[int] = None,
                 batch_size: Optional[int] = None, window_days: Optional[int] = None,
                 queue_size: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.scoring_model = scoring_model or config.SCORING_MODEL
        self.batch_size = batch_size or config.SCORE_BATCH_SIZE
        self.window_days = window_days or config.SCORE_WINDOW_DAYS

        ttl = ttl_seconds if ttl_seconds is not None else config.SCORE_CACHE_TTL_SECONDS
        capacity = max_entries or config.SCORE_CACHE_MAX_ENTRIES
        self.rhs_cache = ScoreCache('rhs', ttl, capacity, use_marker=True, clock=clock)
        self.contact_score_cache = ScoreCache('contact_score', ttl, capacity, clock=clock)

        self.worker = RecalculationWorker(self.recalculate, queue_size or config.RECALC_QUEUE_SIZE)
        self.pipeline = None

    def attach_pipeline(self, pipeline):
        """The action pipeline that derived system events are emitted through."""
        self.pipeline = pipeline

    def listen(self, event_bus: EventBus = bus):
        event_bus.on(EVENT_INTERACTION_LOGGED, self.handle_interaction_logged)

    def handle_interaction_logged(self, event_data: Dict):
        for contact_id in event_data.get('contact_ids', []):
            self.invalidate(event_data['user_id'], contact_id)

    def shutdown(self):
        self.worker.stop(timeout=5)

    # =========================================================================
    # CACHE
    # =========================================================================

    def invalidate(self, user_id: str, contact_id: str):
        self.rhs_cache.invalidate(user_id, contact_id)
        self.contact_score_cache.invalidate(user_id, contact_id)

    def invalidate_user(self, user_id: str):
        self.rhs_cache.invalidate_user(user_id)
        self.contact_score_cache.invalidate_user(user_id)

    def cache_stats(self) -> Dict[str, Dict]:
        return {'rhs': self.rhs_cache.stats(), 'contact_score': self.contact_score_cache.stats()}

    # =========================================================================
    # CALCULATION (raises on store errors)
    # =========================================================================

    def _calculate_rhs(self, user_id: str, contact: Contact, now: Optional[datetime] = None) -> RHSFactors:
        last_event = self.store.get_last_interaction(user_id, contact.id)
        events = self.store.get_interactions_by_contact(user_id, contact.id, limit=RHS_EVENT_LIMIT,
                                                        meaningful_only=True)
        outcomes = self.store.get_outcome_notes_by_contact(user_id, contact.id, limit=RHS_OUTCOME_LIMIT)
        return calculate_rhs(contact, last_event, events, outcomes, now=now)

    def _window_events(self, user_id: str, contact_id: str, now: Optional[datetime] = None) -> List[ActionEvent]:
        now = now or utcnow()
        return self.store.get_action_events(user_id, contact_id, since=now - timedelta(days=self.window_days),
                                            until=now, limit=EVENT_LIMIT)

    def _calculate_contact_score(self, user_id: str, contact_id: str,
                                 now: Optional[datetime] = None) -> ContactScore:
        events = self._window_events(user_id, contact_id, now)
        return calculate_contact_score(events, now=now, user_id=user_id, contact_id=contact_id)

    # =========================================================================
    # READ PATHS (cached, never raise)
    # =========================================================================

    def get_rhs(self, user_id: str, contact: Contact, now: Optional[datetime] = None) -> RHSFactors:
        marker = engagement_marker(contact)
        cached = self.rhs_cache.get(user_id, contact.id, marker)
        if cached is not None:
            return cached
        try:
            factors = self._calculate_rhs(user_id, contact, now)
        except Exception as e:
            logger.error(f"RHS calculation failed for {contact.id}: {e}")
            return neutral_rhs()
        self.rhs_cache.set(user_id, contact.id, factors, marker)
        return factors

    def get_contact_score(self, user_id: str, contact_id: str, now: Optional[datetime] = None) -> ContactScore:
        cached = self.contact_score_cache.get(user_id, contact_id)
        if cached is not None:
            return cached
        try:
            score = self._calculate_contact_score(user_id, contact_id, now)
        except Exception as e:
            logger.error(f"Contact score calculation failed for {contact_id}: {e}")
            return ContactScore(user_id=user_id, contact_id=contact_id)
        self.contact_score_cache.set(user_id, contact_id, score)
        return score

    def get_breakdown(self, user_id: str, contact_id: str, now: Optional[datetime] = None) -> ScoreBreakdown:
        try:
            return calculate_breakdown(self._window_events(user_id, contact_id, now), now=now)
        except Exception as e:
            logger.error(f"Score breakdown failed for {contact_id}: {e}")
            return ScoreBreakdown()

    def compute_score(self, user_id: str, contact_id: str, now: Optional[datetime] = None):
        """Score of the configured model; the result's `.total` is in [0, 100]. None for unknown contacts."""
        if self.scoring_model == 'contact_score':
            return self.get_contact_score(user_id, contact_id, now)
        try:
            contact = self.store.get_contact(user_id, contact_id)
        except Exception as e:
            logger.error(f"Could not load contact {contact_id}: {e}")
            return neutral_rhs()
        if contact is None:
            return None
        return self.get_rhs(user_id, contact, now)

    def _bulk(self, items: Sequence, fn: Callable) -> List:
        """fn over items: concurrently inside a chunk, chunk after chunk."""
        results = []
        for chunk in chunked(list(items), self.batch_size):
            with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
                results.extend(pool.map(fn, chunk))
        return results

    def get_rhs_bulk(self, user_id: str, contacts: Sequence[Contact],
                     now: Optional[datetime] = None) -> Dict[str, RHSFactors]:
        scores = self._bulk(contacts, lambda c: self.get_rhs(user_id, c, now))
        return {c.id: s for c, s in zip(contacts, scores)}

    def get_contact_scores_bulk(self, user_id: str, contact_ids: Sequence[str],
                                now: Optional[datetime] = None) -> Dict[str, ContactScore]:
        scores = self._bulk(contact_ids, lambda cid: self.get_contact_score(user_id, cid, now))
        return dict(zip(contact_ids, scores))

    # =========================================================================
    # RECALCULATION (background; errors logged)
    # =========================================================================

    def submit_recalculation(self, user_id: str, contact_id: str, derive_system_events: bool = True) -> bool:
        # The stale entry must not be served while the job waits in the queue
        self.invalidate(user_id, contact_id)
        return self.worker.submit(user_id, contact_id, derive_system_events)

    def save_rhs(self, user_id: str, contact: Contact, factors: RHSFactors, now: Optional[datetime] = None):
        now = now or utcnow()
        last_engagement_at = None
        if factors.days_since_last_engagement is not None:
            last_engagement_at = now - timedelta(days=factors.days_since_last_engagement)
        self.store.upsert_rhs_metrics(user_id, contact.id, factors,
                                      engagement_history_factor(factors.total_engagements),
                                      last_engagement_at)

    def recalculate(self, user_id: str, contact_id: str, derive_system_events: bool = True,
                    now: Optional[datetime] = None) -> Optional[ContactScore]:
        """
        Recompute both models for a contact, refresh the caches and persist the
        snapshots, then derive system events. Never raises.
        """
        try:
            self.invalidate(user_id, contact_id)
            contact = self.store.get_contact(user_id, contact_id)
            if contact is None:
                logger.warning(f"Contact {contact_id} not found for recalculation")
                return None

            factors = self._calculate_rhs(user_id, contact, now)
            self.rhs_cache.set(user_id, contact_id, factors, engagement_marker(contact))
            self.save_rhs(user_id, contact, factors, now)

            events = self._window_events(user_id, contact_id, now)
            score = calculate_contact_score(events, now=now, user_id=user_id, contact_id=contact_id)
            self.contact_score_cache.set(user_id, contact_id, score)
            self.store.upsert_contact_score(score)

            logger.info(f"Recalculated {contact_id}: rhs={factors.total_score:.0f} "
                        f"contact_score={score.current_score:.1f}")
            bus.emit(EVENT_SCORE_RECALCULATED, {
                'user_id': user_id,
                'contact_id': contact_id,
                'rhs': factors.total_score,
                'contact_score': score.current_score,
            })

            if derive_system_events and self.pipeline is not None:
                calculate_system_events(self.pipeline, user_id, contact, events, now)
            return score
        except Exception as e:
            logger.error(f"Recalculation failed for {contact_id}: {type(e).__name__}: {e}")
            return None
