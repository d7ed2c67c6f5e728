"""
Follow-up service: the one place the pipeline is wired together.

Read path (``get_follow_ups``):
    contacts -> active set + cache key -> idle gate -> memory cache
    -> activity lookup (snapshot or batched fetch) + optimistic overlay
    -> classifier (inline, or on a worker thread for large sets)
    -> memory cache + persisted cache + idle marker

Write path (``record_activity``):
    overlay entry (immediately visible) + cache patch; the overlay persists
    in the background and, once confirmed, ``_handle_confirmed`` refreshes
    the lookup snapshot, drops the user's cached calculations and opens the
    idle gate so the next read recomputes. Until then every cached result is
    served without the contacts that have overlay entries.

Degradations never raise to the caller; they show up as ``notices`` on the
returned ``FollowUpResult``.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime

from app.config import Settings
from app.db.helpers import DatabaseError
from app.features.follow_up.cache.calculation_cache import CalculationCache, build_cache_key
from app.features.follow_up.cache.idle_timer import IdleCalculationTimer, KeyValueStore
from app.features.follow_up.cache.persisted_store import PersistedCalculationStore
from app.features.follow_up.domain.classifier import (
    Page,
    calculate_follow_ups,
    paginate,
    select_active_contacts,
)
from app.features.follow_up.domain.models import (
    ActivityDescriptor,
    ActivityRecord,
    CalculationPolicy,
    Contact,
    FollowUpBuckets,
    FollowUpResult,
    OptimisticActivity,
    StalenessBucket,
)
from app.features.follow_up.pipeline.lookup import ActivityLookupService
from app.features.follow_up.pipeline.overlay import OptimisticOverlay
from app.features.follow_up.pipeline.scheduler import (
    BackgroundCalculationScheduler,
    CalculationError,
    CalculationPayload,
    CalculationProgress,
)
from app.features.follow_up.repository.activity_repository import ActivityRepository
from app.features.follow_up.repository.contact_repository import ContactRepository
from app.infrastructure.observability.logging import get_logger, log_calculation

logger = get_logger(__name__)

NOTICE_CONTACTS_UNAVAILABLE = "contacts_unavailable"
NOTICE_ACTIVITY_LOOKUP_FAILED = "activity_lookup_failed"
NOTICE_BACKGROUND_CALCULATION_FAILED = "background_calculation_failed"
NOTICE_CALCULATION_DEFERRED = "calculation_deferred"
NOTICE_CALCULATION_SUPERSEDED = "calculation_superseded"

FetchContacts = Callable[[str], Awaitable[list[Contact]]]


class FollowUpServiceError(Exception):
    """Raised for requests the service cannot serve (bad bucket, bad activity)."""

    def __init__(self, message: str, *, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class ProgressState:
    processed: int
    total: int
    percentage: float
    running: bool
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
            "running": self.running,
            "updated_at": self.updated_at.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FollowUpService:
    def __init__(
        self,
        *,
        cache: CalculationCache,
        persisted: PersistedCalculationStore,
        idle_timer: IdleCalculationTimer,
        lookup: ActivityLookupService,
        overlay: OptimisticOverlay,
        scheduler: BackgroundCalculationScheduler,
        fetch_contacts: FetchContacts = ContactRepository.fetch_contacts,
        policy: CalculationPolicy | None = None,
        background_threshold: int = 200,
        progress_interval: int = 10,
        executor: ThreadPoolExecutor | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.persisted = persisted
        self.idle_timer = idle_timer
        self.lookup = lookup
        self.overlay = overlay
        self.scheduler = scheduler
        self._fetch_contacts = fetch_contacts
        self.policy = policy or CalculationPolicy()
        self.background_threshold = background_threshold
        self.progress_interval = progress_interval
        self._executor = executor
        self._clock = clock
        self._progress: dict[str, ProgressState] = {}

        self.overlay.on_confirmed = self._handle_confirmed

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_follow_ups(
        self, user_id: str, labels: Sequence[str] = (), *, force: bool = False
    ) -> FollowUpResult:
        label_filter = tuple(dict.fromkeys(labels))

        try:
            contacts = await self._fetch_contacts(user_id)
        except DatabaseError as e:
            logger.error("Could not load contacts for follow-ups", user_id=user_id, error=str(e))
            return FollowUpResult.unavailable([NOTICE_CONTACTS_UNAVAILABLE])

        active = select_active_contacts(contacts, label_filter, self.policy.terminal_status)
        contact_ids = [contact.id for contact in active]
        cache_key = build_cache_key(user_id, contact_ids, label_filter)

        if not force and not await self.idle_timer.should_calculate(user_id):
            cached = await self._read_cached(user_id, cache_key)
            if cached is not None:
                return cached
            logger.info(
                "Follow-up calculation deferred by idle gate",
                user_id=user_id,
                contact_count=len(active),
            )
            return FollowUpResult.unavailable([NOTICE_CALCULATION_DEFERRED])

        if not force:
            entry = self.cache.get_by_key(user_id, cache_key)
            if entry is not None:
                await self.idle_timer.mark_done(user_id)
                return self._cached_result(user_id, entry.buckets, entry.created_at)

        return await self._calculate(user_id, active, label_filter, force=force)

    async def refresh(self, user_id: str, labels: Sequence[str] = ()) -> FollowUpResult:
        return await self.get_follow_ups(user_id, labels, force=True)

    async def get_bucket_page(
        self,
        user_id: str,
        bucket: str,
        labels: Sequence[str] = (),
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[FollowUpResult, Page]:
        try:
            selected = StalenessBucket(bucket)
        except ValueError as e:
            raise FollowUpServiceError(f"Unknown bucket: {bucket}", status_code=404) from e

        result = await self.get_follow_ups(user_id, labels)
        return result, paginate(result.buckets.get(selected), page, page_size)

    async def _read_cached(self, user_id: str, cache_key: str) -> FollowUpResult | None:
        entry = self.cache.get_by_key(user_id, cache_key)
        if entry is not None:
            return self._cached_result(user_id, entry.buckets, entry.created_at)

        loaded = await self.persisted.load(user_id, cache_key)
        if loaded is None:
            return None
        buckets, written_at = loaded
        return self._cached_result(user_id, buckets, written_at)

    def _cached_result(
        self, user_id: str, buckets: FollowUpBuckets, calculated_at: datetime
    ) -> FollowUpResult:
        """Wrap a cached calculation, dropping contacts with activity logged since it was made."""
        for contact_id in self.overlay.snapshot(user_id, buckets.contact_ids()):
            bucket = buckets.bucket_of(contact_id)
            if bucket is not None:
                buckets = buckets.without(contact_id, bucket)
        return FollowUpResult(
            buckets=buckets, available=True, from_cache=True, calculated_at=calculated_at
        )

    async def _calculate(
        self,
        user_id: str,
        active: list[Contact],
        label_filter: tuple[str, ...],
        *,
        force: bool,
    ) -> FollowUpResult:
        start = time.perf_counter()
        notices: list[str] = []
        contact_ids = [contact.id for contact in active]

        activity = None if force else self.lookup.snapshot_for(user_id, contact_ids)
        if activity is None:
            lookup_result = await self.lookup.fetch(user_id, contact_ids)
            if lookup_result.superseded:
                return FollowUpResult.unavailable([NOTICE_CALCULATION_SUPERSEDED])
            if lookup_result.total_failure:
                notices.append(NOTICE_ACTIVITY_LOOKUP_FAILED)
            activity = lookup_result.activity

        optimistic = self.overlay.snapshot(user_id, contact_ids)
        now = self._clock()

        if len(active) >= self.background_threshold:
            payload = CalculationPayload.build(
                active, activity, optimistic, now, label_filter, self.policy
            )
            outcome = await self.scheduler.run(
                payload, on_progress=lambda message: self._track_progress(user_id, message)
            )
            if isinstance(outcome, CalculationError):
                self._finish_progress(user_id)
                log_calculation(
                    user_id,
                    len(active),
                    {},
                    (time.perf_counter() - start) * 1000,
                    source="background",
                    error=outcome.message,
                )
                return FollowUpResult.unavailable(notices + [NOTICE_BACKGROUND_CALCULATION_FAILED])
            buckets = outcome.buckets
            source = "background"
        else:
            buckets = calculate_follow_ups(
                active,
                activity,
                optimistic,
                now,
                label_filter=label_filter,
                policy=self.policy,
                on_progress=lambda processed, total: self._track_progress(
                    user_id, CalculationProgress(processed, total)
                ),
                progress_interval=self.progress_interval,
            )
            source = "inline"

        self._finish_progress(user_id)
        await self._store(user_id, contact_ids, label_filter, buckets, now)

        log_calculation(
            user_id,
            len(active),
            buckets.counts(),
            (time.perf_counter() - start) * 1000,
            source=source,
        )
        return FollowUpResult(
            buckets=buckets, available=True, from_cache=False, calculated_at=now, notices=notices
        )

    async def _store(
        self,
        user_id: str,
        contact_ids: list[str],
        label_filter: tuple[str, ...],
        buckets: FollowUpBuckets,
        now: datetime,
    ) -> None:
        entry = await self.cache.set(user_id, contact_ids, label_filter, buckets, created_at=now)
        await self.persisted.save(user_id, entry.key, buckets)
        await self.idle_timer.mark_done(user_id)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def record_activity(
        self, user_id: str, contact_id: str, descriptor: ActivityDescriptor
    ) -> OptimisticActivity:
        if not descriptor.type or not descriptor.type.strip():
            raise FollowUpServiceError("Activity type is required", status_code=422)

        activity = self.overlay.record(user_id, contact_id, descriptor)

        for entry in await self.cache.patch_contact(user_id, contact_id):
            await self.persisted.save(user_id, entry.key, entry.buckets)
        return activity

    def pending_activities(self, user_id: str) -> list[OptimisticActivity]:
        return self.overlay.entries(user_id)

    async def _handle_confirmed(self, activity: OptimisticActivity, record: ActivityRecord) -> None:
        await self.lookup.refresh_contacts(activity.user_id, [activity.contact_id])
        self.cache.invalidate_user(activity.user_id)
        await self.persisted.delete_for_user(activity.user_id)
        await self.idle_timer.force(activity.user_id)
        logger.debug(
            "Follow-up data refreshed after confirmed activity",
            user_id=activity.user_id,
            contact_id=activity.contact_id,
            activity_id=record.id,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def clear_cache(self, user_id: str) -> dict:
        memory_entries = await self.cache.clear_user(user_id)
        persisted_rows = await self.persisted.delete_for_user(user_id)
        await self.idle_timer.force(user_id)
        self.lookup.invalidate_snapshot(user_id)
        self._progress.pop(user_id, None)

        logger.info(
            "Follow-up caches cleared",
            user_id=user_id,
            memory_entries=memory_entries,
            persisted_rows=persisted_rows,
        )
        return {"memory_entries": memory_entries, "persisted_rows": persisted_rows}

    async def status(self, user_id: str) -> dict:
        last = await self.idle_timer.last_calculation(user_id)
        progress = self._progress.get(user_id)
        return {
            "calculation_status": await self.idle_timer.status(user_id),
            "last_calculated_at": last.isoformat() if last else None,
            "time_until_next_seconds": round(await self.idle_timer.time_until_next(user_id), 1),
            "progress": progress.to_dict() if progress else None,
            "cache": self.cache.stats(),
            "pending_activities": self.overlay.counts(user_id),
        }

    def _track_progress(self, user_id: str, message: CalculationProgress) -> None:
        self._progress[user_id] = ProgressState(
            processed=message.processed,
            total=message.total,
            percentage=message.percentage,
            running=message.processed < message.total,
            updated_at=self._clock(),
        )

    def _finish_progress(self, user_id: str) -> None:
        current = self._progress.get(user_id)
        if current is not None and current.running:
            self._progress[user_id] = ProgressState(
                processed=current.processed,
                total=current.total,
                percentage=current.percentage,
                running=False,
                updated_at=self._clock(),
            )

    async def close(self) -> None:
        await self.overlay.close()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)


def build_follow_up_service(
    config: Settings, *, redis_store: KeyValueStore | None = None
) -> FollowUpService:
    """Wire the service from settings. Called once from the app lifespan."""
    executor = ThreadPoolExecutor(
        max_workers=config.BACKGROUND_CALCULATION_WORKERS,
        thread_name_prefix="follow-up-calc",
    )
    return FollowUpService(
        cache=CalculationCache(
            ttl_seconds=config.CALCULATION_CACHE_TTL_SECONDS,
            metadata_version=config.FOLLOW_UP_CACHE_VERSION,
        ),
        persisted=PersistedCalculationStore(
            metadata_version=config.FOLLOW_UP_CACHE_VERSION,
            ttl_seconds=config.PERSISTED_CACHE_TTL_SECONDS,
        ),
        idle_timer=IdleCalculationTimer(
            store=redis_store,
            idle_threshold_seconds=config.CALCULATION_IDLE_THRESHOLD_SECONDS,
            fresh_window_seconds=config.CALCULATION_FRESH_WINDOW_SECONDS,
        ),
        lookup=ActivityLookupService(
            batch_size=config.ACTIVITY_LOOKUP_BATCH_SIZE,
            snapshot_ttl_seconds=config.ACTIVITY_SNAPSHOT_TTL_SECONDS,
        ),
        overlay=OptimisticOverlay(
            persist=ActivityRepository.insert_activity,
            grace_seconds=config.OPTIMISTIC_GRACE_SECONDS,
            expiry_seconds=config.OPTIMISTIC_EXPIRY_SECONDS,
        ),
        scheduler=BackgroundCalculationScheduler(
            executor, progress_interval=config.CALCULATION_PROGRESS_INTERVAL
        ),
        policy=CalculationPolicy(
            terminal_status=config.FOLLOW_UP_TERMINAL_STATUS,
            missing_created_at_is_old=config.FOLLOW_UP_MISSING_CREATED_AT_IS_OLD,
        ),
        background_threshold=config.BACKGROUND_CALCULATION_THRESHOLD,
        progress_interval=config.CALCULATION_PROGRESS_INTERVAL,
        executor=executor,
    )
