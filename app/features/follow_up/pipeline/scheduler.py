"""
Background follow-up calculation.

Large contact sets are classified on a worker thread so the event loop
keeps serving requests. The worker gets an immutable payload and talks
back only through messages posted onto an asyncio queue: any number of
``CalculationProgress`` followed by exactly one ``CalculationComplete`` or
``CalculationError``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType

from app.features.follow_up.domain.classifier import calculate_follow_ups
from app.features.follow_up.domain.models import (
    ActivitySummary,
    CalculationPolicy,
    Contact,
    FollowUpBuckets,
    OptimisticActivity,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CalculationPayload:
    contacts: tuple[Contact, ...]
    activity: Mapping[str, ActivitySummary]
    optimistic: Mapping[str, tuple[OptimisticActivity, ...]]
    now: datetime
    label_filter: tuple[str, ...] = ()
    policy: CalculationPolicy = CalculationPolicy()

    @classmethod
    def build(
        cls,
        contacts: Sequence[Contact],
        activity: Mapping[str, ActivitySummary],
        optimistic: Mapping[str, Sequence[OptimisticActivity]],
        now: datetime,
        label_filter: Sequence[str] = (),
        policy: CalculationPolicy | None = None,
    ) -> CalculationPayload:
        """Copy everything the worker reads so the caller can keep mutating its own maps."""
        return cls(
            contacts=tuple(contacts),
            activity=MappingProxyType(dict(activity)),
            optimistic=MappingProxyType(
                {contact_id: tuple(entries) for contact_id, entries in optimistic.items()}
            ),
            now=now,
            label_filter=tuple(label_filter),
            policy=policy or CalculationPolicy(),
        )


@dataclass(frozen=True, slots=True)
class CalculationProgress:
    processed: int
    total: int

    @property
    def percentage(self) -> float:
        return round(self.processed / self.total * 100, 1) if self.total else 100.0


@dataclass(frozen=True, slots=True)
class CalculationComplete:
    buckets: FollowUpBuckets
    processing_time_ms: float


@dataclass(frozen=True, slots=True)
class CalculationError:
    message: str


CalculationMessage = CalculationProgress | CalculationComplete | CalculationError
ProgressHandler = Callable[[CalculationProgress], None]


class BackgroundCalculationScheduler:
    def __init__(self, executor: Executor, progress_interval: int = 10):
        self._executor = executor
        self.progress_interval = progress_interval

    async def run(
        self, payload: CalculationPayload, on_progress: ProgressHandler | None = None
    ) -> CalculationComplete | CalculationError:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[CalculationMessage] = asyncio.Queue()

        def post(message: CalculationMessage) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, message)

        try:
            future = loop.run_in_executor(self._executor, self._work, payload, post)
        except RuntimeError as e:
            logger.error("Background follow-up calculation could not start", error=str(e))
            return CalculationError(message=str(e))

        while True:
            getter = asyncio.ensure_future(queue.get())
            try:
                done, _ = await asyncio.wait({getter, future}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter not in done:
                return self._drain(queue, future, on_progress)

            message = getter.result()
            if isinstance(message, CalculationProgress):
                if on_progress is not None:
                    on_progress(message)
                continue
            # The worker posts its terminal message last, so the thread is done
            await asyncio.wait({future})
            return message

    def _drain(
        self,
        queue: asyncio.Queue[CalculationMessage],
        future: asyncio.Future,
        on_progress: ProgressHandler | None,
    ) -> CalculationComplete | CalculationError:
        """Worker finished; return its terminal message or an error if it left none."""
        while not queue.empty():
            message = queue.get_nowait()
            if not isinstance(message, CalculationProgress):
                return message
            if on_progress is not None:
                on_progress(message)

        if future.cancelled():
            reason = "Background calculation was cancelled"
        elif future.exception() is not None:
            reason = str(future.exception()) or type(future.exception()).__name__
        else:
            reason = "Background calculation ended without a result"
        logger.error("Background follow-up calculation produced no result", error=reason)
        return CalculationError(message=reason)

    def _work(
        self, payload: CalculationPayload, post: Callable[[CalculationMessage], None]
    ) -> None:
        start = time.perf_counter()
        try:
            buckets = calculate_follow_ups(
                payload.contacts,
                payload.activity,
                payload.optimistic,
                payload.now,
                label_filter=payload.label_filter,
                policy=payload.policy,
                on_progress=lambda processed, total: post(CalculationProgress(processed, total)),
                progress_interval=self.progress_interval,
            )
        except Exception as e:
            logger.error("Background follow-up calculation failed", error=str(e))
            post(CalculationError(message=str(e)))
            return

        post(
            CalculationComplete(
                buckets=buckets,
                processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
            )
        )
