"""
Follow-up routes.

Every endpoint acts on the authenticated user's own contacts. The service
instance is created in the app lifespan and read from ``app.state``.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.auth.verify import current_user_id
from app.config import settings
from app.features.follow_up.domain.classifier import Page, paginate
from app.features.follow_up.domain.models import (
    ActivityDescriptor,
    FollowUpContact,
    FollowUpResult,
    OptimisticActivity,
    StalenessBucket,
)
from app.features.follow_up.services.follow_up_service import (
    FollowUpService,
    FollowUpServiceError,
)
from app.infrastructure.observability.logging import get_logger
from app.models.api.follow_up_request import LogActivityRequest, RefreshFollowUpsRequest
from app.models.api.follow_up_response import (
    BucketPageResponse,
    BucketResponse,
    CacheClearResponse,
    FollowUpContactResponse,
    FollowUpsResponse,
    FollowUpStatusResponse,
    PendingActivitiesResponse,
    PendingActivityResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/follow-ups", tags=["follow-ups"])


def get_follow_up_service(request: Request) -> FollowUpService:
    service = getattr(request.app.state, "follow_up_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Follow-up service not initialized",
        )
    return service


def _contact_response(item: FollowUpContact) -> FollowUpContactResponse:
    contact = item.contact
    return FollowUpContactResponse(
        id=contact.id,
        name=contact.name,
        phone_number=contact.phone_number,
        status=contact.status,
        labels=list(contact.labels),
        created_at=contact.created_at,
        last_activity_at=item.last_activity_at,
    )


def _page_response(bucket: StalenessBucket, page: Page) -> BucketPageResponse:
    return BucketPageResponse(
        bucket=bucket.value,
        items=[_contact_response(item) for item in page.items],
        page=page.page,
        page_size=page.page_size,
        total_count=page.total_count,
        total_pages=page.total_pages,
    )


def _follow_ups_response(result: FollowUpResult, page_size: int) -> FollowUpsResponse:
    return FollowUpsResponse(
        available=result.available,
        from_cache=result.from_cache,
        calculated_at=result.calculated_at,
        notices=result.notices,
        counts=result.buckets.counts(),
        buckets={
            bucket.value: _page_response(bucket, paginate(result.buckets.get(bucket), 1, page_size))
            for bucket in StalenessBucket
        },
    )


def _pending_response(activity: OptimisticActivity) -> PendingActivityResponse:
    return PendingActivityResponse(
        id=activity.id,
        contact_id=activity.contact_id,
        type=activity.type,
        details=activity.details,
        timestamp=activity.timestamp,
        local_timestamp=activity.local_timestamp,
        sync_status=activity.sync_status.value,
        error=activity.error,
    )


@router.get("", response_model=FollowUpsResponse)
async def get_follow_ups(
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
    labels: list[str] = Query(default=[], description="Label filter (any match)"),
    page_size: int = Query(
        default=settings.FOLLOW_UP_PAGE_SIZE, ge=1, le=200, description="Page size per bucket"
    ),
    force: bool = Query(default=False, description="Bypass caches and the idle gate"),
):
    """Get the first page of every follow-up bucket."""
    try:
        result = await service.get_follow_ups(user_id, labels, force=force)
    except Exception as e:
        logger.error("Error getting follow-ups", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get follow-ups",
        ) from e

    return _follow_ups_response(result, page_size)


@router.get("/buckets/{bucket}", response_model=BucketResponse)
async def get_bucket(
    bucket: str,
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
    labels: list[str] = Query(default=[], description="Label filter (any match)"),
    page: int = Query(default=1, ge=1, description="1-based page number"),
    page_size: int = Query(
        default=settings.FOLLOW_UP_PAGE_SIZE, ge=1, le=200, description="Page size"
    ),
):
    """Get one page of one follow-up bucket."""
    try:
        result, bucket_page = await service.get_bucket_page(
            user_id, bucket, labels, page=page, page_size=page_size
        )
    except FollowUpServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
    except Exception as e:
        logger.error("Error getting follow-up bucket", user_id=user_id, bucket=bucket, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get follow-up bucket",
        ) from e

    page_response = _page_response(StalenessBucket(bucket), bucket_page)
    return BucketResponse(
        **page_response.model_dump(),
        available=result.available,
        notices=result.notices,
    )


@router.post("/refresh", response_model=FollowUpsResponse)
async def refresh_follow_ups(
    payload: RefreshFollowUpsRequest | None = None,
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
    page_size: int = Query(
        default=settings.FOLLOW_UP_PAGE_SIZE, ge=1, le=200, description="Page size per bucket"
    ),
):
    """Recalculate follow-ups now, ignoring caches and the idle gate."""
    labels = payload.labels if payload else []
    try:
        result = await service.refresh(user_id, labels)
    except Exception as e:
        logger.error("Error refreshing follow-ups", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to refresh follow-ups",
        ) from e

    return _follow_ups_response(result, page_size)


@router.post(
    "/contacts/{contact_id}/activities",
    response_model=PendingActivityResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def log_activity(
    contact_id: str,
    payload: LogActivityRequest,
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Log an activity. It counts immediately and is persisted in the background."""
    descriptor = ActivityDescriptor(
        type=payload.type, details=payload.details, timestamp=payload.timestamp
    )
    try:
        activity = await service.record_activity(user_id, contact_id, descriptor)
    except FollowUpServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
    except Exception as e:
        logger.error("Error logging activity", user_id=user_id, contact_id=contact_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to log activity",
        ) from e

    return _pending_response(activity)


@router.get("/activities/pending", response_model=PendingActivitiesResponse)
async def list_pending_activities(
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """List optimistic activities with their sync status."""
    activities = service.pending_activities(user_id)
    return PendingActivitiesResponse(
        activities=[_pending_response(activity) for activity in activities],
        counts=service.overlay.counts(user_id),
    )


@router.get("/status", response_model=FollowUpStatusResponse)
async def get_follow_up_status(
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Calculation, cache and overlay status for the caller."""
    try:
        return FollowUpStatusResponse(**await service.status(user_id))
    except Exception as e:
        logger.error("Error getting follow-up status", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get follow-up status",
        ) from e


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_follow_up_cache(
    user_id: str = Depends(current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Drop every cached follow-up calculation of the caller."""
    try:
        cleared = await service.clear_cache(user_id)
    except Exception as e:
        logger.error("Error clearing follow-up cache", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to clear follow-up cache",
        ) from e

    return CacheClearResponse(cleared=True, **cleared)
