"""
Domain subpackage for the follow-up feature.
"""

from .classifier import calculate_follow_ups, classify, paginate, select_active_contacts
from .models import (
    ActivityDescriptor,
    ActivityRecord,
    ActivitySummary,
    Contact,
    FollowUpBuckets,
    FollowUpContact,
    FollowUpResult,
    OptimisticActivity,
    StalenessBucket,
    SyncStatus,
)

__all__ = [
    "ActivityDescriptor",
    "ActivityRecord",
    "ActivitySummary",
    "Contact",
    "FollowUpBuckets",
    "FollowUpContact",
    "FollowUpResult",
    "OptimisticActivity",
    "StalenessBucket",
    "SyncStatus",
    "calculate_follow_ups",
    "classify",
    "paginate",
    "select_active_contacts",
]
