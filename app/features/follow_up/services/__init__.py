from .follow_up_service import FollowUpService, FollowUpServiceError, build_follow_up_service

__all__ = ["FollowUpService", "FollowUpServiceError", "build_follow_up_service"]
