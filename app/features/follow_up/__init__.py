"""
Follow-up feature package.

Every layer of the follow-up pipeline lives here: domain models and the
staleness classifier, repositories, the activity lookup, optimistic overlay
and background scheduler, the calculation caches, the composing service and
the API router.
"""
