from .lookup import ActivityLookupService, LookupResult
from .overlay import OptimisticOverlay
from .scheduler import (
    BackgroundCalculationScheduler,
    CalculationComplete,
    CalculationError,
    CalculationPayload,
    CalculationProgress,
)

__all__ = [
    "ActivityLookupService",
    "BackgroundCalculationScheduler",
    "CalculationComplete",
    "CalculationError",
    "CalculationPayload",
    "CalculationProgress",
    "LookupResult",
    "OptimisticOverlay",
]
