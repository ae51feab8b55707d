from dispatch_sync.dispatch.alerts import AlertStopReason, AlertTimer
from dispatch_sync.dispatch.eligibility import EligibilityResult, check_eligibility, is_eligible
from dispatch_sync.dispatch.errors import BookingActionError, JobUnavailableError
from dispatch_sync.dispatch.navigation_flow import NavigationFlow
from dispatch_sync.dispatch.sampler import LocationSampler
from dispatch_sync.dispatch.store import DeltaOutcome, ReconciliationStore

__all__ = [
    "AlertTimer",
    "AlertStopReason",
    "EligibilityResult",
    "check_eligibility",
    "is_eligible",
    "BookingActionError",
    "JobUnavailableError",
    "NavigationFlow",
    "LocationSampler",
    "DeltaOutcome",
    "ReconciliationStore",
]
