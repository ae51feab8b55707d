"""
Eligibility filter: should this worker session be offered this booking?

The backend filters first; every session re-checks locally. Four rules,
evaluated in order, the first failure wins:

1. status:       only ``pending`` bookings are on offer
2. assignment:   a booking assigned to someone else is not on offer
3. category:     case-insensitive, trimmed category match
4. verification: the category must be exactly ``verified``

Rule 4 is a trust boundary: a matching but unverified or rejected category
never surfaces a request.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dispatch_sync.schemas.booking_schema import Booking, BookingStatus
from dispatch_sync.schemas.worker_schema import VerificationStatus, WorkerProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibilityResult:
    """Outcome of an eligibility check."""
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None


_ELIGIBLE = EligibilityResult(eligible=True)


def check_eligibility(booking: Booking, profile: WorkerProfile) -> EligibilityResult:
    """Evaluate all rules and report the first that excludes the booking."""
    if booking.status != BookingStatus.PENDING:
        return EligibilityResult(
            eligible=False,
            reason="not_pending",
            message=f"Booking is '{booking.status.value}', already claimed or closed.",
        )

    if booking.assigned_worker_id is not None and booking.assigned_worker_id != profile.id:
        return EligibilityResult(
            eligible=False,
            reason="assigned_elsewhere",
            message=f"Booking is assigned to {booking.assigned_worker_id}.",
        )

    category = booking.service_category
    if not category.strip() or not profile.has_category(category):
        return EligibilityResult(
            eligible=False,
            reason="category_mismatch",
            message=f"Worker does not offer '{category}'.",
        )

    verification = profile.verification_for(category)
    if verification != VerificationStatus.VERIFIED:
        label = verification.value if verification else "missing"
        return EligibilityResult(
            eligible=False,
            reason="category_unverified",
            message=f"Category '{category}' verification is {label}.",
        )

    return _ELIGIBLE


def is_eligible(booking: Booking, profile: WorkerProfile) -> bool:
    """Pure predicate: True only if every eligibility rule passes."""
    result = check_eligibility(booking, profile)
    if not result.eligible:
        logger.debug(
            "Booking %s not eligible for worker %s: %s",
            booking.id, profile.id, result.reason,
        )
    return result.eligible
