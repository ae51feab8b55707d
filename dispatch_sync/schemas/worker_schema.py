"""Worker profile as seen by the worker's own session."""

from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from dispatch_sync.utils import normalize_category


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class WorkerProfile(BaseModel):
    """
    Local view of a worker's eligibility.

    ``category_verification`` is keyed by category name as the backend
    stores it; lookups go through the same normalization as matching.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("_id", "id", "workerId"), min_length=1)
    name: Optional[str] = None
    service_categories: list[str] = Field(default_factory=list, alias="serviceCategories")
    category_verification: dict[str, VerificationStatus] = Field(
        default_factory=dict, alias="categoryVerificationStatus"
    )

    def has_category(self, category: str) -> bool:
        wanted = normalize_category(category)
        return any(normalize_category(c) == wanted for c in self.service_categories)

    def verification_for(self, category: str) -> Optional[VerificationStatus]:
        """
        Verification status for a category, or None if never submitted.

        Keys that normalize to the same category must all be verified;
        any disagreement resolves to the least trusted status.
        """
        wanted = normalize_category(category)
        matches = {
            status
            for name, status in self.category_verification.items()
            if normalize_category(name) == wanted
        }
        if not matches:
            return None
        for status in (VerificationStatus.REJECTED, VerificationStatus.PENDING):
            if status in matches:
                return status
        return VerificationStatus.VERIFIED
