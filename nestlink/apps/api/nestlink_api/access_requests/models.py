"""Access request records and API payloads."""

from datetime import datetime
from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AccessRequestStatus = Literal["pending", "approved", "rejected"]


class AccessRequest(BaseModel):
    """Row of the access requests table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    email: str
    message: str = ""
    building_id: Optional[str] = None
    building_label: Optional[str] = None
    apartment_id: Optional[str] = None
    apartment_label: Optional[str] = None
    status: AccessRequestStatus = "pending"
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AccessRequest":
        return cls.model_validate({**row, "id": str(row["id"])})


class AccessRequestSubmission(BaseModel):
    """Body of POST /api/access-request/request.

    Everything is optional at the schema level so that the route can report
    every missing required field at once instead of failing on the first.
    """

    model_config = ConfigDict(extra="ignore")

    name: Optional[Any] = None
    email: Optional[Any] = None
    message: Optional[Any] = None
    buildingId: Optional[Any] = None
    buildingLabel: Optional[Any] = None
    apartmentId: Optional[Any] = None
    apartmentLabel: Optional[Any] = None
    recaptchaToken: Optional[Any] = None
    formSecret: Optional[Any] = None
    captchaToken: Optional[Any] = None
    captchaAnswer: Optional[Any] = None

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "email",
        "buildingId",
        "apartmentId",
        "recaptchaToken",
        "formSecret",
    )

    def missing_fields(self) -> list[str]:
        missing = []
        for field_name in self.REQUIRED_FIELDS:
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value.strip():
                missing.append(field_name)
        return missing


class ResolutionOutcome(BaseModel):
    """Result of following an approval/rejection link."""

    success: bool = True
    rejected: bool = False
    already_resolved: bool = Field(default=False, serialization_alias="alreadyResolved")
    email: Optional[str] = None
    name: Optional[str] = None
    email_sent: Optional[bool] = Field(default=None, serialization_alias="emailSent")

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
