"""Course catalog response shapes consumed by the purchase flow."""

from decimal import Decimal
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Course(BaseModel):
    """Subset of the catalog's course document that purchasing relies on."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    title: str = ""
    price: Decimal | None = None
    is_published: bool = Field(default=False, validation_alias=AliasChoices("isPublished", "published", "is_published"))
    instructor_id: int | None = Field(default=None, validation_alias=AliasChoices("instructorId", "instructor_id"))


class LookupStatus(str, Enum):
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"


class CourseLookup(BaseModel):
    """Result of one catalog lookup; UNAVAILABLE never implies a course is absent."""

    status: LookupStatus
    course: Course | None = None
    reason: str | None = None
