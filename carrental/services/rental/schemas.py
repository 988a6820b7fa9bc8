"""API request/response schemas for rental endpoints."""

from pydantic import BaseModel, ConfigDict, Field


class LicenseUploadRequest(BaseModel):
    """Payload for `POST /licenses`."""

    license_id: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)


class LicenseRejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class LicenseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    license_id: str
    customer_id: str
    status: str


class CarCreateRequest(BaseModel):
    """Payload for `POST /cars`; descriptive fields are fixed after creation."""

    car_id: str = Field(min_length=1)
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    color: str = Field(min_length=1)
    year: int = Field(ge=1886, le=2100)
    rental_rate: float = Field(ge=0)


class CarSelectRequest(BaseModel):
    customer_id: str = Field(min_length=1)


class CarInspectRequest(BaseModel):
    damaged: bool = False


class CarResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    car_id: str
    brand: str
    model: str
    color: str
    year: int
    rental_rate: float
    status: str
    available: bool
    rented_by: str | None = None


class RemoveAboveRateRequest(BaseModel):
    """Omitting `threshold` falls back to the configured high-rate threshold."""

    threshold: float | None = Field(default=None, ge=0)


class SelectByColorRequest(BaseModel):
    color: str = Field(min_length=1)


class BatchFailure(BaseModel):
    car_id: str
    error: str


class RemovalReport(BaseModel):
    threshold: float
    removed: list[str]
    failed: list[BatchFailure]


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    participant_id: str
    role: str
    first_name: str
    last_name: str
    country: str | None = None


class TimelineEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str | None
    to_state: str
    reason: str
    event_id: str | None


class DemoSeedResponse(BaseModel):
    participants: list[str]
    licenses: list[str]
    cars: list[str]
