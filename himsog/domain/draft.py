import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from himsog.domain.exceptions import InvalidRequestError
from himsog.domain.models import BookingRequest


class DraftService(BaseModel):
    """A service picked in the first booking step."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    name: str
    price: Decimal = Field(ge=0)


class BookingDraft(BaseModel):
    """A booking in progress, carried explicitly between the booking steps.

    Every ``with_*`` method returns a new draft; the value can be persisted
    with ``model_dump_json`` and restored with ``model_validate_json``.

    Steps:
        1. services
        2. date and time
        3. patient information
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str = ""
    services: list[DraftService] = Field(default_factory=list)
    date: dt.date | None = None
    time: dt.time | None = None
    patient_name: str = ""
    patient_email: str = ""
    patient_phone: str | None = None
    notes: str | None = None

    @property
    def total_price(self) -> Decimal:
        return sum((s.price for s in self.services), Decimal("0"))

    def with_provider(self, provider_id: str) -> "BookingDraft":
        if provider_id == self.provider_id:
            return self
        # Services belong to a provider, so switching provider starts over.
        return BookingDraft(provider_id=provider_id)

    def with_services(self, services: list[DraftService]) -> "BookingDraft":
        return self.model_copy(update={"services": list(services)})

    def with_date_time(self, date: dt.date, time: dt.time) -> "BookingDraft":
        return self.model_copy(update={"date": date, "time": time})

    def with_patient_info(
        self,
        *,
        patient_name: str,
        patient_email: str,
        patient_phone: str | None = None,
        notes: str | None = None,
    ) -> "BookingDraft":
        return self.model_copy(
            update={
                "patient_name": patient_name,
                "patient_email": patient_email,
                "patient_phone": patient_phone,
                "notes": notes,
            }
        )

    def cleared(self) -> "BookingDraft":
        return BookingDraft()

    def is_step1_complete(self) -> bool:
        return bool(self.provider_id) and bool(self.services)

    def is_step2_complete(self) -> bool:
        return self.date is not None and self.time is not None

    def is_step3_complete(self) -> bool:
        return len(self.patient_name.strip()) >= 2 and bool(self.patient_email.strip())

    def to_request(self) -> BookingRequest:
        """Turn a completed draft into a ``BookingRequest``.

        Raises:
            InvalidRequestError: If a step is incomplete or a field is invalid.
        """
        if not self.is_step1_complete():
            raise InvalidRequestError("At least one service must be selected")
        if not self.is_step2_complete():
            raise InvalidRequestError("Appointment date and time are required")
        if not self.is_step3_complete():
            raise InvalidRequestError("Patient name and email are required")

        try:
            return BookingRequest(
                provider_id=self.provider_id,
                service_ids=[s.service_id for s in self.services],
                date=self.date,  # type: ignore[arg-type]
                time=self.time,  # type: ignore[arg-type]
                patient_name=self.patient_name,
                patient_email=self.patient_email,
                patient_phone=self.patient_phone or None,
                notes=self.notes or None,
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            raise InvalidRequestError(
                f"Invalid booking draft: {first.get('loc', ('?',))[0]}: {first.get('msg')}"
            ) from exc
