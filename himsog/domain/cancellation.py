from enum import Enum

from loguru import logger

from himsog.domain.models import Role


class UserCancellationReason(Enum):
    SCHEDULE_CONFLICT = "Schedule conflict"
    FEELING_BETTER = "Feeling better"
    FINANCIAL_REASONS = "Financial reasons"
    FOUND_ANOTHER_PROVIDER = "Found another provider"
    TRANSPORTATION_ISSUES = "Transportation issues"
    PERSONAL_EMERGENCY = "Personal emergency"
    OTHER = "Other"


class ProviderCancellationReason(Enum):
    PROVIDER_UNAVAILABLE = "Provider unavailable"
    EMERGENCY_SITUATION = "Emergency situation"
    SCHEDULING_ERROR = "Scheduling error"
    FACILITY_ISSUES = "Facility issues"
    WEATHER_SAFETY_CONCERNS = "Weather/safety concerns"
    OTHER = "Other"


_TAXONOMIES: dict[Role, type[UserCancellationReason] | type[ProviderCancellationReason]] = {
    Role.USER: UserCancellationReason,
    Role.PROVIDER: ProviderCancellationReason,
}


def reason_label(role: Role, code: str) -> str:
    """Resolve a reason code to its label within ``role``'s taxonomy.

    Codes from another role's taxonomy, or unknown codes, resolve to that
    taxonomy's ``OTHER`` label.
    """
    taxonomy = _TAXONOMIES[role]
    try:
        return taxonomy[code.strip().upper()].value
    except KeyError:
        logger.warning("Cancellation reason '{}' is not valid for role {}", code, role.value)
        return taxonomy["OTHER"].value


def compose_reason(role: Role, code: str, notes: str | None = None) -> str:
    """Build the stored reason text: ``label`` or ``label: notes``."""
    label = reason_label(role, code)
    notes = (notes or "").strip()
    return f"{label}: {notes}" if notes else label


def reasons_for(role: Role) -> list[dict[str, str]]:
    """List ``{value, label}`` pairs offered to ``role``."""
    return [{"value": r.name, "label": r.value} for r in _TAXONOMIES[role]]
