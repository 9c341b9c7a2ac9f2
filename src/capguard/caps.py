"""Hard cap types and their platform defaults."""

from enum import Enum

from capguard.errors import ValidationError


class HardCapType(str, Enum):
    """
    Resource dimensions subject to a per-project limit.

    Declaration order is the sweep priority: when a project exceeds several
    caps at once, the first one listed here is reported as the cause.
    """

    DB_QUERIES_PER_DAY = "db_queries_per_day"
    REALTIME_CONNECTIONS = "realtime_connections"
    STORAGE_UPLOADS_PER_DAY = "storage_uploads_per_day"
    FUNCTION_INVOCATIONS_PER_DAY = "function_invocations_per_day"


DEFAULT_HARD_CAPS: dict[HardCapType, int] = {
    HardCapType.DB_QUERIES_PER_DAY: 10_000,
    HardCapType.REALTIME_CONNECTIONS: 100,
    HardCapType.STORAGE_UPLOADS_PER_DAY: 1_000,
    HardCapType.FUNCTION_INVOCATIONS_PER_DAY: 5_000,
}

# Caps measured as a point-in-time level rather than a daily sum
GAUGE_CAPS = frozenset({HardCapType.REALTIME_CONNECTIONS})

MIN_CAP_VALUE = 1
MAX_CAP_VALUE = 1_000_000


def parse_cap_type(value: HardCapType | str) -> HardCapType:
    """Coerce a string into a HardCapType, raising ValidationError if unknown."""
    if isinstance(value, HardCapType):
        return value
    try:
        return HardCapType(value)
    except ValueError:
        valid = ", ".join(cap.value for cap in HardCapType)
        raise ValidationError(
            f"Invalid cap type '{value}'. Must be one of: {valid}",
            field="cap_type",
            value=value,
        ) from None


def validate_cap_value(value: object) -> int:
    """Return the cap value if it is an integer within bounds, else raise ValidationError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Cap value must be an integer", field="cap_value", value=value)
    if value < MIN_CAP_VALUE:
        raise ValidationError(
            f"Cap value must be at least {MIN_CAP_VALUE}", field="cap_value", value=value
        )
    if value > MAX_CAP_VALUE:
        raise ValidationError(
            f"Cap value must not exceed {MAX_CAP_VALUE:,}", field="cap_value", value=value
        )
    return value
