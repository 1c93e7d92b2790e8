"""Exception hierarchy for the bell controller.

Errors that a caller must decide on (refuse a transmission, reject an admin
request) are raised; broker traffic problems are logged and dropped instead.
"""

from __future__ import annotations


class BellbotError(Exception):
    """Base class for all bell controller errors."""


class TimetableValidationError(BellbotError):
    """A device timetable failed validation and must not be transmitted.

    Attributes:
        errors: Every violation found, in discovery order
        size_bytes: Serialized payload size that was checked

    """

    def __init__(self, errors: list[str], size_bytes: int) -> None:
        self.errors: list[str] = list(errors)
        self.size_bytes: int = size_bytes
        super().__init__(f"Timetable rejected ({len(self.errors)} errors): {'; '.join(self.errors)}")


class DeviceNotFoundError(BellbotError):
    """No device record exists for the serial.

    Attributes:
        serial: Serial that was looked up

    """

    def __init__(self, serial: str) -> None:
        self.serial: str = serial
        super().__init__(f"Device not found: {serial}")


class DeviceSilencedError(BellbotError):
    """A ring was requested for a device whose bell is silenced."""

    def __init__(self, serial: str) -> None:
        self.serial: str = serial
        super().__init__(f"Device {serial} is silenced")


class PresetInUseError(BellbotError):
    """A preset cannot be deleted while weekly schedule days reference it.

    Attributes:
        preset_id: Preset that was targeted
        days: Day names still referencing it

    """

    def __init__(self, preset_id: str, days: list[str]) -> None:
        self.preset_id: str = preset_id
        self.days: list[str] = list(days)
        super().__init__(f"Cannot delete preset {preset_id}. It is currently used by: {', '.join(self.days)}")


class StoreConflictError(BellbotError):
    """A write would violate a uniqueness constraint.

    Attributes:
        reason: Which constraint was hit

    """

    def __init__(self, reason: str) -> None:
        self.reason: str = reason
        super().__init__(f"Conflict: {reason}")


class SchoolNotFoundError(BellbotError):
    """No school record exists for the id.

    Attributes:
        school_id: Id that was looked up

    """

    def __init__(self, school_id: str) -> None:
        self.school_id: str = school_id
        super().__init__(f"School not found: {school_id}")
