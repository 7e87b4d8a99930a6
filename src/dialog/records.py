"""
Persistence and authentication interfaces used by the host flows.

Flows only touch these from step handlers and actions. The in-memory
implementations back the development server and the test-suite.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Optional

import structlog

from src.dialog.errors import AuthError
from src.dialog.locale import redact_for_logs

logger = structlog.get_logger(__name__)


@dataclass
class Profile:
    user_id: str
    phone: str
    name: str = ""
    gender: Optional[str] = None
    age: Optional[int] = None
    locale: str = "en"


@dataclass
class MedicineSchedule:
    medicine_id: str
    name: str
    # 24h hours, one per daily dose
    hours: list[int] = field(default_factory=list)


@dataclass
class MedicationLogEntry:
    user_id: str
    medicine_id: str
    action: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class AuthService(ABC):
    @abstractmethod
    async def send_code(self, phone: str) -> None:
        """Send a one-time code. Raises AuthError on failure."""
        raise NotImplementedError

    @abstractmethod
    async def verify_code(self, phone: str, code: str) -> str:
        """Verify a code and return the user id. Raises AuthError when it doesn't match."""
        raise NotImplementedError


class RecordStore(ABC):
    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[Profile]:
        raise NotImplementedError

    @abstractmethod
    async def save_profile(self, profile: Profile) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_schedules(self, user_id: str) -> list[MedicineSchedule]:
        raise NotImplementedError

    @abstractmethod
    async def update_schedule(
        self, user_id: str, medicine_id: str, hours: list[int], *, name: Optional[str] = None
    ) -> None:
        """Set the dose hours of a medicine, adding it when the user has no such schedule yet."""
        raise NotImplementedError

    @abstractmethod
    async def log_medication_action(
        self, user_id: str, medicine_id: str, action: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_snooze_count(self, user_id: str, medicine_id: str, day: date) -> int:
        raise NotImplementedError

    @abstractmethod
    async def set_snooze_count(self, user_id: str, medicine_id: str, day: date, count: int) -> None:
        raise NotImplementedError


class InMemoryAuthService(AuthService):
    """
    Generates random codes and keeps them in memory.

    `fixed_code` makes every sent code predictable (development and tests).
    """

    def __init__(self, *, code_length: int = 6, fixed_code: Optional[str] = None):
        self.code_length = code_length
        self.fixed_code = fixed_code
        self.fail_send = False
        self._codes: dict[str, str] = {}

    def last_code(self, phone: str) -> Optional[str]:
        return self._codes.get(phone)

    async def send_code(self, phone: str) -> None:
        if self.fail_send:
            raise AuthError("Code delivery failed", code="send_failed")
        code = self.fixed_code or "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))
        self._codes[phone] = code
        logger.info("Code sent", phone=redact_for_logs(phone))

    async def verify_code(self, phone: str, code: str) -> str:
        expected = self._codes.get(phone)
        if expected is None:
            raise AuthError("No code was sent to this number", code="no_code")
        if code != expected:
            raise AuthError("Code does not match", code="invalid_code")
        del self._codes[phone]
        return phone


class InMemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.schedules: dict[str, dict[str, MedicineSchedule]] = {}
        self.medication_log: list[MedicationLogEntry] = []
        self._snoozes: dict[tuple[str, str, date], int] = {}

    def add_schedule(self, user_id: str, schedule: MedicineSchedule) -> None:
        self.schedules.setdefault(user_id, {})[schedule.medicine_id] = schedule

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        return self.profiles.get(user_id)

    async def save_profile(self, profile: Profile) -> None:
        self.profiles[profile.user_id] = replace(profile)

    async def get_schedules(self, user_id: str) -> list[MedicineSchedule]:
        return [replace(s, hours=list(s.hours)) for s in self.schedules.get(user_id, {}).values()]

    async def update_schedule(
        self, user_id: str, medicine_id: str, hours: list[int], *, name: Optional[str] = None
    ) -> None:
        schedule = self.schedules.get(user_id, {}).get(medicine_id)
        if schedule is None:
            self.add_schedule(user_id, MedicineSchedule(medicine_id=medicine_id, name=name or medicine_id))
            schedule = self.schedules[user_id][medicine_id]
        schedule.hours = sorted(set(hours))

    async def log_medication_action(
        self, user_id: str, medicine_id: str, action: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        self.medication_log.append(
            MedicationLogEntry(user_id=user_id, medicine_id=medicine_id, action=action, details=dict(details or {}))
        )

    async def get_snooze_count(self, user_id: str, medicine_id: str, day: date) -> int:
        return self._snoozes.get((user_id, medicine_id, day), 0)

    async def set_snooze_count(self, user_id: str, medicine_id: str, day: date, count: int) -> None:
        key = (user_id, medicine_id, day)
        if count <= 0:
            self._snoozes.pop(key, None)
        else:
            self._snoozes[key] = count
