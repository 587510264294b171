from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import (
    CUSTOMER_TRUST_RECOVERY_JOBS,
    MAX_TRUST_LEVEL,
    PROVIDER_TRUST_RECOVERY_JOBS,
)
from bookings.app.core.errors import PolicyResult
from bookings.app.domain.models import TrustProfile, UserRole
from bookings.app.services.shared_services import utc_now

logger = logging.getLogger(__name__)

_LABELS = {
    UserRole.CUSTOMER: ("Normal", "Soft Warning", "Reliability Risk", "High Risk"),
    UserRole.PROVIDER: ("Good Standing", "Advisory", "Reliability Risk", "High Risk"),
}
_STATUS = ("good", "advisory", "warning", "risk")


@dataclass(frozen=True)
class TrustContext:
    """What the caller is about to do and which requirements it already meets."""

    action: str = "booking"
    urgent: bool = False
    no_show_fee_cents: int | None = None
    consultation_scheduled: bool = False
    confirmed: bool = False


@dataclass(frozen=True)
class TrustDecision:
    blocked: bool = False
    required_no_show_fee: bool = False
    required_consultation: bool = False
    required_confirmation: bool = False
    warnings: tuple[str, ...] = ()
    trust_level: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "blocked": self.blocked,
            "required_no_show_fee": self.required_no_show_fee,
            "required_consultation": self.required_consultation,
            "required_confirmation": self.required_confirmation,
            "warnings": list(self.warnings),
            "trust_level": self.trust_level,
        }


def _role(role: UserRole | str) -> UserRole:
    r = UserRole(role)
    if r not in (UserRole.CUSTOMER, UserRole.PROVIDER):
        raise ValueError(f"trust levels apply to customers and providers, not {r.value}")
    return r


def _check_level(level: int) -> int:
    level = int(level)
    if not 0 <= level <= MAX_TRUST_LEVEL:
        raise ValueError(f"trust level must be 0..{MAX_TRUST_LEVEL}")
    return level


def trust_level_label(level: int, role: UserRole | str) -> str:
    return _LABELS[_role(role)][_check_level(level)]


def recovery_jobs_required(role: UserRole | str) -> int:
    return CUSTOMER_TRUST_RECOVERY_JOBS if _role(role) == UserRole.CUSTOMER else PROVIDER_TRUST_RECOVERY_JOBS


def evaluate(trust_level: int, role: UserRole | str, context: TrustContext | None = None) -> TrustDecision:
    """Map a trust level to the friction a user must go through.

    Trust never blocks outright; it only adds requirements and warnings.
    """
    level = _check_level(trust_level)
    role = _role(role)
    ctx = context or TrustContext()
    warnings: list[str] = []
    no_show_fee = consultation = confirmation = False

    if role == UserRole.CUSTOMER:
        if level == 1:
            warnings.append("Recent no-shows detected. Please ensure availability before booking.")
        elif level == 2:
            warnings.append("Multiple no-shows detected. A no-show fee is required for new bookings.")
        elif level == 3:
            warnings.append("Reliability concerns detected. A no-show fee and a consultation are required.")
            if ctx.urgent:
                warnings.append("Time-sensitive bookings are limited for your account.")
        no_show_fee = level >= 2
        consultation = level >= 3
    else:
        if level == 1:
            warnings.append("Please review job requirements carefully before accepting.")
        elif level == 2:
            warnings.append("Reliability concerns detected. Please confirm you can complete this job.")
        elif level == 3:
            warnings.append("Your account has reliability restrictions. Please confirm you can complete this job.")
            if ctx.urgent:
                warnings.append("High-urgency jobs are currently limited for your account.")
        confirmation = level >= 2

    return TrustDecision(
        blocked=False,
        required_no_show_fee=no_show_fee,
        required_consultation=consultation,
        required_confirmation=confirmation,
        warnings=tuple(warnings),
        trust_level=level,
    )


def enforce(decision: TrustDecision, context: TrustContext | None = None) -> PolicyResult:
    """Reject until the caller has satisfied every requirement of ``decision``."""
    ctx = context or TrustContext()
    if decision.blocked:
        return PolicyResult.reject("trust_blocked", warnings=list(decision.warnings))
    if decision.required_no_show_fee and not (ctx.no_show_fee_cents and ctx.no_show_fee_cents > 0):
        return PolicyResult.reject("no_show_fee_required", warnings=list(decision.warnings))
    if decision.required_consultation and not ctx.consultation_scheduled:
        return PolicyResult.reject("consultation_required", warnings=list(decision.warnings))
    if decision.required_confirmation and not ctx.confirmed:
        return PolicyResult.reject("confirmation_required", warnings=list(decision.warnings))
    return PolicyResult.allow(warnings=list(decision.warnings))


def improvement_guidance(profile: TrustProfile) -> dict[str, Any]:
    """Progress toward the next one-level improvement for ``profile``."""
    level = _check_level(profile.trust_level or 0)
    role = _role(profile.role)
    required = recovery_jobs_required(role)
    completed = int(profile.consecutive_completed_jobs or 0)
    eligible = level > 0
    if not eligible:
        message = "Your account is in good standing."
    else:
        remaining = max(0, required - completed)
        message = f"Complete {remaining} more job(s) in a row without a no-show or cancellation to improve your standing."
    tips: list[str] = []
    if level >= 1:
        tips.append("Keep your bookings or cancel early enough for the other party to reschedule.")
    if level >= 2 and role == UserRole.CUSTOMER:
        tips.append("Bookings require a no-show fee until your level improves.")
    if level >= 2 and role == UserRole.PROVIDER:
        tips.append("Confirm each job explicitly before accepting it.")
    return {
        "trust_level": level,
        "trust_level_label": trust_level_label(level, role),
        "status": _STATUS[level],
        "consecutive_completed_jobs": completed,
        "improvement_tips": tips,
        "recovery_progress": {
            "eligible_for_improvement": eligible,
            "completed": completed if eligible else 0,
            "required": required,
            "message": message,
        },
    }


class TrustProfileService:
    """Per-(user, role) trust state and its decay on good behaviour."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    async def _load(session: AsyncSession, user_id: int, role: UserRole) -> TrustProfile | None:
        return await session.scalar(
            select(TrustProfile).where(TrustProfile.user_id == user_id, TrustProfile.role == role)
        )

    async def _load_or_create(self, session: AsyncSession, user_id: int, role: UserRole) -> TrustProfile:
        """Insert-if-absent on (user_id, role), then read back whichever row won."""
        profile = await self._load(session, user_id, role)
        if profile is not None:
            return profile
        insert = pg_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
        await session.execute(
            insert(TrustProfile)
            .values(
                user_id=user_id,
                role=role,
                trust_level=0,
                previous_trust_level=0,
                consecutive_completed_jobs=0,
                updated_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "role"])
        )
        return await self._load(session, user_id, role)

    async def get_profile(self, user_id: int, role: UserRole | str) -> TrustProfile | None:
        async with self.session_factory() as session:
            return await self._load(session, user_id, _role(role))

    async def get_level(self, user_id: int, role: UserRole | str) -> int:
        profile = await self.get_profile(user_id, role)
        return int(profile.trust_level) if profile else 0

    async def evaluate_user(self, user_id: int, role: UserRole | str, context: TrustContext | None = None) -> TrustDecision:
        return evaluate(await self.get_level(user_id, role), role, context)

    async def set_level(self, user_id: int, role: UserRole | str, level: int) -> TrustProfile:
        role = _role(role)
        level = _check_level(level)
        async with self.session_factory() as session:
            async with session.begin():
                profile = await self._load_or_create(session, user_id, role)
                previous = int(profile.trust_level or 0)
                profile.previous_trust_level = previous
                profile.trust_level = level
                if level > previous:
                    profile.consecutive_completed_jobs = 0
                profile.updated_at = utc_now()
        logger.info("Trust level for %s %s set %s -> %s", role.value, user_id, previous, level)
        return profile

    async def record_completed_job(
        self,
        user_id: int,
        role: UserRole | str,
        session: AsyncSession | None = None,
    ) -> TrustProfile:
        """Count a completed job; enough in a row lowers the level by one."""
        role = _role(role)
        if session is not None:
            return await self._record_completed(session, user_id, role)
        async with self.session_factory() as own:
            async with own.begin():
                return await self._record_completed(own, user_id, role)

    async def _record_completed(self, session: AsyncSession, user_id: int, role: UserRole) -> TrustProfile:
        profile = await self._load_or_create(session, user_id, role)
        profile.consecutive_completed_jobs = int(profile.consecutive_completed_jobs or 0) + 1
        now = utc_now()
        level = int(profile.trust_level or 0)
        if level > 0 and profile.consecutive_completed_jobs >= recovery_jobs_required(role):
            profile.previous_trust_level = level
            profile.trust_level = level - 1
            profile.consecutive_completed_jobs = 0
            profile.trust_improved_at = now
            logger.info("Trust improved for %s %s: %s -> %s", role.value, user_id, level, level - 1)
        profile.updated_at = now
        return profile

    async def record_incident(
        self,
        user_id: int,
        role: UserRole | str,
        kind: str = "no_show",
        session: AsyncSession | None = None,
    ) -> TrustProfile:
        """A no-show or late cancellation breaks the completed-job streak."""
        role = _role(role)

        async def _apply(s: AsyncSession) -> TrustProfile:
            profile = await self._load_or_create(s, user_id, role)
            profile.consecutive_completed_jobs = 0
            profile.updated_at = utc_now()
            return profile

        if session is not None:
            profile = await _apply(session)
        else:
            async with self.session_factory() as own:
                async with own.begin():
                    profile = await _apply(own)
        logger.info("Trust incident %s recorded for %s %s; streak reset", kind, role.value, user_id)
        return profile

    async def guidance(self, user_id: int, role: UserRole | str) -> dict[str, Any]:
        role = _role(role)
        profile = await self.get_profile(user_id, role)
        if profile is None:
            profile = TrustProfile(user_id=user_id, role=role, trust_level=0, consecutive_completed_jobs=0)
        return improvement_guidance(profile)


__all__ = [
    "TrustContext",
    "TrustDecision",
    "evaluate",
    "enforce",
    "improvement_guidance",
    "trust_level_label",
    "recovery_jobs_required",
    "TrustProfileService",
]
