"""
Problematic-entity tracker: per-listing failure and cooldown state.

Listings whose media keeps getting throttled or failing are put on a cooldown
that doubles with each offense, and are skipped for good once they fail too
many times in a row. Cooldown expiry is lazy: nothing sweeps the table, the
eligibility check compares cooldown_until with the current time.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import PersistenceError
from core.timeutils import utcnow
from models import ProblematicEntity, ProblemStatus

logger = logging.getLogger(__name__)


def is_eligible(entity: Optional[ProblematicEntity], now: datetime) -> bool:
    """True if work for this entity may be scheduled at ``now``"""
    if entity is None:
        return True
    if entity.status == ProblemStatus.PERMANENT_SKIP:
        return False
    if entity.status == ProblemStatus.COOLDOWN and entity.cooldown_until and entity.cooldown_until > now:
        return False
    return True


def eligibility_clause(key_column, now: datetime):
    """SQL form of is_eligible for candidate queries, correlated on ``key_column``"""
    return ~exists().where(
        and_(
            ProblematicEntity.entity_key == key_column,
            or_(
                ProblematicEntity.status == ProblemStatus.PERMANENT_SKIP,
                and_(
                    ProblematicEntity.status == ProblemStatus.COOLDOWN,
                    ProblematicEntity.cooldown_until > now,
                ),
            ),
        )
    )


class ProblematicEntityTracker:
    """
    Records failures against listings and decides their status.

    Transitions:
    - rate_limit_count >= rate_limit_threshold (within the window) or
      consecutive_fails >= failure_threshold -> cooldown
    - consecutive_fails >= permanent_skip_fails -> permanent_skip
    - success -> consecutive_fails reset, cooldown lifted
    - clear (operator) -> cleared with zeroed counters
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        rate_limit_threshold: Optional[int] = None,
        rate_limit_window: Optional[timedelta] = None,
        failure_threshold: Optional[int] = None,
        permanent_skip_fails: Optional[int] = None,
        cooldown_base: Optional[timedelta] = None,
        cooldown_max: Optional[timedelta] = None,
    ):
        self.session_maker = session_maker
        self.rate_limit_threshold = rate_limit_threshold or settings.RATE_LIMIT_THRESHOLD
        self.rate_limit_window = rate_limit_window or timedelta(hours=settings.RATE_LIMIT_WINDOW_HOURS)
        self.failure_threshold = failure_threshold or settings.FAILURE_THRESHOLD
        self.permanent_skip_fails = permanent_skip_fails or settings.PERMANENT_SKIP_FAILS
        self.cooldown_base = cooldown_base or timedelta(minutes=settings.COOLDOWN_BASE_MINUTES)
        self.cooldown_max = cooldown_max or timedelta(minutes=settings.COOLDOWN_MAX_MINUTES)
        self._lock = asyncio.Lock()

    is_eligible = staticmethod(is_eligible)
    eligibility_clause = staticmethod(eligibility_clause)

    def cooldown_duration(self, rate_limits: int, failures: int) -> timedelta:
        """Base duration doubled for each offense past the thresholds, capped"""
        offense = max(
            rate_limits - self.rate_limit_threshold,
            failures - self.failure_threshold,
        ) + 1
        offense = max(offense, 1)
        duration = self.cooldown_base * (2 ** (offense - 1))
        return min(duration, self.cooldown_max)

    def recent_rate_limits(self, entity: ProblematicEntity, now: datetime) -> int:
        """Rate limits still inside the rolling window"""
        if not entity.last_rate_limit_at or now - entity.last_rate_limit_at > self.rate_limit_window:
            return 0
        return entity.rate_limit_count or 0

    def _evaluate(self, entity: ProblematicEntity, now: datetime) -> None:
        if entity.status == ProblemStatus.PERMANENT_SKIP:
            return

        failures = entity.consecutive_fails or 0
        if failures >= self.permanent_skip_fails:
            entity.status = ProblemStatus.PERMANENT_SKIP
            entity.cooldown_until = None
            logger.warning(
                f"Listing {entity.entity_key} permanently skipped after "
                f"{failures} consecutive failures"
            )
            return

        rate_limits = self.recent_rate_limits(entity, now)
        if rate_limits >= self.rate_limit_threshold or failures >= self.failure_threshold:
            duration = self.cooldown_duration(rate_limits, failures)
            entity.status = ProblemStatus.COOLDOWN
            entity.cooldown_until = now + duration
            logger.warning(
                f"Listing {entity.entity_key} in cooldown until {entity.cooldown_until.isoformat()} "
                f"(rate limits: {entity.rate_limit_count}, failures: {entity.consecutive_fails})"
            )

    async def _mutate(self, entity_key: str, mutate, now: Optional[datetime] = None) -> ProblematicEntity:
        now = now or utcnow()
        async with self._lock:
            async with self.session_maker() as session:
                try:
                    entity = await session.get(ProblematicEntity, entity_key)
                    if entity is None:
                        entity = ProblematicEntity(
                            entity_key=entity_key,
                            rate_limit_count=0,
                            consecutive_fails=0,
                            status=ProblemStatus.ACTIVE,
                            created_at=now,
                        )
                        session.add(entity)
                    mutate(entity, now)
                    entity.updated_at = now
                    await session.commit()
                    return entity
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise PersistenceError(
                        "Failed to update problematic entity",
                        context={"operation": "UPSERT", "table_name": "problematic_entities", "entity_key": entity_key},
                        original_exception=e,
                    )

    async def record_rate_limit(
        self, entity_key: str, now: Optional[datetime] = None, notes: Optional[str] = None
    ) -> ProblematicEntity:
        """A throttling response was attributed to this listing"""

        def mutate(entity: ProblematicEntity, now: datetime) -> None:
            if entity.last_rate_limit_at and now - entity.last_rate_limit_at > self.rate_limit_window:
                entity.rate_limit_count = 0
                entity.first_rate_limit_at = None
            entity.rate_limit_count = (entity.rate_limit_count or 0) + 1
            entity.consecutive_fails = (entity.consecutive_fails or 0) + 1
            entity.first_rate_limit_at = entity.first_rate_limit_at or now
            entity.last_rate_limit_at = now
            if notes:
                entity.notes = notes[:1000]
            self._evaluate(entity, now)

        return await self._mutate(entity_key, mutate, now)

    async def record_failure(
        self, entity_key: str, error: Optional[str] = None, now: Optional[datetime] = None
    ) -> ProblematicEntity:
        """A download for this listing exhausted its transient retries"""

        def mutate(entity: ProblematicEntity, now: datetime) -> None:
            entity.consecutive_fails = (entity.consecutive_fails or 0) + 1
            if error:
                entity.notes = error[:1000]
            self._evaluate(entity, now)

        return await self._mutate(entity_key, mutate, now)

    async def record_success(self, entity_key: str, now: Optional[datetime] = None) -> None:
        """Reset the failure streak; only touches listings that already have a row"""
        now = now or utcnow()
        async with self._lock:
            async with self.session_maker() as session:
                entity = await session.get(ProblematicEntity, entity_key)
                if entity is None or entity.status == ProblemStatus.PERMANENT_SKIP:
                    return
                if entity.consecutive_fails == 0 and entity.status != ProblemStatus.COOLDOWN:
                    return
                entity.consecutive_fails = 0
                if entity.status == ProblemStatus.COOLDOWN:
                    entity.status = ProblemStatus.ACTIVE
                    entity.cooldown_until = None
                entity.updated_at = now
                await session.commit()

    async def clear(self, entity_key: str, notes: Optional[str] = None) -> Optional[ProblematicEntity]:
        """Operator action: lift any cooldown or permanent skip and zero counters"""
        async with self._lock:
            async with self.session_maker() as session:
                entity = await session.get(ProblematicEntity, entity_key)
                if entity is None:
                    return None
                entity.status = ProblemStatus.CLEARED
                entity.rate_limit_count = 0
                entity.consecutive_fails = 0
                entity.cooldown_until = None
                entity.first_rate_limit_at = None
                entity.last_rate_limit_at = None
                entity.notes = notes
                entity.updated_at = utcnow()
                await session.commit()
                logger.info(f"Cleared problematic listing {entity_key}")
                return entity

    async def get(self, entity_key: str) -> Optional[ProblematicEntity]:
        async with self.session_maker() as session:
            return await session.get(ProblematicEntity, entity_key)
