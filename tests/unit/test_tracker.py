"""
Unit tests for the problematic-entity tracker
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from ingestion.media.tracker import ProblematicEntityTracker, eligibility_clause, is_eligible
from models import ProblematicEntity, ProblemStatus, Property

NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def tracker(session_maker):
    return ProblematicEntityTracker(
        session_maker,
        rate_limit_threshold=2,
        rate_limit_window=timedelta(hours=24),
        failure_threshold=3,
        permanent_skip_fails=5,
        cooldown_base=timedelta(hours=2),
        cooldown_max=timedelta(days=7),
    )


class TestCooldownDuration:
    """Doubling per offense, capped"""

    def test_first_offense_uses_base(self, tracker):
        assert tracker.cooldown_duration(rate_limits=2, failures=0) == timedelta(hours=2)
        assert tracker.cooldown_duration(rate_limits=0, failures=3) == timedelta(hours=2)

    def test_each_further_offense_doubles(self, tracker):
        assert tracker.cooldown_duration(rate_limits=3, failures=0) == timedelta(hours=4)
        assert tracker.cooldown_duration(rate_limits=0, failures=4) == timedelta(hours=4)
        assert tracker.cooldown_duration(rate_limits=5, failures=4) == timedelta(hours=16)

    def test_capped_at_maximum(self, tracker):
        assert tracker.cooldown_duration(rate_limits=40, failures=0) == timedelta(days=7)


class TestEligibility:

    def test_unknown_entity_is_eligible(self):
        assert is_eligible(None, NOW)

    @pytest.mark.parametrize(
        "status, cooldown_until, expected",
        [
            (ProblemStatus.ACTIVE, None, True),
            (ProblemStatus.CLEARED, None, True),
            (ProblemStatus.COOLDOWN, NOW + timedelta(minutes=1), False),
            (ProblemStatus.COOLDOWN, NOW - timedelta(minutes=1), True),
            (ProblemStatus.PERMANENT_SKIP, None, False),
        ],
    )
    def test_status_rules(self, status, cooldown_until, expected):
        entity = ProblematicEntity(entity_key="ACT1", status=status, cooldown_until=cooldown_until)
        assert is_eligible(entity, NOW) is expected

    @pytest.mark.asyncio
    async def test_sql_clause_matches_predicate(self, db_session):
        statuses = {
            "ACT-ACTIVE": (ProblemStatus.ACTIVE, None),
            "ACT-COOLING": (ProblemStatus.COOLDOWN, NOW + timedelta(hours=1)),
            "ACT-EXPIRED": (ProblemStatus.COOLDOWN, NOW - timedelta(hours=1)),
            "ACT-SKIPPED": (ProblemStatus.PERMANENT_SKIP, None),
        }
        for key in list(statuses) + ["ACT-CLEAN"]:
            db_session.add(Property(
                listing_key=key, originating_system="ACTRIS", modification_timestamp=NOW, raw={},
            ))
        entities = []
        for key, (status, until) in statuses.items():
            entity = ProblematicEntity(
                entity_key=key, status=status, cooldown_until=until,
                rate_limit_count=0, consecutive_fails=0,
            )
            entities.append(entity)
            db_session.add(entity)
        await db_session.commit()

        result = await db_session.execute(
            select(Property.listing_key)
            .where(eligibility_clause(Property.listing_key, NOW))
            .order_by(Property.listing_key)
        )

        eligible = result.scalars().all()
        assert eligible == ["ACT-ACTIVE", "ACT-CLEAN", "ACT-EXPIRED"]
        assert sorted(e.entity_key for e in entities if is_eligible(e, NOW)) == [
            "ACT-ACTIVE", "ACT-EXPIRED"
        ]


class TestTransitions:
    """Test status transitions driven by failures and rate limits"""

    @pytest.mark.asyncio
    async def test_single_rate_limit_stays_active(self, tracker):
        entity = await tracker.record_rate_limit("ACT1", now=NOW)

        assert entity.status == ProblemStatus.ACTIVE
        assert entity.rate_limit_count == 1
        assert entity.first_rate_limit_at == NOW

    @pytest.mark.asyncio
    async def test_rate_limit_threshold_starts_cooldown(self, tracker):
        await tracker.record_rate_limit("ACT1", now=NOW)
        entity = await tracker.record_rate_limit("ACT1", now=NOW + timedelta(minutes=5))

        assert entity.status == ProblemStatus.COOLDOWN
        assert entity.cooldown_until == NOW + timedelta(minutes=5) + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_rate_limits_outside_window_do_not_accumulate(self, tracker):
        await tracker.record_rate_limit("ACT1", now=NOW - timedelta(hours=30))
        entity = await tracker.record_rate_limit("ACT1", now=NOW)

        assert entity.rate_limit_count == 1
        assert entity.first_rate_limit_at == NOW
        assert entity.status == ProblemStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failure_threshold_then_escalation(self, tracker):
        for _ in range(3):
            entity = await tracker.record_failure("ACT1", error="timeout", now=NOW)
        assert entity.status == ProblemStatus.COOLDOWN
        assert entity.cooldown_until == NOW + timedelta(hours=2)

        later = NOW + timedelta(hours=3)
        entity = await tracker.record_failure("ACT1", error="timeout", now=later)
        assert entity.status == ProblemStatus.COOLDOWN
        assert entity.cooldown_until == later + timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_permanent_skip_at_ceiling(self, tracker):
        for _ in range(5):
            entity = await tracker.record_failure("ACT1", now=NOW)

        assert entity.status == ProblemStatus.PERMANENT_SKIP
        assert entity.cooldown_until is None
        assert not is_eligible(entity, NOW + timedelta(days=365))

    @pytest.mark.asyncio
    async def test_success_lifts_cooldown_but_not_permanent_skip(self, tracker):
        for _ in range(3):
            await tracker.record_failure("ACT1", now=NOW)
        await tracker.record_success("ACT1", now=NOW)

        entity = await tracker.get("ACT1")
        assert entity.status == ProblemStatus.ACTIVE
        assert entity.consecutive_fails == 0
        assert entity.cooldown_until is None

        for _ in range(5):
            await tracker.record_failure("ACT2", now=NOW)
        await tracker.record_success("ACT2", now=NOW)
        assert (await tracker.get("ACT2")).status == ProblemStatus.PERMANENT_SKIP

    @pytest.mark.asyncio
    async def test_success_for_unknown_entity_creates_nothing(self, tracker):
        await tracker.record_success("ACT1", now=NOW)

        assert await tracker.get("ACT1") is None

    @pytest.mark.asyncio
    async def test_clear_resets_entity(self, tracker):
        for _ in range(5):
            await tracker.record_failure("ACT1", now=NOW)

        entity = await tracker.clear("ACT1", notes="fixed upstream")

        assert entity.status == ProblemStatus.CLEARED
        assert entity.consecutive_fails == 0
        assert entity.rate_limit_count == 0
        assert entity.notes == "fixed upstream"
        assert is_eligible(entity, NOW)
        assert await tracker.clear("UNKNOWN") is None
