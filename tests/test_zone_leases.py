"""Tests for lease-based zone claiming and refresh.

A zone is leased by a single conditional UPDATE ... RETURNING, so overlapping
triggers never process the same zone twice, and every exit path reschedules
the zone and clears the lease.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from dealscout.archivist import storage
from dealscout.archivist.models import (
    NotificationOutbox,
    UpstreamSource,
    ZoneSource,
    ZoneStatus,
    utc_now_naive,
)
from dealscout.common.geocoding import GeocodingError
from dealscout.scheduler.leases import ZoneLeaseScheduler, ZoneOutcome

from test_helpers import (
    DETROIT,
    FakeDiscovery,
    FakeGeocoder,
    add_zone,
    get_zone,
    make_place,
    within_seconds,
)


def make_scheduler(session_scope, geocoder=None, discovery=None):
    return ZoneLeaseScheduler(
        geocoder=geocoder or FakeGeocoder({"48201": DETROIT}),
        discovery=discovery or FakeDiscovery([make_place(i) for i in range(4)]),
        session_scope=session_scope,
    )


class TestClaimDueZones:
    """Which zones a claim picks up."""

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_zone(self, session_scope):
        """Ten overlapping claimers over three due zones lease each zone exactly once."""
        now = utc_now_naive()
        for postal_code in ("48201", "48226", "48202"):
            await add_zone(session_scope, postal_code, next_due_at=now - timedelta(minutes=5))

        scheduler = make_scheduler(session_scope)
        batches = await asyncio.gather(
            *[scheduler.claim_due_zones(batch_size=10, now=now) for _ in range(10)]
        )

        claimed = [zone.id for batch in batches for zone in batch]
        assert len(claimed) == 3
        assert len(set(claimed)) == 3

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, session_scope):
        now = utc_now_naive()
        await add_zone(
            session_scope, "48201",
            next_due_at=now - timedelta(hours=1),
            lease_token="crashed-run",
            lease_expires_at=now - timedelta(minutes=1),
        )

        zones = await make_scheduler(session_scope).claim_due_zones(now=now)

        assert [z.postal_code for z in zones] == ["48201"]
        assert zones[0].lease_token != "crashed-run"
        assert within_seconds(zones[0].lease_expires_at, now + timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_live_lease_is_not_claimed(self, session_scope):
        now = utc_now_naive()
        await add_zone(
            session_scope, "48201",
            next_due_at=now - timedelta(hours=1),
            lease_token="someone-else",
            lease_expires_at=now + timedelta(minutes=5),
        )

        assert await make_scheduler(session_scope).claim_due_zones(now=now) == []

    @pytest.mark.asyncio
    async def test_paused_and_future_zones_are_not_claimed(self, session_scope):
        now = utc_now_naive()
        await add_zone(
            session_scope, "48201",
            next_due_at=now - timedelta(hours=1),
            status=ZoneStatus.PAUSED.value,
        )
        await add_zone(session_scope, "48226", next_due_at=now + timedelta(hours=1))

        assert await make_scheduler(session_scope).claim_due_zones(now=now) == []

    @pytest.mark.asyncio
    async def test_oldest_due_first_and_batch_limit(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48202", next_due_at=now - timedelta(minutes=10))
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(hours=3))
        await add_zone(session_scope, "48226", next_due_at=now - timedelta(hours=1))

        zones = await make_scheduler(session_scope).claim_due_zones(batch_size=2, now=now)

        assert [z.postal_code for z in zones] == ["48201", "48226"]

    def test_batch_size_is_clamped(self):
        assert ZoneLeaseScheduler.clamp_batch_size(0) == 1
        assert ZoneLeaseScheduler.clamp_batch_size(-3) == 1
        assert ZoneLeaseScheduler.clamp_batch_size(500) == 50
        assert ZoneLeaseScheduler.clamp_batch_size(None) == 10


class TestRefreshZone:
    """Per-zone outcomes and rescheduling."""

    @pytest.mark.asyncio
    async def test_successful_refresh_saves_sources_and_reschedules(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(session_scope)

        result = await scheduler.run_zone_batch(now=now)

        assert result.claimed == 1
        assert result.processed == 1
        assert result.failed == 0
        assert result.errors == []

        zone = await get_zone(session_scope, "48201")
        assert zone.lease_token is None
        assert zone.lease_expires_at is None
        assert within_seconds(zone.next_due_at, now + timedelta(hours=6))
        assert within_seconds(zone.last_processed_at, now)
        assert zone.city == "Detroit"
        assert zone.latitude == pytest.approx(DETROIT.latitude)

        async with session_scope() as session:
            sources = (await session.execute(select(func.count(UpstreamSource.id)))).scalar_one()
            links = (await session.execute(
                select(func.count(ZoneSource.id)).where(ZoneSource.zone_id == zone.id)
            )).scalar_one()
        assert sources == 4
        assert links == 4

        # Rescheduled six hours out, so nothing is due right now
        assert await scheduler.claim_due_zones(now=now) == []

    @pytest.mark.asyncio
    async def test_rediscovery_updates_instead_of_duplicating(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(session_scope)

        await scheduler.run_zone_batch(now=now)
        await scheduler.run_zone_batch(now=now + timedelta(hours=7))

        async with session_scope() as session:
            sources = (await session.execute(select(func.count(UpstreamSource.id)))).scalar_one()
            links = (await session.execute(select(func.count(ZoneSource.id)))).scalar_one()
        assert sources == 4
        assert links == 4

    @pytest.mark.asyncio
    async def test_unresolvable_postal_code_retries_in_an_hour(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "00000", next_due_at=now - timedelta(minutes=1))
        discovery = FakeDiscovery([make_place(1)])
        scheduler = make_scheduler(session_scope, geocoder=FakeGeocoder({}), discovery=discovery)

        result = await scheduler.run_zone_batch(now=now)

        assert result.skipped == 1
        assert result.failed == 0
        assert not result.total_failure
        assert discovery.calls == []

        zone = await get_zone(session_scope, "00000")
        assert zone.lease_token is None
        assert within_seconds(zone.next_due_at, now + timedelta(hours=1))
        assert zone.last_processed_at is None

    @pytest.mark.asyncio
    async def test_collaborator_error_backs_off_fifteen_minutes(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(
            session_scope, geocoder=FakeGeocoder(error=GeocodingError("OVER_QUERY_LIMIT"))
        )

        result = await scheduler.run_zone_batch(now=now)

        assert result.failed == 1
        assert result.total_failure
        assert len(result.errors) == 1
        assert "48201" in result.errors[0]

        zone = await get_zone(session_scope, "48201")
        assert zone.lease_token is None
        assert within_seconds(zone.next_due_at, now + timedelta(minutes=15))

    @pytest.mark.asyncio
    async def test_discovery_error_backs_off(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(
            session_scope, discovery=FakeDiscovery(error=RuntimeError("places down"))
        )

        refresh = await scheduler.refresh_zone(
            (await scheduler.claim_due_zones(now=now))[0], now=now
        )

        assert refresh.outcome == ZoneOutcome.FAILED
        assert "RuntimeError" in refresh.error
        zone = await get_zone(session_scope, "48201")
        assert within_seconds(zone.next_due_at, now + timedelta(minutes=15))

    @pytest.mark.asyncio
    async def test_one_failing_zone_does_not_fail_the_batch(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=2))
        await add_zone(session_scope, "99999", next_due_at=now - timedelta(minutes=1))

        class PartialGeocoder(FakeGeocoder):
            async def resolve(self, postal_code):
                if postal_code == "99999":
                    raise GeocodingError("REQUEST_DENIED")
                return DETROIT

        result = await make_scheduler(session_scope, geocoder=PartialGeocoder()).run_zone_batch(now=now)

        assert result.claimed == 2
        assert result.processed == 1
        assert result.failed == 1
        assert not result.total_failure

    @pytest.mark.asyncio
    async def test_persistence_failure_aborts_only_that_zone(self, session_scope, monkeypatch):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=2))
        await add_zone(session_scope, "48226", next_due_at=now - timedelta(minutes=1))
        upsert_source = storage.upsert_source

        async def failing_upsert(session, **fields):
            if fields["postal_code"] == "48201":
                raise OperationalError("INSERT INTO dispensaries", {}, Exception("disk I/O error"))
            return await upsert_source(session, **fields)

        monkeypatch.setattr(storage, "upsert_source", failing_upsert)

        result = await make_scheduler(
            session_scope, geocoder=FakeGeocoder({"48201": DETROIT, "48226": DETROIT})
        ).run_zone_batch(now=now)

        assert result.claimed == 2
        assert result.processed == 1
        assert result.failed == 1
        assert len(result.errors) == 1
        assert "48201" in result.errors[0]
        assert "persistence failed" in result.errors[0]

        failed = await get_zone(session_scope, "48201")
        assert failed.lease_token is None
        assert failed.lease_expires_at is None
        assert within_seconds(failed.next_due_at, now + timedelta(minutes=15))

        refreshed = await get_zone(session_scope, "48226")
        assert within_seconds(refreshed.next_due_at, now + timedelta(hours=6))

    @pytest.mark.asyncio
    async def test_naive_timestamps_round_trip(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now)

        zone = await get_zone(session_scope, "48201")

        assert zone.next_due_at.tzinfo is None
        assert within_seconds(zone.next_due_at, now)


class TestNotifications:
    """Subscriber notices are queued after a successful refresh."""

    @pytest.mark.asyncio
    async def test_subscribers_queued_once(self, session_scope):
        async with session_scope() as session:
            await storage.subscribe(session, "a@example.com", "48201")
            await storage.subscribe(session, "b@example.com", "48201")

        scheduler = make_scheduler(session_scope)
        now = utc_now_naive() + timedelta(seconds=1)
        await scheduler.run_zone_batch(now=now)
        await scheduler.run_zone_batch(now=now + timedelta(hours=7))

        async with session_scope() as session:
            rows = (await session.execute(select(NotificationOutbox))).scalars().all()
        assert sorted(r.email for r in rows) == ["a@example.com", "b@example.com"]
        assert all(r.type == "DEALS_READY" for r in rows)

    @pytest.mark.asyncio
    async def test_no_notifications_when_nothing_was_found(self, session_scope):
        async with session_scope() as session:
            await storage.subscribe(session, "a@example.com", "48201")

        scheduler = make_scheduler(session_scope, discovery=FakeDiscovery([]))
        result = await scheduler.run_zone_batch(now=utc_now_naive() + timedelta(seconds=1))

        assert result.processed == 1
        async with session_scope() as session:
            queued = (await session.execute(select(func.count(NotificationOutbox.id)))).scalar_one()
        assert queued == 0

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_the_zone(self, session_scope, monkeypatch):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))

        async def broken_enqueue(*args, **kwargs):
            raise RuntimeError("outbox unavailable")

        monkeypatch.setattr(storage, "enqueue_zone_notifications", broken_enqueue)

        result = await make_scheduler(session_scope).run_zone_batch(now=now)

        assert result.processed == 1
        assert result.failed == 0
        zone = await get_zone(session_scope, "48201")
        assert within_seconds(zone.next_due_at, now + timedelta(hours=6))


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_is_a_noop_when_lease_was_taken_over(self, session_scope):
        now = utc_now_naive()
        await add_zone(session_scope, "48201", next_due_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(session_scope)
        zone = (await scheduler.claim_due_zones(now=now))[0]

        # Another run reclaimed the zone after our lease expired
        async with session_scope() as session:
            stored = await session.get(type(zone), zone.id)
            stored.lease_token = "new-holder"

        released = await scheduler.release(zone, now + timedelta(hours=6), now, processed=True)

        assert released is False
        stored = await get_zone(session_scope, "48201")
        assert stored.lease_token == "new-holder"
        assert stored.last_processed_at is None
