"""Tests for windowed deal ingestion across many dispensaries.

Covers the concurrency ceiling, priority ordering, reliability
reward/penalty with auto-deactivation, and per-dispensary error isolation.
"""

from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from dealscout.archivist import storage
from dealscout.archivist.models import AcceptedDeal, UpstreamSource
from dealscout.harvester.dispatcher import (
    IngestionDispatcher,
    SourceOutcome,
    dedupe_by_name,
)

from test_helpers import FakeProvider, add_source, add_zone, make_candidate

DEAL_DATE = date(2026, 10, 18)


def one_deal_per_source(source):
    return [make_candidate(title=f"{source.name} Flower 3.5g", price_text="$30")]


def make_dispatcher(session_scope, provider, **kwargs):
    return IngestionDispatcher(provider=provider, session_scope=session_scope, **kwargs)


async def reload(session_scope, source_id) -> UpstreamSource:
    async with session_scope() as session:
        return await session.get(UpstreamSource, source_id)


class TestConcurrencyWindow:
    @pytest.mark.asyncio
    async def test_peak_concurrency_never_exceeds_window(self, session_scope):
        """23 dispensaries with a window of 5 never run more than 5 extractions at once."""
        sources = [
            await add_source(session_scope, f"Shop {i:02d}", website=f"https://shop{i}.example")
            for i in range(23)
        ]
        provider = FakeProvider(default=one_deal_per_source, delay=0.02)

        result = await make_dispatcher(session_scope, provider, window_size=5).process_batch(
            sources, DEAL_DATE
        )

        assert provider.peak == 5
        assert len(provider.calls) == 23
        assert result.dispensaries_processed == 23
        assert result.processed == 23
        assert result.deals_inserted == 23
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_same_dispensary_is_never_scheduled_twice(self, session_scope):
        source = await add_source(session_scope, "Green Leaf", website="https://greenleaf.example")
        provider = FakeProvider(default=one_deal_per_source)

        result = await make_dispatcher(session_scope, provider).process_batch(
            [source, source, source], DEAL_DATE
        )

        assert provider.calls == ["Green Leaf"]
        assert result.dispensaries_processed == 1


class TestPriority:
    def test_high_value_then_target_then_reliability(self):
        no_target = UpstreamSource(id=1, name="No Target", reliability_score=1.0)
        low = UpstreamSource(id=2, name="Low", website="https://low.example", reliability_score=0.5)
        flyer = UpstreamSource(
            id=3, name="Flyer", flyer_url="https://weedmaps.com/dispensaries/flyer",
            reliability_score=0.2,
        )
        high = UpstreamSource(id=4, name="High", website="https://high.example", reliability_score=0.9)

        dispatcher = IngestionDispatcher(provider=FakeProvider(), high_value_hosts=["weedmaps"])
        ordered = dispatcher.prioritize([no_target, low, flyer, high])

        assert [s.name for s in ordered] == ["Flyer", "High", "Low", "No Target"]

    def test_dedupe_by_name_keeps_first(self):
        first = UpstreamSource(id=1, name="Green Leaf")
        second = UpstreamSource(id=2, name="Green Leaf")
        other = UpstreamSource(id=3, name="Joyology")

        assert dedupe_by_name([first, other, second]) == [first, other]


class TestReliability:
    @pytest.mark.asyncio
    async def test_success_rewards(self, session_scope):
        source = await add_source(
            session_scope, "Green Leaf", website="https://greenleaf.example", reliability_score=0.5
        )
        provider = FakeProvider(default=one_deal_per_source)

        await make_dispatcher(session_scope, provider).process_batch([source], DEAL_DATE)

        stored = await reload(session_scope, source.id)
        assert stored.reliability_score == pytest.approx(0.6)
        assert stored.last_ingested_at is not None

    @pytest.mark.asyncio
    async def test_reward_is_capped_at_one(self, session_scope):
        source = await add_source(session_scope, "Green Leaf", website="https://greenleaf.example")
        provider = FakeProvider(default=one_deal_per_source)

        await make_dispatcher(session_scope, provider).process_batch([source], DEAL_DATE)

        assert (await reload(session_scope, source.id)).reliability_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_provider_error_penalizes_and_deactivates_below_floor(self, session_scope):
        source = await add_source(
            session_scope, "Flaky", website="https://flaky.example", reliability_score=0.45
        )
        provider = FakeProvider(errors={"Flaky": RuntimeError("timeout")})

        result = await make_dispatcher(session_scope, provider).process_batch([source], DEAL_DATE)

        assert result.failed == 1
        assert result.errors == []
        stored = await reload(session_scope, source.id)
        assert stored.reliability_score == pytest.approx(0.25)
        assert stored.active is False

    @pytest.mark.asyncio
    async def test_empty_yield_with_target_is_penalized(self, session_scope):
        source = await add_source(session_scope, "Quiet", website="https://quiet.example")
        provider = FakeProvider()

        result = await make_dispatcher(session_scope, provider).process_batch([source], DEAL_DATE)

        assert result.failed == 1
        stored = await reload(session_scope, source.id)
        assert stored.reliability_score == pytest.approx(0.8)
        assert stored.active is True

    @pytest.mark.asyncio
    async def test_no_target_is_skipped_without_penalty(self, session_scope):
        source = await add_source(session_scope, "Walk-in Only")
        provider = FakeProvider()

        result = await make_dispatcher(session_scope, provider).process_batch([source], DEAL_DATE)

        assert result.skipped == 1
        assert result.failed == 0
        stored = await reload(session_scope, source.id)
        assert stored.reliability_score == pytest.approx(1.0)
        assert stored.last_ingested_at is None


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_one_failing_provider_does_not_stop_the_rest(self, session_scope):
        sources = [
            await add_source(session_scope, name, website=f"https://{name.lower()}.example")
            for name in ("Alpha", "Bravo", "Charlie", "Delta")
        ]
        provider = FakeProvider(
            default=one_deal_per_source,
            errors={"Bravo": ValueError("unparseable page")},
        )

        result = await make_dispatcher(session_scope, provider, window_size=2).process_batch(
            sources, DEAL_DATE
        )

        assert result.processed == 3
        assert result.failed == 1
        assert result.deals_inserted == 3
        assert not result.total_failure

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported(self, session_scope, monkeypatch):
        source = await add_source(session_scope, "Green Leaf", website="https://greenleaf.example")
        dispatcher = make_dispatcher(session_scope, FakeProvider(default=one_deal_per_source))

        async def broken_admit(*args, **kwargs):
            raise OperationalError("INSERT INTO deals", {}, Exception("disk I/O error"))

        monkeypatch.setattr(dispatcher.quality, "admit_batch", broken_admit)

        result = await dispatcher.process_source(source, DEAL_DATE)

        assert result.outcome == SourceOutcome.FAILED
        assert "persistence failed" in result.error
        assert "Green Leaf" in result.error

    @pytest.mark.asyncio
    async def test_all_failed_is_total_failure(self, session_scope):
        sources = [
            await add_source(session_scope, name, website=f"https://{name.lower()}.example")
            for name in ("Alpha", "Bravo")
        ]
        provider = FakeProvider(errors={
            "Alpha": RuntimeError("down"),
            "Bravo": RuntimeError("down"),
        })

        result = await make_dispatcher(session_scope, provider).process_batch(sources, DEAL_DATE)

        assert result.total_failure

    @pytest.mark.asyncio
    async def test_rerun_inserts_nothing_new(self, session_scope):
        source = await add_source(session_scope, "Green Leaf", website="https://greenleaf.example")
        dispatcher = make_dispatcher(session_scope, FakeProvider(default=one_deal_per_source))

        first = await dispatcher.process_batch([source], DEAL_DATE)
        second = await dispatcher.process_batch([source], DEAL_DATE)

        assert first.deals_inserted == 1
        assert second.deals_inserted == 0
        assert second.processed == 1
        async with session_scope() as session:
            count = (await session.execute(select(func.count(AcceptedDeal.id)))).scalar_one()
        assert count == 1


class TestCandidateSources:
    @pytest.mark.asyncio
    async def test_merges_nearby_linked_and_targetable(self, session_scope):
        zone = await add_zone(session_scope, "48201", latitude=42.3314, longitude=-83.0458)
        async with session_scope() as session:
            await storage.subscribe(session, "fan@example.com", "48201", radius_miles=10)

        near = await add_source(session_scope, "Near", latitude=42.35, longitude=-83.06)
        await add_source(session_scope, "Far", latitude=40.0, longitude=-80.0)
        linked = await add_source(session_scope, "Linked")
        await add_source(session_scope, "Targeted", website="https://targeted.example")
        await add_source(session_scope, "Retired", website="https://retired.example", active=False)
        # Same name as a nearby dispensary; only the first occurrence survives
        await add_source(session_scope, "Near", website="https://near-duplicate.example")
        async with session_scope() as session:
            await storage.link_source_to_zone(session, zone.id, linked.id)

        candidates = await make_dispatcher(session_scope, FakeProvider()).build_candidate_sources()

        names = [s.name for s in candidates]
        assert sorted(names) == ["Linked", "Near", "Targeted"]
        assert next(s for s in candidates if s.name == "Near").id == near.id

    @pytest.mark.asyncio
    async def test_run_processes_prioritized_candidates(self, session_scope):
        await add_source(session_scope, "Targeted", website="https://targeted.example")
        provider = FakeProvider(default=one_deal_per_source)

        result = await make_dispatcher(session_scope, provider).run(DEAL_DATE)

        assert provider.calls == ["Targeted"]
        assert result.deals_inserted == 1
