# tests/services/test_candidate_selector.py
"""
Candidate selection: radius, lead-value utilization thresholds,
degrade-to-nearest, ranking and tie-breaks.
"""

from unittest.mock import patch

import pytest

from leadrouter.services.candidate_selector import CandidateSelector
from leadrouter.services.geocoder import Coordinates

from tests.helpers import NYC, north_of


@pytest.fixture
def lead_coordinates():
    return Coordinates(latitude=NYC[0], longitude=NYC[1], method="fallback_database")


@pytest.fixture
def selector(db, ledger):
    return CandidateSelector(db, ledger)


class TestRadiusAndEligibility:

    @pytest.mark.asyncio
    async def test_near_location_in_far_location_out(self, selector, lead_coordinates, make_location):
        near = await make_location("Near", coords=north_of(NYC, 2))
        await make_location("Far", coords=north_of(NYC, 60))

        candidates = await selector.select(lead_coordinates, lead_score=85, source="google")

        assert [c.location.id for c in candidates] == [near.id]
        assert candidates[0].distance_miles == pytest.approx(2.0, abs=0.05)

    @pytest.mark.asyncio
    async def test_radius_boundary_is_inclusive_of_49_miles(self, selector, lead_coordinates, make_location):
        edge = await make_location("Edge", coords=north_of(NYC, 49))

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.id for c in candidates] == [edge.id]

    @pytest.mark.asyncio
    async def test_nothing_within_radius_returns_empty(self, selector, lead_coordinates, make_location):
        await make_location("Far", coords=north_of(NYC, 75))

        assert await selector.select(lead_coordinates, lead_score=85, source="google") == []

    @pytest.mark.asyncio
    async def test_inactive_unplaced_and_misplaced_locations_ignored(self, selector, lead_coordinates, make_location):
        await make_location("Closed", coords=north_of(NYC, 1), active=False)
        await make_location("No coordinates", coords=None)
        await make_location("Bad coordinates", coords=(95.0, -73.99))
        open_location = await make_location("Open", coords=north_of(NYC, 5))

        candidates = await selector.select(lead_coordinates, lead_score=85, source="google")

        assert [c.location.id for c in candidates] == [open_location.id]

    @pytest.mark.asyncio
    async def test_no_locations(self, selector, lead_coordinates):
        assert await selector.select(lead_coordinates, lead_score=85, source="google") == []


class TestUtilizationThreshold:

    @pytest.mark.parametrize("lead_score,expected", [(80, 0.9), (100, 0.9), (79, 0.8), (1, 0.8)])
    def test_threshold_by_lead_score(self, lead_score, expected):
        assert CandidateSelector.utilization_threshold(lead_score) == expected

    @pytest.mark.asyncio
    async def test_premium_lead_accepts_85_percent(self, selector, lead_coordinates, make_location, set_usage):
        busy = await make_location("Busy", coords=north_of(NYC, 3), capacity=100)
        await set_usage(busy, 85)

        candidates = await selector.select(lead_coordinates, lead_score=85, source="google")

        assert candidates[0].location.id == busy.id
        assert candidates[0].over_threshold is False

    @pytest.mark.asyncio
    async def test_standard_lead_skips_85_percent(self, selector, lead_coordinates, make_location, set_usage):
        busy = await make_location("Busy", coords=north_of(NYC, 3), capacity=100)
        calm = await make_location("Calm", coords=north_of(NYC, 20), capacity=100)
        await set_usage(busy, 85)

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.id for c in candidates] == [calm.id]

    @pytest.mark.asyncio
    async def test_threshold_is_strict(self, selector, lead_coordinates, make_location, set_usage):
        at_limit = await make_location("At limit", coords=north_of(NYC, 3), capacity=10)
        other = await make_location("Other", coords=north_of(NYC, 30), capacity=10)
        await set_usage(at_limit, 9)

        candidates = await selector.select(lead_coordinates, lead_score=90, source="google")

        assert [c.location.id for c in candidates] == [other.id]

    @pytest.mark.asyncio
    async def test_premium_lead_never_gets_90_percent_location_when_alternative_exists(
        self, selector, lead_coordinates, make_location, set_usage
    ):
        full = await make_location("Full", coords=north_of(NYC, 1), capacity=100)
        spare = await make_location("Spare", coords=north_of(NYC, 10), capacity=100)
        await set_usage(full, 92)
        await set_usage(spare, 50)

        candidates = await selector.select(lead_coordinates, lead_score=95, source="google")

        assert all(c.utilization_rate < 0.9 for c in candidates)
        assert candidates[0].location.id == spare.id


class TestDegradedSelection:

    @pytest.mark.asyncio
    async def test_single_over_threshold_location_is_returned_flagged(
        self, selector, lead_coordinates, make_location, set_usage
    ):
        only = await make_location("Only", coords=north_of(NYC, 4), capacity=100)
        await set_usage(only, 95)

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.id for c in candidates] == [only.id]
        assert candidates[0].over_threshold is True
        assert candidates[0].snapshot()["overThreshold"] is True

    @pytest.mark.asyncio
    async def test_degrade_keeps_three_nearest(self, selector, lead_coordinates, make_location, set_usage):
        locations = [
            await make_location(f"Busy {miles}", coords=north_of(NYC, miles), capacity=10)
            for miles in (30, 5, 40, 10, 20)
        ]
        for location in locations:
            await set_usage(location, 10)

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert sorted(c.location.name for c in candidates) == ["Busy 10", "Busy 20", "Busy 5"]
        assert all(c.over_threshold for c in candidates)

    @pytest.mark.asyncio
    async def test_degrade_never_reaches_outside_radius(self, selector, lead_coordinates, make_location, set_usage):
        busy = await make_location("Busy", coords=north_of(NYC, 5), capacity=10)
        await make_location("Far but empty", coords=north_of(NYC, 80), capacity=10)
        await set_usage(busy, 10)

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.id for c in candidates] == [busy.id]


class TestRanking:

    @pytest.mark.asyncio
    async def test_closer_location_ranks_first(self, selector, lead_coordinates, make_location):
        await make_location("Ten", coords=north_of(NYC, 10))
        await make_location("Two", coords=north_of(NYC, 2))

        candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.name for c in candidates] == ["Two", "Ten"]
        assert candidates[0].suitability_score > candidates[1].suitability_score

    @pytest.mark.asyncio
    async def test_facebook_performance_bonus(self, selector, lead_coordinates, make_location):
        await make_location("Close", coords=north_of(NYC, 1), facebook_performance_score=0.1)
        await make_location("Strong on facebook", coords=north_of(NYC, 4), facebook_performance_score=0.9)

        candidates = await selector.select(lead_coordinates, lead_score=50, source="facebook")

        # 100 - 8 + 10 beats 100 - 2
        assert candidates[0].location.name == "Strong on facebook"

    @pytest.mark.asyncio
    async def test_ties_broken_by_distance_then_utilization(
        self, selector, lead_coordinates, make_location, set_usage
    ):
        far = await make_location("Far", coords=north_of(NYC, 8), capacity=10)
        near_busy = await make_location("Near busy", coords=north_of(NYC, 3), capacity=10)
        near_idle = await make_location("Near idle", coords=north_of(NYC, 3), capacity=10)
        await set_usage(near_busy, 5)
        await set_usage(near_idle, 1)

        with patch(
            "leadrouter.services.candidate_selector.SuitabilityScorer.score",
            return_value=50.0,
        ):
            candidates = await selector.select(lead_coordinates, lead_score=50, source="google")

        assert [c.location.id for c in candidates] == [near_idle.id, near_busy.id, far.id]

    @pytest.mark.asyncio
    async def test_summary_and_snapshot(self, selector, lead_coordinates, make_location, set_usage):
        location = await make_location("Downtown", coords=north_of(NYC, 2), capacity=10)
        await set_usage(location, 2)

        candidate = (await selector.select(lead_coordinates, lead_score=50, source="google"))[0]

        snapshot = candidate.snapshot()
        assert snapshot["capacityUtilization"] == pytest.approx(0.2)
        assert snapshot["currentLeads"] == 2
        assert snapshot["maxCapacity"] == 10
        assert candidate.summary()["locationName"] == "Downtown"
