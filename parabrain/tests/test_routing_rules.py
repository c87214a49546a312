"""Tests for deterministic travel/area routing."""

from parabrain.capture.routing_rules import (
    ROUTING_RULES_VERSION,
    TRAVEL_DEFAULT_AREA,
    TRAVEL_FAMILY_AREA,
    TRAVEL_HEALTH_AREA,
    build_travel_routing,
    find_explicit_area_mention,
    resolve_travel_area,
    summarize_area_coverage,
)


class TestResolveTravelArea:
    def test_no_signal(self):
        rec = resolve_travel_area("ซื้อนมที่ร้านสะดวกซื้อ")
        assert not rec.applied
        assert rec.reason == "no_travel_signal"

    def test_family_trip(self):
        rec = resolve_travel_area("ไปเที่ยวเขาใหญ่กับครอบครัวเดือนหน้า")
        assert rec.applied
        assert rec.area_name == TRAVEL_FAMILY_AREA
        assert rec.extra_tags == ("travel", "family")

    def test_health_routine(self):
        rec = resolve_travel_area("hiking every weekend as a training routine")
        assert rec.area_name == TRAVEL_HEALTH_AREA

    def test_default_one_off(self):
        rec = resolve_travel_area("weekend camping at Doi Inthanon")
        assert rec.area_name == TRAVEL_DEFAULT_AREA
        assert rec.reason == "travel_default_side_projects"

    def test_explicit_area_blocks_rule(self):
        rec = resolve_travel_area("camping trip", explicit_area_mentioned=True)
        assert not rec.applied
        assert rec.reason == "explicit_area_in_message"


class TestExplicitAreaMention:
    def test_user_area_name(self):
        areas = [{"id": "a1", "title": "Outdoor Club"}]
        assert find_explicit_area_mention(areas, "camping with outdoor club")["id"] == "a1"

    def test_canonical_alias(self):
        hit = find_explicit_area_mention([], "camping trip for my side project")
        assert hit["name"] == "Side Projects & Experiments"

    def test_short_needles_ignored(self):
        assert find_explicit_area_mention([{"title": "Fun"}], "fun camping trip") is None


class TestBuildTravelRouting:
    def test_applied_decision(self):
        decision = build_travel_routing("ทริปเดินป่าภูกระดึง", [], seed_title="Phu Kradueng hike")
        assert decision.applied
        assert decision.area_name == TRAVEL_DEFAULT_AREA
        assert decision.suggested_project_title == "Trip: Phu Kradueng hike"
        assert decision.ensure_project_link is True

        meta = decision.to_meta()
        assert meta["ruleVersion"] == ROUTING_RULES_VERSION
        assert meta["extraTags"] == ["travel", "outdoor"]

    def test_not_applied_when_area_named(self):
        areas = [{"title": "Family & Relationships"}]
        decision = build_travel_routing("trip for Family & Relationships", areas)
        assert not decision.applied
        assert decision.suggested_project_title is None


class TestAreaCoverage:
    def test_present_missing_unknown(self):
        coverage = summarize_area_coverage([{"title": "Finance & Wealth"}, {"title": "Pets"}])
        assert coverage.present_canonical_names == ["Finance & Wealth"]
        assert coverage.unknown_area_names == ["Pets"]
        assert coverage.total_configured == 7
        assert len(coverage.missing_canonical_names) == 6
        assert coverage.matched_configured == 1
