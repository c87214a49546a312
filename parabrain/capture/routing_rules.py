"""
Routing Rules

Deterministic area routing that runs after classification. Versioned so the
prompt and the logs can say which rule set made a decision.

Travel rule: travel/outdoor wording with no area named in the message is
routed to a canonical area (family trips, health routines, or side projects)
and grouped under a "Trip: ..." project.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .text_utils import to_trip_project_title

ROUTING_RULES_VERSION = "2026-02-13.v1"


@dataclass(frozen=True)
class CanonicalArea:
    key: str
    name: str
    aliases: Tuple[str, ...] = ()


CANONICAL_AREAS: Tuple[CanonicalArea, ...] = (
    CanonicalArea("career_business", "Career & Business",
                  ("งานประจำและธุรกิจ", "career", "business")),
    CanonicalArea("finance_wealth", "Finance & Wealth",
                  ("การเงินและความมั่งคั่ง", "finance", "wealth")),
    CanonicalArea("health_energy", "Health & Energy",
                  ("สุขภาพและพลังงาน", "health", "energy", "fitness")),
    CanonicalArea("family_relationships", "Family & Relationships",
                  ("ครอบครัวและความสัมพันธ์", "family", "relationship")),
    CanonicalArea("personal_growth_learning", "Personal Growth & Learning",
                  ("พัฒนาตัวเองและการเรียนรู้", "growth", "learning")),
    CanonicalArea("home_life_admin", "Home & Life Admin",
                  ("บ้านและงานจัดการชีวิต", "home", "life admin", "admin")),
    CanonicalArea("side_projects_experiments", "Side Projects & Experiments",
                  ("โปรเจกต์เสริมและการทดลอง", "side project", "experiment", "project")),
)

TRAVEL_DEFAULT_AREA = "Side Projects & Experiments"
TRAVEL_FAMILY_AREA = "Family & Relationships"
TRAVEL_HEALTH_AREA = "Health & Energy"

_TRAVEL_SIGNAL_RE = re.compile(
    r"(เที่ยว|ทริป|เดินป่า|แคมป์|camp|camping|hike|hiking|trek|trekking|backpack|"
    r"vacation|holiday|road\s*trip|itinerary)",
    re.IGNORECASE,
)
_HEALTH_ROUTINE_RE = re.compile(
    r"(ทุกวัน|ทุกสัปดาห์|ทุกอาทิตย์|เป็นประจำ|routine|habit|สุขภาพ|ฟิต|ออกกำลังกาย|workout|training)",
    re.IGNORECASE,
)
_FAMILY_RE = re.compile(
    r"(ครอบครัว|family|แฟน|คู่รัก|ภรรยา|สามี|ลูก|พ่อแม่|parents|wife|husband|partner|เพื่อน|friend)",
    re.IGNORECASE,
)


def _norm(text: Any) -> str:
    return re.sub(r"\s+", " ", str(text or "")).strip().lower()


def area_display_name(area: Dict[str, Any]) -> str:
    return str(area.get("name") or area.get("title") or area.get("category") or "").strip()


def _area_candidates(area: Dict[str, Any]) -> List[str]:
    out = []
    for key in ("name", "title", "category"):
        value = _norm(area.get(key))
        if value and value not in out:
            out.append(value)
    return out


def find_explicit_area_mention(areas: Iterable[Dict[str, Any]], message: str) -> Optional[Dict[str, Any]]:
    """Area named in the message: known areas first, then canonical names/aliases.

    Needles shorter than 4 characters are ignored.
    """
    haystack = _norm(message)
    if not haystack:
        return None

    for area in areas or []:
        for needle in _area_candidates(area):
            if len(needle) >= 4 and needle in haystack:
                return area

    for definition in CANONICAL_AREAS:
        for needle in (definition.name, *definition.aliases):
            needle = _norm(needle)
            if len(needle) >= 4 and needle in haystack:
                return {"name": definition.name, "title": definition.name}

    return None


@dataclass(frozen=True)
class TravelRecommendation:
    applied: bool
    reason: str
    area_name: Optional[str] = None
    extra_tags: Tuple[str, ...] = ()


def resolve_travel_area(message: str, explicit_area_mentioned: bool = False) -> TravelRecommendation:
    normalized = _norm(message)
    if not normalized:
        return TravelRecommendation(False, "empty_message")
    if not _TRAVEL_SIGNAL_RE.search(normalized):
        return TravelRecommendation(False, "no_travel_signal")
    if explicit_area_mentioned:
        return TravelRecommendation(False, "explicit_area_in_message")

    if _FAMILY_RE.search(normalized):
        return TravelRecommendation(True, "travel_family_signal", TRAVEL_FAMILY_AREA, ("travel", "family"))
    if _HEALTH_ROUTINE_RE.search(normalized):
        return TravelRecommendation(
            True, "travel_health_routine_signal", TRAVEL_HEALTH_AREA, ("travel", "health", "fitness")
        )
    return TravelRecommendation(True, "travel_default_side_projects", TRAVEL_DEFAULT_AREA, ("travel", "outdoor"))


@dataclass(frozen=True)
class RoutingDecision:
    """Travel routing outcome attached to a decision"""
    applied: bool
    reason: str
    area_name: Optional[str] = None
    suggested_project_title: Optional[str] = None
    ensure_project_link: bool = False
    extra_tags: Tuple[str, ...] = ()
    rule_version: str = ROUTING_RULES_VERSION

    def to_meta(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "reason": self.reason,
            "areaName": self.area_name,
            "suggestedProjectTitle": self.suggested_project_title,
            "ensureProjectLink": self.ensure_project_link,
            "extraTags": list(self.extra_tags),
            "ruleVersion": self.rule_version,
        }


def build_travel_routing(
    message: str,
    areas: Iterable[Dict[str, Any]],
    seed_title: Optional[str] = None,
) -> RoutingDecision:
    """Full travel routing decision for one message"""
    explicit = find_explicit_area_mention(areas, message) is not None
    rec = resolve_travel_area(message, explicit_area_mentioned=explicit)
    if not rec.applied:
        return RoutingDecision(applied=False, reason=rec.reason)
    return RoutingDecision(
        applied=True,
        reason=rec.reason,
        area_name=rec.area_name,
        suggested_project_title=to_trip_project_title(seed_title or message),
        ensure_project_link=True,
        extra_tags=rec.extra_tags,
    )


@dataclass
class AreaCoverage:
    rules_version: str
    total_configured: int
    present_canonical_names: List[str] = field(default_factory=list)
    missing_canonical_names: List[str] = field(default_factory=list)
    unknown_area_names: List[str] = field(default_factory=list)

    @property
    def matched_configured(self) -> int:
        return len(self.present_canonical_names)


def summarize_area_coverage(areas: Iterable[Dict[str, Any]]) -> AreaCoverage:
    """Which canonical areas the user's own areas already cover"""
    present = set()
    unknown: List[str] = []

    for area in areas or []:
        candidates = _area_candidates(area)
        matched = None
        for definition in CANONICAL_AREAS:
            aliases = [_norm(a) for a in (definition.name, *definition.aliases) if a]
            if any(alias in value or value in alias for alias in aliases for value in candidates):
                matched = definition
                break
        if matched:
            present.add(matched.key)
        else:
            name = area_display_name(area)
            if name and name not in unknown:
                unknown.append(name)

    return AreaCoverage(
        rules_version=ROUTING_RULES_VERSION,
        total_configured=len(CANONICAL_AREAS),
        present_canonical_names=[d.name for d in CANONICAL_AREAS if d.key in present],
        missing_canonical_names=[d.name for d in CANONICAL_AREAS if d.key not in present],
        unknown_area_names=unknown,
    )
