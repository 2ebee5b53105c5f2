# src/liverc_ingest/services/heuristics.py
"""
Scope heuristics for import planning.

Each table is an ordered tuple of rules. A rule whose keywords appear in the
lowercased class name adjusts the running value; every matching rule is
applied in table order, so later rules see the value produced by earlier ones.
"""

import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from ..ingestion.html import LiveRcEventSessionSummary, SessionType

GroupType = Literal["heat", "main", "default"]
Rule = tuple[tuple[str, ...], Callable[[int], int]]

DEFAULT_DRIVERS_MAIN = 12
DEFAULT_DRIVERS_QUAL = 10
MIN_DRIVERS = 6

MAIN_DURATION_SECONDS = 20 * 60
LOWER_MAIN_DURATION_SECONDS = 15 * 60
QUAL_DURATION_SECONDS = 6 * 60

DEFAULT_LAP_SECONDS = 34
MIN_LAP_SECONDS = 20

HEAT_PATTERN = re.compile(r"\bheat\b", re.I)
LOWER_MAIN_PATTERN = re.compile(r"\b[b-z]\s*main\b", re.I)

DRIVER_CLASS_RULES: tuple[Rule, ...] = (
    (("truggy",), lambda n: max(9, n - 1)),
    (("novice", "beginner"), lambda n: max(6, n - 2)),
    (("pro", "open"), lambda n: n + 1),
)

LAP_SECONDS_CLASS_RULES: tuple[Rule, ...] = (
    (("buggy",), lambda s: 32),
    (("truggy",), lambda s: 36),
    (("short course", "sct"), lambda s: 40),
    (("oval",), lambda s: 28),
    (("touring", "on-road", "onroad"), lambda s: 27),
    (("stock", "17.5", "13.5"), lambda s: max(26, s - 2)),
    (("nitro",), lambda s: max(s, 35)),
)


@dataclass(frozen=True)
class SessionHeuristic:
    class_key: str
    group_label: str
    group_type: GroupType
    driver_estimate: int
    laps_per_driver: int


@dataclass(frozen=True)
class HeuristicSummary:
    sessions: list[SessionHeuristic] = field(default_factory=list)
    driver_total: int = 0


@dataclass(frozen=True)
class ScaledTotals:
    driver_count: int
    total_laps: int


def round_half_up(value: float) -> int:
    """Round .5 upwards (22.5 -> 23), unlike the builtin banker's rounding."""
    return math.floor(value + 0.5)


def normalise_class_key(class_name: str) -> str:
    return class_name.strip().lower()


def _apply_rules(rules: tuple[Rule, ...], class_key: str, value: int) -> int:
    for keywords, adjust in rules:
        if any(keyword in class_key for keyword in keywords):
            value = adjust(value)
    return value


def _is_lower_main(session_type: SessionType, heat_label: str | None) -> bool:
    return session_type == "MAIN" and bool(heat_label and LOWER_MAIN_PATTERN.search(heat_label))


def estimate_drivers(
    session_type: SessionType, class_name: str, heat_label: str | None = None
) -> int:
    """Estimated entrants in one session."""
    drivers = DEFAULT_DRIVERS_MAIN if session_type == "MAIN" else DEFAULT_DRIVERS_QUAL
    if heat_label and HEAT_PATTERN.search(heat_label):
        drivers = max(drivers, 10)
    if _is_lower_main(session_type, heat_label):
        drivers = max(10, drivers - 1)
    drivers = _apply_rules(DRIVER_CLASS_RULES, normalise_class_key(class_name), drivers)
    return max(MIN_DRIVERS, drivers)


def estimate_duration_seconds(session_type: SessionType, heat_label: str | None = None) -> int:
    if session_type != "MAIN":
        return QUAL_DURATION_SECONDS
    if _is_lower_main(session_type, heat_label):
        return LOWER_MAIN_DURATION_SECONDS
    return MAIN_DURATION_SECONDS


def estimate_lap_seconds(class_name: str) -> int:
    """Baseline lap time for a class, from its name keywords."""
    seconds = _apply_rules(LAP_SECONDS_CLASS_RULES, normalise_class_key(class_name), DEFAULT_LAP_SECONDS)
    return max(MIN_LAP_SECONDS, seconds)


def estimate_laps_per_driver(session: LiveRcEventSessionSummary) -> int:
    duration = estimate_duration_seconds(session.type, session.heat_label)
    return max(1, round_half_up(duration / estimate_lap_seconds(session.class_name)))


def normalise_group(heat_label: str | None, session_type: SessionType) -> tuple[str, GroupType]:
    """
    Group key for aggregating driver counts within a class.

    Qualifier heats group by heat label; lettered mains group by letter.
    """
    if not heat_label:
        return "default", "default"

    label = heat_label.strip().lower()
    if re.search(r"\bheat\b", label):
        match = re.search(r"(heat\s*[a-z0-9]+)", label)
        return (match.group(1) if match else label), "heat"

    if re.search(r"\bmain\b", label):
        match = re.search(r"([a-z])\s*main", label) or re.search(r"main\s*([a-z])", label)
        group = f"main-{match.group(1)}" if match else re.sub(r"\s+", "-", label)
        return group, "main" if session_type == "MAIN" else "default"

    return re.sub(r"\s+", "-", label), "default"


def build_heuristic_summary(sessions: list[LiveRcEventSessionSummary]) -> HeuristicSummary:
    """
    Estimate drivers and laps per session and the event's driver total.

    Within a class, each heat/main group contributes the maximum driver
    estimate across its sessions. A class then counts its heat groups if it
    has any, else its ungrouped sessions, else its mains.
    """
    heuristics: list[SessionHeuristic] = []
    aggregates: dict[str, dict[GroupType, dict[str, int]]] = {}

    for session in sessions:
        class_key = normalise_class_key(session.class_name)
        group_label, group_type = normalise_group(session.heat_label, session.type)
        driver_estimate = estimate_drivers(session.type, session.class_name, session.heat_label)

        heuristics.append(
            SessionHeuristic(
                class_key=class_key,
                group_label=group_label,
                group_type=group_type,
                driver_estimate=driver_estimate,
                laps_per_driver=estimate_laps_per_driver(session),
            )
        )

        groups = aggregates.setdefault(class_key, {"heat": {}, "main": {}, "default": {}})
        target = groups[group_type]
        target[group_label] = max(target.get(group_label, 0), driver_estimate)

    driver_total = 0
    for groups in aggregates.values():
        heat_total = sum(groups["heat"].values())
        default_total = sum(groups["default"].values())
        if heat_total > 0:
            driver_total += heat_total
        elif default_total > 0:
            driver_total += default_total
        else:
            driver_total += sum(groups["main"].values())

    return HeuristicSummary(sessions=heuristics, driver_total=driver_total)


def compute_scaled_totals(summary: HeuristicSummary, override_driver_count: int) -> ScaledTotals:
    """Scale the estimates so known driver counts act as a floor."""
    base = summary.driver_total
    target = max(base, override_driver_count)
    if base == 0:
        return ScaledTotals(driver_count=max(0, round_half_up(target)), total_laps=0)

    scale = target / base
    total_laps = sum(s.driver_estimate * scale * s.laps_per_driver for s in summary.sessions)
    return ScaledTotals(
        driver_count=max(0, round_half_up(target)),
        total_laps=max(0, round_half_up(total_laps)),
    )
