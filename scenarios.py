from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Union


DEFAULT_QUERY = "publicationsByPerson"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """Convert a duration such as ``"30s"``, ``"5m"`` or ``"1h30m"`` to seconds.

    Bare numbers are taken as seconds.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if not text:
            raise ValueError("Duration cannot be empty")
        try:
            seconds = float(text)
        except ValueError:
            position = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ValueError(
                    f"Invalid duration '{value}'. Expected forms like 500ms, 30s, 5m, 2h or 1h30m."
                ) from None
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        raise ValueError(f"Duration must be >= 0, got {value}")
    return seconds


def _floor_users(value: float) -> int:
    # absorbs float noise such as 4.999999999 when the exact value is 5
    return max(0, int(math.floor(value + 1e-9)))


@dataclass(frozen=True)
class ConstantConcurrency:
    virtual_users: int
    duration_s: float

    def __post_init__(self) -> None:
        if self.virtual_users < 0:
            raise ValueError(f"virtual_users must be >= 0, got {self.virtual_users}")
        if self.duration_s <= 0:
            raise ValueError(f"duration must be > 0, got {self.duration_s}")

    @property
    def total_duration_s(self) -> float:
        return float(self.duration_s)

    @property
    def max_virtual_users(self) -> int:
        return self.virtual_users

    def target_at(self, elapsed_s: float) -> int:
        if elapsed_s < self.duration_s:
            return self.virtual_users
        return 0


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target_virtual_users: int

    def __post_init__(self) -> None:
        if self.duration_s <= 0:
            raise ValueError(f"stage duration must be > 0, got {self.duration_s}")
        if self.target_virtual_users < 0:
            raise ValueError(
                f"stage target must be >= 0, got {self.target_virtual_users}"
            )


@dataclass(frozen=True)
class RampingConcurrency:
    start_virtual_users: int
    stages: tuple[Stage, ...]

    def __post_init__(self) -> None:
        if self.start_virtual_users < 0:
            raise ValueError(
                f"start_virtual_users must be >= 0, got {self.start_virtual_users}"
            )
        if not self.stages:
            raise ValueError("A ramping profile needs at least one stage")
        object.__setattr__(self, "stages", tuple(self.stages))

    @property
    def total_duration_s(self) -> float:
        return float(sum(stage.duration_s for stage in self.stages))

    @property
    def max_virtual_users(self) -> int:
        return max(
            [self.start_virtual_users]
            + [stage.target_virtual_users for stage in self.stages]
        )

    def target_at(self, elapsed_s: float) -> int:
        """Active units the curve calls for ``elapsed_s`` seconds into the run.

        Within a stage the value moves linearly from the previous target to the
        stage target and is floored; a stage boundary yields the exact target
        of the stage that just ended.
        """
        if elapsed_s <= 0:
            return self.start_virtual_users
        previous = self.start_virtual_users
        stage_start = 0.0
        for stage in self.stages:
            stage_end = stage_start + stage.duration_s
            if elapsed_s < stage_end:
                fraction = (elapsed_s - stage_start) / stage.duration_s
                value = previous + (stage.target_virtual_users - previous) * fraction
                return _floor_users(value)
            previous = stage.target_virtual_users
            stage_start = stage_end
        return self.stages[-1].target_virtual_users


ScenarioProfile = Union[ConstantConcurrency, RampingConcurrency]


def constant(virtual_users: int, duration: Union[str, float]) -> ConstantConcurrency:
    return ConstantConcurrency(virtual_users=virtual_users, duration_s=parse_duration(duration))


def ramping(
    start_virtual_users: int, stages: list[tuple[Union[str, float], int]]
) -> RampingConcurrency:
    return RampingConcurrency(
        start_virtual_users=start_virtual_users,
        stages=tuple(
            Stage(duration_s=parse_duration(duration), target_virtual_users=target)
            for duration, target in stages
        ),
    )


@dataclass(frozen=True)
class NamedScenario:
    name: str
    profile: ScenarioProfile
    query: str = DEFAULT_QUERY
    tags: Mapping[str, str] = field(default_factory=dict)

    def describe(self) -> dict[str, object]:
        if isinstance(self.profile, ConstantConcurrency):
            shape: dict[str, object] = {
                "executor": "constant-vus",
                "vus": self.profile.virtual_users,
                "duration_s": self.profile.duration_s,
            }
        else:
            shape = {
                "executor": "ramping-vus",
                "start_vus": self.profile.start_virtual_users,
                "stages": [
                    {"duration_s": stage.duration_s, "target": stage.target_virtual_users}
                    for stage in self.profile.stages
                ],
            }
        shape["query"] = self.query
        shape["tags"] = dict(self.tags)
        return shape


SCENARIOS: Mapping[str, NamedScenario] = MappingProxyType(
    {
        "light_load": NamedScenario(
            name="light_load",
            profile=constant(10, "1m"),
            tags={"test_type": "light_load"},
        ),
        "peak_load": NamedScenario(
            name="peak_load",
            profile=ramping(10, [("5m", 100), ("30m", 100), ("5m", 0)]),
            tags={"test_type": "peak_load"},
        ),
        "stress_test": NamedScenario(
            name="stress_test",
            profile=ramping(0, [("2m", 200), ("5m", 200), ("2m", 0)]),
            tags={"test_type": "stress_test"},
        ),
        "endurance_test": NamedScenario(
            name="endurance_test",
            profile=constant(50, "2h"),
            tags={"test_type": "endurance_test"},
        ),
    }
)


def get_scenario(name: str) -> NamedScenario:
    try:
        return SCENARIOS[name]
    except KeyError:
        available = ", ".join(sorted(SCENARIOS))
        raise ValueError(f"Unknown scenario '{name}'. Available: {available}") from None


def select_scenarios(name: Optional[str]) -> list[NamedScenario]:
    """One named scenario, or every registered scenario in declaration order."""
    if name:
        return [get_scenario(name)]
    return list(SCENARIOS.values())
