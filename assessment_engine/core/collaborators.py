"""
Query contracts for data sources outside the engine.

The occupational benchmark source and the team directory are owned by other
services; the engine depends only on these protocols. In-memory
implementations back local runs and tests.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol


@dataclass(frozen=True)
class BenchmarkProfile:
    """Target competency levels for an occupation.

    Attributes:
        soc_code: O*NET-SOC occupation code (e.g. "15-1252.00")
        occupation_title: Human-readable occupation name
        benchmarks: Competency name -> target level on a 1.0-5.0 scale
    """

    soc_code: str
    occupation_title: str
    benchmarks: Dict[str, float]


@dataclass(frozen=True)
class TeamMemberProfile:
    """One team member's competency scores (competency id -> 0.0-1.0 or 1.0-5.0)."""

    member_id: str
    competency_scores: Dict[int, float]
    role: Optional[str] = None


@dataclass(frozen=True)
class TeamProfile:
    team_id: str
    members: List[TeamMemberProfile] = field(default_factory=list)


class BenchmarkLookup(Protocol):
    def get_profile(self, soc_code: str) -> Optional[BenchmarkProfile]:
        """Return the benchmark profile, or None for an unknown code."""
        ...


class TeamProfileLookup(Protocol):
    def get_team(self, team_id: str) -> Optional[TeamProfile]:
        """Return the team profile, or None for an unknown team."""
        ...


class StaticBenchmarkLookup:
    """Benchmark lookup over an in-memory mapping."""

    def __init__(self, profiles: Optional[Mapping[str, BenchmarkProfile]] = None):
        self._profiles = dict(profiles or {})

    def add(self, profile: BenchmarkProfile) -> None:
        self._profiles[profile.soc_code] = profile

    def get_profile(self, soc_code: str) -> Optional[BenchmarkProfile]:
        return self._profiles.get(soc_code)


class StaticTeamProfileLookup:
    """Team lookup over an in-memory mapping."""

    def __init__(self, teams: Optional[Mapping[str, TeamProfile]] = None):
        self._teams = dict(teams or {})

    def add(self, team: TeamProfile) -> None:
        self._teams[team.team_id] = team

    def get_team(self, team_id: str) -> Optional[TeamProfile]:
        return self._teams.get(team_id)
