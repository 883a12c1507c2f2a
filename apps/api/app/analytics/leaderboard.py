from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    name: str
    count: int
    rank: int = 0

    def to_payload(self) -> dict[str, object]:
        return {"name": self.name, "count": self.count, "rank": self.rank}


def rank_leaderboard(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    """Dense ranking: count descending, ties share a rank, the next distinct count is rank + 1.

    Ties are listed by name so the output order is stable.
    """

    ordered = sorted(entries, key=lambda entry: (-entry.count, entry.name))
    ranked: list[LeaderboardEntry] = []
    rank = 0
    previous: int | None = None
    for entry in ordered:
        if entry.count != previous:
            rank += 1
            previous = entry.count
        ranked.append(LeaderboardEntry(name=entry.name, count=entry.count, rank=rank))
    return ranked
