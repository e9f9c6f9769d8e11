from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict


def coerce_score(value: Any) -> float:
    """Return ``value`` as a finite float, accepting numeric strings."""

    if isinstance(value, bool):
        raise ValueError("Score must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Score must be a number") from exc
    if not math.isfinite(number):
        raise ValueError("Score must be a finite number")
    return number


@dataclass
class ScoreRecord:
    """A persisted leaderboard score.

    ``id`` and the timestamps are assigned by the store; ``name`` and
    ``score`` are always present.
    """

    id: str
    name: str
    score: float
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScoreRecord":
        """Build a record from a Supabase row or a local JSON record."""

        record_id = str(row.get("id") or "").strip()
        if not record_id:
            raise ValueError("Score row is missing an id")
        return cls(
            id=record_id,
            name=str(row.get("name") or ""),
            score=coerce_score(row.get("score")),
            created_at=str(row.get("createdAt") or row.get("created_at") or ""),
            updated_at=str(row.get("updatedAt") or row.get("updated_at") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "score": self.score,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
