from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .score import ScoreRecord

TOP_SCORE_LIMIT = 5
# Placements are assigned within at most this many leading scores.
WORKING_SET_SIZE = 10


@dataclass
class RankedEntry:
    placement: int
    record: ScoreRecord

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data["placement"] = self.placement
        return data


def rank_top_scores(records: Iterable[ScoreRecord], limit: int = TOP_SCORE_LIMIT) -> List[RankedEntry]:
    """Rank ``records`` by descending score and return the leading ``limit``.

    The sort is stable, so tied scores keep the order they were given in.
    Placements are 1-based and follow the sorted order.
    """

    ordered = sorted(records, key=lambda record: record.score, reverse=True)
    if len(ordered) > WORKING_SET_SIZE:
        ordered = ordered[:WORKING_SET_SIZE]

    ranked = [RankedEntry(placement=index, record=record) for index, record in enumerate(ordered, start=1)]
    return ranked[:limit]
