"""Leaderboard domain models and storage reused by the API."""

from .score import ScoreRecord
from .ranking import RankedEntry, rank_top_scores
from .store import ScoreNotFoundError, ScoreStore, ScoreValidationError, StoreUnavailableError

__all__ = [
    "ScoreRecord",
    "RankedEntry",
    "rank_top_scores",
    "ScoreStore",
    "ScoreNotFoundError",
    "ScoreValidationError",
    "StoreUnavailableError",
]
