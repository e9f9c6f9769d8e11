from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from leaderboard_core import (
    ScoreNotFoundError,
    ScoreRecord,
    ScoreStore,
    ScoreValidationError,
    StoreUnavailableError,
    rank_top_scores,
)
from leaderboard_core.pipeline import Failure, StepResult, run_update_pipeline

logger = logging.getLogger(__name__)

STORE_ERRORS = (ScoreNotFoundError, ScoreValidationError, StoreUnavailableError)


class TopScoreInput(BaseModel):
    name: str = Field(min_length=1)
    score: float


class TopScoreCreateRequest(BaseModel):
    top_score: TopScoreInput = Field(alias="topScore")

    model_config = ConfigDict(populate_by_name=True)


class TopScoreUpdateRequest(BaseModel):
    # Left loose so blank fields can be stripped before validation.
    top_score: Dict[str, Any] = Field(alias="topScore")

    model_config = ConfigDict(populate_by_name=True)


class TopScoreModel(BaseModel):
    id: str
    name: str
    score: float
    created_at: str = Field(default="", alias="createdAt")
    updated_at: str = Field(default="", alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: ScoreRecord) -> "TopScoreModel":
        return cls(**record.to_dict())


class RankedTopScoreModel(TopScoreModel):
    placement: int


class TopScoreResponse(BaseModel):
    top_score: TopScoreModel = Field(alias="topScore")

    model_config = ConfigDict(populate_by_name=True)


class TopScoreListResponse(BaseModel):
    top_scores: List[TopScoreModel] = Field(alias="topScores")

    model_config = ConfigDict(populate_by_name=True)


class RankedTopScoreListResponse(BaseModel):
    top_scores: List[RankedTopScoreModel] = Field(alias="topScores")

    model_config = ConfigDict(populate_by_name=True)


def get_store(request: Request) -> ScoreStore:
    return request.app.state.store


def _http_error(exc: Exception) -> HTTPException:
    """Translate a store error into the HTTP error returned to the caller."""
    if isinstance(exc, ScoreNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ScoreValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.warning("Score store failure: %s", exc)
    return HTTPException(status_code=502, detail=str(exc))


def _pipeline_error(result: StepResult) -> HTTPException:
    if result.failure is Failure.OWNERSHIP:
        return HTTPException(status_code=403, detail=result.detail)
    return HTTPException(status_code=422, detail=result.detail)


router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/topScores", response_model=TopScoreListResponse)
def list_top_scores(store: ScoreStore = Depends(get_store)):
    try:
        records = store.list_scores()
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return TopScoreListResponse(topScores=[TopScoreModel.from_record(record) for record in records])


@router.get("/topScores/getFive", response_model=RankedTopScoreListResponse)
def top_five_scores(store: ScoreStore = Depends(get_store)):
    try:
        records = store.list_scores()
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    ranked = rank_top_scores(records)
    return RankedTopScoreListResponse(topScores=[RankedTopScoreModel(**entry.to_dict()) for entry in ranked])


@router.get("/topScores/{score_id}", response_model=TopScoreResponse)
def get_top_score(score_id: str, store: ScoreStore = Depends(get_store)):
    try:
        record = store.get_score(score_id)
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return TopScoreResponse(topScore=TopScoreModel.from_record(record))


@router.post("/topScores", response_model=TopScoreResponse, status_code=201)
def create_top_score(payload: TopScoreCreateRequest, store: ScoreStore = Depends(get_store)):
    try:
        record = store.create_score(payload.top_score.model_dump())
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return TopScoreResponse(topScore=TopScoreModel.from_record(record))


@router.patch("/topScores/{score_id}", status_code=204)
def update_top_score(score_id: str, payload: TopScoreUpdateRequest, store: ScoreStore = Depends(get_store)):
    try:
        existing = store.get_score(score_id)
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc

    # Score routes are not token protected, so there is no requester to compare.
    result = run_update_pipeline(payload.top_score, requester_id=None, record=existing)
    if not result.ok:
        raise _pipeline_error(result)

    try:
        store.update_score(score_id, result.value)
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.delete("/topScores/all", status_code=204)
def delete_all_top_scores(store: ScoreStore = Depends(get_store)):
    try:
        store.delete_all_scores()
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.delete("/topScores/{score_id}", status_code=204)
def delete_top_score(score_id: str, store: ScoreStore = Depends(get_store)):
    try:
        store.delete_score(score_id)
    except STORE_ERRORS as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def create_app(store: ScoreStore | None = None) -> FastAPI:
    """Build the API around ``store``; run with ``uvicorn app.main:create_app --factory``."""
    app = FastAPI(title="Leaderboard API", version="1.0.0")
    origins = [origin.strip() for origin in os.getenv("LEADERBOARD_CORS_ORIGINS", "*").split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store or ScoreStore()
    app.include_router(router)
    return app
