"""
=============================================================================
CUEMATCH - Endpoints de Partidas
=============================================================================
Desafío, aceptación, cierre y cancelación. Toda respuesta es el estado
canónico leído de la base de datos tras la operación.
=============================================================================
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .engine import CancellationResult, MatchSettlementEngine, SettlementResult
from .security import get_current_user_id
from .services import get_engine

router = APIRouter(prefix="/matches", tags=["Matches"])


# =============================================================================
# SCHEMAS
# =============================================================================

class _Payload(BaseModel):
    """Acepta snake_case y camelCase en la entrada."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChallengeRequest(_Payload):
    opponent_id: str = Field(..., min_length=1)
    entry_fee: Decimal = Field(Decimal("0"), ge=0, max_digits=18, decimal_places=2)
    club_id: Optional[str] = None
    slot: Optional[str] = None


class FinishRequest(_Payload):
    winner_id: str = Field(..., min_length=1)
    scores: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("scores")
    @classmethod
    def at_least_two(cls, v):
        if len(v) < 2:
            raise ValueError("At least 2 player scores are required")
        return v


class CancelRequest(_Payload):
    reason: str = Field("cancelled", max_length=200)


def settlement_response(result: SettlementResult) -> dict:
    return {
        "match": result.match,
        "payout": str(result.payout),
        "commission": str(result.commission),
        "already_finalized": result.already_finalized,
    }


def cancellation_response(result: CancellationResult) -> dict:
    return {
        "match": result.match,
        "refunds": result.refunds,
        "already_finalized": result.already_finalized,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/challenge", status_code=201)
async def create_challenge(
    body: ChallengeRequest,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """Crea un desafío pendiente contra otro jugador."""
    meta = {k: v for k, v in {"club_id": body.club_id, "slot": body.slot}.items() if v}
    return await engine.create_challenge(user_id, body.opponent_id, body.entry_fee, meta)


@router.post("/{match_id}/accept")
async def accept_challenge(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    return await engine.accept_challenge(match_id, user_id)


@router.post("/{match_id}/decline")
async def decline_challenge(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    return cancellation_response(await engine.decline_challenge(match_id, user_id))


@router.post("/{match_id}/finish")
async def finish_match(
    match_id: str,
    body: FinishRequest,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """
    Cierra la partida y liquida. Idempotente: sobre una partida ya
    finalizada devuelve el resultado registrado con already_finalized=true.
    """
    result = await engine.finish_match(match_id, body.winner_id, body.scores, requested_by=user_id)
    return settlement_response(result)


@router.post("/{match_id}/cancel")
async def cancel_match(
    match_id: str,
    body: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    reason = body.reason if body else "cancelled"
    return cancellation_response(await engine.cancel_match(match_id, requested_by=user_id, reason=reason))


@router.get("/{match_id}")
async def get_match(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    return await engine.get_match(match_id, viewer_id=user_id)


@router.get("/{match_id}/score")
async def get_score(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    state = await engine.get_score_state(match_id, viewer_id=user_id)
    return state.to_payload("get")


@router.get("")
async def list_my_matches(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """Historial de partidas del usuario autenticado."""
    return {"matches": await engine.get_user_matches(user_id, limit)}
