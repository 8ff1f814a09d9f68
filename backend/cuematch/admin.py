"""
=============================================================================
CUEMATCH - Endpoints de Operador, Wallet y Usuarios
=============================================================================
Incluye:
- Partidas estancadas y cancelación forzada (operador, X-Admin-Key)
- Auditoría del Ledger por partida
- Consulta de saldo y movimientos del usuario (solo lectura)
- Estado de conexión de un usuario
=============================================================================
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from .engine import MatchSettlementEngine
from .matches import cancellation_response
from .presence import PresenceDirectory
from .security import get_current_user_id, verify_admin_api_key
from .services import get_engine, get_presence

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(verify_admin_api_key)])


# =============================================================================
# SCHEMAS
# =============================================================================

class ForceCancelRequest(BaseModel):
    """Request para cancelar una partida por el operador."""
    reason: str = Field("force_cancelled", min_length=3, max_length=200)


# =============================================================================
# ENDPOINTS - PARTIDAS (OPERADOR)
# =============================================================================

@router.get("/matches/stale")
async def list_stale_matches(
    hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """
    Partidas pendientes o en juego sin actividad desde hace ``hours``
    horas (por defecto la configuración STALE_MATCH_HOURS).
    """
    older_than = timedelta(hours=hours) if hours else None
    matches = await engine.list_stale_matches(older_than)
    return {"matches": matches, "total": len(matches)}


@router.post("/matches/{match_id}/force-cancel")
async def force_cancel_match(
    match_id: str,
    body: Optional[ForceCancelRequest] = None,
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """Cancela la partida y devuelve la apuesta a cada jugador."""
    reason = body.reason if body else "force_cancelled"
    result = await engine.force_cancel(match_id, reason=reason)
    logger.warning(f"[ADMIN] Force-cancel {match_id} ({reason}), already_finalized={result.already_finalized}")
    return cancellation_response(result)


@router.get("/matches/{match_id}/ledger-audit")
async def ledger_audit(
    match_id: str,
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """
    Verifica la ecuación de balance de la partida:
    - finalizada: apuestas = premio + comisión
    - cancelada: apuestas = devoluciones
    """
    return await engine.audit_match(match_id)


# =============================================================================
# WALLET API (Para Usuarios)
# =============================================================================

wallet_router = APIRouter(prefix="/wallet", tags=["Wallet"])


@wallet_router.get("/balance")
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    return await engine.get_wallet(user_id)


@wallet_router.get("/transactions")
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
):
    """Movimientos del Ledger del usuario, más recientes primero."""
    return {"transactions": await engine.get_ledger_entries(user_id, limit)}


# =============================================================================
# USUARIOS
# =============================================================================

users_router = APIRouter(prefix="/users", tags=["Users"])


@users_router.get("/{user_id}/status")
async def get_user_status(
    user_id: str,
    _: str = Depends(get_current_user_id),
    engine: MatchSettlementEngine = Depends(get_engine),
    presence: PresenceDirectory = Depends(get_presence),
):
    """Tarjeta del usuario y si tiene alguna conexión activa."""
    profile = await engine.get_profile(user_id)
    profile["online"] = presence.is_online(profile["user_id"])
    return profile
