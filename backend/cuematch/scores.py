"""
=============================================================================
CUEMATCH - Normalización de Marcadores
=============================================================================
Los clientes envían el marcador en varias formas toleradas:

    [{"userId": ..., "score": ...}]
    [{"user": ..., "points": ...}]
    [{"id": ..., "value": ...}]

Todo se reduce a una lista canónica [{"user_id": str, "score": int}],
con el puntaje redondeado y acotado a [0, max_score] y sin usuarios
repetidos (la última entrada gana).
=============================================================================
"""

import math
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

USER_KEYS = ("user_id", "userId", "user", "_id", "id")
SCORE_KEYS = ("score", "points", "value")

DEFAULT_MAX_SCORE = 999


def norm_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_uuid(value: Any) -> Optional[UUID]:
    """UUID o None si el valor no es un identificador válido."""
    raw = norm_id(value)
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def clamp_score(value: Any, max_score: int = DEFAULT_MAX_SCORE) -> int:
    """Redondea y acota un puntaje; lo no numérico cuenta como 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    if math.isinf(number):
        # Desbordes ("1e400") se acotan igual que cualquier valor enorme
        return max_score if number > 0 else 0
    # Redondeo half-up, igual para todos los clientes
    rounded = math.floor(number + 0.5)
    return max(0, min(max_score, rounded))


def _first(item: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


def normalize_scores(scores: Any, max_score: int = DEFAULT_MAX_SCORE) -> List[Dict[str, Any]]:
    """
    Normaliza un marcador entrante.

    Args:
        scores: lista de dicts en cualquiera de las formas toleradas
        max_score: tope superior del puntaje

    Returns:
        Lista [{user_id, score}] deduplicada por usuario, en orden de
        primera aparición con el valor de la última.
    """
    if not isinstance(scores, (list, tuple)):
        return []

    latest: Dict[str, int] = {}
    for item in scores:
        if not isinstance(item, dict):
            continue
        user_id = norm_id(_first(item, USER_KEYS))
        if not user_id:
            continue
        latest[user_id] = clamp_score(_first(item, SCORE_KEYS), max_score)

    return [{"user_id": uid, "score": score} for uid, score in latest.items()]


def detect_winner(score_by_player: Dict[Any, int], winning_score: int) -> Optional[Any]:
    """
    Ganador automático: el jugador que alcanzó winning_score con el puntaje
    estrictamente más alto. Si hay empate en la cima no hay ganador.
    """
    if not score_by_player:
        return None
    top = max(score_by_player.values())
    if top < winning_score:
        return None
    leaders = [player for player, score in score_by_player.items() if score == top]
    if len(leaders) != 1:
        return None
    return leaders[0]
