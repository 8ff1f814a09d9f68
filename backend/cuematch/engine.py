"""
=============================================================================
CUEMATCH - Motor de Liquidación de Partidas
=============================================================================
Máquina de estados de la partida y liquidación atómica de fondos.

    PENDING -> ONGOING -> FINISHED
       |          |
       +----------+-----> CANCELLED

Cada operación corre en su propia transacción de base de datos. La única
protección contra dos cierres concurrentes (finish explícito vs. detector
automático, o dos eventos de marcador) es el compare-and-swap sobre el
estado: exactamente uno aplica la liquidación y el otro devuelve el
resultado ya registrado.
=============================================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import GameConfig
from .exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .ledger import SettlementCalculator, audit_match_entries, to_money
from .models import ACTIVE_STATUSES, FinishSource, Match, MatchStatus, TransactionType, utcnow
from .repositories import AccountRepository, LedgerRepository, MatchRepository
from .scores import detect_winner, normalize_scores, parse_uuid

logger = logging.getLogger(__name__)


# =============================================================================
# EVENTOS EMITIDOS
# =============================================================================

class Events:
    CHALLENGE_RECEIVED = "challenge:received"
    MATCH_STARTED = "match:started"
    MATCH_DECLINED = "match:declined"
    SCORE_UPDATED = "match:score_updated"
    SCORE_STATE = "match:score_state"
    MATCH_FINISHED = "match:finished"
    MATCH_RESULT = "match:result"
    MATCH_CANCELLED = "match:cancelled"


class EventPublisher(Protocol):
    """Transporte en tiempo real visto desde el motor."""

    async def emit_to_match(self, match_id: str, event: str, payload: dict) -> None: ...

    async def emit_to_user(self, user_id: str, event: str, payload: dict) -> None: ...


class NullPublisher:
    """Publicador sin transporte (scripts, tareas de operador)."""

    async def emit_to_match(self, match_id: str, event: str, payload: dict) -> None:
        return None

    async def emit_to_user(self, user_id: str, event: str, payload: dict) -> None:
        return None


# =============================================================================
# RESULTADOS
# =============================================================================

@dataclass
class ScoreState:
    """Snapshot canónico del marcador (autoritativo en su timestamp)."""
    match_id: str
    status: str
    scores: List[dict]
    confirmed_by: str = ""
    winner_id: Optional[str] = None
    timestamp: Optional[str] = None

    @classmethod
    def from_match(cls, match: Match) -> "ScoreState":
        return cls(
            match_id=str(match.id),
            status=MatchStatus(match.status).value,
            scores=match.score_rows(),
            confirmed_by=str(match.last_confirmed_by) if match.last_confirmed_by else "",
            winner_id=str(match.winner_id) if match.winner_id else None,
            timestamp=(match.last_score_update_at or match.updated_at or match.created_at).isoformat(),
        )

    def to_payload(self, source: str) -> dict:
        return {
            "match_id": self.match_id,
            "status": self.status,
            "confirmed_by": self.confirmed_by,
            "scores": self.scores,
            "winner_id": self.winner_id,
            "timestamp": self.timestamp,
            "source": source,
        }


@dataclass
class SettlementResult:
    match: dict
    payout: Decimal = Decimal("0.00")
    commission: Decimal = Decimal("0.00")
    already_finalized: bool = False

    @property
    def status(self) -> str:
        return self.match["status"]

    def to_payload(self) -> dict:
        loser_id = None
        if self.match.get("winner_id"):
            loser_id = next(p for p in self.match["players"] if p != self.match["winner_id"])
        return {
            "match_id": self.match["match_id"],
            "status": self.match["status"],
            "winner_id": self.match.get("winner_id"),
            "loser_id": loser_id,
            "payout": str(self.payout),
            "commission": str(self.commission),
            "scores": self.match["scores"],
            "already_finalized": self.already_finalized,
            "timestamp": self.match.get("ended_at"),
        }


@dataclass
class CancellationResult:
    match: dict
    refunds: Dict[str, str] = field(default_factory=dict)
    already_finalized: bool = False


@dataclass
class ScoreOutcome:
    """Resultado de un evento de marcador."""
    state: ScoreState
    accepted: bool
    settlement: Optional[SettlementResult] = None


class _FinalizeRaceLost(Exception):
    """Otra transacción cambió el estado antes que esta."""


# =============================================================================
# MOTOR
# =============================================================================

class MatchSettlementEngine:
    """
    Orquesta el ciclo de vida de la partida.

    Todas las mutaciones de status, marcador, ganador y saldos pasan por
    aquí; cada método público devuelve el estado canónico posterior leído
    de la base de datos, nunca un eco de los datos del cliente.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        game: Optional[GameConfig] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.session_factory = session_factory
        self.game = game or GameConfig()
        self.publisher: EventPublisher = publisher or NullPublisher()
        self.calculator = SettlementCalculator(self.game.COMMISSION_RATE)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_id(value: Any, name: str) -> UUID:
        parsed = parse_uuid(value)
        if parsed is None:
            raise ValidationError(f"{name} is required and must be a valid id")
        return parsed

    @staticmethod
    async def _load_match(session: AsyncSession, match_id: UUID) -> Match:
        match = await MatchRepository(session).get(match_id)
        if match is None:
            raise NotFoundError("Match not found")
        return match

    @staticmethod
    def _require_player(match: Match, user_id: UUID):
        if not match.has_player(user_id):
            raise AuthorizationError("Not a participant of this match")

    def _player_scores(self, match: Match, scores: Any) -> Dict[UUID, int]:
        """
        Normaliza el marcador y lo restringe a los jugadores de la partida.
        Exige una entrada para cada uno de los dos jugadores.
        """
        normalized = normalize_scores(scores, self.game.MAX_SCORE)
        if len(normalized) < 2:
            raise ValidationError("At least 2 distinct player scores are required")

        by_player: Dict[UUID, int] = {}
        for row in normalized:
            user_id = parse_uuid(row["user_id"])
            if user_id is not None and match.has_player(user_id):
                by_player[user_id] = row["score"]

        if len(by_player) < 2:
            raise ValidationError("Scores must include both match players")
        return by_player

    async def _publish(self, coro_factory):
        """Los fallos del transporte no afectan lo ya confirmado en BD."""
        try:
            await coro_factory()
        except Exception:
            logger.exception("[REALTIME] Failed to publish event")

    async def _emit_to_players(self, match: dict, event: str, payload: dict):
        for player_id in match["players"]:
            await self._publish(lambda pid=player_id: self.publisher.emit_to_user(pid, event, payload))

    async def _start_locked(self, session: AsyncSession, match: Match) -> Match:
        """PENDING -> ONGOING dentro de la transacción actual. No mueve saldos."""
        if not await MatchRepository(session).start(match.id, match.started_at or utcnow()):
            raise _FinalizeRaceLost()
        return await self._load_match(session, match.id)

    async def _read_only(self, match_id: UUID) -> Match:
        try:
            async with self.session_factory() as session:
                return await self._load_match(session, match_id)
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Read failed for match {match_id}: {e}")
            raise StorageError() from e

    @staticmethod
    def _replay(match: Match) -> SettlementResult:
        """Resultado ya registrado de una partida terminal."""
        return SettlementResult(
            match=match.to_dict(),
            payout=match.payout_amount or Decimal("0.00"),
            commission=match.commission_amount or Decimal("0.00"),
            already_finalized=True,
        )

    # -------------------------------------------------------------------------
    # Desafío
    # -------------------------------------------------------------------------

    async def create_challenge(self, challenger_id: Any, opponent_id: Any, entry_fee: Any = 0,
                               meta: Optional[dict] = None) -> dict:
        challenger = self._require_id(challenger_id, "challenger_id")
        opponent = self._require_id(opponent_id, "opponent_id")
        if challenger == opponent:
            raise ValidationError("Cannot challenge yourself")
        try:
            fee = to_money(entry_fee if entry_fee is not None else 0)
        except (InvalidOperation, ValueError):
            raise ValidationError("entry_fee must be a number")
        if fee < 0:
            raise ValidationError("entry_fee must be non-negative")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    accounts = AccountRepository(session)
                    users = await accounts.get_many([challenger, opponent])
                    if challenger not in users:
                        raise NotFoundError("Challenger not found")
                    if opponent not in users:
                        raise NotFoundError("Opponent not found")

                    match = await MatchRepository(session).create(challenger, opponent, fee, meta)
                    snapshot = match.to_dict()
                    challenger_card = users[challenger].to_card()
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Challenge creation failed: {e}")
            raise StorageError("Could not create challenge. No funds were moved.") from e

        logger.info(f"[CHALLENGE] {challenger} -> {opponent} match={snapshot['match_id']} fee={fee}")

        payload = {
            "match_id": snapshot["match_id"],
            "entry_fee": snapshot["entry_fee"],
            "challenger_id": str(challenger),
            "opponent_id": str(opponent),
            "challenger_info": challenger_card,
            "timestamp": snapshot["created_at"],
        }
        await self._publish(lambda: self.publisher.emit_to_user(str(opponent), Events.CHALLENGE_RECEIVED, payload))
        return snapshot

    async def accept_challenge(self, match_id: Any, accepter_id: Any) -> dict:
        mid = self._require_id(match_id, "match_id")
        accepter = self._require_id(accepter_id, "accepter_id")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    match = await self._load_match(session, mid)
                    self._require_player(match, accepter)

                    if match.is_terminal:
                        raise ConflictError(f"Match is already {MatchStatus(match.status).value}")
                    if match.status == MatchStatus.ONGOING:
                        # Re-aceptación: no-op
                        return match.to_dict()

                    match = await self._start_locked(session, match)
                    snapshot = match.to_dict()
                    cards = await AccountRepository(session).get_many(match.players)
        except _FinalizeRaceLost:
            match = await self._read_only(mid)
            if match.is_terminal:
                raise ConflictError(f"Match is already {MatchStatus(match.status).value}")
            return match.to_dict()
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Accept failed for match {mid}: {e}")
            raise StorageError() from e

        logger.info(f"[MATCH] {mid} started (accepted by {accepter})")

        challenger_id, opponent_id = snapshot["players"]
        payload = {
            "match_id": snapshot["match_id"],
            "status": snapshot["status"],
            "started_at": snapshot["started_at"],
            "players": snapshot["players"],
            "entry_fee": snapshot["entry_fee"],
            "challenger_info": cards[UUID(challenger_id)].to_card() if UUID(challenger_id) in cards else {},
            "opponent_info": cards[UUID(opponent_id)].to_card() if UUID(opponent_id) in cards else {},
        }
        await self._emit_to_players(snapshot, Events.MATCH_STARTED, payload)
        return snapshot

    async def decline_challenge(self, match_id: Any, user_id: Any) -> CancellationResult:
        """El invitado rechaza un desafío pendiente."""
        mid = self._require_id(match_id, "match_id")
        uid = self._require_id(user_id, "user_id")

        match = await self._read_only(mid)
        self._require_player(match, uid)
        if not match.is_terminal and uid != match.opponent_id:
            raise AuthorizationError("Only the invited player can decline")

        result = await self._cancel(mid, uid, "declined", (MatchStatus.PENDING,))
        if not result.already_finalized:
            payload = {
                "match_id": result.match["match_id"],
                "declined_by": str(uid),
                "status": result.match["status"],
                "timestamp": result.match["ended_at"],
            }
            await self._emit_to_players(result.match, Events.MATCH_DECLINED, payload)
        return result

    # -------------------------------------------------------------------------
    # Marcador
    # -------------------------------------------------------------------------

    async def get_score_state(self, match_id: Any, viewer_id: Any = None) -> ScoreState:
        mid = self._require_id(match_id, "match_id")
        match = await self._read_only(mid)
        if viewer_id is not None:
            self._require_player(match, self._require_id(viewer_id, "user_id"))
        return ScoreState.from_match(match)

    async def submit_score(self, match_id: Any, confirming_user_id: Any, scores: Any) -> ScoreOutcome:
        """
        Procesa una confirmación de marcador.

        - Partida terminal: se ignora y se devuelve el estado terminal.
        - Partida pendiente: se promueve a ONGOING.
        - Tras persistir, difunde el snapshot y evalúa la victoria automática.
        """
        mid = self._require_id(match_id, "match_id")
        confirmed_by = self._require_id(confirming_user_id, "confirmed_by")

        if len(normalize_scores(scores, self.game.MAX_SCORE)) < 2:
            raise ValidationError("At least 2 distinct player scores are required")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    match = await self._load_match(session, mid)
                    self._require_player(match, confirmed_by)

                    if match.is_terminal:
                        return ScoreOutcome(state=ScoreState.from_match(match), accepted=False)

                    by_player = self._player_scores(match, scores)

                    if match.status == MatchStatus.PENDING:
                        match = await self._start_locked(session, match)

                    persisted = await MatchRepository(session).persist_scores(
                        mid,
                        by_player[match.challenger_id],
                        by_player[match.opponent_id],
                        confirmed_by,
                        utcnow(),
                    )
                    if not persisted:
                        raise _FinalizeRaceLost()

                    match = await self._load_match(session, mid)
                    state = ScoreState.from_match(match)
                    snapshot = match.to_dict()
        except _FinalizeRaceLost:
            match = await self._read_only(mid)
            return ScoreOutcome(state=ScoreState.from_match(match), accepted=False)
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Score persist failed for match {mid}: {e}")
            raise StorageError("Score update failed. Match state unchanged.") from e

        payload = state.to_payload("confirm")
        await self._publish(lambda: self.publisher.emit_to_match(state.match_id, Events.SCORE_UPDATED, payload))
        await self._emit_to_players(snapshot, Events.SCORE_UPDATED, payload)

        outcome = ScoreOutcome(state=state, accepted=True)

        winner = detect_winner(
            {UUID(row["user_id"]): row["score"] for row in state.scores},
            self.game.WINNING_SCORE,
        )
        if winner is not None:
            logger.info(f"[MATCH] {mid} reached winning score, winner {winner}")
            outcome.settlement = await self.finish_match(
                mid, winner, state.scores, source=FinishSource.AUTO
            )
            outcome.state = await self.get_score_state(mid)
        return outcome

    # -------------------------------------------------------------------------
    # Liquidación
    # -------------------------------------------------------------------------

    async def finish_match(self, match_id: Any, winner_id: Any, scores: Any,
                           requested_by: Any = None,
                           source: FinishSource = FinishSource.API) -> SettlementResult:
        """
        ONGOING -> FINISHED con liquidación atómica.

        PROCESO ATÓMICO (una sola transacción):
        1. CAS del estado ONGOING -> FINISHED con ganador, marcador y montos
        2. Ganador: +premio en saldo, ganancias y total ganado; +1 victoria
        3. Perdedor: +1 derrota
        4. Asientos PAYOUT (premio) y FEE (comisión)

        Idempotente: sobre una partida terminal devuelve el resultado
        registrado sin volver a liquidar.
        """
        mid = self._require_id(match_id, "match_id")
        winner = self._require_id(winner_id, "winner_id")
        requester = self._require_id(requested_by, "requested_by") if requested_by is not None else None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    match = await self._load_match(session, mid)
                    if requester is not None:
                        self._require_player(match, requester)

                    if match.is_terminal:
                        return self._replay(match)
                    if match.status != MatchStatus.ONGOING:
                        raise ConflictError("Match is not ongoing")
                    if not match.has_player(winner):
                        raise ValidationError("Winner is not a participant of this match")

                    by_player = self._player_scores(match, scores)
                    loser = match.other_player(winner)
                    terms = self.calculator.calculate(match.entry_fee)

                    finalized = await MatchRepository(session).finalize(
                        mid,
                        winner_id=winner,
                        challenger_score=by_player[match.challenger_id],
                        opponent_score=by_player[match.opponent_id],
                        payout=terms.payout,
                        commission=terms.commission,
                        source=source,
                        ended_at=utcnow(),
                    )
                    if not finalized:
                        raise _FinalizeRaceLost()

                    accounts = AccountRepository(session)
                    if not await accounts.credit_winner(winner, terms.payout):
                        raise NotFoundError("Winner account not found")
                    if not await accounts.record_loss(loser):
                        raise NotFoundError("Loser account not found")

                    ledger = LedgerRepository(session)
                    await ledger.append(
                        winner, mid, TransactionType.PAYOUT, terms.payout,
                        meta={"match_id": str(mid), "commission": str(terms.commission)},
                    )
                    await ledger.append(
                        winner, mid, TransactionType.FEE, terms.commission,
                        meta={"match_id": str(mid), "description": "Platform fee",
                              "rate": str(terms.commission_rate)},
                    )

                    match = await self._load_match(session, mid)
                    result = SettlementResult(
                        match=match.to_dict(),
                        payout=terms.payout,
                        commission=terms.commission,
                    )
        except _FinalizeRaceLost:
            # Otra llamada liquidó primero: devolver su resultado autoritativo
            logger.info(f"[SETTLEMENT] Match {mid} already finalized concurrently")
            match = await self._read_only(mid)
            return self._replay(match)
        except SQLAlchemyError as e:
            logger.error(f"[SETTLEMENT ERROR] Match {mid}: {e}")
            raise StorageError("Match settlement failed. Funds safe, match state unchanged.") from e

        logger.info(
            f"[SETTLEMENT] Match {mid} ({source.value}) winner={winner} loser={loser} | "
            f"{self.calculator.breakdown(terms.entry_fee)}"
        )

        payload = result.to_payload()
        await self._emit_to_players(result.match, Events.MATCH_FINISHED, payload)
        await self._emit_to_players(result.match, Events.MATCH_RESULT, payload)
        return result

    async def _cancel(self, mid: UUID, requester: Optional[UUID], reason: str,
                      expected: Sequence[MatchStatus]) -> CancellationResult:
        """
        Cancela devolviendo la apuesta (entry_fee) a cada jugador con su
        asiento REFUND, tanto desde PENDING como desde ONGOING.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    match = await self._load_match(session, mid)
                    if requester is not None:
                        self._require_player(match, requester)

                    if match.is_terminal:
                        return CancellationResult(match=match.to_dict(), already_finalized=True)
                    if match.status not in expected:
                        raise ConflictError(f"Match is {MatchStatus(match.status).value}")

                    if not await MatchRepository(session).cancel(mid, reason, utcnow(), expected):
                        raise _FinalizeRaceLost()

                    fee = to_money(match.entry_fee)
                    accounts = AccountRepository(session)
                    ledger = LedgerRepository(session)
                    refunds: Dict[str, str] = {}
                    for player_id in match.players:
                        if not await accounts.refund(player_id, fee):
                            raise NotFoundError("Player account not found")
                        await ledger.append(
                            player_id, mid, TransactionType.REFUND, fee,
                            meta={"match_id": str(mid), "description": "Match cancelled refund",
                                  "reason": reason},
                        )
                        refunds[str(player_id)] = str(fee)

                    match = await self._load_match(session, mid)
                    result = CancellationResult(match=match.to_dict(), refunds=refunds)
        except _FinalizeRaceLost:
            match = await self._read_only(mid)
            if not match.is_terminal:
                raise ConflictError(f"Match is {MatchStatus(match.status).value}")
            return CancellationResult(match=match.to_dict(), already_finalized=True)
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Cancellation failed for match {mid}: {e}")
            raise StorageError("Match cancellation failed. Funds safe, match state unchanged.") from e

        logger.info(f"[MATCH] {mid} cancelled ({reason}), refunds={refunds}")
        return result

    async def cancel_match(self, match_id: Any, requested_by: Any = None,
                           reason: str = "cancelled") -> CancellationResult:
        """
        PENDING|ONGOING -> CANCELLED. Idempotente sobre partidas terminales.
        """
        mid = self._require_id(match_id, "match_id")
        requester = self._require_id(requested_by, "requested_by") if requested_by is not None else None

        result = await self._cancel(mid, requester, reason, ACTIVE_STATUSES)
        if not result.already_finalized:
            payload = {
                "match_id": result.match["match_id"],
                "status": result.match["status"],
                "reason": reason,
                "refunds": result.refunds,
                "timestamp": result.match["ended_at"],
            }
            await self._publish(lambda: self.publisher.emit_to_match(result.match["match_id"],
                                                                     Events.MATCH_CANCELLED, payload))
            await self._emit_to_players(result.match, Events.MATCH_CANCELLED, payload)
        return result

    # -------------------------------------------------------------------------
    # Operador
    # -------------------------------------------------------------------------

    async def force_cancel(self, match_id: Any, reason: str = "force_cancelled") -> CancellationResult:
        """Cancelación de operador, sin comprobar participantes."""
        return await self.cancel_match(match_id, requested_by=None, reason=reason)

    async def list_stale_matches(self, older_than: Optional[timedelta] = None) -> List[dict]:
        older_than = older_than or timedelta(hours=self.game.STALE_MATCH_HOURS)
        cutoff: datetime = utcnow() - older_than
        try:
            async with self.session_factory() as session:
                matches = await MatchRepository(session).get_stale_matches(cutoff)
                return [m.to_dict() for m in matches]
        except SQLAlchemyError as e:
            raise StorageError() from e

    async def audit_match(self, match_id: Any) -> dict:
        """Verifica la ecuación de balance del Ledger de una partida."""
        mid = self._require_id(match_id, "match_id")
        try:
            async with self.session_factory() as session:
                match = await self._load_match(session, mid)
                entries = await LedgerRepository(session).get_match_entries(mid)
                report = audit_match_entries(match.status, match.entry_fee, entries)
        except SQLAlchemyError as e:
            raise StorageError() from e
        report["match_id"] = str(mid)
        if report["integrity_status"] != "OK":
            logger.warning(f"[LEDGER] Drift detected on match {mid}: {report['drift']}")
        return report

    # -------------------------------------------------------------------------
    # Lecturas
    # -------------------------------------------------------------------------

    async def get_match(self, match_id: Any, viewer_id: Any = None) -> dict:
        mid = self._require_id(match_id, "match_id")
        match = await self._read_only(mid)
        if viewer_id is not None:
            self._require_player(match, self._require_id(viewer_id, "user_id"))
        return match.to_dict()

    async def get_user_matches(self, user_id: Any, limit: int = 20) -> List[dict]:
        uid = self._require_id(user_id, "user_id")
        try:
            async with self.session_factory() as session:
                matches = await MatchRepository(session).get_user_matches(uid, limit)
                return [m.to_dict() for m in matches]
        except SQLAlchemyError as e:
            raise StorageError() from e

    async def get_profile(self, user_id: Any) -> dict:
        """Tarjeta pública del usuario con su última conexión."""
        uid = self._require_id(user_id, "user_id")
        try:
            async with self.session_factory() as session:
                user = await AccountRepository(session).get(uid)
        except SQLAlchemyError as e:
            raise StorageError() from e
        if user is None:
            raise NotFoundError("User not found")
        card = user.to_card()
        card["last_seen"] = user.last_seen.isoformat() if user.last_seen else None
        return card

    async def get_wallet(self, user_id: Any) -> dict:
        uid = self._require_id(user_id, "user_id")
        try:
            async with self.session_factory() as session:
                user = await AccountRepository(session).get(uid)
        except SQLAlchemyError as e:
            raise StorageError() from e
        if user is None:
            raise NotFoundError("User not found")
        return {
            "user_id": str(user.id),
            "available_balance": str(user.available_balance),
            "career_earnings": str(user.career_earnings),
            "total_winnings": str(user.total_winnings),
            "total_wins": user.total_wins,
            "total_losses": user.total_losses,
            "balance_version": user.balance_version,
        }

    async def get_ledger_entries(self, user_id: Any, limit: int = 50) -> List[dict]:
        uid = self._require_id(user_id, "user_id")
        try:
            async with self.session_factory() as session:
                entries = await LedgerRepository(session).get_user_entries(uid, limit)
                return [entry.to_dict() for entry in entries]
        except SQLAlchemyError as e:
            raise StorageError() from e
