"""
=============================================================================
CUEMATCH - Repositorios
=============================================================================
Acceso a datos de partidas, saldos y Ledger sobre una AsyncSession.

Las escrituras de estado de partida son compare-and-swap: el UPDATE se
condiciona al estado esperado y el rowcount indica si se aplicó. Los saldos
se modifican solo con expresiones de incremento. Ninguno de estos métodos
hace commit; la transacción la controla el llamador.
=============================================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    ACTIVE_STATUSES,
    FinishSource,
    Match,
    MatchStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    utcnow,
)


class MatchRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, challenger_id: UUID, opponent_id: UUID, entry_fee: Decimal,
                     meta: Optional[dict] = None) -> Match:
        match = Match(
            challenger_id=challenger_id,
            opponent_id=opponent_id,
            status=MatchStatus.PENDING,
            entry_fee=entry_fee,
            challenger_score=0,
            opponent_score=0,
            meta=meta or {},
        )
        self.session.add(match)
        await self.session.flush()
        return match

    async def get(self, match_id: UUID) -> Optional[Match]:
        """Lee la partida, sobrescribiendo la copia en memoria si existía."""
        stmt = (
            select(Match)
            .where(Match.id == match_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _compare_and_swap(self, match_id: UUID, expected: Sequence[MatchStatus], **values) -> bool:
        stmt = (
            update(Match)
            .where(Match.id == match_id, Match.status.in_(list(expected)))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def start(self, match_id: UUID, started_at: datetime) -> bool:
        """PENDING -> ONGOING."""
        return await self._compare_and_swap(
            match_id,
            (MatchStatus.PENDING,),
            status=MatchStatus.ONGOING,
            started_at=started_at,
        )

    async def persist_scores(self, match_id: UUID, challenger_score: int, opponent_score: int,
                             confirmed_by: UUID, at: datetime) -> bool:
        """Guarda el marcador solo si la partida sigue en juego."""
        return await self._compare_and_swap(
            match_id,
            (MatchStatus.ONGOING,),
            challenger_score=challenger_score,
            opponent_score=opponent_score,
            last_confirmed_by=confirmed_by,
            last_score_update_at=at,
        )

    async def finalize(self, match_id: UUID, winner_id: UUID, challenger_score: int,
                       opponent_score: int, payout: Decimal, commission: Decimal,
                       source: FinishSource, ended_at: datetime) -> bool:
        """
        ONGOING -> FINISHED. Si devuelve False otra llamada ya cerró la
        partida y no debe aplicarse ninguna liquidación.
        """
        return await self._compare_and_swap(
            match_id,
            (MatchStatus.ONGOING,),
            status=MatchStatus.FINISHED,
            winner_id=winner_id,
            challenger_score=challenger_score,
            opponent_score=opponent_score,
            payout_amount=payout,
            commission_amount=commission,
            finish_source=source,
            ended_at=ended_at,
        )

    async def cancel(self, match_id: UUID, reason: str, ended_at: datetime,
                     expected: Sequence[MatchStatus] = ACTIVE_STATUSES) -> bool:
        """PENDING|ONGOING -> CANCELLED."""
        return await self._compare_and_swap(
            match_id,
            expected,
            status=MatchStatus.CANCELLED,
            cancellation_reason=reason,
            ended_at=ended_at,
        )

    async def get_user_matches(self, user_id: UUID, limit: int = 20) -> List[Match]:
        """Historial de partidas del usuario, más recientes primero."""
        stmt = (
            select(Match)
            .where(or_(Match.challenger_id == user_id, Match.opponent_id == user_id))
            .order_by(Match.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_stale_matches(self, older_than: datetime, limit: int = 100) -> List[Match]:
        """Partidas activas sin actividad desde older_than."""
        stmt = (
            select(Match)
            .where(Match.status.in_(list(ACTIVE_STATUSES)), Match.updated_at < older_than)
            .order_by(Match.updated_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class AccountRepository:
    """Saldos y estadísticas del usuario. Solo incrementos atómicos."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: UUID) -> Optional[User]:
        stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[UUID]) -> Dict[UUID, User]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars().all()}

    async def _increment(self, user_id: UUID, **deltas) -> bool:
        values = {name: getattr(User, name) + delta for name, delta in deltas.items()}
        values["balance_version"] = User.balance_version + 1
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def credit_winner(self, user_id: UUID, payout: Decimal) -> bool:
        return await self._increment(
            user_id,
            available_balance=payout,
            career_earnings=payout,
            total_winnings=payout,
            total_wins=1,
        )

    async def record_loss(self, user_id: UUID) -> bool:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(total_losses=User.total_losses + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def refund(self, user_id: UUID, amount: Decimal) -> bool:
        return await self._increment(user_id, available_balance=amount)

    async def set_presence(self, user_id: UUID, online: bool, at: datetime) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(online_status=online, last_seen=at)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def set_location(self, user_id: UUID, latitude: float, longitude: float, at: datetime) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(latitude=latitude, longitude=longitude, last_seen=at)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def get_online_with_location(self, exclude: UUID) -> List[User]:
        stmt = select(User).where(
            User.id != exclude,
            User.online_status.is_(True),
            User.latitude.is_not(None),
            User.longitude.is_not(None),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class LedgerRepository:
    """Ledger append-only: solo inserta y consulta."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, user_id: UUID, match_id: Optional[UUID], transaction_type: TransactionType,
                     amount: Decimal, meta: Optional[dict] = None) -> Transaction:
        entry = Transaction(
            user_id=user_id,
            match_id=match_id,
            transaction_type=transaction_type,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            meta=meta or {},
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_match_entries(self, match_id: UUID) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.match_id == match_id)
            .order_by(Transaction.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_user_entries(self, user_id: UUID, limit: int = 50) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
