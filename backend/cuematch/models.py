"""
=============================================================================
CUEMATCH - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Partidas, saldos y el Ledger de transacciones.

Principios de Diseño:
- Integridad Financiera: todo movimiento de saldo va acompañado de exactamente
  un asiento en el Ledger, dentro de la misma transacción.
- Inmutabilidad: los asientos del Ledger son append-only y una partida
  finalizada o cancelada queda congelada.
- Los saldos solo se modifican con incrementos atómicos (col = col + delta).
=============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Boolean,
    Float,
    Text,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB en PostgreSQL, JSON genérico en el resto (tests con SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Precisión monetaria: 2 decimales
Money = Numeric(18, 2)


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class MatchStatus(str, PyEnum):
    """
    Máquina de Estados Finita (FSM) de la partida.
    Solo avanza: PENDING -> ONGOING -> FINISHED, o PENDING|ONGOING -> CANCELLED.
    """
    PENDING = "pending"
    ONGOING = "ongoing"
    FINISHED = "finished"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.FINISHED, MatchStatus.CANCELLED)


ACTIVE_STATUSES = (MatchStatus.PENDING, MatchStatus.ONGOING)


class TransactionType(str, PyEnum):
    """Tipos de asiento del Ledger."""
    PAYOUT = "payout"          # Premio neto al ganador
    FEE = "fee"                # Comisión retenida por la plataforma
    REFUND = "refund"          # Devolución de la apuesta al cancelar
    ENTRY_FEE = "entry_fee"
    CREDIT = "credit"
    DEBIT = "debit"


# Dirección de cada tipo sobre el saldo del usuario.
# FEE no mueve saldo de usuario: registra lo que se extrajo del pot.
SIGNED_DIRECTION = {
    TransactionType.PAYOUT: 1,
    TransactionType.REFUND: 1,
    TransactionType.CREDIT: 1,
    TransactionType.ENTRY_FEE: -1,
    TransactionType.DEBIT: -1,
    TransactionType.FEE: 0,
}


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class FinishSource(str, PyEnum):
    API = "api"      # Llamada explícita a finish
    AUTO = "auto"    # Detector de victoria por puntaje


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_avatar(nickname: Optional[str]) -> str:
    """Avatar por defecto: inicial del nickname en mayúscula, o '?'."""
    nickname = (nickname or "").strip()
    return nickname[0].upper() if nickname else "?"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: USERS (Identidad, Saldo y Presencia)
# =============================================================================

class User(Base):
    """
    Subconjunto del usuario que usa el núcleo: tarjeta de perfil,
    saldo/estadísticas y presencia.

    SALDO: available_balance y los contadores solo se modifican desde
    AccountRepository con expresiones de incremento, nunca asignando valores.
    """
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Tarjeta de perfil
    nickname: Mapped[str] = mapped_column(String(64), nullable=False)
    avatar: Mapped[str] = mapped_column(String(500), nullable=False)
    user_id_tag: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    rank: Mapped[str] = mapped_column(String(32), default="Beginner", nullable=False)

    # ==========================================================================
    # SALDO Y ESTADÍSTICAS
    # ==========================================================================
    available_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    career_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    total_winnings: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    total_wins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_losses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Versión del saldo, incrementada en cada movimiento
    balance_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # ==========================================================================
    # PRESENCIA
    # ==========================================================================
    online_status: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    transactions: Mapped[List["Transaction"]] = relationship(back_populates="user")

    __table_args__ = (
        Index("idx_users_online", "online_status"),
        CheckConstraint("available_balance >= 0", name="check_positive_balance"),
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.avatar:
            self.avatar = default_avatar(self.nickname)

    def to_card(self) -> dict:
        """Tarjeta pública usada en los payloads de desafío/inicio."""
        return {
            "user_id": str(self.id),
            "nickname": self.nickname or self.user_id_tag or "",
            "avatar": self.avatar or "",
            "user_id_tag": self.user_id_tag or "",
            "rank": self.rank or "",
            "total_winnings": str(self.total_winnings or Decimal("0.00")),
        }


# =============================================================================
# TABLA: MATCHES (El Libro de Actas)
# =============================================================================

class Match(Base):
    """
    Registro de partida entre exactamente dos jugadores.

    El puntaje vive en una columna por jugador, por lo que nunca puede
    referirse a alguien ajeno a la partida. Una vez FINISHED o CANCELLED
    ningún campo de juego vuelve a cambiar (las escrituras condicionan
    sobre el estado).
    """
    __tablename__ = "matches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Jugadores (fijos desde el desafío)
    challenger_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    opponent_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    # ==========================================================================
    # ESTADO DE LA PARTIDA (FSM)
    # ==========================================================================
    status: Mapped[MatchStatus] = mapped_column(
        Enum(MatchStatus),
        default=MatchStatus.PENDING,
        nullable=False
    )

    # Apuesta por jugador
    entry_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)

    # Marcador
    challenger_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    opponent_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_confirmed_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    last_score_update_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # ==========================================================================
    # RESULTADOS
    # ==========================================================================
    winner_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    payout_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    commission_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    finish_source: Mapped[Optional[FinishSource]] = mapped_column(Enum(FinishSource), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metadata de la partida (club, turno)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    transactions: Mapped[List["Transaction"]] = relationship(back_populates="match")

    __table_args__ = (
        Index("idx_match_status", "status"),
        Index("idx_match_challenger", "challenger_id"),
        Index("idx_match_opponent", "opponent_id"),
        Index("idx_match_status_updated", "status", "updated_at"),
        CheckConstraint("entry_fee >= 0", name="check_entry_fee_positive"),
        CheckConstraint("challenger_id <> opponent_id", name="check_distinct_players"),
        CheckConstraint(
            "challenger_score >= 0 AND opponent_score >= 0",
            name="check_scores_positive"
        ),
    )

    @property
    def players(self) -> Tuple[UUID, UUID]:
        return (self.challenger_id, self.opponent_id)

    def has_player(self, user_id: UUID) -> bool:
        return user_id in self.players

    def other_player(self, user_id: UUID) -> UUID:
        return self.opponent_id if user_id == self.challenger_id else self.challenger_id

    @property
    def is_terminal(self) -> bool:
        return MatchStatus(self.status).is_terminal

    def score_rows(self) -> List[dict]:
        """Marcador canónico: [{user_id, score}] en orden de jugadores."""
        return [
            {"user_id": str(self.challenger_id), "score": self.challenger_score},
            {"user_id": str(self.opponent_id), "score": self.opponent_score},
        ]

    def to_dict(self) -> dict:
        """Estado canónico de la partida (lo que devuelve toda mutación)."""
        return {
            "match_id": str(self.id),
            "players": [str(p) for p in self.players],
            "status": MatchStatus(self.status).value,
            "entry_fee": str(self.entry_fee),
            "scores": self.score_rows(),
            "winner_id": str(self.winner_id) if self.winner_id else None,
            "payout": str(self.payout_amount) if self.payout_amount is not None else None,
            "commission": str(self.commission_amount) if self.commission_amount is not None else None,
            "finish_source": FinishSource(self.finish_source).value if self.finish_source else None,
            "cancellation_reason": self.cancellation_reason,
            "last_confirmed_by": str(self.last_confirmed_by) if self.last_confirmed_by else None,
            "last_score_update_at": _iso(self.last_score_update_at),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "meta": self.meta or {},
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# TABLA: TRANSACTIONS (Ledger)
# =============================================================================

class Transaction(Base):
    """
    Libro Mayor (Ledger) append-only.

    Los montos son siempre positivos; el tipo determina la dirección
    (ver SIGNED_DIRECTION). Cada asiento referencia la partida que lo originó.
    """
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    match_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="RESTRICT"), nullable=True
    )

    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus),
        default=TransactionStatus.PENDING,
        nullable=False
    )

    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="transactions")
    match: Mapped[Optional["Match"]] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("idx_tx_user_id", "user_id"),
        Index("idx_tx_match_id", "match_id"),
        Index("idx_tx_type", "transaction_type"),
        Index("idx_tx_created_at", "created_at"),
        CheckConstraint("amount >= 0", name="check_positive_amount"),
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * SIGNED_DIRECTION[TransactionType(self.transaction_type)]

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "match_id": str(self.match_id) if self.match_id else None,
            "type": TransactionType(self.transaction_type).value,
            "amount": str(self.amount),
            "status": TransactionStatus(self.status).value,
            "meta": self.meta or {},
            "created_at": _iso(self.created_at),
        }


# =============================================================================
# EVENT LISTENERS PARA INTEGRIDAD
# =============================================================================

class LedgerImmutableError(RuntimeError):
    pass


@event.listens_for(Transaction, "before_update")
def transaction_before_update(mapper, connection, target: Transaction):
    """El Ledger es append-only: ningún asiento puede modificarse."""
    raise LedgerImmutableError(f"Ledger entry {target.id} is immutable")


@event.listens_for(Transaction, "before_delete")
def transaction_before_delete(mapper, connection, target: Transaction):
    raise LedgerImmutableError(f"Ledger entry {target.id} is immutable")
