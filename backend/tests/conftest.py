from collections import defaultdict
from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cuematch.config import GameConfig
from cuematch.engine import MatchSettlementEngine
from cuematch.models import Base, Transaction, User


class RecordingPublisher:
    """Publicador que guarda cada evento emitido por el motor."""

    def __init__(self):
        self.events = []

    async def emit_to_match(self, match_id, event, payload):
        self.events.append(("match", str(match_id), event, payload))

    async def emit_to_user(self, user_id, event, payload):
        self.events.append(("user", str(user_id), event, payload))

    def named(self, event):
        return [e for e in self.events if e[2] == event]


class FakeSocketServer:
    """Imita la parte de socketio.AsyncServer que usan los handlers."""

    def __init__(self):
        self.handlers = {}
        self.sessions = {}
        self.rooms = defaultdict(set)
        self.emitted = []

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None, to=None, room=None, skip_sid=None, namespace=None):
        self.emitted.append({"event": event, "data": data, "to": to or room, "skip_sid": skip_sid})

    async def enter_room(self, sid, room, namespace=None):
        self.rooms[room].add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms[room].discard(sid)

    async def save_session(self, sid, session, namespace=None):
        self.sessions[sid] = session

    async def get_session(self, sid, namespace=None):
        return self.sessions.get(sid, {})

    async def trigger(self, event, sid, *args):
        return await self.handlers[event](sid, *args)

    def sent(self, event, to=None):
        return [
            e for e in self.emitted
            if e["event"] == event and (to is None or e["to"] == to)
        ]


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def game():
    return GameConfig()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def socket_server():
    return FakeSocketServer()


@pytest.fixture
def engine(session_factory, game, publisher):
    return MatchSettlementEngine(session_factory, game, publisher)


@pytest.fixture
async def users(session_factory):
    """alice y bob con 1000.00 de saldo; carol no juega y no tiene saldo."""
    async with session_factory() as session:
        async with session.begin():
            alice = User(nickname="alice", user_id_tag="ALICE1", available_balance=Decimal("1000.00"))
            bob = User(nickname="bob", user_id_tag="BOB22", available_balance=Decimal("1000.00"))
            carol = User(nickname="carol", user_id_tag="CAROL3")
            session.add_all([alice, bob, carol])
    return SimpleNamespace(
        alice=str(alice.id),
        bob=str(bob.id),
        carol=str(carol.id),
    )


@pytest.fixture
def fetch_user(session_factory):
    async def fetch(user_id):
        async with session_factory() as session:
            result = await session.execute(select(User).where(User.id == _uuid(user_id)))
            return result.scalar_one()
    return fetch


@pytest.fixture
def ledger_for(session_factory):
    async def fetch(match_id):
        async with session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.match_id == _uuid(match_id))
            )
            return list(result.scalars().all())
    return fetch


@pytest.fixture
def start_match(engine, users):
    """Crea y acepta un desafío alice -> bob."""
    async def start(entry_fee="100"):
        match = await engine.create_challenge(users.alice, users.bob, entry_fee)
        return await engine.accept_challenge(match["match_id"], users.bob)
    return start


def _uuid(value):
    return UUID(str(value))
