"""
Instancias compartidas del proceso y sus dependencias de FastAPI.
"""

from .config import settings
from .database import db_helper
from .engine import MatchSettlementEngine
from .presence import PresenceDirectory
from .websocket_handler import RealtimeGateway, register_handlers, sio

presence_directory = PresenceDirectory(db_helper.session_factory, transport=sio)
gateway = RealtimeGateway(sio, presence_directory)
match_engine = MatchSettlementEngine(db_helper.session_factory, settings.game, gateway)

register_handlers(sio, match_engine, presence_directory, settings.game)


def get_engine() -> MatchSettlementEngine:
    return match_engine


def get_presence() -> PresenceDirectory:
    return presence_directory
