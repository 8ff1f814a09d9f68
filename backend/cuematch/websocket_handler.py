"""
=============================================================================
CUEMATCH - Manejador de WebSockets (Socket.IO)
=============================================================================
Canal de sincronización de marcador y presencia en tiempo real.

Salas:
    match:<match_id>  -> todas las conexiones unidas a la partida
    (por usuario)     -> las conexiones del PresenceDirectory

Contrato de eventos (único, sin alias):
    entrantes: match:join, match:leave, match:score_get, match:score_confirm,
               user:move, presence:check
    salientes: ver engine.Events y los presence:* de este módulo

Cada handler devuelve un ack {ok: bool, ...}. Un error en un handler se
registra y se devuelve como ack; nunca cierra la conexión.
=============================================================================
"""

import functools
import logging
from typing import Any, Optional

import socketio

from .config import GameConfig
from .engine import Events, MatchSettlementEngine
from .exceptions import AppException, AuthenticationError, ValidationError
from .models import utcnow
from .presence import PresenceDirectory
from .security import resolve_user_id

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    PING_INTERVAL = 25      # Segundos entre pings
    PING_TIMEOUT = 20       # Timeout para considerar desconexión


class PresenceEvents:
    USER_ONLINE = "presence:user_online"
    USER_OFFLINE = "presence:user_offline"
    ONLINE_LIST = "presence:online_list"
    STATUS = "presence:status"
    NEARBY_PLAYERS = "nearby_players"
    MATCH_JOINED = "match:joined"


def match_room(match_id: Any) -> str:
    return f"match:{match_id}"


def _field(data: Any, *keys: str) -> Any:
    """Primer valor no nulo entre las claves (snake_case o camelCase)."""
    if not isinstance(data, dict):
        return None
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


# =============================================================================
# SERVIDOR SOCKET.IO
# =============================================================================

# Crear instancia de Socket.IO con modo async
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    ping_timeout=SocketConfig.PING_TIMEOUT,
    ping_interval=SocketConfig.PING_INTERVAL,
)


class RealtimeGateway:
    """
    Publicador de eventos del motor sobre Socket.IO.

    emit_to_match difunde a la sala de la partida; emit_to_user entrega a
    cada conexión activa del usuario a través del PresenceDirectory.
    """

    def __init__(self, server, presence: PresenceDirectory):
        self.server = server
        self.presence = presence

    async def emit_to_match(self, match_id: str, event: str, payload: dict) -> None:
        await self.server.emit(event, payload, room=match_room(match_id))

    async def emit_to_user(self, user_id: str, event: str, payload: dict) -> None:
        delivered = await self.presence.route_to_user(user_id, event, payload)
        if not delivered:
            logger.debug(f"[WS] {event} not delivered, user {user_id} offline")


# =============================================================================
# HANDLERS DE EVENTOS
# =============================================================================

def register_handlers(server, engine: MatchSettlementEngine, presence: PresenceDirectory,
                      game: Optional[GameConfig] = None):
    """Registra los handlers de conexión, partida y presencia en ``server``."""
    game = game or engine.game

    async def _user_of(sid: str) -> str:
        session = await server.get_session(sid)
        user_id = session.get("user_id") if session else None
        if not user_id:
            raise AuthenticationError("Socket not authenticated")
        return user_id

    def handler(event: str):
        """Registra el handler y convierte sus errores en ack."""
        def decorator(fn):
            @functools.wraps(fn)
            async def wrapper(sid, data=None):
                try:
                    return await fn(sid, data or {})
                except AppException as e:
                    logger.warning(f"[WS] {event} rejected for {sid}: {e.detail}")
                    return {"ok": False, "error": e.code, "message": e.detail}
                except Exception:
                    logger.exception(f"[WS] {event} failed for {sid}")
                    return {"ok": False, "error": "server_error", "message": "Internal error"}
            server.on(event, wrapper)
            return wrapper
        return decorator

    # -------------------------------------------------------------------------
    # Conexión
    # -------------------------------------------------------------------------

    async def connect(sid: str, environ: dict, auth: dict = None):
        """
        Nueva conexión. Requiere JWT en ``auth.token`` o en la cabecera
        Authorization; sin credencial válida la conexión se rechaza.
        """
        token = _field(auth, "token") or (environ or {}).get("HTTP_AUTHORIZATION")
        try:
            user_id = resolve_user_id(token)
        except AuthenticationError as e:
            logger.warning(f"[WS] Connection {sid} refused: {e.detail}")
            raise socketio.exceptions.ConnectionRefusedError("unauthenticated")

        await server.save_session(sid, {"user_id": user_id})
        came_online = await presence.register(user_id, sid)
        logger.info(f"[WS] {sid} connected as {user_id}")

        if came_online:
            await server.emit(PresenceEvents.USER_ONLINE, {
                "user_id": user_id,
                "timestamp": utcnow().isoformat(),
            }, skip_sid=sid)
        await server.emit(PresenceEvents.ONLINE_LIST, {
            "user_ids": presence.online_user_ids(),
        }, to=sid)

    async def disconnect(sid: str, reason: Any = None):
        session = await server.get_session(sid)
        user_id = session.get("user_id") if session else presence.user_for(sid)
        if not user_id:
            return
        logger.info(f"[WS] {sid} disconnected ({user_id})")
        if await presence.unregister(user_id, sid):
            await server.emit(PresenceEvents.USER_OFFLINE, {
                "user_id": user_id,
                "timestamp": utcnow().isoformat(),
            })

    server.on("connect", connect)
    server.on("disconnect", disconnect)

    # -------------------------------------------------------------------------
    # Partida
    # -------------------------------------------------------------------------

    @handler("match:join")
    async def match_join(sid: str, data: dict):
        """Une la conexión a la sala y entrega el marcador actual (rehidratación)."""
        user_id = await _user_of(sid)
        match_id = _field(data, "match_id", "matchId")
        if not match_id:
            raise ValidationError("match_id is required")

        state = await engine.get_score_state(match_id, viewer_id=user_id)
        room = match_room(state.match_id)
        await server.enter_room(sid, room)

        await server.emit(Events.SCORE_STATE, state.to_payload("join"), to=sid)
        await server.emit(PresenceEvents.MATCH_JOINED, {
            "match_id": state.match_id,
            "user_id": user_id,
            "room": room,
        }, to=sid)
        return {"ok": True, "match_id": state.match_id, "room": room}

    @handler("match:leave")
    async def match_leave(sid: str, data: dict):
        match_id = _field(data, "match_id", "matchId")
        if not match_id:
            raise ValidationError("match_id is required")
        await server.leave_room(sid, match_room(match_id))
        return {"ok": True, "match_id": str(match_id)}

    @handler("match:score_get")
    async def match_score_get(sid: str, data: dict):
        user_id = await _user_of(sid)
        match_id = _field(data, "match_id", "matchId")
        if not match_id:
            raise ValidationError("match_id is required")

        payload = (await engine.get_score_state(match_id, viewer_id=user_id)).to_payload("get")
        await server.emit(Events.SCORE_STATE, payload, to=sid)
        return {"ok": True, "state": payload}

    @handler("match:score_confirm")
    async def match_score_confirm(sid: str, data: dict):
        """
        Confirmación de marcador. El usuario que confirma es siempre el
        autenticado en el socket, no el que declare el payload.
        """
        user_id = await _user_of(sid)
        match_id = _field(data, "match_id", "matchId")
        if not match_id:
            raise ValidationError("match_id is required")

        claimed = _field(data, "confirmed_by", "confirmedBy")
        if claimed and str(claimed).strip() != user_id:
            logger.warning(f"[WS] {sid} claimed confirmed_by={claimed}, using {user_id}")

        outcome = await engine.submit_score(match_id, user_id, _field(data, "scores"))
        if not outcome.accepted:
            # Partida terminal: devolver el estado final al remitente
            await server.emit(Events.SCORE_STATE, outcome.state.to_payload("terminal"), to=sid)

        ack = {
            "ok": True,
            "accepted": outcome.accepted,
            "state": outcome.state.to_payload("confirm"),
        }
        if outcome.settlement is not None:
            ack["result"] = outcome.settlement.to_payload()
        return ack

    # -------------------------------------------------------------------------
    # Presencia
    # -------------------------------------------------------------------------

    @handler("user:move")
    async def user_move(sid: str, data: dict):
        """Actualiza la ubicación y devuelve los jugadores cercanos."""
        user_id = await _user_of(sid)
        lat, lng = await presence.update_location(
            user_id, _field(data, "lat", "latitude"), _field(data, "lng", "longitude")
        )
        nearby = await presence.nearby_players(user_id, lat, lng, game.NEARBY_RADIUS_KM)
        await server.emit(PresenceEvents.NEARBY_PLAYERS, {"players": nearby}, to=sid)
        return {"ok": True, "count": len(nearby)}

    @handler("presence:check")
    async def presence_check(sid: str, data: dict):
        user_ids = _field(data, "user_ids", "userIds") or []
        if not isinstance(user_ids, list):
            raise ValidationError("user_ids must be a list")
        status = presence.status_of(user_ids)
        await server.emit(PresenceEvents.STATUS, {"status": status}, to=sid)
        return {"ok": True, "status": status}

    return server


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(app=None):
    """Crea la aplicación ASGI combinada: Socket.IO envuelve a FastAPI."""
    return socketio.ASGIApp(sio, other_asgi_app=app)
