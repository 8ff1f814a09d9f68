"""
=============================================================================
CUEMATCH - Directorio de Presencia
=============================================================================
Qué usuarios tienen al menos una conexión Socket.IO viva, y con qué sids.
Un usuario puede estar conectado desde varios dispositivos a la vez: los
eventos dirigidos a él se entregan a todas sus conexiones.

El estado en memoria es local al proceso; el estado durable (online_status,
last_seen, ubicación) vive en la tabla users.
=============================================================================
"""

import asyncio
import logging
import math
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .exceptions import StorageError, ValidationError
from .models import utcnow
from .repositories import AccountRepository
from .scores import norm_id, parse_uuid

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distancia de círculo máximo entre dos coordenadas, en km."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class PresenceDirectory:
    """
    Multi-mapa usuario -> sids protegido por un asyncio.Lock.

    register/unregister devuelven si el usuario cambió de estado
    (primera conexión / última desconexión); el llamador decide qué
    difundir. El estado durable se actualiza aquí mismo.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None, transport=None):
        self.session_factory = session_factory
        # Servidor Socket.IO (o cualquier objeto con emit(event, data, to=sid))
        self.transport = transport
        self._lock = asyncio.Lock()
        # Serializa cambio en memoria + escritura durable de cada usuario
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._sids_by_user: Dict[str, Set[str]] = {}
        self._user_by_sid: Dict[str, str] = {}

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    # -------------------------------------------------------------------------
    # Conexiones
    # -------------------------------------------------------------------------

    async def register(self, user_id: str, sid: str) -> bool:
        """Agrega la conexión. True si es la primera del usuario."""
        user_id = norm_id(user_id)
        async with self._user_lock(user_id):
            async with self._lock:
                sids = self._sids_by_user.setdefault(user_id, set())
                came_online = not sids
                sids.add(sid)
                self._user_by_sid[sid] = user_id

            if came_online:
                await self._persist_presence(user_id, True)
                logger.info(f"[PRESENCE] {user_id} online")
        return came_online

    async def unregister(self, user_id: str, sid: str) -> bool:
        """Quita la conexión. True si era la última del usuario."""
        user_id = norm_id(user_id)
        async with self._user_lock(user_id):
            async with self._lock:
                self._user_by_sid.pop(sid, None)
                sids = self._sids_by_user.get(user_id)
                if sids is None:
                    return False
                sids.discard(sid)
                went_offline = not sids
                if went_offline:
                    del self._sids_by_user[user_id]

            if went_offline:
                await self._persist_presence(user_id, False)
                logger.info(f"[PRESENCE] {user_id} offline")
        return went_offline

    def user_for(self, sid: str) -> Optional[str]:
        return self._user_by_sid.get(sid)

    def connections(self, user_id: str) -> Set[str]:
        return set(self._sids_by_user.get(norm_id(user_id), ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._sids_by_user.get(norm_id(user_id)))

    def online_user_ids(self) -> List[str]:
        return [uid for uid, sids in self._sids_by_user.items() if sids]

    def status_of(self, user_ids) -> Dict[str, bool]:
        return {norm_id(uid): self.is_online(uid) for uid in user_ids or []}

    async def route_to_user(self, user_id: str, event: str, payload: dict) -> int:
        """Entrega el evento a todas las conexiones del usuario. Devuelve cuántas lo recibieron."""
        if self.transport is None:
            return 0
        delivered = 0
        for sid in self.connections(user_id):
            try:
                await self.transport.emit(event, payload, to=sid)
            except Exception:
                logger.exception(f"[PRESENCE] {event} to {sid} ({user_id}) failed")
                continue
            delivered += 1
        return delivered

    # -------------------------------------------------------------------------
    # Estado durable
    # -------------------------------------------------------------------------

    async def _persist_presence(self, user_id: str, online: bool):
        uid = parse_uuid(user_id)
        if self.session_factory is None or uid is None:
            return
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await AccountRepository(session).set_presence(uid, online, utcnow())
        except SQLAlchemyError as e:
            # La presencia en memoria sigue siendo válida para enrutar
            logger.error(f"[PRESENCE] Could not persist status for {user_id}: {e}")

    async def update_location(self, user_id: str, latitude, longitude) -> Tuple[float, float]:
        uid = parse_uuid(user_id)
        if uid is None:
            raise ValidationError("user_id must be a valid id")
        try:
            lat, lng = float(latitude), float(longitude)
        except (TypeError, ValueError):
            raise ValidationError("lat and lng must be numbers")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Coordinates out of range")

        if self.session_factory is not None:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await AccountRepository(session).set_location(uid, lat, lng, utcnow())
            except SQLAlchemyError as e:
                raise StorageError("Could not store location") from e
        return lat, lng

    async def nearby_players(self, user_id: str, latitude: float, longitude: float,
                             radius_km: float = 5.0) -> List[dict]:
        """Usuarios conectados dentro del radio, del más cercano al más lejano."""
        uid = parse_uuid(user_id)
        if uid is None or self.session_factory is None:
            return []
        try:
            async with self.session_factory() as session:
                candidates = await AccountRepository(session).get_online_with_location(exclude=uid)
        except SQLAlchemyError as e:
            raise StorageError("Could not load nearby players") from e

        nearby = []
        for user in candidates:
            if not self.is_online(str(user.id)):
                continue
            distance = haversine_km(latitude, longitude, user.latitude, user.longitude)
            if distance <= radius_km:
                card = user.to_card()
                card.update({
                    "lat": user.latitude,
                    "lng": user.longitude,
                    "distance_km": round(distance, 2),
                })
                nearby.append(card)
        nearby.sort(key=lambda c: c["distance_km"])
        return nearby
