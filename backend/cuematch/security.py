"""
=============================================================================
CUEMATCH - Autenticación
=============================================================================
La identidad la emite un servicio externo como JWT; aquí solo se valida
y se resuelve al id de usuario (claim ``sub`` o ``id``).
=============================================================================
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from .config import settings
from .exceptions import AuthenticationError, AuthorizationError
from .scores import parse_uuid

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Crea un JWT de acceso (herramientas de operador y tests)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.security.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(
        to_encode,
        settings.security.JWT_SECRET_KEY.get_secret_value(),
        algorithm=settings.security.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.security.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.security.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except JWTError:
        raise AuthenticationError("Invalid token")


def resolve_user_id(token: Optional[str]) -> str:
    """
    Token (con o sin prefijo ``Bearer``) -> id de usuario canónico.

    Raises:
        AuthenticationError: token ausente, inválido o sin id de usuario
    """
    if not token:
        raise AuthenticationError("Missing credentials")
    token = token.strip()
    if token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]

    payload = decode_token(token)
    user_id = parse_uuid(payload.get("sub") or payload.get("id"))
    if user_id is None:
        raise AuthenticationError("Token has no user id")
    return str(user_id)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Dependencia FastAPI: id del usuario autenticado."""
    if credentials is None:
        raise AuthenticationError("Missing credentials")
    return resolve_user_id(credentials.credentials)


async def verify_admin_api_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> bool:
    """Verifica la API Key de operador."""
    expected = settings.security.ADMIN_API_KEY.get_secret_value()
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning("[ADMIN] Rejected request with invalid admin key")
        raise AuthorizationError("Invalid admin key")
    return True
