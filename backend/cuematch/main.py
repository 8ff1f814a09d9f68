"""
=============================================================================
CUEMATCH - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servidor de partidas de billar con apuesta y liquidación atómica.

Integra:
- FastAPI para REST API
- Socket.IO para sincronización de marcador y presencia
- Middleware de seguridad y CORS

Ejecutar:
    uvicorn cuematch.main:combined_app --app-dir backend
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .admin import router as admin_router, users_router, wallet_router
from .config import settings
from .database import db_helper
from .exceptions import AppException
from .matches import router as matches_router
from .models import utcnow
from .services import presence_directory
from .websocket_handler import create_socket_app

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cuematch")

VERSION = "0.1.0"


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    # Startup
    logger.info("[CUEMATCH] Iniciando servidor...")
    await db_helper.create_tables()
    logger.info(
        f"[CUEMATCH] Comisión {settings.game.COMMISSION_RATE * 100}% | "
        f"puntaje ganador {settings.game.WINNING_SCORE}"
    )
    yield
    # Shutdown
    logger.info("[CUEMATCH] Cerrando servidor...")
    await db_helper.dispose()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

app = FastAPI(
    title="CueMatch API",
    description="""
    ## Partidas de billar con apuesta

    ### Características:
    - **Liquidación atómica**: partida, saldos y Ledger en una sola transacción
    - **Idempotencia**: cerrar o cancelar dos veces devuelve el mismo resultado
    - **WebSockets**: marcador en vivo y presencia multi-dispositivo

    ### Estados de Partida (FSM):
    pending → ongoing → finished, o pending|ongoing → cancelled
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Agrega headers de seguridad a las respuestas."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# =============================================================================
# MANEJO DE ERRORES
# =============================================================================

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": exc.code,
            "timestamp": utcnow().isoformat(),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc) if settings.debug else "Internal server error",
            "error": "server_error",
            "timestamp": utcnow().isoformat(),
        },
    )


# =============================================================================
# ENDPOINTS - HEALTH & STATUS
# =============================================================================

@app.get("/health")
async def health_check():
    """Endpoint de health check para Docker y load balancers."""
    return {
        "status": "healthy",
        "service": "cuematch-backend",
        "version": VERSION,
        "online_users": len(presence_directory.online_user_ids()),
        "timestamp": time.time()
    }


@app.get("/")
async def root():
    """Endpoint raíz con información básica del servicio."""
    return {
        "message": "Bienvenido a CueMatch API",
        "docs": "/docs",
        "health": "/health",
        "websocket": "/socket.io",
        "version": VERSION
    }


# =============================================================================
# INCLUIR ROUTERS
# =============================================================================

app.include_router(matches_router, prefix="/api/v1")
app.include_router(wallet_router, prefix="/api/v1")
app.include_router(users_router, prefix="/api/v1")

# Operador (protegido por X-Admin-Key)
app.include_router(admin_router, prefix="/api/v1")


# =============================================================================
# MONTAR SOCKET.IO
# =============================================================================

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
combined_app = create_socket_app(app)
