"""
=============================================================================
CUEMATCH - Configuración
=============================================================================
Parámetros del servidor leídos desde variables de entorno / archivo .env.
Los valores de negocio (comisión, puntaje ganador) son configuración, no
constantes literales.
=============================================================================
"""

from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DataBaseConfig(BaseModel):
    """Conexión a PostgreSQL (asyncpg)."""
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: int = Field(5432, description="Database port")
    DB_NAME: str = Field("cuematch", description="Database name")
    DB_USER: str = Field("cuematch", description="Database user")
    DB_PASSWORD: SecretStr = Field(SecretStr("cuematch"), description="Database password")
    DB_ECHO: bool = Field(False, description="Enable SQL echo")
    DB_POOL_SIZE: int = Field(5, description="Database pool size")
    DB_MAX_OVERFLOW: int = Field(10, description="Database max overflow")

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD.get_secret_value()}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class SecurityConfig(BaseModel):
    JWT_SECRET_KEY: SecretStr = Field(SecretStr("change-me"), description="JWT secret key")
    JWT_ALGORITHM: str = Field("HS256", description="JWT algorithm")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(60 * 24 * 7, description="Access token expiration")
    ADMIN_API_KEY: SecretStr = Field(SecretStr(""), description="Operator key for /admin endpoints")


class GameConfig(BaseModel):
    """
    Reglas de partida y liquidación.

    - COMMISSION_RATE: fracción del pot total que retiene la plataforma.
    - WINNING_SCORE: puntaje a partir del cual se declara ganador automático.
    - MAX_SCORE: tope de puntos aceptado por jugador.
    """
    COMMISSION_RATE: Decimal = Field(Decimal("0.10"), ge=0, lt=1)
    WINNING_SCORE: int = Field(8, ge=1)
    MAX_SCORE: int = Field(999, ge=1)
    NEARBY_RADIUS_KM: float = Field(5.0, gt=0)
    STALE_MATCH_HOURS: int = Field(6, ge=1)


class Settings(BaseSettings):
    app_name: str = Field("CueMatch", description="Application name")
    debug: bool = Field(False, description="Debug mode")
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        description="CORS origins"
    )

    db: DataBaseConfig = DataBaseConfig()
    security: SecurityConfig = SecurityConfig()
    game: GameConfig = GameConfig()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
    )


@lru_cache()
def get_settings() -> Settings:
    """Instancia cacheada de la configuración."""
    return Settings()


settings = get_settings()
