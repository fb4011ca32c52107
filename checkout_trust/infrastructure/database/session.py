"""
session.py
----------
Configuración de la conexión asíncrona a PostgreSQL.

Provee:
  - engine: motor SQLAlchemy async con pool configurado
  - AsyncSessionLocal: fábrica de sesiones
  - get_db: dependency de FastAPI para inyectar sesión en routers
  - init_db: crea tablas en desarrollo (en producción usa Alembic)
  - ping_db: health check usado por /health
"""

from collections.abc import AsyncGenerator
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from checkout_trust.core.config import settings

logger = logging.getLogger(__name__)

# Fix asyncpg issue with sslmode
db_url = settings.DATABASE_URL
if "?sslmode=" in db_url:
    db_url = db_url.split("?sslmode=")[0]

# SQLite (desarrollo local y tests) no acepta parámetros de pool
_pool_kwargs = {} if db_url.startswith("sqlite") else {
    "pool_size":    10,   # Conexiones permanentes en el pool
    "max_overflow": 20,   # Conexiones extra bajo carga alta
}

# ── Motor de base de datos ────────────────────────────────────────────
engine = create_async_engine(
    db_url,
    echo           = settings.DEBUG,   # Loggea SQL solo en desarrollo
    pool_pre_ping  = True,             # Verifica conexión antes de usarla
    **_pool_kwargs,
)

# ── Fábrica de sesiones ───────────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind             = engine,
    class_           = AsyncSession,
    expire_on_commit = False,
    autoflush        = False,
)


# ── Dependency para FastAPI ───────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Inyecta una sesión de base de datos en cada request.
    Se cierra automáticamente al terminar el request.

    Los repositorios hacen commit explícito por operación; aquí solo se
    hace rollback si el request termina con una excepción.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ── Init para desarrollo ─────────────────────────────────────────────
async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Crea todas las tablas definidas en models.py.
    Solo usar en desarrollo — en producción usar Alembic.
    Llamar desde el lifespan de main.py si settings.DEBUG es True.
    """
    from checkout_trust.domain.models import Base
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping_db() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"[DB] Health check falló: {e}")
        return False
