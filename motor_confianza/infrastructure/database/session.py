"""
session.py
----------
Manejador explícito de la base de datos del Motor de Confianza.

Provee la clase Database: motor SQLAlchemy async + fábrica de sesiones.
No hay singleton de módulo: cada contexto (servicio, tenant, test)
construye su propia instancia y la inyecta en los repositorios.

Concurrencia:
  - PostgreSQL (asyncpg): MVCC + WAL nativo, los lectores no bloquean
    a los escritores. Pool configurado como en producción.
  - SQLite (aiosqlite): cada conexión nueva activa journal_mode=WAL,
    synchronous=NORMAL y busy_timeout para que las consultas de historial
    y cross-lookup no esperen a las escrituras en curso.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from motor_confianza.core.exceptions import StorageException
from motor_confianza.domain.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Ejemplo de uso:
        db = Database("sqlite+aiosqlite:///./motor.db")
        await db.init_models()
        async with db.session() as session:
            ...
        await db.dispose()
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 20,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.url = url
        self.is_sqlite = make_url(url).get_backend_name() == "sqlite"

        if self.is_sqlite:
            # SQLite no usa pool de tamaño fijo
            self.engine: AsyncEngine = create_async_engine(url, echo=echo)
            self._enable_wal(sqlite_busy_timeout_ms)
        else:
            # Fix asyncpg issue with sslmode
            if "?sslmode=" in url:
                url = url.split("?sslmode=")[0]
            self.engine = create_async_engine(
                url,
                echo          = echo,
                pool_pre_ping = True,           # Verifica conexión antes de usarla
                pool_size     = pool_size,      # Conexiones permanentes en el pool
                max_overflow  = max_overflow,   # Conexiones extra bajo carga alta
            )

        self._sessionmaker = async_sessionmaker(
            bind             = self.engine,
            class_           = AsyncSession,
            expire_on_commit = False,
            autoflush        = False,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _enable_wal(self, busy_timeout_ms: int) -> None:
        @event.listens_for(self.engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Sesión de lectura. Se cierra al salir del bloque.
        Para escrituras usar transaction().
        """
        async with self._sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Sesión con transacción corta: commit al salir, rollback si algo
        falla. Nada parcial queda persistido.
        """
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def join(
        self, session: Optional[AsyncSession] = None
    ) -> AsyncIterator[AsyncSession]:
        """
        Escribe dentro de la transacción del llamador si recibe una sesión
        (el commit lo hace quien la abrió). Sin sesión equivale a transaction().
        """
        if session is not None:
            yield session
            return
        async with self.transaction() as own:
            yield own

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[AsyncSession]:
        """
        Transacción que agrupa escrituras de varios repositorios. Todo o
        nada: cualquier fallo de SQLAlchemy, incluido el commit, sale
        como StorageException.
        """
        try:
            async with self.transaction() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error(f"[Database] Transacción revertida: {exc}")
            raise StorageException() from exc

    async def insert_ignore(
        self,
        session:       AsyncSession,
        model:         type[Base],
        values:        dict[str, Any],
        conflict_keys: list[str],
    ) -> bool:
        """
        INSERT que ignora conflictos sobre conflict_keys.
        Retorna True si insertó, False si la fila ya existía.
        """
        if self.dialect_name in ("postgresql", "sqlite"):
            insert = pg_insert if self.dialect_name == "postgresql" else sqlite_insert
            stmt = (
                insert(model)
                .values(**values)
                .on_conflict_do_nothing(index_elements=conflict_keys)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        # Otros dialectos: savepoint + restricción única
        try:
            async with session.begin_nested():
                session.add(model(**values))
            return True
        except IntegrityError:
            return False

    async def init_models(self) -> None:
        """
        Crea todas las tablas definidas en models.py.
        En producción el esquema lo gestiona la migración, no el arranque.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"[Database] Esquema verificado en dialecto={self.dialect_name}")

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("[Database] Conexiones cerradas correctamente ✓")
