import asyncio
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aiomysql

from errors import StorageError, ValidationError
from greetings import DEFAULT_WELCOME_MESSAGE, MAX_WELCOME_MESSAGE_LENGTH
from progression import coerce_int

DB_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

DEFAULT_GREETING_SETTINGS = {
    "welcome_enabled": False,
    "welcome_channel_id": None,
    "welcome_message": DEFAULT_WELCOME_MESSAGE,
    "join_role_id": None,
}
GREETING_FIELDS = tuple(DEFAULT_GREETING_SETTINGS)


def _normalize_level_settings(
    guild_id: int,
    channel_id: Any,
    role_rows: list[tuple[Any, Any]],
) -> dict[str, Any]:
    mappings = {coerce_int(level): coerce_int(role_id) for level, role_id in role_rows}
    return {
        "guild_id": guild_id,
        "levelup_channel_id": int(channel_id) if channel_id else None,
        "role_mappings": dict(sorted(mappings.items())),
    }


def _normalize_greeting_settings(guild_id: int, row: dict[str, Any] | None) -> dict[str, Any]:
    settings = dict(DEFAULT_GREETING_SETTINGS)
    if row:
        settings.update({key: row[key] for key in GREETING_FIELDS if key in row})
    channel_id = coerce_int(settings["welcome_channel_id"])
    join_role_id = coerce_int(settings["join_role_id"])
    return {
        "guild_id": guild_id,
        "welcome_enabled": bool(settings["welcome_enabled"]),
        "welcome_channel_id": channel_id or None,
        "welcome_message": str(settings["welcome_message"] or DEFAULT_WELCOME_MESSAGE),
        "join_role_id": join_role_id or None,
    }


def _validate_greeting_updates(updates: dict[str, Any]) -> dict[str, Any]:
    unknown = set(updates) - set(GREETING_FIELDS)
    if unknown:
        raise ValidationError(f"Campos de boas-vindas desconhecidos: {', '.join(sorted(unknown))}")
    message = updates.get("welcome_message")
    if message is not None:
        message = str(message).strip()
        if not message:
            raise ValidationError("A mensagem de boas-vindas nao pode ser vazia.")
        updates = {**updates, "welcome_message": message[:MAX_WELCOME_MESSAGE_LENGTH]}
    return updates


@dataclass(frozen=True)
class MySQLConfig:
    host: str
    port: int
    user: str
    password: str
    database: str
    pool_limit: int

    def validate(self) -> None:
        if not DB_IDENTIFIER_RE.fullmatch(self.database):
            raise ValueError(
                "DB_NAME invalido. Use apenas letras, numeros e underscore (_)."
            )


@asynccontextmanager
async def _storage_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (aiomysql.Error, OSError, asyncio.TimeoutError) as exc:
        raise StorageError(f"Falha no MySQL durante {operation}.") from exc


class MySQLLevelStore:
    backend_name = "mysql"

    def __init__(self, config: MySQLConfig) -> None:
        self.config = config
        self._pool: aiomysql.Pool | None = None

    async def connect(self) -> None:
        if self._pool is not None:
            return

        self.config.validate()
        bootstrap = await aiomysql.connect(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            autocommit=True,
            charset="utf8mb4",
        )
        try:
            async with bootstrap.cursor() as cursor:
                await cursor.execute(
                    f"CREATE DATABASE IF NOT EXISTS `{self.config.database}` "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
        finally:
            bootstrap.close()

        self._pool = await aiomysql.create_pool(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            db=self.config.database,
            minsize=1,
            maxsize=self.config.pool_limit,
            autocommit=True,
            charset="utf8mb4",
        )
        await self._create_schema()

    async def close(self) -> None:
        if self._pool is None:
            return

        self._pool.close()
        await self._pool.wait_closed()
        self._pool = None

    async def _create_schema(self) -> None:
        create_member_levels = """
        CREATE TABLE IF NOT EXISTS member_levels (
            id BIGINT UNSIGNED NOT NULL AUTO_INCREMENT,
            guild_id BIGINT UNSIGNED NOT NULL,
            user_id BIGINT UNSIGNED NOT NULL,
            xp BIGINT NOT NULL DEFAULT 0,
            level INT UNSIGNED NOT NULL DEFAULT 0,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            PRIMARY KEY (id),
            UNIQUE KEY uq_member_levels_guild_user (guild_id, user_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        create_global_ledger = """
        CREATE TABLE IF NOT EXISTS global_ledger (
            id BIGINT UNSIGNED NOT NULL AUTO_INCREMENT,
            user_id BIGINT UNSIGNED NOT NULL,
            total_xp BIGINT NOT NULL DEFAULT 0,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            PRIMARY KEY (id),
            UNIQUE KEY uq_global_ledger_user (user_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        create_ledger_contributions = """
        CREATE TABLE IF NOT EXISTS ledger_contributions (
            id BIGINT UNSIGNED NOT NULL AUTO_INCREMENT,
            user_id BIGINT UNSIGNED NOT NULL,
            guild_id BIGINT UNSIGNED NOT NULL,
            xp BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (id),
            UNIQUE KEY uq_ledger_contributions_user_guild (user_id, guild_id),
            INDEX idx_ledger_contributions_guild (guild_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        create_level_settings = """
        CREATE TABLE IF NOT EXISTS level_settings (
            guild_id BIGINT UNSIGNED NOT NULL,
            levelup_channel_id BIGINT UNSIGNED NULL DEFAULT NULL,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            PRIMARY KEY (guild_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        create_level_roles = """
        CREATE TABLE IF NOT EXISTS level_roles (
            guild_id BIGINT UNSIGNED NOT NULL,
            level INT UNSIGNED NOT NULL,
            role_id BIGINT UNSIGNED NOT NULL,
            PRIMARY KEY (guild_id, level)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        create_greeting_settings = """
        CREATE TABLE IF NOT EXISTS greeting_settings (
            guild_id BIGINT UNSIGNED NOT NULL,
            welcome_enabled TINYINT(1) NOT NULL DEFAULT 0,
            welcome_channel_id BIGINT UNSIGNED NULL DEFAULT NULL,
            welcome_message TEXT NULL,
            join_role_id BIGINT UNSIGNED NULL DEFAULT NULL,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            PRIMARY KEY (guild_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """
        async with self.pool.acquire() as connection:
            async with connection.cursor() as cursor:
                await cursor.execute(create_member_levels)
                await cursor.execute(create_global_ledger)
                await cursor.execute(create_ledger_contributions)
                await cursor.execute(create_level_settings)
                await cursor.execute(create_level_roles)
                await cursor.execute(create_greeting_settings)

    @property
    def pool(self) -> aiomysql.Pool:
        if self._pool is None:
            raise RuntimeError("MySQL pool nao inicializado.")
        return self._pool

    async def ping(self) -> bool:
        try:
            async with _storage_errors("ping"):
                async with self.pool.acquire() as connection:
                    async with connection.cursor() as cursor:
                        await cursor.execute("SELECT 1")
                        await cursor.fetchone()
        except (StorageError, RuntimeError):
            return False
        return True

    async def fetch_progress(self, guild_id: int, user_id: int) -> dict[str, Any] | None:
        async with _storage_errors("leitura de nivel"):
            async with self.pool.acquire() as connection:
                async with connection.cursor(aiomysql.DictCursor) as cursor:
                    await cursor.execute(
                        """
                        SELECT xp, level
                        FROM member_levels
                        WHERE guild_id = %s AND user_id = %s
                        LIMIT 1
                        """,
                        (guild_id, user_id),
                    )
                    row = await cursor.fetchone()
        if row is None:
            return None
        return {"xp": row["xp"], "level": row["level"]}

    async def write_progress(self, guild_id: int, user_id: int, xp: int, level: int) -> None:
        async with _storage_errors("gravacao de nivel"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        """
                        INSERT INTO member_levels (guild_id, user_id, xp, level)
                        VALUES (%s, %s, %s, %s)
                        ON DUPLICATE KEY UPDATE xp = VALUES(xp), level = VALUES(level)
                        """,
                        (guild_id, user_id, xp, level),
                    )

    async def fetch_guild_progress(self, guild_id: int) -> list[dict[str, Any]]:
        async with _storage_errors("listagem de niveis"):
            async with self.pool.acquire() as connection:
                async with connection.cursor(aiomysql.DictCursor) as cursor:
                    await cursor.execute(
                        """
                        SELECT user_id, xp, level
                        FROM member_levels
                        WHERE guild_id = %s
                        ORDER BY id
                        """,
                        (guild_id,),
                    )
                    rows = await cursor.fetchall()
        return [
            {"user_id": int(row["user_id"]), "xp": row["xp"], "level": row["level"]}
            for row in rows or []
        ]

    async def fetch_ledger(self) -> list[tuple[int, int]]:
        async with _storage_errors("leitura do ledger"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute("SELECT user_id, total_xp FROM global_ledger ORDER BY id")
                    rows = await cursor.fetchall()
        return [(int(user_id), coerce_int(total_xp)) for user_id, total_xp in rows or []]

    async def fetch_guild_contributions(self, guild_id: int) -> list[tuple[int, int]]:
        async with _storage_errors("leitura de contribuicoes"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        """
                        SELECT user_id, xp
                        FROM ledger_contributions
                        WHERE guild_id = %s
                        ORDER BY id
                        """,
                        (guild_id,),
                    )
                    rows = await cursor.fetchall()
        return [(int(user_id), coerce_int(xp)) for user_id, xp in rows or []]

    async def fetch_user_contributions(self, user_id: int) -> dict[int, int]:
        async with _storage_errors("leitura de contribuicoes"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        "SELECT guild_id, xp FROM ledger_contributions WHERE user_id = %s ORDER BY id",
                        (user_id,),
                    )
                    rows = await cursor.fetchall()
        return {int(guild_id): coerce_int(xp) for guild_id, xp in rows or []}

    async def fetch_ledger_state(self, user_id: int, guild_id: int) -> tuple[int, int]:
        """Return the user's ledger total and the stored contribution of ``guild_id``."""
        async with _storage_errors("leitura do ledger"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        "SELECT total_xp FROM global_ledger WHERE user_id = %s LIMIT 1",
                        (user_id,),
                    )
                    total_row = await cursor.fetchone()
                    await cursor.execute(
                        """
                        SELECT xp FROM ledger_contributions
                        WHERE user_id = %s AND guild_id = %s
                        LIMIT 1
                        """,
                        (user_id, guild_id),
                    )
                    contribution_row = await cursor.fetchone()
        total = coerce_int(total_row[0]) if total_row else 0
        previous = coerce_int(contribution_row[0]) if contribution_row else 0
        return total, previous

    async def write_ledger_state(
        self,
        user_id: int,
        guild_id: int,
        total_xp: int,
        contribution: int,
    ) -> None:
        async with _storage_errors("gravacao do ledger"):
            async with self.pool.acquire() as connection:
                await connection.begin()
                try:
                    async with connection.cursor() as cursor:
                        await cursor.execute(
                            """
                            INSERT INTO global_ledger (user_id, total_xp)
                            VALUES (%s, %s)
                            ON DUPLICATE KEY UPDATE total_xp = VALUES(total_xp)
                            """,
                            (user_id, total_xp),
                        )
                        await cursor.execute(
                            """
                            INSERT INTO ledger_contributions (user_id, guild_id, xp)
                            VALUES (%s, %s, %s)
                            ON DUPLICATE KEY UPDATE xp = VALUES(xp)
                            """,
                            (user_id, guild_id, contribution),
                        )
                    await connection.commit()
                except BaseException:
                    await connection.rollback()
                    raise

    async def get_level_settings(self, guild_id: int) -> dict[str, Any]:
        async with _storage_errors("leitura de configuracao"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        "SELECT levelup_channel_id FROM level_settings WHERE guild_id = %s LIMIT 1",
                        (guild_id,),
                    )
                    settings_row = await cursor.fetchone()
                    await cursor.execute(
                        "SELECT level, role_id FROM level_roles WHERE guild_id = %s ORDER BY level",
                        (guild_id,),
                    )
                    role_rows = await cursor.fetchall()
        channel_id = settings_row[0] if settings_row else None
        return _normalize_level_settings(guild_id, channel_id, list(role_rows or []))

    async def set_level_role(self, guild_id: int, level: int, role_id: int) -> dict[str, Any]:
        async with _storage_errors("gravacao de cargo"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        """
                        INSERT INTO level_roles (guild_id, level, role_id)
                        VALUES (%s, %s, %s)
                        ON DUPLICATE KEY UPDATE role_id = VALUES(role_id)
                        """,
                        (guild_id, level, role_id),
                    )
        return await self.get_level_settings(guild_id)

    async def remove_level_role(self, guild_id: int, level: int) -> bool:
        async with _storage_errors("remocao de cargo"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        "DELETE FROM level_roles WHERE guild_id = %s AND level = %s",
                        (guild_id, level),
                    )
                    return cursor.rowcount > 0

    async def set_levelup_channel(self, guild_id: int, channel_id: int | None) -> dict[str, Any]:
        async with _storage_errors("gravacao de configuracao"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        """
                        INSERT INTO level_settings (guild_id, levelup_channel_id)
                        VALUES (%s, %s)
                        ON DUPLICATE KEY UPDATE levelup_channel_id = VALUES(levelup_channel_id)
                        """,
                        (guild_id, channel_id),
                    )
        return await self.get_level_settings(guild_id)

    async def get_greeting_settings(self, guild_id: int) -> dict[str, Any]:
        async with _storage_errors("leitura de boas-vindas"):
            async with self.pool.acquire() as connection:
                async with connection.cursor(aiomysql.DictCursor) as cursor:
                    await cursor.execute(
                        """
                        SELECT welcome_enabled, welcome_channel_id, welcome_message, join_role_id
                        FROM greeting_settings
                        WHERE guild_id = %s
                        LIMIT 1
                        """,
                        (guild_id,),
                    )
                    row = await cursor.fetchone()
        return _normalize_greeting_settings(guild_id, row)

    async def update_greeting_settings(self, guild_id: int, **updates: Any) -> dict[str, Any]:
        updates = _validate_greeting_updates(updates)
        if not updates:
            return await self.get_greeting_settings(guild_id)

        # Column names come from GREETING_FIELDS only.
        assignments = ", ".join(f"{column} = %s" for column in updates)
        async with _storage_errors("gravacao de boas-vindas"):
            async with self.pool.acquire() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        "INSERT INTO greeting_settings (guild_id) VALUES (%s) "
                        "ON DUPLICATE KEY UPDATE guild_id = guild_id",
                        (guild_id,),
                    )
                    await cursor.execute(
                        f"UPDATE greeting_settings SET {assignments} WHERE guild_id = %s",
                        (*updates.values(), guild_id),
                    )
        return await self.get_greeting_settings(guild_id)


class MemoryLevelStore:
    """Process-local backend with the same coroutine API as ``MySQLLevelStore``.

    Dicts keep insertion order, which is the natural iteration order the
    leaderboards break ties with. ``latency`` yields to the event loop before
    every operation so interleavings look like real I/O.
    """

    backend_name = "memory"

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self._progress: dict[tuple[int, int], dict[str, int]] = {}
        self._ledger: dict[int, int] = {}
        self._contributions: dict[tuple[int, int], int] = {}
        self._channels: dict[int, int | None] = {}
        self._roles: dict[int, dict[int, int]] = {}
        self._greetings: dict[int, dict[str, Any]] = {}
        self.connected = False

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def ping(self) -> bool:
        return self.connected

    async def fetch_progress(self, guild_id: int, user_id: int) -> dict[str, Any] | None:
        await self._io()
        row = self._progress.get((guild_id, user_id))
        return dict(row) if row is not None else None

    async def write_progress(self, guild_id: int, user_id: int, xp: int, level: int) -> None:
        await self._io()
        self._progress[(guild_id, user_id)] = {"xp": xp, "level": level}

    async def fetch_guild_progress(self, guild_id: int) -> list[dict[str, Any]]:
        await self._io()
        return [
            {"user_id": user_id, **row}
            for (row_guild_id, user_id), row in self._progress.items()
            if row_guild_id == guild_id
        ]

    async def fetch_ledger(self) -> list[tuple[int, int]]:
        await self._io()
        return list(self._ledger.items())

    async def fetch_guild_contributions(self, guild_id: int) -> list[tuple[int, int]]:
        await self._io()
        return [
            (user_id, xp)
            for (user_id, row_guild_id), xp in self._contributions.items()
            if row_guild_id == guild_id
        ]

    async def fetch_user_contributions(self, user_id: int) -> dict[int, int]:
        await self._io()
        return {
            guild_id: xp
            for (row_user_id, guild_id), xp in self._contributions.items()
            if row_user_id == user_id
        }

    async def fetch_ledger_state(self, user_id: int, guild_id: int) -> tuple[int, int]:
        await self._io()
        return self._ledger.get(user_id, 0), self._contributions.get((user_id, guild_id), 0)

    async def write_ledger_state(
        self,
        user_id: int,
        guild_id: int,
        total_xp: int,
        contribution: int,
    ) -> None:
        await self._io()
        self._ledger[user_id] = total_xp
        self._contributions[(user_id, guild_id)] = contribution

    async def get_level_settings(self, guild_id: int) -> dict[str, Any]:
        await self._io()
        return _normalize_level_settings(
            guild_id,
            self._channels.get(guild_id),
            list(self._roles.get(guild_id, {}).items()),
        )

    async def set_level_role(self, guild_id: int, level: int, role_id: int) -> dict[str, Any]:
        await self._io()
        self._roles.setdefault(guild_id, {})[level] = role_id
        return await self.get_level_settings(guild_id)

    async def remove_level_role(self, guild_id: int, level: int) -> bool:
        await self._io()
        return self._roles.get(guild_id, {}).pop(level, None) is not None

    async def set_levelup_channel(self, guild_id: int, channel_id: int | None) -> dict[str, Any]:
        await self._io()
        self._channels[guild_id] = channel_id
        return await self.get_level_settings(guild_id)

    async def get_greeting_settings(self, guild_id: int) -> dict[str, Any]:
        await self._io()
        return _normalize_greeting_settings(guild_id, self._greetings.get(guild_id))

    async def update_greeting_settings(self, guild_id: int, **updates: Any) -> dict[str, Any]:
        updates = _validate_greeting_updates(updates)
        await self._io()
        self._greetings.setdefault(guild_id, dict(DEFAULT_GREETING_SETTINGS)).update(updates)
        return await self.get_greeting_settings(guild_id)
