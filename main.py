import asyncio
import logging
import os
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import discord
from discord import app_commands
from discord.ext import commands
from dotenv import load_dotenv

from caches import ProgressCache
from dashboard_api import DashboardApi
from engine import EngineConfig, LevelingEngine
from leaderboard import LeaderboardAggregator
from level_store import MemoryLevelStore, MySQLConfig, MySQLLevelStore
from progression import XP_PER_LEVEL, XP_PER_MESSAGE
from record_store import RecordStore
from roles import DiscordRoleSynchronizer

LOGGER = logging.getLogger("estrela")
EXTENSIONS = ("cogs.leveling", "cogs.level_roles", "cogs.welcome")
STORAGE_BACKENDS = ("mysql", "memory")
PROFILE_LOOKUP_TIMEOUT = 3.0


@dataclass(frozen=True)
class ApiConfig:
    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class BotSettings:
    token: str
    guild_id: int | None
    owner_id: int | None
    members_intent_enabled: bool
    message_content_intent_enabled: bool
    storage_backend: str
    mysql: MySQLConfig | None
    engine: EngineConfig
    xp_cooldown_seconds: float
    api: ApiConfig


def sanitize_env_value(raw_value: str | None) -> str | None:
    if raw_value is None:
        return None
    cleaned = raw_value.strip().strip('"').strip("'")
    return cleaned or None


def sanitize_token(raw_value: str | None) -> str | None:
    token = sanitize_env_value(raw_value)
    if not token:
        return None
    if token.lower().startswith("bot "):
        token = token[4:].strip()
    return token or None


def looks_like_discord_token(value: str) -> bool:
    # Bot token has three parts separated by dots and is much longer than 32 chars.
    return value.count(".") == 2 and len(value) >= 50


def parse_discord_id(raw_value: str | None) -> int | None:
    cleaned = sanitize_env_value(raw_value)
    if cleaned is None:
        return None
    if cleaned.startswith("<") and cleaned.endswith(">"):
        cleaned = cleaned[1:-1]

    matches = re.findall(r"\d{17,20}", cleaned)
    candidate = matches[0] if matches else cleaned

    try:
        discord_id = int(candidate)
    except ValueError:
        return None
    if not (17 <= len(str(discord_id)) <= 20):
        return None
    return discord_id


def parse_positive_int(raw_value: str | None, var_name: str, default: int) -> int:
    normalized = sanitize_env_value(raw_value)
    if normalized is None:
        return default

    try:
        parsed = int(normalized)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} deve ser um numero inteiro positivo.") from exc

    if parsed <= 0:
        raise RuntimeError(f"{var_name} deve ser maior que zero.")
    return parsed


def parse_non_negative_float(raw_value: str | None, var_name: str, default: float) -> float:
    normalized = sanitize_env_value(raw_value)
    if normalized is None:
        return default

    try:
        parsed = float(normalized)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} deve ser um numero.") from exc

    if parsed < 0 or parsed != parsed:
        raise RuntimeError(f"{var_name} nao pode ser negativo.")
    return parsed


def parse_bool_env(raw_value: str | None, var_name: str, default: bool = False) -> bool:
    normalized = sanitize_env_value(raw_value)
    if normalized is None:
        return default

    lowered = normalized.lower()
    truthy = {"1", "true", "yes", "y", "on", "enable", "enabled"}
    falsy = {"0", "false", "no", "n", "off", "disable", "disabled"}
    if lowered in truthy:
        return True
    if lowered in falsy:
        return False
    raise RuntimeError(f"{var_name} deve ser true/false (ou 1/0).")


def load_mysql_config_from_env(env: Mapping[str, str]) -> MySQLConfig:
    host = sanitize_env_value(env.get("DB_HOST")) or "localhost"
    user = sanitize_env_value(env.get("DB_USER"))
    password = sanitize_env_value(env.get("DB_PASSWORD")) or ""
    database = sanitize_env_value(env.get("DB_NAME"))
    port = parse_positive_int(env.get("DB_PORT"), "DB_PORT", default=3306)
    pool_limit = parse_positive_int(env.get("DB_POOL_LIMIT"), "DB_POOL_LIMIT", default=10)

    if not user:
        raise RuntimeError("A variavel DB_USER nao foi encontrada no .env.")
    if not database:
        raise RuntimeError("A variavel DB_NAME nao foi encontrada no .env.")

    return MySQLConfig(
        host=host,
        port=port,
        user=user,
        password=password,
        database=database,
        pool_limit=pool_limit,
    )


def load_settings_from_env(env: Mapping[str, str] | None = None) -> BotSettings:
    env = os.environ if env is None else env

    token = sanitize_token(env.get("DISCORD_TOKEN"))
    if not token:
        raise RuntimeError("A variavel DISCORD_TOKEN nao foi encontrada no .env.")
    if not looks_like_discord_token(token):
        raise RuntimeError(
            "DISCORD_TOKEN parece invalido. Use o token do Bot em Developer Portal > Bot > Reset Token."
        )

    guild_id = parse_discord_id(env.get("GUILD_ID"))
    owner_id = parse_discord_id(env.get("DONO_ID"))
    if env.get("GUILD_ID") and guild_id is None:
        LOGGER.warning("GUILD_ID invalido. Sync sera global.")
    if env.get("DONO_ID") and owner_id is None:
        LOGGER.warning("DONO_ID invalido. owner_id nao sera definido.")

    storage_backend = (sanitize_env_value(env.get("STORAGE_BACKEND")) or "mysql").lower()
    if storage_backend not in STORAGE_BACKENDS:
        raise RuntimeError(f"STORAGE_BACKEND deve ser um de: {', '.join(STORAGE_BACKENDS)}.")
    mysql_config = load_mysql_config_from_env(env) if storage_backend == "mysql" else None

    engine_config = EngineConfig(
        xp_per_level=parse_positive_int(env.get("XP_PER_LEVEL"), "XP_PER_LEVEL", default=XP_PER_LEVEL),
        xp_per_message=parse_positive_int(
            env.get("XP_PER_MESSAGE"),
            "XP_PER_MESSAGE",
            default=XP_PER_MESSAGE,
        ),
        max_attempts=parse_positive_int(env.get("STORAGE_RETRY_ATTEMPTS"), "STORAGE_RETRY_ATTEMPTS", default=3),
    )

    api = ApiConfig(
        enabled=parse_bool_env(env.get("API_ENABLED"), "API_ENABLED", default=False),
        host=sanitize_env_value(env.get("API_HOST")) or "0.0.0.0",
        port=parse_positive_int(env.get("API_PORT"), "API_PORT", default=5000),
    )

    return BotSettings(
        token=token,
        guild_id=guild_id,
        owner_id=owner_id,
        members_intent_enabled=parse_bool_env(
            env.get("ENABLE_MEMBERS_INTENT"),
            "ENABLE_MEMBERS_INTENT",
            default=False,
        ),
        message_content_intent_enabled=parse_bool_env(
            env.get("ENABLE_MESSAGE_CONTENT_INTENT"),
            "ENABLE_MESSAGE_CONTENT_INTENT",
            default=False,
        ),
        storage_backend=storage_backend,
        mysql=mysql_config,
        engine=engine_config,
        xp_cooldown_seconds=parse_non_negative_float(
            env.get("XP_COOLDOWN_SECONDS"),
            "XP_COOLDOWN_SECONDS",
            default=30.0,
        ),
        api=api,
    )


async def send_ephemeral(interaction: discord.Interaction, message: str) -> None:
    try:
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)
    except (discord.NotFound, discord.Forbidden, discord.HTTPException):
        LOGGER.warning(
            "Nao foi possivel responder a interacao (expirada, sem permissao ou canal removido)."
        )


def setup_logging() -> None:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / "bot.log"

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=1_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.getLogger("discord.http").setLevel(logging.WARNING)
    LOGGER.info("Log configurado em %s", log_file.resolve())


def ensure_utf8_runtime() -> None:
    os.environ.setdefault("PYTHONUTF8", "1")
    for stream_name in ("stdout", "stderr"):
        stream = getattr(sys, stream_name, None)
        if stream is None or not hasattr(stream, "reconfigure"):
            continue
        stream.reconfigure(encoding="utf-8", errors="replace")


def build_level_store(settings: BotSettings) -> MySQLLevelStore | MemoryLevelStore:
    if settings.storage_backend == "memory":
        LOGGER.warning("STORAGE_BACKEND=memory: XP sera perdido ao reiniciar o bot.")
        return MemoryLevelStore()
    if settings.mysql is None:
        raise RuntimeError("Configuracao do MySQL ausente para STORAGE_BACKEND=mysql.")
    return MySQLLevelStore(settings.mysql)


def guild_summary(guild: discord.Guild) -> dict[str, Any]:
    return {
        "id": str(guild.id),
        "name": guild.name,
        "icon": guild.icon.url if guild.icon else None,
    }


def guild_details(guild: discord.Guild) -> dict[str, Any]:
    text_channels = [c for c in guild.channels if isinstance(c, discord.TextChannel)]
    voice_channels = [
        c for c in guild.channels if isinstance(c, (discord.VoiceChannel, discord.StageChannel))
    ]
    categories = [c for c in guild.channels if isinstance(c, discord.CategoryChannel)]
    roles = [role for role in guild.roles if not role.is_default() and not role.managed]
    return {
        "guildDetails": {
            **guild_summary(guild),
            "ownerId": str(guild.owner_id) if guild.owner_id else None,
        },
        "categoryCount": len(categories),
        "textChannelCount": len(text_channels),
        "voiceChannelCount": len(voice_channels),
        "memberCount": guild.member_count or len(guild.members),
        "roles": [
            {"id": str(role.id), "name": role.name, "position": role.position}
            for role in sorted(roles, key=lambda r: r.position, reverse=True)
        ],
        "channels": [
            {"id": str(channel.id), "name": channel.name, "position": channel.position}
            for channel in sorted(text_channels + voice_channels, key=lambda c: c.position)
        ],
    }


class EstrelaBot(commands.Bot):
    def __init__(self, settings: BotSettings, level_store: MySQLLevelStore | MemoryLevelStore) -> None:
        intents = discord.Intents.default()
        intents.members = settings.members_intent_enabled
        intents.message_content = settings.message_content_intent_enabled
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
            owner_id=settings.owner_id,
        )
        self.settings = settings
        self.sync_guild_id = settings.guild_id
        self.xp_cooldown_seconds = settings.xp_cooldown_seconds
        self.level_store = level_store
        self.records = RecordStore(level_store, ProgressCache())
        self.aggregator = LeaderboardAggregator(
            level_store,
            xp_per_level=settings.engine.xp_per_level,
        )
        self.role_synchronizer = DiscordRoleSynchronizer(self, level_store)
        self.engine = LevelingEngine(
            self.records,
            self.aggregator,
            config=settings.engine,
            role_sync=self.role_synchronizer.sync,
        )
        self.dashboard_api: DashboardApi | None = None
        self.tree.on_error = self.on_app_command_error

    async def lookup_profile(self, user_id: int) -> dict[str, Any] | None:
        user = self.get_user(user_id)
        if user is None:
            try:
                user = await asyncio.wait_for(self.fetch_user(user_id), timeout=PROFILE_LOOKUP_TIMEOUT)
            except (asyncio.TimeoutError, discord.NotFound, discord.HTTPException):
                return None
        return {
            "username": user.name,
            "global_name": getattr(user, "global_name", None),
            "avatar_url": user.display_avatar.url,
        }

    def list_guilds(self) -> list[dict[str, Any]]:
        return [guild_summary(guild) for guild in self.guilds]

    def describe_guild(self, guild_id: int) -> dict[str, Any] | None:
        guild = self.get_guild(guild_id)
        if guild is None:
            return None
        return guild_details(guild)

    async def health_status(self) -> dict[str, str]:
        database_online = await self.level_store.ping()
        return {
            "database": "online" if database_online else "offline",
            "bot": "online" if self.is_ready() else "offline",
        }

    async def setup_hook(self) -> None:
        await self.level_store.connect()
        LOGGER.info("Armazenamento de niveis: %s", self.level_store.backend_name)
        if isinstance(self.level_store, MySQLLevelStore):
            LOGGER.info(
                "MySQL conectado em %s:%s/%s",
                self.level_store.config.host,
                self.level_store.config.port,
                self.level_store.config.database,
            )

        for extension in EXTENSIONS:
            await self.load_extension(extension)
            LOGGER.info("Extensao carregada: %s", extension)

        if self.settings.api.enabled:
            self.dashboard_api = DashboardApi(
                self.records,
                self.aggregator,
                profile_lookup=self.lookup_profile,
                health_check=self.health_status,
                guild_directory=self,
                settings_store=self.level_store,
            )
            await self.dashboard_api.start(self.settings.api.host, self.settings.api.port)

        try:
            if self.sync_guild_id:
                guild = discord.Object(id=self.sync_guild_id)
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
                LOGGER.info(
                    "Comandos sincronizados na guild %s: %s",
                    self.sync_guild_id,
                    len(synced),
                )
            else:
                synced = await self.tree.sync()
                LOGGER.info("Comandos globais sincronizados: %s", len(synced))
        except Exception as exc:
            LOGGER.error(
                "Falha ao sincronizar comandos.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def on_ready(self) -> None:
        if self.user is None:
            return
        LOGGER.info("Logado como %s (id=%s)", self.user, self.user.id)

    async def close(self) -> None:
        if self.dashboard_api is not None:
            await self.dashboard_api.stop()
        try:
            await self.level_store.close()
            LOGGER.info("Armazenamento de niveis finalizado.")
        except Exception as exc:
            LOGGER.warning(
                "Falha ao finalizar armazenamento de niveis.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        await super().close()

    async def on_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        if isinstance(error, app_commands.MissingPermissions):
            await send_ephemeral(
                interaction,
                "Voce nao tem permissao para usar este comando.",
            )
            return

        if isinstance(error, app_commands.NoPrivateMessage):
            await send_ephemeral(
                interaction,
                "Este comando so funciona dentro de servidor.",
            )
            return

        if isinstance(error, app_commands.CheckFailure):
            await send_ephemeral(
                interaction,
                "Voce nao passou na validacao deste comando.",
            )
            return

        root_error = error.original if isinstance(error, app_commands.CommandInvokeError) else error
        command_name = interaction.command.qualified_name if interaction.command else "desconhecido"
        LOGGER.error(
            "Erro nao tratado no comando /%s",
            command_name,
            exc_info=(type(root_error), root_error, root_error.__traceback__),
        )
        await send_ephemeral(
            interaction,
            "Ocorreu um erro inesperado ao executar o comando.",
        )


def main() -> None:
    ensure_utf8_runtime()
    load_dotenv()
    setup_logging()

    settings = load_settings_from_env()
    if not settings.message_content_intent_enabled:
        LOGGER.warning(
            "ENABLE_MESSAGE_CONTENT_INTENT desativado: o filtro de mensagens repetidas fica limitado."
        )

    bot = EstrelaBot(settings, build_level_store(settings))
    try:
        bot.run(settings.token, log_handler=None)
    except discord.errors.PrivilegedIntentsRequired as exc:
        raise RuntimeError(
            "Intents privilegiados nao habilitados no Developer Portal. "
            "Habilite os intents necessarios no portal ou defina "
            "ENABLE_MEMBERS_INTENT/ENABLE_MESSAGE_CONTENT_INTENT=false no .env."
        ) from exc


if __name__ == "__main__":
    main()
