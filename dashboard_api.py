"""HTTP API mirroring the leveling data for the web dashboard.

Leaderboard routes are pure reads over the current store/ledger state. Ranking
is computed on numeric XP alone; profile enrichment runs afterwards and is
allowed to fail. Guild routes answer from the bot cache, and saveGreetings is
the only write.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from aiohttp import web

from errors import NotFoundError, StorageError, ValidationError
from leaderboard import LeaderboardAggregator, ProfileLookup, enrich
from progression import coerce_int
from record_store import RecordStore

LOGGER = logging.getLogger("estrela.api")

API_VERSION = "1.0.0"
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
MAX_DISCORD_ID = 2**64 - 1
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type",
}

HealthCheck = Callable[[], Awaitable[dict[str, str]]]


class GuildDirectory(Protocol):
    """Guild information served from the bot's gateway cache."""

    def list_guilds(self) -> list[dict[str, Any]]: ...

    def describe_guild(self, guild_id: int) -> dict[str, Any] | None: ...


class GreetingSettingsStore(Protocol):
    async def update_greeting_settings(self, guild_id: int, **updates: Any) -> dict[str, Any]: ...


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(CORS_HEADERS)
        raise
    response.headers.update(CORS_HEADERS)
    return response


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _coerce_id(raw: Any, name: str, *, required: bool = True) -> int | None:
    text = str(raw).strip() if raw is not None else ""
    if not text:
        if required:
            raise ValidationError(f"Missing {name}")
        return None
    # str.isdigit() also accepts superscripts and other Unicode digits.
    if not (text.isascii() and text.isdigit()):
        raise ValidationError(f"Invalid {name}")
    value = int(text)
    if value <= 0 or value > MAX_DISCORD_ID:
        raise ValidationError(f"Invalid {name}")
    return value


def _parse_id(request: web.Request, name: str, *, required: bool = True) -> int | None:
    return _coerce_id(request.query.get(name), name, required=required)


def _parse_positive(request: web.Request, name: str, default: int, maximum: int) -> int:
    raw = request.query.get(name)
    if raw is None or not raw.strip():
        return default
    value = coerce_int(raw, default=0)
    if value < 1:
        raise ValidationError(f"Invalid {name}")
    return min(value, maximum)


class DashboardApi:
    def __init__(
        self,
        records: RecordStore,
        aggregator: LeaderboardAggregator,
        *,
        profile_lookup: ProfileLookup | None = None,
        health_check: HealthCheck | None = None,
        guild_directory: GuildDirectory | None = None,
        settings_store: GreetingSettingsStore | None = None,
        lookup_timeout: float = 3.0,
        version: str = API_VERSION,
    ) -> None:
        self.records = records
        self.aggregator = aggregator
        self.profile_lookup = profile_lookup
        self.health_check = health_check
        self.guild_directory = guild_directory
        self.settings_store = settings_store
        self.lookup_timeout = lookup_timeout
        self.version = version
        self.app = web.Application(middlewares=[cors_middleware])
        self.runner: web.AppRunner | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/api/bot-status", self.handle_bot_status)
        self.app.router.add_get("/api/total-xp", self.handle_total_xp)
        self.app.router.add_get("/api/leaderboard/global", self.handle_global_leaderboard)
        self.app.router.add_get("/api/leaderboard/server", self.handle_server_leaderboard)
        self.app.router.add_get("/api/user-rank", self.handle_user_rank)
        self.app.router.add_get("/api/user/getUser", self.handle_get_user)
        self.app.router.add_get("/api/user/getUsers", self.handle_get_users)
        self.app.router.add_get("/api/guilds/getGuild", self.handle_get_guild)
        self.app.router.add_get("/api/guilds/checkBotMembership", self.handle_check_bot_membership)
        self.app.router.add_get("/api/guilds/botGuilds", self.handle_bot_guilds)
        self.app.router.add_post("/api/db/saveGreetings", self.handle_save_greetings)

    async def start(self, host: str, port: int) -> None:
        if self.runner is not None:
            return
        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()
        site = web.TCPSite(self.runner, host, port)
        await site.start()
        LOGGER.info("API do dashboard ouvindo em http://%s:%s", host, port)

    async def stop(self) -> None:
        if self.runner is None:
            return
        await self.runner.cleanup()
        self.runner = None

    async def _run(self, operation: str, handler: Callable[[], Awaitable[Any]]) -> web.Response:
        try:
            payload = await handler()
        except ValidationError as exc:
            return _error(400, str(exc))
        except NotFoundError as exc:
            return _error(404, str(exc))
        except StorageError as exc:
            LOGGER.error(
                "Falha em %s.",
                operation,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return _error(503, "unavailable")
        return web.json_response(payload)

    async def handle_bot_status(self, request: web.Request) -> web.Response:
        services = {"database": "offline", "bot": "offline"}
        status = "offline"
        if self.health_check is not None:
            try:
                services = await self.health_check()
                status = "online"
            except Exception as exc:
                LOGGER.warning(
                    "Health check falhou.",
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
        return web.json_response(
            {"status": status, "version": self.version, "services": services}
        )

    async def handle_total_xp(self, request: web.Request) -> web.Response:
        async def load() -> dict[str, Any]:
            return {"totalXp": await self.aggregator.get_total_xp()}

        return await self._run("total-xp", load)

    async def handle_global_leaderboard(self, request: web.Request) -> web.Response:
        async def load() -> list[dict[str, Any]]:
            page = _parse_positive(request, "page", 1, 1_000_000)
            page_size = _parse_positive(request, "pageSize", DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
            entries = await self.aggregator.get_global_leaderboard(page, page_size)
            entries = await enrich(entries, self.profile_lookup, timeout=self.lookup_timeout)
            return [entry.as_dict() for entry in entries]

        return await self._run("leaderboard global", load)

    async def handle_server_leaderboard(self, request: web.Request) -> web.Response:
        async def load() -> list[dict[str, Any]]:
            server_id = _parse_id(request, "serverId")
            entries = await self.aggregator.get_server_leaderboard(server_id)
            return [entry.as_dict() for entry in entries]

        return await self._run("leaderboard do servidor", load)

    async def handle_user_rank(self, request: web.Request) -> web.Response:
        async def load() -> dict[str, Any]:
            user_id = _parse_id(request, "userId")
            server_id = _parse_id(request, "serverId", required=False)
            global_rank = await self.aggregator.get_global_rank(user_id)
            server_rank = None
            if server_id is not None:
                server_rank = await self.aggregator.get_server_rank(user_id, server_id)
            return {
                "userId": str(user_id),
                "globalRank": global_rank,
                "serverRank": server_rank,
            }

        return await self._run("user-rank", load)

    async def handle_get_user(self, request: web.Request) -> web.Response:
        async def load() -> dict[str, Any]:
            server_id = _parse_id(request, "serverId")
            user_id = _parse_id(request, "userId")
            progress = await self.records.get(server_id, user_id)
            return {"userId": str(user_id), "xp": progress.xp, "level": progress.level}

        return await self._run("getUser", load)

    async def handle_get_users(self, request: web.Request) -> web.Response:
        async def load() -> list[dict[str, Any]]:
            server_id = _parse_id(request, "serverId")
            records = await self.records.list_guild(server_id)
            return [
                {"userId": str(record.user_id), "xp": record.xp, "level": record.level}
                for record in records
            ]

        return await self._run("getUsers", load)

    async def handle_get_guild(self, request: web.Request) -> web.Response:
        if self.guild_directory is None:
            return _error(503, "unavailable")

        async def load() -> dict[str, Any]:
            guild_id = _parse_id(request, "guildId")
            details = self.guild_directory.describe_guild(guild_id)
            if details is None:
                raise NotFoundError("Guild not found")
            return details

        return await self._run("getGuild", load)

    async def handle_check_bot_membership(self, request: web.Request) -> web.Response:
        if self.guild_directory is None:
            return _error(503, "unavailable")

        async def load() -> dict[str, Any]:
            guild_id = _parse_id(request, "guildId")
            return {"isBotMember": self.guild_directory.describe_guild(guild_id) is not None}

        return await self._run("checkBotMembership", load)

    async def handle_bot_guilds(self, request: web.Request) -> web.Response:
        if self.guild_directory is None:
            return _error(503, "unavailable")

        async def load() -> list[dict[str, Any]]:
            return self.guild_directory.list_guilds()

        return await self._run("botGuilds", load)

    async def handle_save_greetings(self, request: web.Request) -> web.Response:
        if self.settings_store is None:
            return _error(503, "unavailable")

        async def save() -> dict[str, Any]:
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("Invalid JSON body") from None
            if not isinstance(body, dict):
                raise ValidationError("Invalid JSON body")

            server_id = _coerce_id(body.get("serverId"), "serverId")
            channel_id = _coerce_id(body.get("welcomeChannelId"), "welcomeChannelId")
            message = body.get("welcomeMessage")
            if not isinstance(message, str) or not message.strip():
                raise ValidationError("Missing welcomeMessage")

            settings = await self.settings_store.update_greeting_settings(
                server_id,
                welcome_enabled=True,
                welcome_channel_id=channel_id,
                welcome_message=message,
            )
            LOGGER.info("Boas-vindas salvas pelo dashboard. guild=%s canal=%s", server_id, channel_id)
            return {
                "message": "Greetings saved",
                "serverId": str(server_id),
                "welcomeChannelId": str(settings["welcome_channel_id"]),
                "welcomeMessage": settings["welcome_message"],
            }

        return await self._run("saveGreetings", save)
