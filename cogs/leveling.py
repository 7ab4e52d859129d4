import logging
import time
import unicodedata

import discord
import regex as regex_lib
from discord import app_commands
from discord.ext import commands

from caches import MessageHistory
from engine import LevelingEngine, ProgressionEvent, ProgressUpdate
from errors import LeaderboardUnavailable, NotFoundError, StorageError
from leaderboard import LeaderboardAggregator, LeaderboardEntry
from progression import total_xp_for_level, xp_for_next_level
from record_store import RecordStore

LOGGER = logging.getLogger("estrela.cogs.leveling")

LEADERBOARD_SCOPES = [
    app_commands.Choice(name="servidor", value="server"),
    app_commands.Choice(name="global", value="global"),
]


class LevelingCog(commands.Cog):
    DEFAULT_XP_COOLDOWN_SECONDS = 30.0
    LEADERBOARD_PAGE_SIZE = 10
    REPEAT_THRESHOLD = 3

    def __init__(
        self,
        bot: commands.Bot,
        *,
        history: MessageHistory | None = None,
    ) -> None:
        self.bot = bot
        self.history = history or MessageHistory()
        self.xp_cooldown_seconds = float(
            getattr(bot, "xp_cooldown_seconds", self.DEFAULT_XP_COOLDOWN_SECONDS)
        )
        self._xp_cooldowns: dict[tuple[int, int], float] = {}

    def _engine(self) -> LevelingEngine:
        engine = getattr(self.bot, "engine", None)
        if engine is None:
            raise RuntimeError("LevelingEngine nao inicializado.")
        return engine

    def _records(self) -> RecordStore:
        return self._engine().records

    def _aggregator(self) -> LeaderboardAggregator:
        return self._engine().aggregator

    @staticmethod
    def _normalize_text(text: str | None) -> str:
        raw = "" if text is None else str(text)
        return unicodedata.normalize("NFC", raw)

    def _truncate_graphemes(self, text: str, limit: int) -> str:
        clusters = regex_lib.findall(r"\X", self._normalize_text(text))
        if len(clusters) <= limit:
            return "".join(clusters)
        return "".join(clusters[: max(1, limit - 1)]) + "…"

    def _pick_display_name(self, *values: str | None, fallback: str = "Usuario") -> str:
        for value in values:
            normalized = self._normalize_text(value).strip()
            if normalized:
                return self._truncate_graphemes(normalized, 32)
        return self._normalize_text(fallback).strip() or "Usuario"

    @staticmethod
    def _format_int(value: int) -> str:
        return f"{int(value):,}".replace(",", ".")

    @staticmethod
    def _progress_bar(current: int, total: int, width: int = 12) -> str:
        if total <= 0:
            return "-" * width
        safe_current = max(0, min(current, total))
        filled = round((safe_current / total) * width)
        return ("#" * filled) + ("-" * (width - filled))

    @staticmethod
    def _format_rank(rank: int | None) -> str:
        return f"#{rank}" if rank is not None else "Sem rank"

    def _xp_per_level(self) -> int:
        return self._engine().config.xp_per_level

    def _build_rank_embed(
        self,
        *,
        member: discord.Member,
        level: int,
        xp: int,
        server_rank: int | None,
        global_rank: int | None,
    ) -> discord.Embed:
        xp_per_level = self._xp_per_level()
        needed = xp_for_next_level(level, xp_per_level=xp_per_level)
        total_xp = total_xp_for_level(level, xp, xp_per_level=xp_per_level)
        progress_bar = self._progress_bar(xp, needed)
        embed = discord.Embed(
            title=f"Rank de {self._pick_display_name(member.display_name, member.name)}",
            color=member.color if member.color.value else discord.Color.blurple(),
        )
        embed.set_thumbnail(url=member.display_avatar.url)
        embed.add_field(name="Nivel", value=f"`{level}`", inline=True)
        embed.add_field(name="XP total", value=f"`{self._format_int(total_xp)}`", inline=True)
        embed.add_field(name="Faltam", value=f"`{self._format_int(needed - xp)}` XP", inline=True)
        embed.add_field(name="Rank no servidor", value=f"`{self._format_rank(server_rank)}`", inline=True)
        embed.add_field(name="Rank global", value=f"`{self._format_rank(global_rank)}`", inline=True)
        embed.add_field(
            name="Progresso do nivel",
            value=f"`[{progress_bar}] {self._format_int(xp)}/{self._format_int(needed)}`",
            inline=False,
        )
        return embed

    async def _resolve_display_name(self, guild: discord.Guild | None, user_id: int) -> str:
        member = guild.get_member(user_id) if guild is not None else None
        if member is not None:
            return self._pick_display_name(
                member.display_name,
                member.global_name,
                member.name,
                fallback=f"Usuario {user_id}",
            )
        user = self.bot.get_user(user_id)
        if user is not None:
            return self._pick_display_name(
                getattr(user, "global_name", None),
                user.name,
                fallback=f"Usuario {user_id}",
            )
        return f"Usuario {user_id}"

    async def _build_leaderboard_embed(
        self,
        *,
        title: str,
        guild: discord.Guild | None,
        entries: list[LeaderboardEntry],
        page: int,
    ) -> discord.Embed:
        lines: list[str] = []
        for entry in entries:
            name = await self._resolve_display_name(guild, entry.user_id)
            lines.append(f"{entry.rank}. {name} - XP `{self._format_int(entry.xp)}`")
        embed = discord.Embed(
            title=title,
            description="\n".join(lines),
            color=discord.Color.gold(),
        )
        embed.set_footer(text=f"Pagina {page} | {len(entries)} usuarios")
        return embed

    def _is_eligible_message(self, message: discord.Message) -> bool:
        if message.guild is None or message.author.bot:
            return False
        if not isinstance(message.author, discord.Member):
            return False
        if message.webhook_id is not None:
            return False
        return True

    def _is_xp_rate_limited(self, guild_id: int, user_id: int) -> bool:
        if self.xp_cooldown_seconds <= 0:
            return False

        now = time.monotonic()
        key = (guild_id, user_id)
        last_award = self._xp_cooldowns.get(key)
        if last_award is not None and (now - last_award) < self.xp_cooldown_seconds:
            return True

        self._xp_cooldowns[key] = now
        if len(self._xp_cooldowns) > 50_000:
            cutoff = now - (self.xp_cooldown_seconds * 4)
            self._xp_cooldowns = {
                cache_key: ts
                for cache_key, ts in self._xp_cooldowns.items()
                if ts >= cutoff
            }
        return False

    def _is_farming(self, message: discord.Message) -> bool:
        content = message.content or ""
        repeated = self.history.is_repeated(
            message.author.id,
            message.channel.id,
            content,
            threshold=self.REPEAT_THRESHOLD,
        )
        self.history.record(message.author.id, message.channel.id, content)
        return repeated

    async def _announce_level_up(self, message: discord.Message, update: ProgressUpdate) -> None:
        level = update.result.level
        missing_xp = xp_for_next_level(level, xp_per_level=self._xp_per_level()) - update.result.xp
        try:
            await message.channel.send(
                (
                    f"{message.author.display_name} subiu para o nivel `{level}`. "
                    f"Proximo nivel em `{self._format_int(missing_xp)}` XP."
                ),
                delete_after=12,
                allowed_mentions=discord.AllowedMentions.none(),
            )
        except (discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Falha ao anunciar level up. guild=%s canal=%s usuario=%s",
                message.guild.id if message.guild else "N/A",
                message.channel.id,
                message.author.id,
            )

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if not self._is_eligible_message(message):
            return
        if message.guild is None:
            return
        if self._is_farming(message):
            LOGGER.debug(
                "Mensagem repetida ignorada. guild=%s usuario=%s",
                message.guild.id,
                message.author.id,
            )
            return
        if self._is_xp_rate_limited(message.guild.id, message.author.id):
            return

        update = await self._engine().process(
            ProgressionEvent.message(message.guild.id, message.author.id)
        )
        if update is not None and update.result.leveled_up:
            await self._announce_level_up(message, update)

    @app_commands.command(name="rank", description="Mostra nivel, XP e posicao de um membro.")
    @app_commands.guild_only()
    @app_commands.describe(member="Membro para consultar. Se vazio, usa voce.")
    async def rank(
        self,
        interaction: discord.Interaction,
        member: discord.Member | None = None,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        if member is None:
            if not isinstance(interaction.user, discord.Member):
                await interaction.response.send_message(
                    "Nao consegui identificar voce neste servidor.",
                    ephemeral=True,
                )
                return
            member = interaction.user

        await interaction.response.defer(thinking=True)

        try:
            progress = await self._records().require(guild.id, member.id)
            server_rank = await self._aggregator().get_server_rank(member.id, guild.id)
            global_rank = await self._aggregator().get_global_rank(member.id)
        except StorageError as exc:
            LOGGER.error(
                "Falha ao consultar rank.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            await interaction.followup.send(
                "Ranking indisponivel agora. Tente novamente em instantes.",
                ephemeral=True,
            )
            return
        except NotFoundError:
            await interaction.followup.send(
                f"{member.mention} ainda nao possui XP registrado nesta guilda.",
                ephemeral=True,
            )
            return

        embed = self._build_rank_embed(
            member=member,
            level=progress.level,
            xp=progress.xp,
            server_rank=server_rank,
            global_rank=global_rank,
        )
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="leaderboard", description="Mostra o ranking de XP do servidor ou global.")
    @app_commands.guild_only()
    @app_commands.describe(
        escopo="Ranking do servidor ou global.",
        pagina="Pagina do ranking (comeca em 1).",
    )
    @app_commands.choices(escopo=LEADERBOARD_SCOPES)
    async def leaderboard(
        self,
        interaction: discord.Interaction,
        escopo: app_commands.Choice[str] | None = None,
        pagina: app_commands.Range[int, 1, 1000] = 1,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        scope = escopo.value if escopo is not None else "server"
        page = int(pagina)
        await interaction.response.defer(thinking=True)

        try:
            if scope == "global":
                entries = await self._aggregator().get_global_leaderboard(
                    page,
                    self.LEADERBOARD_PAGE_SIZE,
                )
                ranked_users = await self._aggregator().count_ranked_users()
                title = f"Leaderboard global de XP ({self._format_int(ranked_users)} usuarios)"
            else:
                ranked = await self._aggregator().get_server_leaderboard(guild.id)
                start = (page - 1) * self.LEADERBOARD_PAGE_SIZE
                entries = ranked[start:start + self.LEADERBOARD_PAGE_SIZE]
                title = f"Leaderboard de XP - {guild.name}"
        except LeaderboardUnavailable as exc:
            LOGGER.error(
                "Falha ao consultar leaderboard.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            await interaction.followup.send(
                "Leaderboard indisponivel agora. Tente novamente em instantes.",
                ephemeral=True,
            )
            return

        if not entries:
            await interaction.followup.send(
                "Nenhum usuario com XP registrado nesta pagina.",
                ephemeral=True,
            )
            return

        embed = await self._build_leaderboard_embed(
            title=title,
            guild=guild,
            entries=entries,
            page=page,
        )
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="setxp", description="Define o XP (e opcionalmente o nivel) de um membro.")
    @app_commands.guild_only()
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(
        member="Membro que tera o XP alterado.",
        amount="XP dentro do nivel (valores negativos descem niveis).",
        level="Nivel a definir antes de aplicar o XP.",
    )
    async def setxp(
        self,
        interaction: discord.Interaction,
        member: discord.Member,
        amount: int,
        level: app_commands.Range[int, 0, 10_000] | None = None,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        await interaction.response.defer(thinking=True)
        explicit_level = int(level) if level is not None else None
        update = await self._engine().process(
            ProgressionEvent.admin_set(guild.id, member.id, int(amount), explicit_level)
        )
        if update is None:
            await interaction.followup.send(
                "Falha ao salvar o XP agora. Tente novamente em instantes.",
                ephemeral=True,
            )
            return

        level_text = f"nivel `{explicit_level}`" if explicit_level is not None else "nivel inalterado"
        await interaction.followup.send(
            (
                f"XP `{int(amount)}` e {level_text} aplicados para {member.mention}. "
                f"Resultado: nivel `{update.result.level}`, XP `{update.result.xp}`."
            ),
            allowed_mentions=discord.AllowedMentions.none(),
        )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(LevelingCog(bot))
