import logging
import time
from typing import Any

import discord
from discord import app_commands
from discord.ext import commands

from errors import StorageError, ValidationError
from greetings import DEFAULT_WELCOME_MESSAGE, GreetingContext, render_greeting

LOGGER = logging.getLogger("estrela.cogs.welcome")


class WelcomeCog(commands.Cog):
    SETTINGS_CACHE_TTL = 30.0

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self._settings_cache: dict[int, tuple[float, dict[str, Any]]] = {}

    def _level_store(self):
        level_store = getattr(self.bot, "level_store", None)
        if level_store is None:
            raise RuntimeError("LevelStore nao inicializado.")
        return level_store

    def _invalidate_settings_cache(self, guild_id: int) -> None:
        self._settings_cache.pop(guild_id, None)

    async def _get_settings(self, guild_id: int) -> dict[str, Any]:
        now = time.monotonic()
        cached = self._settings_cache.get(guild_id)
        if cached and (now - cached[0]) <= self.SETTINGS_CACHE_TTL:
            return cached[1]

        settings = await self._level_store().get_greeting_settings(guild_id)
        self._settings_cache[guild_id] = (now, settings)
        return settings

    async def _update_settings(self, guild_id: int, **updates: Any) -> dict[str, Any]:
        settings = await self._level_store().update_greeting_settings(guild_id, **updates)
        self._settings_cache[guild_id] = (time.monotonic(), settings)
        return settings

    @staticmethod
    def _bool_status(value: bool) -> str:
        return "Ligado" if value else "Desligado"

    @staticmethod
    def _truncate(value: str, limit: int) -> str:
        if len(value) <= limit:
            return value
        return value[: max(1, limit - 3)] + "..."

    @staticmethod
    def greeting_context(member: discord.Member) -> GreetingContext:
        guild = member.guild
        return GreetingContext(
            user_id=member.id,
            username=member.name,
            display_name=member.display_name,
            avatar_url=member.display_avatar.url,
            server=guild.name,
            member_count=guild.member_count or len(guild.members),
            channels={channel.name: channel.id for channel in guild.channels},
            roles={role.name: role.id for role in guild.roles},
        )

    @staticmethod
    def _can_assign_role(guild: discord.Guild, role: discord.Role) -> tuple[bool, str | None]:
        if role.is_default():
            return False, "Nao use @everyone como cargo de entrada."
        if role.managed:
            return False, "Esse cargo e gerenciado por integracao e nao pode ser atribuido manualmente."

        me = guild.me
        if me is None:
            return False, "Nao consegui validar a hierarquia de cargos do bot."
        if role >= me.top_role:
            return False, "Esse cargo esta acima (ou igual) ao meu maior cargo."
        return True, None

    async def _resolve_welcome_channel(
        self,
        guild: discord.Guild,
        settings: dict[str, Any],
    ) -> discord.TextChannel | None:
        channel_id = settings.get("welcome_channel_id")
        if channel_id:
            channel = guild.get_channel(int(channel_id))
            if not isinstance(channel, discord.TextChannel):
                try:
                    fetched = await guild.fetch_channel(int(channel_id))
                except (discord.Forbidden, discord.NotFound, discord.HTTPException):
                    LOGGER.warning(
                        "Canal de boas-vindas nao encontrado. guild=%s canal=%s",
                        guild.id,
                        channel_id,
                    )
                    return None
                if not isinstance(fetched, discord.TextChannel):
                    return None
                channel = fetched
            return channel

        if isinstance(guild.system_channel, discord.TextChannel):
            return guild.system_channel
        return None

    async def _apply_join_role(self, member: discord.Member, settings: dict[str, Any]) -> None:
        role_id = settings.get("join_role_id")
        if not role_id:
            return

        guild = member.guild
        role = guild.get_role(int(role_id))
        if role is None or role in member.roles:
            return
        allowed, reason = self._can_assign_role(guild, role)
        if not allowed:
            LOGGER.warning(
                "Cargo de entrada ignorado. guild=%s role=%s motivo=%s",
                guild.id,
                role.id,
                reason,
            )
            return

        try:
            await member.add_roles(role, reason="Boas-vindas: cargo de entrada")
        except (discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Falha ao adicionar cargo de entrada. guild=%s user=%s",
                guild.id,
                member.id,
            )

    async def _send_welcome_message(self, member: discord.Member, settings: dict[str, Any]) -> None:
        guild = member.guild
        channel = await self._resolve_welcome_channel(guild, settings)
        if channel is None:
            return

        content = render_greeting(settings.get("welcome_message"), self.greeting_context(member))
        try:
            await channel.send(
                content,
                allowed_mentions=discord.AllowedMentions(
                    everyone=False,
                    roles=False,
                    users=[member],
                    replied_user=False,
                ),
            )
        except (discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Falha ao enviar mensagem de boas-vindas no canal. guild=%s canal=%s",
                guild.id,
                channel.id,
            )

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot:
            return

        try:
            settings = await self._get_settings(member.guild.id)
        except StorageError as exc:
            LOGGER.error(
                "Falha ao carregar configuracao de boas-vindas.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return

        await self._apply_join_role(member, settings)
        if settings.get("welcome_enabled"):
            await self._send_welcome_message(member, settings)

    def _settings_embed(self, guild: discord.Guild, settings: dict[str, Any]) -> discord.Embed:
        channel_id = settings.get("welcome_channel_id")
        role_id = settings.get("join_role_id")
        embed = discord.Embed(
            title=f"Boas-vindas: {guild.name}",
            color=discord.Color.blurple(),
        )
        embed.add_field(
            name="Status",
            value=(
                f"Mensagem: `{self._bool_status(bool(settings.get('welcome_enabled')))}`\n"
                f"Canal: {f'<#{channel_id}>' if channel_id else '`system_channel` (fallback)'}\n"
                f"Cargo de entrada: {f'<@&{role_id}>' if role_id else 'Nenhum'}"
            ),
            inline=False,
        )
        embed.add_field(
            name="Mensagem no canal",
            value=f"```{self._truncate(str(settings.get('welcome_message') or ''), 1000)}```",
            inline=False,
        )
        embed.set_footer(
            text="Placeholders: {user}, {username}, {user_name}, {avatar}, {server}, {member_count}, {#canal}, {&cargo}"
        )
        return embed

    @app_commands.command(name="welcomesettings", description="Mostra as configuracoes de boas-vindas.")
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    async def welcomesettings(self, interaction: discord.Interaction) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        try:
            settings = await self._get_settings(guild.id)
        except StorageError as exc:
            LOGGER.error(
                "Falha ao ler configuracoes de boas-vindas.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            await interaction.response.send_message(
                "Falha ao ler configuracoes no banco de dados.",
                ephemeral=True,
            )
            return

        await interaction.response.send_message(embed=self._settings_embed(guild, settings), ephemeral=True)

    @app_commands.command(name="setwelcome", description="Configura mensagem, canal e cargo de entrada.")
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(
        enabled="Liga/desliga a mensagem de boas-vindas.",
        channel="Canal de boas-vindas.",
        join_role="Cargo entregue a quem entrar no servidor.",
        message="Template da mensagem no canal.",
        clear_channel="Limpar canal configurado.",
        clear_join_role="Limpar cargo de entrada.",
        reset_message="Voltar a mensagem para o padrao.",
    )
    async def setwelcome(
        self,
        interaction: discord.Interaction,
        enabled: bool | None = None,
        channel: discord.TextChannel | None = None,
        join_role: discord.Role | None = None,
        message: str | None = None,
        clear_channel: bool = False,
        clear_join_role: bool = False,
        reset_message: bool = False,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        if clear_channel and channel is not None:
            await interaction.response.send_message(
                "Nao use `channel` junto com `clear_channel`.",
                ephemeral=True,
            )
            return
        if clear_join_role and join_role is not None:
            await interaction.response.send_message(
                "Nao use `join_role` junto com `clear_join_role`.",
                ephemeral=True,
            )
            return
        if reset_message and message is not None:
            await interaction.response.send_message(
                "Nao use `message` junto com `reset_message`.",
                ephemeral=True,
            )
            return

        updates: dict[str, Any] = {}
        if enabled is not None:
            updates["welcome_enabled"] = enabled

        if clear_channel:
            updates["welcome_channel_id"] = None
        elif channel is not None:
            updates["welcome_channel_id"] = channel.id

        if clear_join_role:
            updates["join_role_id"] = None
        elif join_role is not None:
            allowed, reason = self._can_assign_role(guild, join_role)
            if not allowed:
                await interaction.response.send_message(reason or "Cargo invalido.", ephemeral=True)
                return
            updates["join_role_id"] = join_role.id

        if reset_message:
            updates["welcome_message"] = DEFAULT_WELCOME_MESSAGE
        elif message is not None:
            updates["welcome_message"] = message

        if not updates:
            await interaction.response.send_message(
                "Informe pelo menos uma configuracao para atualizar.",
                ephemeral=True,
            )
            return

        try:
            settings = await self._update_settings(guild.id, **updates)
        except ValidationError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        except StorageError as exc:
            self._invalidate_settings_cache(guild.id)
            LOGGER.error(
                "Falha ao atualizar configuracoes de boas-vindas.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            await interaction.response.send_message(
                "Falha ao salvar configuracoes no banco de dados.",
                ephemeral=True,
            )
            return

        await interaction.response.send_message(
            content="Boas-vindas atualizadas.",
            embed=self._settings_embed(guild, settings),
            ephemeral=True,
        )

    @app_commands.command(name="welcometest", description="Envia um preview da mensagem de boas-vindas aqui.")
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(member="Membro para simular a mensagem. Padrao: voce.")
    async def welcometest(
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

        target = member
        if target is None:
            if not isinstance(interaction.user, discord.Member):
                await interaction.response.send_message(
                    "Nao consegui identificar um membro para o preview.",
                    ephemeral=True,
                )
                return
            target = interaction.user

        channel = interaction.channel
        if not isinstance(channel, discord.TextChannel):
            await interaction.response.send_message(
                "Use este comando em um canal de texto do servidor.",
                ephemeral=True,
            )
            return

        try:
            settings = await self._get_settings(guild.id)
        except StorageError as exc:
            LOGGER.error(
                "Falha ao carregar configuracao de boas-vindas no preview.",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            await interaction.response.send_message(
                "Falha ao carregar configuracao de boas-vindas.",
                ephemeral=True,
            )
            return

        content = render_greeting(settings.get("welcome_message"), self.greeting_context(target))
        await interaction.response.send_message(
            "Preview enviado neste canal (sem ping real).",
            ephemeral=True,
        )
        try:
            await channel.send(content, allowed_mentions=discord.AllowedMentions.none())
        except (discord.Forbidden, discord.HTTPException):
            await interaction.followup.send(
                "Nao consegui enviar o preview neste canal.",
                ephemeral=True,
            )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(WelcomeCog(bot))
