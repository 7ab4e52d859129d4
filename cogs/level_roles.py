import logging
from typing import Any

import discord
from discord import app_commands
from discord.ext import commands

from errors import StorageError

LOGGER = logging.getLogger("estrela.cogs.level_roles")


class LevelRolesCog(commands.Cog):
    levelrole = app_commands.Group(
        name="levelrole",
        description="Configura cargos entregues por nivel.",
        guild_only=True,
        default_permissions=discord.Permissions(manage_roles=True),
    )

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    def _level_store(self):
        level_store = getattr(self.bot, "level_store", None)
        if level_store is None:
            raise RuntimeError("LevelStore nao inicializado.")
        return level_store

    @staticmethod
    def _can_assign_role(guild: discord.Guild, role: discord.Role) -> tuple[bool, str | None]:
        me = guild.me
        if me is None:
            return False, "Nao consegui validar minhas permissoes neste servidor."
        if role.is_default() or role.managed:
            return False, "Este cargo nao pode ser entregue por nivel."
        if role >= me.top_role:
            return False, "Este cargo esta acima do meu maior cargo."
        return True, None

    @staticmethod
    def _format_mappings(guild: discord.Guild, settings: dict[str, Any]) -> str:
        mappings: dict[int, int] = settings.get("role_mappings") or {}
        if not mappings:
            return "Nenhum cargo configurado."
        lines = []
        for level, role_id in sorted(mappings.items()):
            role = guild.get_role(role_id)
            label = role.mention if role is not None else f"`{role_id}` (removido)"
            lines.append(f"Nivel `{level}` -> {label}")
        return "\n".join(lines)

    def _settings_embed(self, guild: discord.Guild, settings: dict[str, Any]) -> discord.Embed:
        channel_id = settings.get("levelup_channel_id")
        embed = discord.Embed(
            title=f"Cargos por nivel: {guild.name}",
            description=self._format_mappings(guild, settings),
            color=discord.Color.blurple(),
        )
        embed.add_field(
            name="Canal de anuncios",
            value=f"<#{channel_id}>" if channel_id else "Nao configurado",
            inline=False,
        )
        return embed

    async def _reply_storage_failure(self, interaction: discord.Interaction, exc: Exception) -> None:
        LOGGER.error(
            "Falha ao acessar configuracao de cargos.",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        await interaction.response.send_message(
            "Falha ao acessar a configuracao agora. Tente novamente em instantes.",
            ephemeral=True,
        )

    @levelrole.command(name="add", description="Entrega um cargo a partir de um nivel.")
    @app_commands.describe(level="Nivel minimo para receber o cargo.", role="Cargo a entregar.")
    async def levelrole_add(
        self,
        interaction: discord.Interaction,
        level: app_commands.Range[int, 0, 10_000],
        role: discord.Role,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        allowed, reason = self._can_assign_role(guild, role)
        if not allowed:
            await interaction.response.send_message(reason, ephemeral=True)
            return

        try:
            settings = await self._level_store().set_level_role(guild.id, int(level), role.id)
        except StorageError as exc:
            await self._reply_storage_failure(interaction, exc)
            return

        LOGGER.info("Cargo de nivel configurado. guild=%s level=%s role=%s", guild.id, level, role.id)
        await interaction.response.send_message(
            embed=self._settings_embed(guild, settings),
            ephemeral=True,
        )

    @levelrole.command(name="remove", description="Remove o cargo configurado para um nivel.")
    @app_commands.describe(level="Nivel do cargo a remover.")
    async def levelrole_remove(
        self,
        interaction: discord.Interaction,
        level: app_commands.Range[int, 0, 10_000],
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        try:
            removed = await self._level_store().remove_level_role(guild.id, int(level))
        except StorageError as exc:
            await self._reply_storage_failure(interaction, exc)
            return

        message = (
            f"Cargo do nivel `{level}` removido."
            if removed
            else f"Nenhum cargo configurado para o nivel `{level}`."
        )
        await interaction.response.send_message(message, ephemeral=True)

    @levelrole.command(name="list", description="Lista os cargos configurados por nivel.")
    async def levelrole_list(self, interaction: discord.Interaction) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        try:
            settings = await self._level_store().get_level_settings(guild.id)
        except StorageError as exc:
            await self._reply_storage_failure(interaction, exc)
            return

        await interaction.response.send_message(
            embed=self._settings_embed(guild, settings),
            ephemeral=True,
        )

    @app_commands.command(name="levelchannel", description="Define o canal de anuncios de nivel.")
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(channel="Canal dos anuncios. Se vazio, desativa os anuncios.")
    async def levelchannel(
        self,
        interaction: discord.Interaction,
        channel: discord.TextChannel | None = None,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Este comando so funciona em servidor.",
                ephemeral=True,
            )
            return

        try:
            settings = await self._level_store().set_levelup_channel(
                guild.id,
                channel.id if channel is not None else None,
            )
        except StorageError as exc:
            await self._reply_storage_failure(interaction, exc)
            return

        await interaction.response.send_message(
            embed=self._settings_embed(guild, settings),
            ephemeral=True,
        )


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(LevelRolesCog(bot))
