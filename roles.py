import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import discord

LOGGER = logging.getLogger("estrela.roles")


@dataclass(frozen=True)
class RoleSyncRequest:
    """Everything role logic needs; built once per progression event and replayed as is."""

    guild_id: int
    user_id: int
    level: int
    leveled_up: bool
    leveled_down: bool


def pick_level_role(mappings: Mapping[int, int], level: int) -> int | None:
    """Role of the highest level threshold that does not exceed ``level``."""
    best_threshold: int | None = None
    for threshold in mappings:
        if threshold <= level and (best_threshold is None or threshold > best_threshold):
            best_threshold = threshold
    if best_threshold is None:
        return None
    return mappings[best_threshold]


def plan_role_changes(
    mappings: Mapping[int, int],
    level: int,
    held_role_ids: set[int],
) -> tuple[int | None, set[int]]:
    """Return ``(role_to_add, roles_to_remove)`` for a member holding ``held_role_ids``."""
    target = pick_level_role(mappings, level)
    to_remove = {role_id for role_id in mappings.values() if role_id != target} & held_role_ids
    to_add = target if target is not None and target not in held_role_ids else None
    return to_add, to_remove


class DiscordRoleSynchronizer:
    def __init__(self, bot: discord.Client, backend: Any, *, fetch_timeout: float = 5.0) -> None:
        self.bot = bot
        self.backend = backend
        self.fetch_timeout = fetch_timeout

    async def _fetch_member(self, guild: discord.Guild, user_id: int) -> discord.Member | None:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await asyncio.wait_for(guild.fetch_member(user_id), timeout=self.fetch_timeout)
        except (asyncio.TimeoutError, discord.NotFound, discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Nao foi possivel buscar o membro %s na guild %s.",
                user_id,
                guild.id,
            )
            return None

    async def sync(self, request: RoleSyncRequest) -> None:
        guild = self.bot.get_guild(request.guild_id)
        if guild is None:
            return

        settings = await self.backend.get_level_settings(request.guild_id)
        mappings: dict[int, int] = settings.get("role_mappings") or {}
        if not mappings:
            return

        member = await self._fetch_member(guild, request.user_id)
        if member is None:
            return

        held = {role.id for role in member.roles}
        to_add, to_remove = plan_role_changes(mappings, request.level, held)
        add_role = guild.get_role(to_add) if to_add is not None else None
        if to_add is not None and add_role is None:
            LOGGER.error("Cargo %s nao encontrado na guild %s.", to_add, guild.id)

        remove_roles = [role for role in member.roles if role.id in to_remove]
        reason = f"Sincronizacao de cargo por nivel ({request.level})"
        try:
            if remove_roles:
                await member.remove_roles(*remove_roles, reason=reason)
            if add_role is not None:
                await member.add_roles(add_role, reason=reason)
        except (discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Falha ao atualizar cargos. guild=%s usuario=%s level=%s",
                guild.id,
                request.user_id,
                request.level,
            )
            return

        if add_role is not None and (request.leveled_up or request.leveled_down):
            await self._announce(guild, settings, request, add_role)

    async def _announce(
        self,
        guild: discord.Guild,
        settings: dict[str, Any],
        request: RoleSyncRequest,
        role: discord.Role,
    ) -> None:
        channel_id = settings.get("levelup_channel_id")
        if not channel_id:
            return
        channel = guild.get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return

        direction = "subiu" if request.leveled_up else "desceu"
        try:
            await channel.send(
                (
                    f"<@{request.user_id}> {direction} para o nivel `{request.level}` "
                    f"e recebeu o cargo `{role.name}`."
                ),
                allowed_mentions=discord.AllowedMentions(users=True, roles=False, everyone=False),
            )
        except (discord.Forbidden, discord.HTTPException):
            LOGGER.warning(
                "Falha ao anunciar cargo de nivel. guild=%s canal=%s usuario=%s",
                guild.id,
                channel_id,
                request.user_id,
            )
