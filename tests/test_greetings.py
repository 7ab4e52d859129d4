from types import SimpleNamespace

import pytest

from cogs.welcome import WelcomeCog
from errors import ValidationError
from greetings import (
    DEFAULT_WELCOME_MESSAGE,
    MAX_RENDERED_LENGTH,
    MAX_WELCOME_MESSAGE_LENGTH,
    GreetingContext,
    render_greeting,
)

CONTEXT = GreetingContext(
    user_id=42,
    username="alice",
    display_name="Alice",
    avatar_url="https://cdn/a.png",
    server="Estrela HQ",
    member_count=12,
    channels={"regras": 500},
    roles={"Novato": 600},
)


class TestRenderGreeting:
    def test_user_and_server_placeholders(self):
        rendered = render_greeting("Oi {user} ({username}/{user_name}) em {server}, membro {member_count}", CONTEXT)

        assert rendered == "Oi <@42> (alice/Alice) em Estrela HQ, membro 12"

    def test_channel_and_role_mentions(self):
        rendered = render_greeting("Leia {#regras} e fale com {&Novato}", CONTEXT)

        assert rendered == "Leia <#500> e fale com <@&600>"

    def test_unknown_channel_and_role_fall_back_to_names(self):
        assert render_greeting("{#geral} {&Admin}", CONTEXT) == "#geral @Admin"

    def test_unknown_placeholders_are_kept(self):
        assert render_greeting("{user} {nada}", CONTEXT) == "<@42> {nada}"

    def test_escaped_newline(self):
        assert render_greeting("linha 1\\nlinha 2", CONTEXT) == "linha 1\nlinha 2"

    @pytest.mark.parametrize("template", [None, "", "   "])
    def test_empty_template_uses_default(self, template):
        assert render_greeting(template, CONTEXT) == render_greeting(DEFAULT_WELCOME_MESSAGE, CONTEXT)

    def test_output_is_capped(self):
        assert len(render_greeting("{avatar}" * 200, CONTEXT)) == MAX_RENDERED_LENGTH


@pytest.mark.asyncio
class TestGreetingSettingsStorage:
    async def test_defaults(self, store):
        settings = await store.get_greeting_settings(1)

        assert settings == {
            "guild_id": 1,
            "welcome_enabled": False,
            "welcome_channel_id": None,
            "welcome_message": DEFAULT_WELCOME_MESSAGE,
            "join_role_id": None,
        }

    async def test_partial_updates_accumulate(self, store):
        await store.update_greeting_settings(1, welcome_enabled=True, welcome_channel_id=500)
        settings = await store.update_greeting_settings(1, join_role_id=600)

        assert settings["welcome_enabled"] is True
        assert settings["welcome_channel_id"] == 500
        assert settings["join_role_id"] == 600
        assert (await store.get_greeting_settings(2))["welcome_enabled"] is False

    async def test_clearing_channel(self, store):
        await store.update_greeting_settings(1, welcome_channel_id=500)
        settings = await store.update_greeting_settings(1, welcome_channel_id=None)

        assert settings["welcome_channel_id"] is None

    async def test_message_is_stripped_and_truncated(self, store):
        settings = await store.update_greeting_settings(1, welcome_message="  " + "a" * 2000)

        assert settings["welcome_message"] == "a" * MAX_WELCOME_MESSAGE_LENGTH

    async def test_rejects_unknown_field(self, store):
        with pytest.raises(ValidationError):
            await store.update_greeting_settings(1, farewell_message="tchau")

    async def test_rejects_empty_message(self, store):
        with pytest.raises(ValidationError):
            await store.update_greeting_settings(1, welcome_message="   ")


def _member(*, bot: bool = False):
    guild = SimpleNamespace(
        id=1,
        name="Estrela HQ",
        member_count=None,
        members=[object(), object()],
        channels=[SimpleNamespace(name="regras", id=500)],
        roles=[SimpleNamespace(name="Novato", id=600)],
    )
    return SimpleNamespace(
        id=42,
        bot=bot,
        name="alice",
        display_name="Alice",
        display_avatar=SimpleNamespace(url="https://cdn/a.png"),
        guild=guild,
    )


@pytest.mark.asyncio
class TestWelcomeCog:
    async def test_greeting_context_from_member(self):
        context = WelcomeCog.greeting_context(_member())

        assert context.member_count == 2
        assert context.channels == {"regras": 500}
        assert render_greeting("{&Novato} {user}", context) == "<@&600> <@42>"

    async def test_settings_are_cached_after_update(self, store):
        cog = WelcomeCog(SimpleNamespace(level_store=store))
        await cog._update_settings(1, welcome_enabled=True)

        store._greetings.clear()

        assert (await cog._get_settings(1))["welcome_enabled"] is True
        cog._invalidate_settings_cache(1)
        assert (await cog._get_settings(1))["welcome_enabled"] is False

    async def test_join_is_ignored_for_bots_and_disabled_guilds(self, store):
        cog = WelcomeCog(SimpleNamespace(level_store=store))
        sent = []

        async def record(member, settings):
            sent.append(member.id)

        cog._send_welcome_message = record

        await cog.on_member_join(_member(bot=True))
        await cog.on_member_join(_member())
        assert sent == []

        await store.update_greeting_settings(1, welcome_enabled=True)
        cog._invalidate_settings_cache(1)
        await cog.on_member_join(_member())
        assert sent == [42]
