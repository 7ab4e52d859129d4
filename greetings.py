import re
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_WELCOME_MESSAGE = "Bem-vindo {user} ao {server}!"
MAX_WELCOME_MESSAGE_LENGTH = 1500
MAX_RENDERED_LENGTH = 2000

PLACEHOLDER_RE = re.compile(r"\{([#&]?)(\w+)\}")


@dataclass(frozen=True)
class GreetingContext:
    """Values a welcome template can reference; built from the joining member."""

    user_id: int
    username: str
    display_name: str
    avatar_url: str
    server: str
    member_count: int = 0
    channels: Mapping[str, int] = field(default_factory=dict)
    roles: Mapping[str, int] = field(default_factory=dict)


def render_greeting(template: str | None, context: GreetingContext) -> str:
    """Fill ``{user}``, ``{username}``, ``{avatar}``, ``{server}``, ``{#canal}`` and ``{&cargo}``.

    Unknown placeholders are left as written. A literal ``\\n`` becomes a line break.
    """
    values = {
        "user": f"<@{context.user_id}>",
        "user_mention": f"<@{context.user_id}>",
        "username": context.username,
        "user_name": context.display_name,
        "user_id": str(context.user_id),
        "avatar": context.avatar_url,
        "server": context.server,
        "guild_name": context.server,
        "member_count": str(context.member_count),
    }

    def replace(match: re.Match[str]) -> str:
        prefix, name = match.group(1), match.group(2)
        if prefix == "#":
            channel_id = context.channels.get(name)
            return f"<#{channel_id}>" if channel_id else f"#{name}"
        if prefix == "&":
            role_id = context.roles.get(name)
            return f"<@&{role_id}>" if role_id else f"@{name}"
        return values.get(name, match.group(0))

    rendered = PLACEHOLDER_RE.sub(replace, template or "").replace("\\n", "\n").strip()
    if not rendered:
        rendered = PLACEHOLDER_RE.sub(replace, DEFAULT_WELCOME_MESSAGE)
    return rendered[:MAX_RENDERED_LENGTH]
