from collections import OrderedDict, deque
from dataclasses import dataclass

from progression import UserProgress

DEFAULT_CACHE_SIZE = 50_000
HISTORY_SIZE = 5


class ProgressCache:
    """Read-through cache of the last known record per (guild_id, user_id).

    Entries never expire; writes go through the same process and refresh them.
    The oldest entry is evicted once ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries deve ser maior que zero.")
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[int, int], UserProgress] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[int, int]) -> bool:
        return key in self._entries

    def get(self, guild_id: int, user_id: int) -> UserProgress | None:
        key = (guild_id, user_id)
        progress = self._entries.get(key)
        if progress is not None:
            self._entries.move_to_end(key)
        return progress

    def put(self, progress: UserProgress) -> None:
        key = (progress.guild_id, progress.user_id)
        self._entries[key] = progress
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, guild_id: int, user_id: int) -> None:
        self._entries.pop((guild_id, user_id), None)

    def clear(self) -> None:
        self._entries.clear()


@dataclass(frozen=True)
class HistoryEntry:
    channel_id: int
    content: str


class MessageHistory:
    def __init__(self, size: int = HISTORY_SIZE, max_users: int = DEFAULT_CACHE_SIZE) -> None:
        if size <= 0:
            raise ValueError("size deve ser maior que zero.")
        self.size = size
        self.max_users = max_users
        self._history: OrderedDict[int, deque[HistoryEntry]] = OrderedDict()

    def record(self, user_id: int, channel_id: int, content: str) -> None:
        entries = self._history.get(user_id)
        if entries is None:
            entries = deque(maxlen=self.size)
            self._history[user_id] = entries
        self._history.move_to_end(user_id)
        entries.append(HistoryEntry(channel_id=channel_id, content=content))
        while len(self._history) > self.max_users:
            self._history.popitem(last=False)

    def recent(self, user_id: int) -> list[HistoryEntry]:
        return list(self._history.get(user_id, ()))

    def is_repeated(
        self,
        user_id: int,
        channel_id: int,
        content: str,
        *,
        threshold: int = 3,
    ) -> bool:
        """True when the last ``threshold`` messages in the channel all match ``content``."""
        normalized = content.strip().casefold()
        if not normalized:
            return False

        in_channel = [entry for entry in self.recent(user_id) if entry.channel_id == channel_id]
        if len(in_channel) < threshold:
            return False
        return all(
            entry.content.strip().casefold() == normalized
            for entry in in_channel[-threshold:]
        )

    def clear(self) -> None:
        self._history.clear()
