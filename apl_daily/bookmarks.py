from __future__ import annotations

from typing import List

from apl_daily.store import StateStore, StoreKeys


class BookmarkRegistry:
    def __init__(self, store: StateStore, keys: StoreKeys) -> None:
        self.store = store
        self.keys = keys

    async def add(self, user_id: int, pattern_id: int) -> None:
        await self.store.add_to_set(self.keys.bookmarks(user_id), str(pattern_id))

    async def remove(self, user_id: int, pattern_id: int) -> None:
        await self.store.remove_from_set(self.keys.bookmarks(user_id), str(pattern_id))

    async def is_bookmarked(self, user_id: int, pattern_id: int) -> bool:
        return await self.store.is_set_member(self.keys.bookmarks(user_id), str(pattern_id))

    async def list(self, user_id: int) -> List[int]:
        members = await self.store.set_members(self.keys.bookmarks(user_id))
        ids = []
        for member in members:
            try:
                ids.append(int(member))
            except ValueError:
                continue
        return sorted(ids)
