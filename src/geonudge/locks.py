import asyncio


class UserLocks:
    """每个用户一把 asyncio.Lock，按需创建；同一用户的淘汰与冷却修改串行执行，不同用户互不影响"""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def get(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def __call__(self, user_id: int) -> asyncio.Lock:
        return self.get(user_id)

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["UserLocks"]
