"""중복 시그널링 메시지 방지 집합."""
from collections import OrderedDict
from typing import Hashable

from .config import client_config


class ReplayGuard:
    """최근 처리한 키를 기억하는 크기 제한 LRU 집합.

    중복 offer(지문 기준)와 중복 answer(송신자 기준)를 거르는 데 사용하며,
    룸 세션 하나의 수명 동안만 유지됩니다.

    Examples:
        >>> guard = ReplayGuard(capacity=2)
        >>> guard.check_and_add("a")
        True
        >>> guard.check_and_add("a")
        False
    """

    def __init__(self, capacity: int = None):
        self.capacity = capacity or client_config.REPLAY_GUARD_CAPACITY
        self._seen: "OrderedDict[Hashable, None]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def check_and_add(self, key: Hashable) -> bool:
        """처음 보는 키면 기록하고 True, 이미 본 키면 False를 반환합니다."""
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = None
        if len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def discard(self, key: Hashable) -> None:
        self._seen.pop(key, None)

    def clear(self) -> None:
        self._seen.clear()
