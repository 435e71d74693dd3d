"""キャッシュクライアント抽象基底クラスとインメモリ実装"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from urllib.parse import quote

from .models import Environment, ScopeType


class CacheClient(ABC):
    """キャッシュクライアント抽象基底クラス。複数インスタンスで共有されうる。"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """キーに対応する値を取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """キーと値を保存する。ttl 指定時は有効期限付き（秒）。"""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """キーを削除する。削除できたら True。"""
        ...


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: str, ttl: float | None) -> None:
        self.value = value
        self.expires_at: float | None = (
            time.monotonic() + ttl if ttl is not None else None
        )

    def is_expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at


class InMemoryCacheClient(CacheClient):
    """プロセスローカルのインメモリキャッシュクライアント。"""

    def __init__(self) -> None:
        self._store: dict[str, _CacheEntry] = {}

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._store[key]
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._store[key] = _CacheEntry(value, ttl)

    async def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def keys(self) -> list[str]:
        return [k for k, entry in self._store.items() if not entry.is_expired()]


def _segment(value: str) -> str:
    # 区切り文字 ":" と "%" をエスケープし、異なる識別子が同じキーにならないようにする
    return quote(str(value), safe="")


def flag_cache_key(env: Environment | str, key: str) -> str:
    return f"flags:{_segment(env)}:{_segment(key)}"


def override_cache_key(
    env: Environment | str, key: str, scope_type: ScopeType | str, scope_id: str
) -> str:
    return (
        f"flags:override:{_segment(env)}:{_segment(key)}"
        f":{_segment(scope_type)}:{_segment(scope_id)}"
    )
