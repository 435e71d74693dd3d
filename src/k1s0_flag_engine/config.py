"""設定ファイル読み込み（pydantic + YAML）"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .bus import DEFAULT_INVALIDATION_TOPIC
from .exceptions import ConfigError, ConfigErrorCodes
from .guard import DEFAULT_PLATFORM_ONLY_KEYS
from .models import Environment


class CacheSection(BaseModel):
    """キャッシュ設定。"""

    ttl_seconds: float = Field(default=30.0, gt=0)


class TimeoutsSection(BaseModel):
    """ポート呼び出しのタイムアウト設定。"""

    cache_seconds: float = Field(default=0.5, gt=0)
    store_seconds: float = Field(default=2.0, gt=0)


class ResolverSection(BaseModel):
    """オーバーライド解決の設定。"""

    fail_open_overrides: bool = False


class InvalidationSection(BaseModel):
    """キャッシュ無効化通知の設定。brokers が空ならプロセス内バスを使う。"""

    topic: str = DEFAULT_INVALIDATION_TOPIC
    brokers: list[str] = Field(default_factory=list)


class ExposureSection(BaseModel):
    """エクスポージャーシンクの設定。endpoint が無ければログに出力する。"""

    enabled: bool = True
    endpoint: str | None = None
    api_key: str | None = None
    batch_size: int = Field(default=1, ge=1)
    timeout_seconds: float = Field(default=5.0, gt=0)


class LogSection(BaseModel):
    """ログ設定。"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "json"


class FlagEngineConfig(BaseModel):
    """flag_engine の設定ルート。"""

    environment: Environment = Environment.DEV
    platform_only_keys: list[str] = Field(
        default_factory=lambda: sorted(DEFAULT_PLATFORM_ONLY_KEYS)
    )
    cache: CacheSection = Field(default_factory=CacheSection)
    timeouts: TimeoutsSection = Field(default_factory=TimeoutsSection)
    resolver: ResolverSection = Field(default_factory=ResolverSection)
    invalidation: InvalidationSection = Field(default_factory=InvalidationSection)
    exposure: ExposureSection = Field(default_factory=ExposureSection)
    log: LogSection = Field(default_factory=LogSection)

    @field_validator("platform_only_keys", mode="before")
    @classmethod
    def _split_keys(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [k.strip() for k in value.split(",") if k.strip()]
        return value


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """base と override をディープマージして新しい辞書を返す。

    override の値が優先される。リストは置換（マージしない）。
    """
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            code=ConfigErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load_config(base_path: Path, env_path: Path | None = None) -> FlagEngineConfig:
    """設定ファイルを読み込んで FlagEngineConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    environment が未指定なら環境変数 APP_ENV を使う。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    if not data.get("environment") and os.environ.get("APP_ENV"):
        data["environment"] = os.environ["APP_ENV"]
    try:
        return FlagEngineConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(
            code=ConfigErrorCodes.VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
