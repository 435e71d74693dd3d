"""flag_engine ライブラリの例外型定義"""

from __future__ import annotations


class FlagEngineError(Exception):
    """flag_engine ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagEngineErrorCodes:
    """FlagEngineError のエラーコード定数。"""

    VERSION_CONFLICT: str = "VERSION_CONFLICT"
    FORBIDDEN: str = "FORBIDDEN"
    VALIDATION_ERROR: str = "VALIDATION_ERROR"
    INFRASTRUCTURE_ERROR: str = "INFRASTRUCTURE_ERROR"
    EXPOSURE_SINK_ERROR: str = "EXPOSURE_SINK_ERROR"
    PUBLISH_FAILED: str = "PUBLISH_FAILED"


class VersionConflictError(FlagEngineError):
    """楽観的排他制御の競合エラー。呼び出し側で再取得して再送する。"""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            FlagEngineErrorCodes.VERSION_CONFLICT,
            f"version conflict: expected={expected}, actual={actual}",
        )


class ForbiddenError(FlagEngineError):
    """プラットフォーム専用フラグを権限なしで変更しようとした場合のエラー。"""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(
            FlagEngineErrorCodes.FORBIDDEN,
            f"platform-only flag requires super admin: {key}",
        )


class ValidationError(FlagEngineError):
    """入力検証エラー。I/O の前に送出される。"""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(FlagEngineErrorCodes.VALIDATION_ERROR, f"{field}: {message}")


class InfrastructureError(FlagEngineError):
    """キャッシュ・ストア・バスの障害またはタイムアウト。"""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unavailable"
        super().__init__(
            FlagEngineErrorCodes.INFRASTRUCTURE_ERROR,
            f"{operation} failed ({detail})",
            cause=cause,
        )


class ConfigErrorCodes:
    """ConfigError のエラーコード定数。"""

    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"


class ConfigError(FlagEngineError):
    """設定ファイルの読み込み・検証エラー。"""
