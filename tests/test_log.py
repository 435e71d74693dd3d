"""ロガー設定のユニットテスト"""

import logging
from collections.abc import Iterator

import pytest
import structlog
from k1s0_flag_engine import configure_logging
from k1s0_flag_engine.log import COMPONENT, _add_component


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


def test_configure_logging_json_format() -> None:
    """JSON フォーマットのロガーが作成できること。"""
    logger = configure_logging(level="INFO", format="json")
    assert logger is not None


def test_configure_logging_text_format() -> None:
    """テキストフォーマットのロガーが作成できること。"""
    logger = configure_logging(level="DEBUG", format="text")
    assert logger is not None


def test_configure_logging_returns_bound_logger() -> None:
    """bind できるロガーが返ること。"""
    logger = configure_logging()
    bound = logger.bind(env="prod")
    assert bound is not None


def test_configure_logging_binds_environment() -> None:
    """environment 指定時は env がロガーに束縛されること。"""
    logger = configure_logging(environment="prod")
    assert structlog.get_context(logger) == {"env": "prod"}


def test_component_is_added_to_every_event() -> None:
    """全イベントに component が付与され、明示した値は上書きしないこと。"""
    assert _add_component(None, "info", {"event": "x"}) == {
        "event": "x",
        "component": COMPONENT,
    }
    assert _add_component(None, "info", {"component": "sweep"})["component"] == "sweep"


def test_http_client_logs_are_quieted() -> None:
    """httpx のログは WARNING 以上に抑えられること。"""
    configure_logging(level="DEBUG")
    assert logging.getLogger("httpx").level == logging.WARNING
