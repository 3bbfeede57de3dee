#!filepath: tests/base_test/test_logger.py
import pytest
from loguru import logger

from harness import Logging


@pytest.fixture
def logs_and_messages():
    logs = Logging(log_level="DEBUG")
    messages = []
    # Logging() resets the sinks, so capture is added afterwards
    logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG")
    return logs, messages


def test_catch_logs_and_reraises(logs_and_messages):
    """测试 catch 记录异常后原样抛出"""
    logs, messages = logs_and_messages

    @logs.catch(msg="restore aborted")
    def restore():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        restore()

    assert any("restore aborted" in m for m in messages)


def test_catch_reports_time_only(logs_and_messages):
    """测试 catch 只记录耗时，不记录入参"""
    logs, messages = logs_and_messages

    @logs.catch()
    def work(x):
        return x * 2

    assert work(x=3) == 6
    assert any(m.startswith("[TIME] work") for m in messages)
    assert not any(m.startswith("[CALL]") for m in messages)
