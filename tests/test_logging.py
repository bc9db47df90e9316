import json
import logging
import pytest

from mailrelay.core.logging import setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_emits_json_with_service(root_logger, capsys):
    setup_logging("INFO")

    logging.getLogger("mailrelay.services.retry_scheduler").info("Sweeping 2 due outbox records")

    data = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert data["message"] == "Sweeping 2 due outbox records"
    assert data["level"] == "INFO"
    assert data["logger"] == "mailrelay.services.retry_scheduler"
    assert data["service"] == "mailrelay"
    assert "timestamp" in data


def test_setup_logging_installs_one_handler(root_logger):
    setup_logging()
    setup_logging()

    installed = [h for h in root_logger.handlers if getattr(h, "_mailrelay", False)]
    assert len(installed) == 1


def test_setup_logging_quiets_broker_client(root_logger):
    setup_logging("DEBUG")

    assert logging.getLogger("aiormq").level == logging.WARNING
    assert root_logger.level == logging.DEBUG
