import logging
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from mailrelay.core.config import settings

# Client libraries that log every frame or reconnect attempt at INFO.
NOISY_LOGGERS = ("aio_pika", "aiormq", "aiosmtplib")


def setup_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    root.setLevel(level or settings.log_level)

    # Lifespan can run more than once per process (tests, reloads).
    for existing in root.handlers:
        if getattr(existing, "_mailrelay", False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        static_fields={"service": settings.service_name}
    ))
    handler._mailrelay = True
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
