import logging

from sensorbridge.core.config import get_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    root.setLevel(resolved)
    logging.getLogger("sensorbridge").setLevel(resolved)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
