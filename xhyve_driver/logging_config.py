import logging

from xhyve_driver.config import get_driver_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
HANDLER_NAME = "xhyve_driver"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_driver_settings().log_level).upper()
    root = logging.getLogger()
    if not any(h.get_name() == HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.set_name(HANDLER_NAME)
        root.addHandler(handler)
    root.setLevel(getattr(logging, resolved, logging.INFO))
