import logging
import threading

from fastapi import FastAPI

from xhyve_driver.api import get_driver, router
from xhyve_driver.config import get_driver_settings, host_supports_xhyve
from xhyve_driver.logging_config import configure_logging
from xhyve_driver.reconcile import reconcile_once, start_reconcile_thread


logger = logging.getLogger(__name__)

app = FastAPI(title="xhyve Machine Driver")
app.include_router(router)
stop_event = threading.Event()
reconcile_thread: threading.Thread | None = None


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_driver_settings()
    if not host_supports_xhyve():
        logger.warning("xhyve only runs on macOS; machines on this host will fail to boot")
    driver = get_driver()
    reconcile_once(driver)
    logger.info(
        "driver preflight storage_path=%s lease_file=%s xhyve_binary=%s state_db_path=%s",
        settings.storage_path,
        settings.lease_file,
        settings.xhyve_binary,
        settings.state_db_path,
    )
    if not settings.disable_workers:
        global reconcile_thread
        reconcile_thread = start_reconcile_thread(stop_event, driver)


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    if reconcile_thread:
        reconcile_thread.join(timeout=1)
