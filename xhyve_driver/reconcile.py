import logging
import threading
import time
from collections import Counter

from xhyve_driver.driver import XhyveDriver
from xhyve_driver.metrics import metrics
from xhyve_driver.models import MachinePhase


logger = logging.getLogger(__name__)


def reconcile_once(driver: XhyveDriver) -> dict[str, MachinePhase]:
    """Re-derive every recorded machine's phase from its hypervisor process."""
    observed: dict[str, MachinePhase] = {}
    for state in driver.list_machines():
        phase = driver.get_state(state.name)
        if phase != state.phase:
            logger.info(
                "reconciled machine name=%s recorded=%s observed=%s",
                state.name,
                state.phase.value,
                phase.value,
            )
        observed[state.name] = phase
    metrics.set_gauges("machines", Counter(phase.value.lower() for phase in observed.values()))
    return observed


def reconcile_worker(stop_event: threading.Event, driver: XhyveDriver) -> None:
    while not stop_event.is_set():
        try:
            reconcile_once(driver)
        except Exception as exc:  # noqa: BLE001
            logger.warning("reconcile cycle failed: %s", exc)
        stop_event.wait(driver.settings.reconcile_interval_sec)


def start_reconcile_thread(stop_event: threading.Event, driver: XhyveDriver) -> threading.Thread:
    thread = threading.Thread(
        target=reconcile_worker, args=(stop_event, driver), name="reconcile-worker", daemon=True
    )
    thread.start()
    time.sleep(0.01)
    return thread
