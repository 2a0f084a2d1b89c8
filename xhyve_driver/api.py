import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from xhyve_driver.config import get_driver_settings, host_supports_xhyve
from xhyve_driver.driver import XhyveDriver
from xhyve_driver.errors import (
    BuildError,
    DriverError,
    InvalidTransitionError,
    MachineExistsError,
    MachineNotExistError,
    MachineNotRunningError,
)
from xhyve_driver.metrics import metrics
from xhyve_driver.schemas import MachineCreateRequest, MachineStateResponse, SSHEndpointResponse


router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_driver() -> XhyveDriver:
    return XhyveDriver(get_driver_settings())


def _raise_driver_error(name: str, stage: str, exc: Exception) -> NoReturn:
    if isinstance(exc, MachineNotExistError):
        status_code = 404
    elif isinstance(exc, (MachineExistsError, InvalidTransitionError, MachineNotRunningError)):
        status_code = 409
    else:
        status_code = 500
    if isinstance(exc, BuildError):
        stage = f"{stage}:{exc.stage}"
    logger.error("request failed name=%s stage=%s reason=%s", name, stage, exc)
    raise HTTPException(
        status_code=status_code,
        detail={"name": name, "stage": stage, "reason": str(exc)},
    )


@router.get("/healthz")
def healthz() -> dict:
    settings = get_driver_settings()
    return {
        "status": "ok",
        "driver": "xhyve",
        "host_supported": host_supports_xhyve(),
        "storage_path": settings.storage_path,
        "lease_file": settings.lease_file,
        "generated_at": datetime.now(UTC).isoformat(),
    }


@router.get("/metrics")
def metrics_snapshot() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/machines", response_model=list[MachineStateResponse])
def machine_list(driver: XhyveDriver = Depends(get_driver)) -> list[MachineStateResponse]:
    return [MachineStateResponse.from_state(s) for s in driver.list_machines()]


@router.put("/v1/machines/{name}", response_model=MachineStateResponse)
def create_machine(
    name: str, req: MachineCreateRequest, driver: XhyveDriver = Depends(get_driver)
) -> MachineStateResponse:
    try:
        config = driver.settings.machine_config(
            name,
            cpu_count=req.cpu_count,
            memory_mb=req.memory_mb,
            disk_size_mb=req.disk_size_mb,
            boot_cmd=req.boot_cmd,
            boot_image_url=req.boot_image_url,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={"name": name, "stage": "config", "reason": str(exc)},
        ) from exc
    try:
        state = driver.create(config)
    except DriverError as exc:
        _raise_driver_error(name, "create", exc)
    return MachineStateResponse.from_state(state)


@router.get("/v1/machines/{name}", response_model=MachineStateResponse)
def machine_state(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.describe(name)
    except DriverError as exc:
        _raise_driver_error(name, "state", exc)
    return MachineStateResponse.from_state(state, phase=driver.get_state(name))


@router.post("/v1/machines/{name}/start", response_model=MachineStateResponse)
def start_machine(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.start(name)
    except DriverError as exc:
        _raise_driver_error(name, "start", exc)
    return MachineStateResponse.from_state(state)


@router.post("/v1/machines/{name}/stop", response_model=MachineStateResponse)
def stop_machine(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.stop(name)
    except DriverError as exc:
        _raise_driver_error(name, "stop", exc)
    return MachineStateResponse.from_state(state)


@router.post("/v1/machines/{name}/restart", response_model=MachineStateResponse)
def restart_machine(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.restart(name)
    except DriverError as exc:
        _raise_driver_error(name, "restart", exc)
    return MachineStateResponse.from_state(state)


@router.post("/v1/machines/{name}/kill", response_model=MachineStateResponse)
def kill_machine(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.kill(name)
    except DriverError as exc:
        _raise_driver_error(name, "kill", exc)
    return MachineStateResponse.from_state(state)


@router.delete("/v1/machines/{name}", response_model=MachineStateResponse)
def remove_machine(name: str, driver: XhyveDriver = Depends(get_driver)) -> MachineStateResponse:
    try:
        state = driver.remove(name)
    except DriverError as exc:
        _raise_driver_error(name, "remove", exc)
    return MachineStateResponse.from_state(state)


@router.get("/v1/machines/{name}/ip")
def machine_ip(name: str, driver: XhyveDriver = Depends(get_driver)) -> dict:
    try:
        ip = driver.get_ip(name)
    except DriverError as exc:
        _raise_driver_error(name, "ip", exc)
    return {"name": name, "ip_address": ip}


@router.get("/v1/machines/{name}/url")
def machine_url(name: str, driver: XhyveDriver = Depends(get_driver)) -> dict:
    try:
        url = driver.get_url(name)
    except DriverError as exc:
        _raise_driver_error(name, "url", exc)
    return {"name": name, "url": url}


@router.get("/v1/machines/{name}/ssh", response_model=SSHEndpointResponse)
def machine_ssh(name: str, driver: XhyveDriver = Depends(get_driver)) -> SSHEndpointResponse:
    try:
        host = driver.get_ssh_hostname(name)
        key_path = driver.get_ssh_key_path(name)
    except DriverError as exc:
        _raise_driver_error(name, "ssh", exc)
    return SSHEndpointResponse(
        host=host,
        port=driver.get_ssh_port(),
        user=driver.get_ssh_username(),
        key_path=key_path,
    )
