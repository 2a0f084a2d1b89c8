from pydantic import BaseModel, Field

from xhyve_driver.models import MachinePhase, MachineState


class MachineCreateRequest(BaseModel):
    cpu_count: int | None = None
    memory_mb: int | None = Field(default=None, ge=1)
    disk_size_mb: int | None = Field(default=None, ge=1)
    boot_cmd: str | None = None
    boot_image_url: str | None = None


class MachineStateResponse(BaseModel):
    name: str
    phase: MachinePhase
    uuid: str = ""
    ip_address: str = ""
    pid: int = 0
    reason: str | None = None

    @classmethod
    def from_state(cls, state: MachineState, phase: MachinePhase | None = None) -> "MachineStateResponse":
        return cls(
            name=state.name,
            phase=phase or state.phase,
            uuid=state.uuid,
            ip_address=state.ip_address,
            pid=state.pid,
            reason=state.reason,
        )


class SSHEndpointResponse(BaseModel):
    host: str
    port: int
    user: str
    key_path: str
