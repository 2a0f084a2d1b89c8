from xhyve_driver.models import MachinePhase


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    MachinePhase.ABSENT.value: {MachinePhase.PROVISIONING.value},
    MachinePhase.PROVISIONING.value: {
        MachinePhase.BOOTING.value,
        MachinePhase.ABSENT.value,
        MachinePhase.REMOVED.value,
    },
    MachinePhase.BOOTING.value: {
        MachinePhase.RUNNING.value,
        MachinePhase.STOPPING.value,
        MachinePhase.STOPPED.value,
        MachinePhase.REMOVED.value,
    },
    MachinePhase.RUNNING.value: {
        MachinePhase.STOPPING.value,
        MachinePhase.STOPPED.value,
        MachinePhase.REMOVED.value,
    },
    MachinePhase.STOPPING.value: {
        MachinePhase.STOPPED.value,
        MachinePhase.REMOVED.value,
    },
    MachinePhase.STOPPED.value: {
        MachinePhase.BOOTING.value,
        MachinePhase.REMOVED.value,
    },
    MachinePhase.REMOVED.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
