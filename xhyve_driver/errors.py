class DriverError(RuntimeError):
    """Base class for every failure surfaced by the driver."""


class BuildError(DriverError):
    def __init__(self, *, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage}: {detail}")


class MachineIOError(DriverError):
    pass


class MissingKeyMaterialError(MachineIOError):
    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"missing key material {path}: {detail}")


class AddressResolutionError(DriverError):
    pass


class LeaseTableMissingError(AddressResolutionError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"lease table not found: {path}")


class ProcessError(DriverError):
    pass


class ShutdownTimeoutError(ProcessError):
    def __init__(self, name: str, timeout_sec: float):
        self.name = name
        self.timeout_sec = timeout_sec
        super().__init__(f"machine {name} did not stop within {timeout_sec:g} seconds")


class MachineExistsError(DriverError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"machine already exists: {name}")


class MachineNotExistError(DriverError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"machine does not exist: {name}")


class InvalidTransitionError(DriverError):
    def __init__(self, name: str, current: str, target: str):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"machine {name} cannot move from {current} to {target}")


class MachineNotRunningError(DriverError):
    def __init__(self, name: str, phase: str):
        self.name = name
        self.phase = phase
        super().__init__(f"machine {name} is not running (phase {phase})")
