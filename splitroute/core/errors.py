class ExecError(Exception):
    """A privileged command could not produce a result."""


class PtyAllocationFailed(ExecError):
    pass


class SpawnFailed(ExecError):
    pass


class CommandTimeout(ExecError):
    pass


class ElevationDenied(ExecError):
    pass


class BridgeError(ExecError):
    pass


class ScriptReportedFailure(ExecError):
    """The script ran but its exit code or output says it failed."""
