"""
Exception types raised by procguard components.

Crashes and classification misses are not exceptions: a crash is a state
transition of the managed process and a miss is simply an empty result.
"""


class ProcguardError(Exception):
    """Base class for procguard errors."""


class SpawnFailure(ProcguardError):
    """A managed process could not be started."""

    def __init__(self, process_id: str, message: str):
        super().__init__(f"{process_id}: {message}")
        self.process_id = process_id
        self.message = message


class StorageFailure(ProcguardError):
    """The history backend failed."""


class StorageWriteFailure(StorageFailure):
    """An entry or record could not be persisted."""


class StorageReadFailure(StorageFailure):
    """Persisted history or records could not be read back."""


class PolicyViolation(ProcguardError):
    """An operation was requested that the current process state does not allow."""


class UnknownProcess(ProcguardError, KeyError):
    """No managed process exists for the given id."""

    def __str__(self):
        return f"Unknown process: {self.args[0]}" if self.args else "Unknown process"
