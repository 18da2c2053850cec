from __future__ import annotations


class ProvisionError(RuntimeError):
    pass


class MalformedSpec(ProvisionError, ValueError):
    """A plan item could not be turned into a PlanItem.

    Raised before anything touches the system; the whole run aborts.
    """

    def __init__(self, reason: str, *, index: int | None = None, identifier: str | None = None) -> None:
        where = ""
        if index is not None:
            where = f"item #{index}"
            if identifier:
                where += f" ({identifier})"
            where += ": "
        super().__init__(f"{where}{reason}")
        self.reason = reason
        self.index = index
        self.identifier = identifier


class ProbeError(ProvisionError):
    def __init__(self, item_id: str, message: str) -> None:
        super().__init__(f"{item_id}: {message}")
        self.item_id = item_id
        self.message = message


class ApplyFailure(ProvisionError):
    def __init__(self, item_id: str, message: str) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.message = message


class EnvironmentMissing(ProvisionError):
    """A required external tool (package manager, sudo, curl) is not available."""
