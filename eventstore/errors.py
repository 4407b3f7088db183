"""Exception hierarchy for the tiered event store coordinator."""


class EventStoreError(Exception):
    """Base class for all coordinator errors."""


# validation -----------------------------------------------------------
class ValidationError(EventStoreError):
    """Rejected input; raised before any state is mutated."""


class InvalidName(ValidationError):
    pass


class InvalidRange(ValidationError):
    pass


class InvalidPublicKey(ValidationError):
    pass


class DuplicateName(ValidationError):
    pass


class RangeOverlap(ValidationError):
    pass


class RangeGap(ValidationError):
    pass


class ProtectedNode(ValidationError):
    """Operation not permitted on the hot node."""


# lookups --------------------------------------------------------------
class NotFound(EventStoreError):
    pass


class NodeNotRegistered(EventStoreError):
    pass


class NothingToArchive(EventStoreError):
    pass


class NoPartition(EventStoreError):
    """No partition owns the partition key of a row."""

    def __init__(self, key: int) -> None:
        super().__init__(f"no partition owns key {key}")
        self.key = key


# infrastructure -------------------------------------------------------
class DaemonUnreachable(EventStoreError):
    """The mesh daemon could not be reached or did not respond in time."""


class ConfigCorrupt(EventStoreError):
    """The persisted mesh allow-list is unreadable or malformed."""


class PartitionUnavailable(EventStoreError):
    """A partition failed or timed out while serving a request."""

    def __init__(self, name: str, cause: BaseException | None = None) -> None:
        msg = f"partition {name} unavailable"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.name = name
        self.cause = cause


class RegistryUnavailable(EventStoreError):
    """Registry storage cannot be read or written."""


class RegistryCorrupt(EventStoreError):
    """Registry file exists but does not hold a valid registry."""


class TopologyInconsistency(EventStoreError):
    """A multi-step topology change failed part way through.

    ``report`` names the failed step and the steps already applied so the
    operator can retry the idempotent operation.
    """

    def __init__(self, report) -> None:
        super().__init__(str(report))
        self.report = report
