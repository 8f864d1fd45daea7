"""Migration lifecycle states and the allowed transitions between them."""

from enum import Enum


class MigrationStatus(str, Enum):
    """Coarse-grained status of a whole migration."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


# Keyed by target status: the statuses a migration may move from
ALLOWED_SOURCES: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.RUNNING: frozenset(
        {MigrationStatus.PENDING, MigrationStatus.PAUSED, MigrationStatus.FAILED}
    ),
    MigrationStatus.PAUSED: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.COMPLETED: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.FAILED: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.CANCELLED: frozenset(
        {MigrationStatus.PENDING, MigrationStatus.RUNNING, MigrationStatus.PAUSED}
    ),
    MigrationStatus.PENDING: frozenset(),
}

# Statuses in which queued module jobs are dropped instead of executed
HALTED_STATUSES = frozenset({MigrationStatus.PAUSED, MigrationStatus.CANCELLED})


def allowed_sources(target: MigrationStatus | str) -> frozenset[MigrationStatus]:
    """Statuses from which ``target`` may be entered."""
    return ALLOWED_SOURCES[MigrationStatus(target)]


def can_transition(current: MigrationStatus | str, target: MigrationStatus | str) -> bool:
    """Whether a migration in ``current`` may move to ``target``."""
    return MigrationStatus(current) in allowed_sources(target)
