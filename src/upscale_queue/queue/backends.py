"""Abstract base class for durable job storage.

The queue keeps no state that is not also written through this interface,
so a restart can rebuild everything from the repository alone.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobStatus, StateTransition


class JobRepository(ABC):
    """Abstract persistent job store.

    Implementations must provide:
    - Atomic writes (a crash leaves either the old or the new record)
    - ``update`` of a missing job as a no-op (never re-creates a deleted row)
    - Newest-first ordering for ``get_all``
    """

    @abstractmethod
    def add(self, job: "Job") -> None:
        """Insert a new job record.

        Args:
            job: Fully populated job (job_id already assigned)
        """
        pass

    @abstractmethod
    def update(self, job: "Job") -> bool:
        """Overwrite the stored record for ``job.job_id``.

        Returns:
            False when no such row exists (nothing is written)

        Implementation notes:
        - Should log a state transition when the status changes
        """
        pass

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove a job. Returns False if it did not exist."""
        pass

    @abstractmethod
    def get_by_id(self, job_id: str) -> Optional["Job"]:
        pass

    @abstractmethod
    def get_by_ids(self, job_ids: Iterable[str]) -> List["Job"]:
        pass

    @abstractmethod
    def get_all(self) -> List["Job"]:
        """All jobs, newest first."""
        pass

    @abstractmethod
    def get_by_status(self, *statuses: "JobStatus") -> List["Job"]:
        """Jobs in any of ``statuses``, oldest first (dispatch order)."""
        pass

    @abstractmethod
    def count_by_status(self, status: "JobStatus") -> int:
        pass

    @abstractmethod
    def delete_by_status(self, *statuses: "JobStatus") -> int:
        """Bulk delete. Returns the number of rows removed."""
        pass

    @abstractmethod
    def get_transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail for one job, oldest first."""
        pass

    def close(self) -> None:
        """Release storage handles. Default: nothing to release."""
