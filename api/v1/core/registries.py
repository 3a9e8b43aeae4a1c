from collections.abc import Sequence
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

from api.v1.infra.jobs.errors import UnknownJobTypeError
from api.v1.infra.jobs.kinds import JobType, parse_job_type
from api.v1.infra.jobs.progress import PhaseSpec

if TYPE_CHECKING:
    from api.v1.infra.jobs.phases import JobExecution

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    job_type: JobType
    phases: Sequence[PhaseSpec]

    async def handle(self, execution: "JobExecution") -> None:
        """
        Run the job through its phases.

        Args:
            execution: Context of the current attempt; phases, progress
                reporting, items, resource pool and payload all go through it

        Raises:
            Exception: Any failure; the runner classifies it and decides
                between retrying and failing the job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, keyed by the closed ``JobType`` set."""

    def __init__(self):
        super().__init__("Job")

    def register(self, name: JobType | str, implementation: JobHandler) -> None:
        job_type = parse_job_type(str(getattr(name, "value", name)))
        if job_type is None:
            raise ValueError(f"Cannot register handler for unknown job type: {name}")
        if getattr(implementation, "job_type", job_type) != job_type:
            raise ValueError(
                f"Handler for {implementation.job_type.value} registered as {job_type.value}"
            )
        super().register(job_type.value, implementation)

    def resolve(self, job_type: str) -> JobHandler:
        """Handler for a stored job type; unknown types are a configuration error."""
        parsed = parse_job_type(job_type)
        if parsed is None or parsed.value not in self._implementations:
            raise UnknownJobTypeError(f"No handler registered for job type '{job_type}'")
        return self._implementations[parsed.value]

    def verify_complete(self) -> None:
        """Raise unless every ``JobType`` has a handler."""
        missing = [
            job_type.value
            for job_type in JobType
            if job_type.value not in self._implementations
        ]
        if missing:
            raise RuntimeError(f"Job types without a handler: {', '.join(missing)}")


# Global registry instances (singletons)
job_registry = JobRegistry()
