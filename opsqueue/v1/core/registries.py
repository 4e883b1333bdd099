from collections.abc import Iterable
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


def _key(name: str | Enum) -> str:
    return name.value if isinstance(name, Enum) else name


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str | Enum, implementation: T) -> None:
        """Register an implementation with a given name."""
        key = _key(name)
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{key}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[key] = implementation

    def get(self, name: str | Enum) -> T:
        """Get an implementation by name."""
        key = _key(name)
        if key not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {key}"
            )
        return self._implementations[key]

    def find(self, name: str | Enum) -> T | None:
        """Get an implementation by name, or None when nothing is registered."""
        return self._implementations.get(_key(name))

    def missing(self, expected: Iterable[str | Enum]) -> list[str]:
        """Names from ``expected`` that have no registered implementation."""
        return [
            _key(name) for name in expected if _key(name) not in self._implementations
        ]

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(self, job: Any) -> Any:
        """
        Handle a background job.

        Args:
            job: The claimed JobRecord (status processing, attempts already
                incremented)

        Returns:
            JobOutcome describing success (with optional result data) or
            failure (with an error message). Handlers may also raise; the
            worker converts exceptions into the failure path.
        """
        ...


class HandlerRegistry(Registry[JobHandler]):
    """Dispatch table from job type to handler."""

    def __init__(self):
        super().__init__("Job")

    def verify_complete(self, job_types: Iterable[str | Enum]) -> None:
        """Raise if any of ``job_types`` has no handler."""
        missing = self.missing(job_types)
        if missing:
            raise RuntimeError(
                f"No job handler registered for: {', '.join(sorted(missing))}"
            )


# Stuck entity resetters - recover domain entities behind reaped jobs
class StuckEntityResetter(Protocol):
    """Protocol for hooks that reset the entity a stuck job was working on."""

    async def reset(self, job: Any) -> int:
        """Return the number of entities moved back to a pending state."""
        ...


class ResetterRegistry(Registry[StuckEntityResetter]):
    """Registry of stuck entity resetters keyed by job type."""

    def __init__(self):
        super().__init__("Resetter")
