from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar
from uuid import UUID

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

    def has(self, name: str) -> bool:
        """Check whether an implementation is registered under name."""
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def unregister(self, name: str) -> None:
        """Remove an implementation; a no-op for unknown names."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


@dataclass(frozen=True)
class JobContext:
    """Identity of the job a handler is running for."""

    owner_id: UUID
    job_id: UUID
    kind: str
    attempts: int
    batch_id: str | None = None


# Job Registry - the kind -> handler dispatch table
class JobHandler(Protocol):
    """Protocol for job handlers that process background work."""

    async def handle(
        self,
        session: Any,  # AsyncSession
        ctx: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            session: Database session scoped to this job
            ctx: Owner and job identity
            payload: Job-specific parameters

        Returns:
            Optional result dictionary stored with the completed job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers."""

    def __init__(self):
        super().__init__("Job")


# Executor Registry - opaque delegated work (embeddings, insights)
class Executor(Protocol):
    """Protocol for delegated executors used by embed and insight jobs."""

    async def execute(
        self, owner_id: UUID, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        ...


class ExecutorRegistry(Registry[Executor]):
    """Registry for delegated executors (embed, insight)."""

    def __init__(self):
        super().__init__("Executor")


# Credential Registry - refreshes provider credentials before auth retries
class CredentialRefresher(Protocol):
    """Protocol for provider credential refreshers."""

    async def refresh(self, owner_id: UUID, provider: str) -> bool:
        """Refresh stored credentials; return False when refresh was refused."""
        ...


class CredentialRegistry(Registry[CredentialRefresher]):
    """Registry for per-provider credential refreshers."""

    def __init__(self):
        super().__init__("Credential")


# Normalizer Registry - per-source content normalization
class Normalizer(Protocol):
    """Protocol for ingestion record normalizers."""

    def normalize(
        self, payload: dict[str, Any], source_meta: dict[str, Any]
    ) -> dict[str, Any]:
        ...


class NormalizerRegistry(Registry[Normalizer]):
    """Registry for ingestion normalizers (provider_a, provider_b, generic)."""

    def __init__(self):
        super().__init__("Normalizer")


# Global registry instances (singletons)
job_registry = JobRegistry()
executor_registry = ExecutorRegistry()
credential_registry = CredentialRegistry()
normalizer_registry = NormalizerRegistry()
