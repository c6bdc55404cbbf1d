from typing import Any, Generic, Protocol, TypeVar

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

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def clear(self) -> None:
        """Drop every registration (tests and re-initialisation)."""
        if self._frozen:
            raise RuntimeError(f"Cannot clear frozen {self.name.lower()} registry")
        self._implementations.clear()

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background jobs.

    Handlers must be resumable (never redo ``done`` items), persist item
    status and progress after each batch, re-check cancellation before each
    batch and return normally when canceled, and keep their parallelism
    within the compute pool's concurrency.
    """

    async def handle(self, job: Any, ctx: Any) -> dict[str, Any] | None:
        """
        Handle a claimed job.

        Args:
            job: The claimed Job row (status ``running``)
            ctx: JobContext with store, event bus, compute pool and
                 a ``report_progress(done, total)`` callback

        Returns:
            Optional summary dictionary, logged on completion

        Raises:
            PermanentJobError: fail the job without retry
            Exception: any other error is retried while attempts remain
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Renderer Registry - derivative generation backends
class Renderer(Protocol):
    """Protocol for derivative renderers.

    Renderers run inside the compute pool, so they must be plain picklable
    callables: ``render(source_path, derivatives) -> list[dict]``.
    """

    def __call__(
        self, source_path: str, derivatives: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        ...


class RendererRegistry(Registry[Renderer]):
    """Registry for derivative renderers (stub, copy)."""

    def __init__(self):
        super().__init__("Renderer")


# Global registry instances (singletons)
job_registry = JobRegistry()
renderer_registry = RendererRegistry()
