"""
Registers job handlers and derivative renderers with the global registries.
"""

import logging

from pipeline.config.settings import Settings, settings as default_settings
from pipeline.v1.core.exceptions import ConfigurationError
from pipeline.v1.core.registries import job_registry, renderer_registry
from pipeline.v1.infra.jobs.handlers import (
    FolderDiscoveryHandler,
    GenerateDerivativesHandler,
    MaintenanceHandler,
)
from pipeline.v1.infra.jobs.renderers import copy_render, stub_render

logger = logging.getLogger(__name__)


def register_renderers() -> None:
    """Register the derivative renderer implementations."""
    renderer_registry.register("stub", stub_render)
    renderer_registry.register("copy", copy_render)


def register_job_handlers(settings: Settings | None = None) -> None:
    """Register all job handlers with the job registry."""
    settings = settings or default_settings

    logger.info("Registering job handlers")

    # Derivatives: a project-wide pass and the post-upload pass share the handler
    derivatives = GenerateDerivativesHandler(settings)
    job_registry.register("generate_derivatives", derivatives)
    job_registry.register("upload_postprocess", derivatives)

    # Housekeeping
    job_registry.register("maintenance", MaintenanceHandler(settings))
    job_registry.register("folder_discovery", FolderDiscoveryHandler(settings))

    logger.info(
        "Job handlers registered", extra={"registered_handlers": job_registry.list()}
    )


def init_registries(settings: Settings | None = None) -> None:
    """Populate both registries and check the configured renderer exists."""
    settings = settings or default_settings
    if not renderer_registry.is_frozen():
        register_renderers()
    if not job_registry.is_frozen():
        register_job_handlers(settings)

    if not renderer_registry.has(settings.derivative_renderer.value):
        raise ConfigurationError(
            f"Derivative renderer '{settings.derivative_renderer.value}' is not registered"
        )
