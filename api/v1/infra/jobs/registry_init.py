"""
Job registry initialization.

Registers a handler for every job type with the job registry.
"""

from api.config.logging import get_logger
from api.config.settings import Settings, settings as default_settings
from api.infra.email_transport import EmailTransport, build_email_transport
from api.infra.pdf_renderer import HttpPdfRenderer, PdfRenderer
from api.infra.storage import ArtifactStorage, build_storage
from api.v1.core.registries import JobRegistry, job_registry
from api.v1.infra.jobs.handlers import (
    BulkEmailHandler,
    BulkPdfHandler,
    MaintenanceCleanupHandler,
    TableExportHandler,
)

logger = get_logger(__name__)


def register_job_handlers(
    registry: JobRegistry | None = None,
    settings: Settings | None = None,
    *,
    renderer: PdfRenderer | None = None,
    transport: EmailTransport | None = None,
    storage: ArtifactStorage | None = None,
) -> JobRegistry:
    """Register all job handlers, building collaborators from settings when not given."""
    registry = registry if registry is not None else job_registry
    settings = settings or default_settings

    renderer = renderer or HttpPdfRenderer.from_settings(settings)
    transport = transport or build_email_transport(settings)
    storage = storage or build_storage(settings)

    logger.info("Registering job handlers")

    # Mission order handlers
    registry.register(
        BulkPdfHandler.job_type, BulkPdfHandler(settings, renderer, storage)
    )
    registry.register(
        BulkEmailHandler.job_type, BulkEmailHandler(settings, transport, renderer)
    )

    # Exports
    registry.register(
        TableExportHandler.job_type, TableExportHandler(settings, storage)
    )

    # Maintenance
    registry.register(
        MaintenanceCleanupHandler.job_type, MaintenanceCleanupHandler(settings)
    )

    registry.verify_complete()
    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
