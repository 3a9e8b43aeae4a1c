"""
Job handlers for league operations.

Every handler implements the ``JobHandler`` protocol: it names its job type,
declares its phases and drives a ``JobExecution`` through them in order.
Handlers raise on failure and leave the final status to the runner.
"""

import asyncio
import base64
import binascii
import csv
import io
import re
import string
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from api.config.logging import get_logger
from api.config.settings import Settings
from api.infra.email_transport import (
    EmailAttachment,
    EmailMessage,
    EmailSendError,
    EmailTransport,
)
from api.infra.pdf_renderer import PdfRenderer
from api.infra.storage import ArtifactStorage
from api.v1.infra.jobs.errors import (
    ArtifactEmptyError,
    NoPagesError,
    ValidationJobError,
    classify_error,
)
from api.v1.infra.jobs.kinds import JOB_PHASES, JobType
from api.v1.infra.jobs.models import JobItemStatus
from api.v1.infra.jobs.phases import JobExecution
from api.v1.infra.jobs.resource_pool import (
    EMAIL_SENDING,
    NETWORK_REQUESTS,
    PDF_GENERATION,
)
from api.v1.infra.jobs.schemas import (
    BulkEmailPayload,
    BulkPdfPayload,
    MaintenancePayload,
    TableExportPayload,
)
from api.v1.infra.jobs.service import JobService

logger = get_logger(__name__)

MAX_RECORDED_FAILURES = 25
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class TemplateFormatter(string.Formatter):
    """``str.format`` restricted to plain named fields."""

    def get_field(self, field_name: str, args: Any, kwargs: Any) -> Any:
        # No attribute or index lookups into the template context
        if not field_name.isidentifier():
            raise ValueError(f"Unsupported template field '{field_name}'")
        return super().get_field(field_name, args, kwargs)


TEMPLATE_FORMATTER = TemplateFormatter()



def parse_payload(model: type[PayloadT], payload: dict[str, Any]) -> PayloadT:
    """Validate a job payload, turning pydantic errors into a non-retryable job error."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationJobError(
            f"Invalid payload at '{location}': {first.get('msg')}"
        ) from e


def merge_pdfs(documents: list[bytes]) -> tuple[bytes, int]:
    """
    Concatenate PDF documents with pypdf.

    Unreadable documents are skipped. Returns the merged bytes and page count;
    ``(b"", 0)`` when no page could be read.
    """
    writer = PdfWriter()
    pages = 0
    for index, document in enumerate(documents):
        try:
            reader = PdfReader(io.BytesIO(document))
            for page in reader.pages:
                writer.add_page(page)
                pages += 1
        except (PdfReadError, ValueError, OSError) as e:
            logger.warning("pdf.merge_skipped_document", index=index, error=str(e))

    if pages == 0:
        return b"", 0

    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue(), pages


class BulkPdfHandler:
    """
    Render one mission order per (match, official) pair and merge them.

    Payload expected:
    {
        "orders": [{"matchId": "...", "officialId": "..."}, ...]
    }
    """

    job_type = JobType.MISSION_ORDERS_BULK_PDF
    phases = JOB_PHASES[JobType.MISSION_ORDERS_BULK_PDF]

    def __init__(
        self, settings: Settings, renderer: PdfRenderer, storage: ArtifactStorage
    ):
        self.settings = settings
        self.renderer = renderer
        self.storage = storage

    async def handle(self, execution: JobExecution) -> None:
        async with execution.phase("validate"):
            if not execution.payload.get("orders"):
                raise ValidationJobError("No orders to process", code="empty_payload")
            orders = parse_payload(BulkPdfPayload, execution.payload).orders
            await execution.set_total(len(orders))

        async with execution.phase("generate"):
            documents: list[bytes] = []
            failures: list[dict[str, Any]] = []
            failed = 0
            transient_failures = 0

            for index, order in enumerate(orders, start=1):
                try:
                    async with execution.pool.slot(PDF_GENERATION):
                        encoded = await self.renderer.render(
                            order.match_id, order.official_id
                        )
                    documents.append(base64.b64decode(encoded, validate=True))
                except (binascii.Error, ValueError) as e:
                    failed += 1
                    if len(failures) < MAX_RECORDED_FAILURES:
                        failures.append(
                            {
                                "matchId": order.match_id,
                                "officialId": order.official_id,
                                "reason": "invalid_base64",
                                "message": str(e),
                            }
                        )
                except Exception as e:
                    classification = classify_error(e)
                    failed += 1
                    if classification.recoverable:
                        transient_failures += 1
                    if len(failures) < MAX_RECORDED_FAILURES:
                        failures.append(
                            {
                                "matchId": order.match_id,
                                "officialId": order.official_id,
                                "reason": classification.code,
                                "message": str(e),
                            }
                        )
                    execution.log.warning(
                        "pdf.render_failed",
                        match_id=order.match_id,
                        official_id=order.official_id,
                        code=classification.code,
                    )
                await execution.report(index, len(orders))

            await execution.update_payload(
                fetch_stats={
                    "total": len(orders),
                    "succeeded": len(documents),
                    "failed": failed,
                    "failures": failures,
                }
            )

        async with execution.phase("merge"):
            merged, pages = await asyncio.to_thread(merge_pdfs, documents)
            if pages == 0:
                # Worth another attempt only when every failure was transient
                retryable = failed > 0 and transient_failures == failed
                raise NoPagesError(
                    f"No pages produced from {len(orders)} orders "
                    f"({failed} failed to render)",
                    retryable=retryable,
                )

        async with execution.phase("upload"):
            if not merged:
                raise ArtifactEmptyError("Merged PDF is empty")
            path = f"batches/{execution.dedupe_key or execution.job_id}.pdf"
            async with execution.pool.slot(NETWORK_REQUESTS):
                await self.storage.upload(path, merged, "application/pdf")
            await execution.set_artifact(path, "pdf", size=len(merged), pages=pages)

        execution.log.info(
            "pdf.batch_completed", pages=pages, size=len(merged), failed=failed
        )


class BulkEmailHandler:
    """
    Send one email per recipient, tracking every recipient as a job item.

    Payload expected:
    {
        "subject": "Mission order {match}",
        "template": "Hello {name}, ...",
        "recipients": [{"email": "...", "name": "...", "variables": {...}}],
        "variables": {...},            # optional, shared by all recipients
        "html": false,                 # optional
        "attach_mission_order": false  # optional, needs matchId/officialId per recipient
    }
    """

    job_type = JobType.MISSION_ORDERS_BULK_EMAIL
    phases = JOB_PHASES[JobType.MISSION_ORDERS_BULK_EMAIL]

    def __init__(
        self,
        settings: Settings,
        transport: EmailTransport,
        renderer: PdfRenderer | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self.renderer = renderer

    @staticmethod
    def _context(
        payload: BulkEmailPayload, target: dict[str, Any]
    ) -> dict[str, Any]:
        context = dict(payload.variables)
        context.update(target.get("variables") or {})
        context.setdefault("email", target.get("email"))
        context.setdefault("name", target.get("name") or target.get("email"))
        return context

    def _render(
        self, payload: BulkEmailPayload, target: dict[str, Any]
    ) -> tuple[str, str]:
        context = self._context(payload, target)
        return (
            TEMPLATE_FORMATTER.vformat(payload.subject, (), context),
            TEMPLATE_FORMATTER.vformat(payload.template, (), context),
        )

    async def handle(self, execution: JobExecution) -> None:
        async with execution.phase("prepare"):
            if not execution.payload.get("recipients"):
                raise ValidationJobError(
                    "No recipients to email", code="no_recipients"
                )
            payload = parse_payload(BulkEmailPayload, execution.payload)
            targets = [
                recipient.model_dump(exclude_none=True)
                for recipient in payload.recipients
            ]
            total = await execution.items.prepare(targets)
            await execution.set_total(total)

        async with execution.phase("render"):
            pending = await execution.items.pending()
            for index, item in enumerate(pending, start=1):
                email = str(item.target.get("email", "")).strip()
                if not EMAIL_PATTERN.match(email):
                    await execution.items.mark(
                        item.id,
                        JobItemStatus.SKIPPED,
                        error_code="invalid_email",
                        error_message=f"Invalid email address: {email!r}",
                    )
                else:
                    try:
                        self._render(payload, item.target)
                    except (KeyError, IndexError, AttributeError, ValueError) as e:
                        await execution.items.mark(
                            item.id,
                            JobItemStatus.SKIPPED,
                            error_code="template_error",
                            error_message=f"Template could not be rendered: {e}",
                        )
                await execution.report(index, len(pending))

        async with execution.phase("send"):
            pending = await execution.items.pending()
            for index, item in enumerate(pending, start=1):
                await execution.items.mark(item.id, JobItemStatus.RUNNING)
                try:
                    message = await self._build_message(execution, payload, item.target)
                    async with execution.pool.slot(EMAIL_SENDING):
                        await self.transport.send(message)
                except EmailSendError as e:
                    await execution.items.mark(
                        item.id,
                        JobItemStatus.FAILED,
                        error_code=e.code,
                        error_message=e.message,
                    )
                except Exception as e:
                    classification = classify_error(e)
                    await execution.items.mark(
                        item.id,
                        JobItemStatus.FAILED,
                        error_code=classification.code,
                        error_message=str(e),
                    )
                else:
                    await execution.items.mark(item.id, JobItemStatus.COMPLETED)
                await execution.report(index, len(pending))

            counts = await execution.items.counts()
            await execution.update_payload(
                stats={
                    "total": counts["total"],
                    "completed": counts[JobItemStatus.COMPLETED.value],
                    "skipped": counts[JobItemStatus.SKIPPED.value],
                    "failed": counts[JobItemStatus.FAILED.value],
                }
            )

        execution.log.info("email.batch_completed", **execution.payload["stats"])

    async def _build_message(
        self,
        execution: JobExecution,
        payload: BulkEmailPayload,
        target: dict[str, Any],
    ) -> EmailMessage:
        subject, body = self._render(payload, target)
        message = EmailMessage(
            to=[str(target["email"]).strip()],
            subject=subject,
            body=body,
            html=payload.html,
        )

        match_id = target.get("matchId")
        official_id = target.get("officialId")
        if execution.payload.get("attach_mission_order") and match_id and official_id:
            if self.renderer is None:
                raise ValidationJobError(
                    "Mission order attachments need a PDF renderer",
                    code="renderer_missing",
                )
            async with execution.pool.slot(PDF_GENERATION):
                encoded = await self.renderer.render(str(match_id), str(official_id))
            message.attachments.append(
                EmailAttachment(
                    filename=f"ordre_de_mission_{match_id}_{official_id}.pdf",
                    content_base64=encoded,
                )
            )
        return message


class TableExportHandler:
    """
    Render tabular data to CSV and store it as an artifact.

    Payload expected:
    {
        "dataset": "officials",
        "columns": ["name", "email"],
        "rows": [{"name": "...", "email": "..."}] or [["...", "..."]]
    }
    """

    job_type = JobType.EXPORTS_TABLE
    phases = JOB_PHASES[JobType.EXPORTS_TABLE]

    report_every = 500

    def __init__(self, settings: Settings, storage: ArtifactStorage):
        self.settings = settings
        self.storage = storage

    async def handle(self, execution: JobExecution) -> None:
        async with execution.phase("validate"):
            payload = parse_payload(TableExportPayload, execution.payload)
            width = len(payload.columns)
            for index, row in enumerate(payload.rows):
                if isinstance(row, list) and len(row) != width:
                    raise ValidationJobError(
                        f"Row {index} has {len(row)} values, expected {width}"
                    )
            await execution.set_total(len(payload.rows))

        async with execution.phase("render"):
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            writer.writerow(payload.columns)
            total = len(payload.rows)
            for index, row in enumerate(payload.rows, start=1):
                if isinstance(row, dict):
                    writer.writerow([row.get(column, "") for column in payload.columns])
                else:
                    writer.writerow(row)
                if index % self.report_every == 0 or index == total:
                    await execution.report(index, total)
            data = buffer.getvalue().encode("utf-8")

        async with execution.phase("upload"):
            if not data:
                raise ArtifactEmptyError("Export produced no data")
            path = f"exports/{execution.dedupe_key or execution.job_id}.csv"
            async with execution.pool.slot(NETWORK_REQUESTS):
                await self.storage.upload(path, data, "text/csv")
            await execution.set_artifact(
                path, "csv", size=len(data), rows=total, dataset=payload.dataset
            )


class MaintenanceCleanupHandler:
    """
    Job handler for maintenance tasks.

    Payload expected:
    {
        "tasks": ["cleanup_jobs", "reap_stale"],  # optional, defaults to all
        "dry_run": false  # optional
    }
    """

    job_type = JobType.MAINTENANCE_CLEANUP
    phases = JOB_PHASES[JobType.MAINTENANCE_CLEANUP]

    known_tasks = ("cleanup_jobs", "reap_stale")

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, execution: JobExecution) -> None:
        payload = parse_payload(MaintenancePayload, execution.payload)
        unknown = sorted(set(payload.tasks) - set(self.known_tasks))
        if unknown:
            raise ValidationJobError(f"Unknown maintenance tasks: {unknown}")

        job_service = JobService(self.settings)
        results: dict[str, Any] = {}

        async with execution.phase("cleanup"):
            for index, task in enumerate(payload.tasks, start=1):
                async with execution.session() as session:
                    if task == "cleanup_jobs":
                        count = await job_service.cleanup_old_jobs(
                            session, dry_run=payload.dry_run
                        )
                    else:
                        count = await job_service.reap_stale_jobs(
                            session, dry_run=payload.dry_run
                        )
                results[task] = {
                    "status": "dry_run" if payload.dry_run else "completed",
                    "count": count,
                }
                execution.log.info("maintenance.task_completed", task=task, **results[task])
                await execution.report(index, len(payload.tasks))

            await execution.update_payload(results=results)
