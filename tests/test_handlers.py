import base64
import csv
import io

import httpx
import pytest
from pypdf import PdfReader

from api.infra.email_transport import EmailSendError
from api.v1.infra.jobs.errors import ValidationJobError
from api.v1.infra.jobs.handlers import merge_pdfs, parse_payload
from api.v1.infra.jobs.kinds import JobType
from api.v1.infra.jobs.models import JobItem, JobItemStatus, JobStatus
from api.v1.infra.jobs.schemas import BulkPdfPayload
from api.v1.infra.jobs.service import JobService
from conftest import make_pdf, render_error

PDF = JobType.MISSION_ORDERS_BULK_PDF.value
EMAIL = JobType.MISSION_ORDERS_BULK_EMAIL.value
EXPORT = JobType.EXPORTS_TABLE.value


def orders(count: int) -> dict:
    return {
        "orders": [{"matchId": f"m{i}", "officialId": f"o{i}"} for i in range(count)]
    }


class TestMergePdfs:
    def test_merges_all_pages(self):
        merged, pages = merge_pdfs([make_pdf(1), make_pdf(2)])

        assert pages == 3
        assert len(PdfReader(io.BytesIO(merged)).pages) == 3

    def test_skips_unreadable_documents(self):
        merged, pages = merge_pdfs([b"not a pdf", make_pdf(1)])

        assert pages == 1
        assert merged.startswith(b"%PDF")

    def test_no_pages(self):
        assert merge_pdfs([]) == (b"", 0)
        assert merge_pdfs([b"garbage"]) == (b"", 0)


def test_parse_payload_reports_location():
    with pytest.raises(ValidationJobError, match="orders"):
        parse_payload(BulkPdfPayload, {"orders": [{"matchId": "m1"}]})


class TestBulkPdfHandler:
    async def test_generates_merges_and_uploads(
        self, runner, make_job, fetch_job, storage, renderer
    ):
        job = await make_job(type=PDF, payload=orders(3), dedupe_key="abc")

        report = await runner.run_once()

        assert report.outcomes[0].status == JobStatus.COMPLETED.value
        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.progress == 100
        assert stored.total == 3
        assert stored.artifact_path == "batches/abc.pdf"
        assert stored.artifact_type == "pdf"
        assert stored.payload["fetch_stats"]["succeeded"] == 3
        assert stored.payload["artifact"]["pages"] == 3

        data, content_type = storage.objects["batches/abc.pdf"]
        assert content_type == "application/pdf"
        assert len(PdfReader(io.BytesIO(data)).pages) == 3
        assert renderer.calls == [("m0", "o0"), ("m1", "o1"), ("m2", "o2")]

    async def test_partial_render_failures_are_recorded(
        self, runner, make_job, fetch_job, renderer
    ):
        renderer.failures["m1"] = render_error(400)
        job = await make_job(type=PDF, payload=orders(3))

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        stats = stored.payload["fetch_stats"]
        assert stats["total"] == 3
        assert stats["succeeded"] == 2
        assert stats["failed"] == 1
        assert stats["failures"][0]["matchId"] == "m1"
        assert stats["failures"][0]["reason"] == "render_failed"
        assert stored.payload["artifact"]["pages"] == 2
        assert stored.artifact_path == f"batches/{job.id}.pdf"

    async def test_no_pages_after_permanent_failures(
        self, runner, make_job, fetch_job, renderer, storage
    ):
        renderer.failures.update({"m0": render_error(404), "m1": render_error(404)})
        job = await make_job(type=PDF, payload=orders(2))

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "no_pages"
        assert stored.artifact_path is None
        assert storage.objects == {}

    async def test_no_pages_after_transient_failures_is_retried(
        self, runner, make_job, fetch_job, renderer
    ):
        renderer.failures["m0"] = httpx.ConnectError("renderer down")
        job = await make_job(type=PDF, payload=orders(1))

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.RETRYING.value
        assert stored.error_code == "no_pages"
        assert stored.next_retry_at is not None

    async def test_invalid_base64_counts_as_failure(
        self, runner, make_job, fetch_job, renderer
    ):
        async def broken_render(match_id: str, official_id: str) -> str:
            return "%%% not base64 %%%"

        renderer.render = broken_render
        job = await make_job(type=PDF, payload=orders(1))

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.payload["fetch_stats"]["failures"][0]["reason"] == "invalid_base64"

    @pytest.mark.parametrize(
        "payload, code",
        [
            ({}, "empty_payload"),
            ({"orders": []}, "empty_payload"),
            ({"orders": [{"matchId": "m1", "officialId": " "}]}, "invalid_payload"),
        ],
    )
    async def test_invalid_payload_fails_without_retry(
        self, runner, make_job, fetch_job, payload, code
    ):
        job = await make_job(type=PDF, payload=payload)

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == code
        assert stored.attempts == 1


def recipients(count: int, invalid: int = 0) -> list[dict]:
    valid = [
        {"email": f"official{i}@league.test", "name": f"Official {i}"}
        for i in range(count - invalid)
    ]
    bad = [{"email": f"broken-address-{i}", "name": "Broken"} for i in range(invalid)]
    return valid + bad


class TestBulkEmailHandler:
    async def test_partial_failure_isolation(
        self, runner, make_job, fetch_job, transport, sessionmaker, settings
    ):
        """10 recipients with 3 invalid addresses: job completes, 7 sent, 3 skipped."""
        job = await make_job(
            type=EMAIL,
            payload={
                "subject": "Mission order {match}",
                "template": "Hello {name}, see you at {match}.",
                "variables": {"match": "J12"},
                "recipients": recipients(10, invalid=3),
            },
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.total == 10
        assert stored.payload["stats"] == {
            "total": 10,
            "completed": 7,
            "skipped": 3,
            "failed": 0,
        }
        assert len(transport.sent) == 7
        assert transport.sent[0].subject == "Mission order J12"
        assert transport.sent[0].body == "Hello Official 0, see you at J12."

        async with sessionmaker() as session:
            items = await JobService(settings).list_items(session, job.id)
        assert [item.seq for item in items] == list(range(10))
        skipped = [item for item in items if item.status == JobItemStatus.SKIPPED.value]
        assert {item.error_code for item in skipped} == {"invalid_email"}

    async def test_template_errors_skip_the_recipient(
        self, runner, make_job, fetch_job, transport
    ):
        job = await make_job(
            type=EMAIL,
            payload={
                "subject": "Convocation",
                "template": "Hello {name}, your seat is {seat}",
                "recipients": [
                    {"email": "a@league.test", "variables": {"seat": "A1"}},
                    {"email": "b@league.test"},
                ],
            },
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.payload["stats"]["completed"] == 1
        assert stored.payload["stats"]["skipped"] == 1
        assert transport.sent[0].to == ["a@league.test"]

    async def test_addresses_with_whitespace_are_skipped(
        self, runner, make_job, fetch_job, transport, sessionmaker, settings
    ):
        job = await make_job(
            type=EMAIL,
            payload={
                "subject": "Hi",
                "template": "Hi",
                "recipients": [{"email": "john doe@league.test"}, {"email": "a@league.test"}],
            },
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.payload["stats"]["skipped"] == 1
        assert stored.payload["stats"]["failed"] == 0
        assert transport.sent[0].to == ["a@league.test"]
        async with sessionmaker() as session:
            items = await JobService(settings).list_items(session, job.id)
        assert items[0].error_code == "invalid_email"

    @pytest.mark.parametrize(
        "template", ["{email.__class__}", "{variables[0]}", "{name.upper}", "{}"]
    )
    async def test_templates_cannot_reach_into_values(
        self, runner, make_job, fetch_job, transport, template
    ):
        job = await make_job(
            type=EMAIL,
            payload={
                "subject": "Hi",
                "template": template,
                "recipients": [{"email": "a@league.test", "name": "A"}],
            },
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.payload["stats"]["skipped"] == 1
        assert transport.sent == []

    async def test_provider_failures_stay_on_items(
        self, runner, make_job, fetch_job, transport
    ):
        original_send = transport.send

        async def flaky_send(message):
            if message.to == ["official1@league.test"]:
                raise EmailSendError("rejected", code="sendgrid_400", status_code=400)
            await original_send(message)

        transport.send = flaky_send
        job = await make_job(
            type=EMAIL,
            payload={"subject": "Hi", "template": "Hi", "recipients": recipients(3)},
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.payload["stats"]["failed"] == 1
        assert stored.payload["stats"]["completed"] == 2

    async def test_retry_resumes_where_previous_attempt_stopped(
        self, runner, make_job, fetch_job, transport, sessionmaker
    ):
        targets = recipients(4)
        job = await make_job(
            type=EMAIL,
            status=JobStatus.RETRYING.value,
            attempts=1,
            payload={"subject": "Hi", "template": "Hi", "recipients": targets},
        )
        # A crashed attempt finished two recipients and died while sending the third
        states = (
            JobItemStatus.COMPLETED,
            JobItemStatus.COMPLETED,
            JobItemStatus.RUNNING,
            JobItemStatus.PENDING,
        )
        async with sessionmaker() as session:
            for seq, (target, state) in enumerate(zip(targets, states)):
                session.add(
                    JobItem(job_id=job.id, seq=seq, status=state.value, target=target)
                )
            await session.commit()

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.attempts == 2
        assert stored.payload["stats"]["completed"] == 4
        assert [m.to[0] for m in transport.sent] == [
            "official2@league.test",
            "official3@league.test",
        ]

    async def test_mission_order_attachment(
        self, runner, make_job, transport, renderer
    ):
        await make_job(
            type=EMAIL,
            payload={
                "subject": "Ordre de mission",
                "template": "Bonjour {name}",
                "attach_mission_order": True,
                "recipients": [
                    {
                        "email": "ref@league.test",
                        "name": "Ref",
                        "matchId": "m7",
                        "officialId": "o3",
                    }
                ],
            },
        )

        await runner.run_once()

        (message,) = transport.sent
        (attachment,) = message.attachments
        assert attachment.filename == "ordre_de_mission_m7_o3.pdf"
        assert base64.b64decode(attachment.content_base64).startswith(b"%PDF")
        assert renderer.calls == [("m7", "o3")]

    async def test_no_recipients(self, runner, make_job, fetch_job):
        job = await make_job(type=EMAIL, payload={"subject": "x", "template": "y"})

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "no_recipients"


class TestTableExportHandler:
    async def test_exports_dict_rows(self, runner, make_job, fetch_job, storage):
        job = await make_job(
            type=EXPORT,
            payload={
                "dataset": "officials",
                "columns": ["name", "email"],
                "rows": [
                    {"name": "Ana", "email": "ana@league.test"},
                    {"name": "Bo", "email": "bo@league.test", "extra": 1},
                ],
            },
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.artifact_type == "csv"
        assert stored.payload["artifact"]["rows"] == 2

        data, content_type = storage.objects[stored.artifact_path]
        assert content_type == "text/csv"
        rows = list(csv.reader(io.StringIO(data.decode())))
        assert rows == [
            ["name", "email"],
            ["Ana", "ana@league.test"],
            ["Bo", "bo@league.test"],
        ]

    async def test_list_rows_must_match_columns(self, runner, make_job, fetch_job):
        job = await make_job(
            type=EXPORT,
            payload={"dataset": "teams", "columns": ["a", "b"], "rows": [["1"]]},
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "invalid_payload"

    async def test_upload_failure_is_retried(self, runner, make_job, fetch_job, storage):
        async def failing_upload(path, data, content_type):
            raise httpx.ReadTimeout("storage slow")

        storage.upload = failing_upload
        job = await make_job(
            type=EXPORT,
            payload={"dataset": "teams", "columns": ["a"], "rows": [["1"]]},
        )

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.RETRYING.value
        assert stored.error_code == "timeout"
        assert stored.artifact_path is None


class TestMaintenanceHandler:
    async def test_dry_run_reports_counts(self, runner, make_job, fetch_job):
        job = await make_job(payload={"dry_run": True})

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.payload["results"] == {
            "cleanup_jobs": {"status": "dry_run", "count": 0},
            "reap_stale": {"status": "dry_run", "count": 0},
        }

    async def test_unknown_task(self, runner, make_job, fetch_job):
        job = await make_job(payload={"tasks": ["vacuum"]})

        await runner.run_once()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "invalid_payload"
