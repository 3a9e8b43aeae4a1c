"""
Closed set of job types with their phase tables and default priorities.
"""

from enum import Enum

from api.v1.infra.jobs.progress import PhaseSpec, validate_phases


class JobType(str, Enum):
    """Every job type the engine knows how to run."""

    MISSION_ORDERS_BULK_PDF = "mission_orders.bulk_pdf"
    MISSION_ORDERS_BULK_EMAIL = "mission_orders.bulk_email"
    EXPORTS_TABLE = "exports.table"
    MAINTENANCE_CLEANUP = "maintenance.cleanup"


JOB_PHASES: dict[JobType, tuple[PhaseSpec, ...]] = {
    JobType.MISSION_ORDERS_BULK_PDF: validate_phases(
        [
            PhaseSpec("validate", 5),
            PhaseSpec("generate", 50),
            PhaseSpec("merge", 25),
            PhaseSpec("upload", 20),
        ]
    ),
    JobType.MISSION_ORDERS_BULK_EMAIL: validate_phases(
        [
            PhaseSpec("prepare", 15),
            PhaseSpec("render", 35),
            PhaseSpec("send", 50),
        ]
    ),
    JobType.EXPORTS_TABLE: validate_phases(
        [
            PhaseSpec("validate", 10),
            PhaseSpec("render", 60),
            PhaseSpec("upload", 30),
        ]
    ),
    JobType.MAINTENANCE_CLEANUP: validate_phases([PhaseSpec("cleanup", 100)]),
}

DEFAULT_PRIORITY = 100

DEFAULT_PRIORITIES: dict[JobType, int] = {
    JobType.MISSION_ORDERS_BULK_EMAIL: 100,
    JobType.MISSION_ORDERS_BULK_PDF: 90,
    JobType.EXPORTS_TABLE: 50,
    JobType.MAINTENANCE_CLEANUP: 10,
}

DEFAULT_LABELS: dict[JobType, str] = {
    JobType.MISSION_ORDERS_BULK_PDF: "Mission orders PDF batch",
    JobType.MISSION_ORDERS_BULK_EMAIL: "Mission orders email campaign",
    JobType.EXPORTS_TABLE: "Data export",
    JobType.MAINTENANCE_CLEANUP: "Job maintenance",
}


def parse_job_type(value: str) -> JobType | None:
    """Return the ``JobType`` for a stored string, or None when unknown."""
    try:
        return JobType(value)
    except ValueError:
        return None
