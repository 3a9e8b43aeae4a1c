"""
Job engine for league operations.

This package provides:
- Jobs and job items persisted in the database, claimed with compare-and-set
- Deduplicated submission keyed on normalized payloads
- Phase-weighted, monotonic progress reporting
- A closed set of job types dispatched through the job registry
- Category based retries with backoff
"""
