"""
Exception taxonomy for the sync engine.

Systemic and configuration errors abort a run before (or instead of) touching
rows; row-level problems are never raised out of the engine and are recorded
on the run instead.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for sync failures surfaced to callers."""

    code = "INTERNAL_ERROR"
    http_status = 500


class SyncInProgressError(SyncError):
    """Raised when another run already holds the lock for the tab."""

    code = "CONFLICT"
    http_status = 409

    def __init__(self, tab_mapping_id: int, active_run_id: int | None = None) -> None:
        message = f"A sync is already running for tab mapping {tab_mapping_id}"
        if active_run_id is not None:
            message += f" (sync run {active_run_id})"
        super().__init__(message + ".")
        self.tab_mapping_id = tab_mapping_id
        self.active_run_id = active_run_id


class SyncConfigError(SyncError):
    """Mapping configuration is unusable; rejected before any row is fetched."""

    code = "VALIDATION_ERROR"
    http_status = 400


class TabMappingNotFoundError(SyncConfigError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, tab_mapping_id: int) -> None:
        super().__init__(f"Tab mapping {tab_mapping_id} not found.")
        self.tab_mapping_id = tab_mapping_id


class NoKeyColumnError(SyncConfigError):
    """Zero or several key columns configured for a tab."""

    def __init__(self, tab_mapping_id: int, key_count: int) -> None:
        if key_count == 0:
            detail = "no key column is configured"
        else:
            detail = f"{key_count} key columns are configured"
        super().__init__(f"Tab mapping {tab_mapping_id} cannot sync: {detail}; exactly one is required.")
        self.tab_mapping_id = tab_mapping_id
        self.key_count = key_count


class PatternPriorityConflictError(SyncConfigError):
    def __init__(self, priority: int, pattern_names: list[str]) -> None:
        names = ", ".join(sorted(pattern_names))
        super().__init__(
            f"Active column patterns share priority {priority} ({names}); give each pattern a unique priority."
        )
        self.priority = priority
        self.pattern_names = pattern_names


class FetchError(SyncError):
    """The source could not be read (network, auth, missing tab)."""

    code = "EXTERNAL_API_ERROR"
    http_status = 502


class TransformError(ValueError):
    """A single cell could not be transformed; recorded as a row warning."""

    def __init__(self, column: str | None, message: str) -> None:
        super().__init__(message)
        self.column = column
