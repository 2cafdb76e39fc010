"""Provisioning run history endpoints.

- GET /runs - List runs, newest first
- GET /runs/{run_id} - One run
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from tinderbox.provision.models import ProvisioningRecord
from tinderbox.provision.service import (
    RunNotFoundError,
    get_provisioning_record,
    get_provisioning_records,
)
from tinderbox.types import RunStatus
from web.deps import get_db

router = APIRouter()


def _run_to_dict(record: ProvisioningRecord) -> dict[str, Any]:
    """Convert a run record to a dictionary."""
    return {
        "id": record.id,
        "variant": record.variant,
        "os_device": record.os_device,
        "data_device": record.data_device,
        "source_dir": record.source_dir,
        "work_dir": record.work_dir,
        "log_path": record.log_path,
        "diagnostics_path": record.diagnostics_path,
        "status": record.status,
        "tool_exit_code": record.tool_exit_code,
        "requested_at": record.requested_at.isoformat()
        if record.requested_at
        else None,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "error_type": record.error_type,
        "error_message": record.error_message,
    }


@router.get("")
def list_runs_endpoint(
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List provisioning runs.

    Args:
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of runs.

    Raises:
        HTTPException: If the status filter is invalid.
    """
    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in RunStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    records = get_provisioning_records(db, status=status_filter, limit=limit)
    return [_run_to_dict(r) for r in records]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get one provisioning run.

    Raises:
        HTTPException: If the run does not exist.
    """
    try:
        return _run_to_dict(get_provisioning_record(db, run_id))
    except RunNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "run_not_found",
                "message": f"Provisioning run not found: {run_id}",
            },
        ) from None
