"""
Error tracking REST API.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from relaykit.dependencies import ServiceContainer, get_container, verify_api_key
from relaykit.models.api_response import CreatedResponse, DeletedResponse, RetryScheduledResponse
from relaykit.models.error import (
    ErrorAlert,
    ErrorCategory,
    ErrorRecord,
    ErrorSeverity,
    ErrorStatistics,
    ErrorStatus,
    RetrySweepResult,
)
from relaykit.models.requests import AcknowledgeRequest, ErrorCreate, ResolveRequest
from relaykit.services.error_classifier import classify
from relaykit.services.exceptions import AlertNotFound, ConcurrentUpdateError, ErrorNotFound
from relaykit.utils.logging import get_logger, log_error_with_context

logger = get_logger(__name__)

router = APIRouter(prefix="/api/errors", tags=["errors"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[ErrorRecord])
async def list_errors(
    integration_id: Optional[str] = None,
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    status: Optional[ErrorStatus] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container)
) -> List[ErrorRecord]:
    """
    List error records, newest first.
    """
    try:
        return await container.recorder.get_errors(integration_id, category, severity, status, limit, offset)
    except Exception as e:
        log_error_with_context(logger, f"Error listing errors: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("", response_model=CreatedResponse, status_code=201)
async def record_error(
    report: ErrorCreate,
    container: ServiceContainer = Depends(get_container)
) -> CreatedResponse:
    """
    Record a failure reported by another service.

    Missing category or severity is classified from the message.
    """
    try:
        category, severity = report.category, report.severity
        if category is None or severity is None:
            classified_category, classified_severity = classify(
                report.message, {"integration_id": report.integration_id}
            )
            category = category or classified_category
            severity = severity or classified_severity

        error_id = await container.recorder.record_error(
            category,
            severity,
            report.message,
            details=report.details,
            context=report.context,
            retry_config=report.retry_config,
            integration_id=report.integration_id,
            stack_trace=report.stack_trace,
            tags=report.tags,
        )
        return CreatedResponse(id=error_id)
    except Exception as e:
        log_error_with_context(logger, f"Error recording error: {e}", e, integration_id=report.integration_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/statistics", response_model=ErrorStatistics)
async def get_error_statistics(
    integration_id: Optional[str] = None,
    time_range: str = "24h",
    container: ServiceContainer = Depends(get_container)
) -> ErrorStatistics:
    """
    Aggregate errors over one of the 1h, 24h, 7d or 30d windows.
    """
    try:
        return await container.recorder.get_error_statistics(integration_id, time_range)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error computing error statistics: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/alerts", response_model=List[ErrorAlert])
async def get_active_alerts(
    integration_id: Optional[str] = None,
    container: ServiceContainer = Depends(get_container)
) -> List[ErrorAlert]:
    """
    List active error alerts.
    """
    try:
        return await container.recorder.get_active_alerts(integration_id)
    except Exception as e:
        log_error_with_context(logger, f"Error listing alerts: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/alerts/{alert_id}/acknowledge", response_model=ErrorAlert)
async def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    container: ServiceContainer = Depends(get_container)
) -> ErrorAlert:
    try:
        return await container.recorder.acknowledge_alert(alert_id, request.acknowledged_by)
    except AlertNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error acknowledging alert {alert_id}: {e}", e, alert_id=alert_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/sweep", response_model=RetrySweepResult)
async def run_retry_sweep(container: ServiceContainer = Depends(get_container)) -> RetrySweepResult:
    """
    Process every due retry now instead of waiting for the worker.
    """
    try:
        return await container.retry_scheduler.process_pending_retries()
    except Exception as e:
        log_error_with_context(logger, f"Error running retry sweep: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/cleanup", response_model=DeletedResponse)
async def cleanup_errors(
    older_than_days: Optional[int] = Query(default=None, ge=0),
    container: ServiceContainer = Depends(get_container)
) -> DeletedResponse:
    """
    Delete resolved and failed errors past the retention window.
    """
    try:
        deleted = await container.recorder.cleanup_old_errors(older_than_days)
        return DeletedResponse(deleted_count=deleted)
    except Exception as e:
        log_error_with_context(logger, f"Error cleaning up errors: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{error_id}", response_model=ErrorRecord)
async def get_error(error_id: str, container: ServiceContainer = Depends(get_container)) -> ErrorRecord:
    try:
        return await container.recorder.get_error(error_id)
    except ErrorNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error fetching error {error_id}: {e}", e, error_id=error_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{error_id}/retry", response_model=RetryScheduledResponse)
async def retry_error(
    error_id: str,
    container: ServiceContainer = Depends(get_container)
) -> RetryScheduledResponse:
    """
    Schedule the next retry of an error; marks it failed once the budget is spent.
    """
    try:
        return await container.recorder.retry_error(error_id)
    except ErrorNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error scheduling retry for {error_id}: {e}", e, error_id=error_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{error_id}/resolve", response_model=ErrorRecord)
async def resolve_error(
    error_id: str,
    request: ResolveRequest,
    container: ServiceContainer = Depends(get_container)
) -> ErrorRecord:
    """
    Resolve an error and deactivate its alerts.
    """
    try:
        record = await container.recorder.resolve_error(error_id, request.resolution, request.resolved_by)
        await container.audit.create_audit_log(
            "error_resolved",
            "resolve",
            f"Error {error_id} resolved",
            user_id=request.resolved_by,
            integration_id=record.integration_id,
            resource_type="error_log",
            resource_id=error_id,
            details={"resolution": request.resolution},
        )
        return record
    except ErrorNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error resolving {error_id}: {e}", e, error_id=error_id)
        raise HTTPException(status_code=500, detail="Internal server error")
