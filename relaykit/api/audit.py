"""
Audit log REST API.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from relaykit.dependencies import ServiceContainer, get_container, verify_api_key
from relaykit.models.api_response import CreatedResponse, DeletedResponse
from relaykit.models.audit import (
    AuditAlert,
    AuditExport,
    AuditLogEntry,
    AuditLogFilter,
    AuditStatistics,
    AuditTrail,
    AuditTrailDetails,
    ComplianceReport,
    RiskLevel,
)
from relaykit.models.common import TimeRange
from relaykit.models.requests import (
    AcknowledgeRequest,
    AuditExportRequest,
    AuditLogCreate,
    AuditTrailCreate,
    ComplianceReportRequest,
    ResolveRequest,
)
from relaykit.services.exceptions import AlertNotFound, AuditTrailNotFound, ConcurrentUpdateError
from relaykit.utils.logging import get_logger, log_error_with_context

logger = get_logger(__name__)

router = APIRouter(prefix="/api/audit", tags=["audit"], dependencies=[Depends(verify_api_key)])


def _time_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[TimeRange]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Both start and end are required for a time range")
    return TimeRange(start=start, end=end)


@router.post("/logs", response_model=CreatedResponse, status_code=201)
async def create_audit_log(
    entry: AuditLogCreate,
    container: ServiceContainer = Depends(get_container)
) -> CreatedResponse:
    """
    Append an audit entry; the risk level is derived when omitted.
    """
    try:
        audit_id = await container.audit.create_audit_log(**entry.model_dump())
        return CreatedResponse(id=audit_id)
    except Exception as e:
        log_error_with_context(logger, f"Error creating audit log: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/logs", response_model=List[AuditLogEntry])
async def list_audit_logs(
    user_id: Optional[str] = None,
    integration_id: Optional[str] = None,
    event_type: Optional[str] = None,
    action: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    resource_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    tags: Optional[List[str]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container)
) -> List[AuditLogEntry]:
    """
    Query audit entries, newest first.
    """
    filters = AuditLogFilter(
        user_id=user_id,
        integration_id=integration_id,
        event_type=event_type,
        action=action,
        risk_level=risk_level,
        resource_type=resource_type,
        time_range=_time_range(start, end),
        tags=tags,
        limit=limit,
        offset=offset,
    )
    try:
        return await container.audit.get_audit_logs(filters)
    except Exception as e:
        log_error_with_context(logger, f"Error listing audit logs: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/search", response_model=List[AuditLogEntry])
async def search_audit_logs(
    q: str = Query(min_length=1),
    event_type: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=1000, ge=1, le=10000),
    container: ServiceContainer = Depends(get_container)
) -> List[AuditLogEntry]:
    """
    Free-text search; every term must match.
    """
    time_range = _time_range(start, end)
    try:
        return await container.audit.search_audit_logs(q, event_type, risk_level, time_range, limit)
    except Exception as e:
        log_error_with_context(logger, f"Error searching audit logs: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/statistics", response_model=AuditStatistics)
async def get_audit_statistics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: Optional[str] = None,
    integration_id: Optional[str] = None,
    container: ServiceContainer = Depends(get_container)
) -> AuditStatistics:
    time_range = _time_range(start, end)
    try:
        return await container.audit.get_audit_statistics(time_range, user_id, integration_id)
    except Exception as e:
        log_error_with_context(logger, f"Error computing audit statistics: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/trails", response_model=CreatedResponse, status_code=201)
async def create_audit_trail(
    trail: AuditTrailCreate,
    container: ServiceContainer = Depends(get_container)
) -> CreatedResponse:
    try:
        trail_id = await container.audit.create_audit_trail(
            trail.name, trail.description, trail.event_ids, trail.metadata
        )
        return CreatedResponse(id=trail_id)
    except Exception as e:
        log_error_with_context(logger, f"Error creating audit trail: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/trails", response_model=List[AuditTrail])
async def list_audit_trails(
    limit: int = Query(default=50, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container)
) -> List[AuditTrail]:
    try:
        return await container.audit.get_audit_trails(limit)
    except Exception as e:
        log_error_with_context(logger, f"Error listing audit trails: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/trails/{trail_id}", response_model=AuditTrailDetails)
async def get_audit_trail_details(
    trail_id: str,
    container: ServiceContainer = Depends(get_container)
) -> AuditTrailDetails:
    try:
        return await container.audit.get_audit_trail_details(trail_id)
    except AuditTrailNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error fetching audit trail {trail_id}: {e}", e, trail_id=trail_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/alerts", response_model=List[AuditAlert])
async def list_audit_alerts(
    is_active: Optional[bool] = None,
    risk_level: Optional[RiskLevel] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container)
) -> List[AuditAlert]:
    try:
        return await container.audit.get_audit_alerts(is_active, risk_level, limit)
    except Exception as e:
        log_error_with_context(logger, f"Error listing audit alerts: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/alerts/{alert_id}/acknowledge", response_model=AuditAlert)
async def acknowledge_audit_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    container: ServiceContainer = Depends(get_container)
) -> AuditAlert:
    try:
        return await container.audit.acknowledge_audit_alert(alert_id, request.acknowledged_by, request.notes)
    except AlertNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error acknowledging audit alert {alert_id}: {e}", e, alert_id=alert_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/alerts/{alert_id}/resolve", response_model=AuditAlert)
async def resolve_audit_alert(
    alert_id: str,
    request: ResolveRequest,
    container: ServiceContainer = Depends(get_container)
) -> AuditAlert:
    if not request.resolved_by or not request.resolution:
        raise HTTPException(status_code=400, detail="resolved_by and resolution are required")

    try:
        return await container.audit.resolve_audit_alert(alert_id, request.resolved_by, request.resolution)
    except AlertNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error resolving audit alert {alert_id}: {e}", e, alert_id=alert_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/compliance-report", response_model=ComplianceReport)
async def generate_compliance_report(
    request: ComplianceReportRequest,
    container: ServiceContainer = Depends(get_container)
) -> ComplianceReport:
    try:
        return await container.audit.generate_compliance_report(
            request.start, request.end, request.framework, request.include_recommendations
        )
    except Exception as e:
        log_error_with_context(logger, f"Error generating compliance report: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/export", response_model=AuditExport)
async def export_audit_logs(
    request: AuditExportRequest,
    container: ServiceContainer = Depends(get_container)
) -> AuditExport:
    try:
        return await container.audit.export_audit_logs(request.filters, request.format, request.include_details)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error exporting audit logs: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/cleanup", response_model=DeletedResponse)
async def cleanup_audit_logs(
    older_than_days: Optional[int] = Query(default=None, ge=0),
    keep_critical: bool = False,
    container: ServiceContainer = Depends(get_container)
) -> DeletedResponse:
    try:
        deleted = await container.audit.cleanup_old_audit_logs(older_than_days, keep_critical)
        return DeletedResponse(deleted_count=deleted)
    except Exception as e:
        log_error_with_context(logger, f"Error cleaning up audit logs: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")
