"""
Audit logger for the risk-scored audit trail.

This service handles:
- Appending immutable audit entries with a derived risk level
- Alerts for high and critical risk entries
- Filtered queries, free-text search and statistics
- Curated audit trails
- Compliance reports and exports
- Retention cleanup
"""

import csv
import io
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from relaykit.models.audit import (
    AuditAlert,
    AuditEventType,
    AuditExport,
    AuditLogEntry,
    AuditLogFilter,
    AuditMetadata,
    AuditStatistics,
    AuditTrail,
    AuditTrailDetails,
    ComplianceGroups,
    ComplianceRecommendation,
    ComplianceReport,
    ComplianceSummary,
    RiskLevel,
)
from relaykit.models.common import TimeRange, utc_now
from relaykit.services.exceptions import AlertNotFound, AuditTrailNotFound
from relaykit.services.store import RedisStore
from relaykit.utils.logging import get_logger, log_audit_event


logger = get_logger(__name__)

HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)

EXPORT_FIELDS = [
    "timestamp",
    "event_type",
    "action",
    "description",
    "risk_level",
    "user_id",
    "integration_id",
    "resource_type",
    "resource_id",
    "tags",
]

HIGH_RISK_RECOMMENDATION_THRESHOLD = 10
AUTH_FAILURE_RECOMMENDATION_THRESHOLD = 100


def determine_risk_level(event_type: str, action: str) -> RiskLevel:
    """
    Derive the risk level of an audit event.

    Checked in order, first match wins:
    - critical: event type mentions security, auth_failure or
      permission_denied, or the action mentions delete
    - high: event type mentions config, credentials or data_export, or the
      action mentions update
    - medium: event type mentions data, webhook or version
    - low otherwise
    """
    if (
        "security" in event_type
        or "auth_failure" in event_type
        or "permission_denied" in event_type
        or "delete" in action
    ):
        return RiskLevel.CRITICAL

    if (
        "config" in event_type
        or "credentials" in event_type
        or "data_export" in event_type
        or "update" in action
    ):
        return RiskLevel.HIGH

    if "data" in event_type or "webhook" in event_type or "version" in event_type:
        return RiskLevel.MEDIUM

    return RiskLevel.LOW


def _statistics_bucket(event_type: str) -> Optional[str]:
    if "auth" in event_type or "permission" in event_type or "security" in event_type:
        return "security"
    if "data" in event_type or "sync" in event_type:
        return "data"
    if "config" in event_type or "settings" in event_type:
        return "configuration"
    if "error" in event_type:
        return "error"
    return None


def _matches(entry: AuditLogEntry, filters: AuditLogFilter) -> bool:
    if filters.user_id and entry.user_id != filters.user_id:
        return False
    if filters.integration_id and entry.integration_id != filters.integration_id:
        return False
    if filters.event_type and entry.event_type != filters.event_type:
        return False
    if filters.action and entry.action != filters.action:
        return False
    if filters.risk_level and entry.risk_level != filters.risk_level:
        return False
    if filters.resource_type and entry.resource_type != filters.resource_type:
        return False
    if filters.time_range and not filters.time_range.contains(entry.timestamp):
        return False
    if filters.tags and not set(filters.tags) & set(entry.tags):
        return False
    return True


def _searchable_text(entry: AuditLogEntry) -> str:
    parts = [
        entry.description,
        entry.action,
        entry.event_type,
        json.dumps(entry.details if entry.details is not None else {}, default=str),
        entry.metadata.model_dump_json(exclude_none=True) if entry.metadata else "{}",
        *entry.tags,
    ]
    return " ".join(parts).lower()


class AuditLogger:
    """
    Service recording and querying audit entries.

    Entries are append-only; the only removal path is retention cleanup.
    """

    def __init__(self, store: RedisStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def create_audit_log(
        self,
        event_type: str,
        action: str,
        description: str,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Any] = None,
        metadata: Optional[AuditMetadata] = None,
        risk_level: Optional[RiskLevel] = None,
        tags: Optional[List[str]] = None,
        related_events: Optional[List[str]] = None
    ) -> str:
        """
        Append an audit entry.

        The risk level is derived from the event type and action unless
        given. High and critical entries also get an active audit alert.

        Args:
            event_type: Event type (open vocabulary, see AuditEventType)
            action: Action performed, e.g. create, update, delete
            description: Human-readable description
            user_id: Acting user
            integration_id: Affected integration
            resource_type: Affected resource type
            resource_id: Affected resource id
            details: Opaque event details
            metadata: Request metadata
            risk_level: Explicit risk level
            tags: Tags
            related_events: Ids of related audit entries

        Returns:
            The new entry id
        """
        event_type = event_type.value if isinstance(event_type, AuditEventType) else event_type
        level = RiskLevel(risk_level) if risk_level else determine_risk_level(event_type, action)
        now = self.clock()

        entry = AuditLogEntry(
            event_type=event_type,
            user_id=user_id,
            integration_id=integration_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            description=description,
            details=details,
            metadata=metadata,
            risk_level=level,
            tags=tags or [],
            related_events=related_events or [],
            timestamp=now,
            indexed=False,
        )

        alert = None
        if level in HIGH_RISK_LEVELS:
            alert = AuditAlert(
                audit_log_id=entry.id,
                event_type=event_type,
                risk_level=level,
                message=f"High-risk event: {description}",
                details=details,
                created_at=now,
                updated_at=now,
            )

        def _raise_alert(pipe, document: AuditLogEntry) -> None:
            if alert is not None:
                self.store.queue_insert(pipe, RedisStore.AUDIT_ALERTS, alert)

        await self.store.insert(RedisStore.AUDIT_LOGS, entry, extra_ops=_raise_alert)

        log_audit_event(logger, entry.id, event_type, level.value)
        return entry.id

    async def get_audit_log(self, audit_id: str) -> Optional[AuditLogEntry]:
        return await self.store.get(RedisStore.AUDIT_LOGS, audit_id, AuditLogEntry)

    async def _query(self, filters: AuditLogFilter) -> List[AuditLogEntry]:
        entries = await self.store.list_all(RedisStore.AUDIT_LOGS, AuditLogEntry)
        matching = [entry for entry in entries if _matches(entry, filters)]
        matching.sort(key=lambda entry: entry.timestamp, reverse=True)
        return matching

    async def get_audit_logs(self, filters: Optional[AuditLogFilter] = None) -> List[AuditLogEntry]:
        """
        Query audit entries, newest first.

        Unset filter fields do not filter; tags match on any overlap.
        """
        filters = filters or AuditLogFilter()
        matching = await self._query(filters)
        return matching[filters.offset:filters.offset + filters.limit]

    async def search_audit_logs(
        self,
        query: str,
        event_type: Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        time_range: Optional[TimeRange] = None,
        limit: int = 1000
    ) -> List[AuditLogEntry]:
        """
        Free-text search over audit entries.

        Every whitespace-separated term of ``query`` (case-insensitive) must
        appear somewhere in the entry's description, action, event type,
        details, metadata or tags.

        Returns:
            Matching entries, newest first
        """
        terms = query.lower().split()
        candidates = await self._query(
            AuditLogFilter(event_type=event_type, risk_level=risk_level, time_range=time_range)
        )

        results = []
        for entry in candidates:
            text = _searchable_text(entry)
            if all(term in text for term in terms):
                results.append(entry)
                if len(results) >= limit:
                    break
        return results

    async def get_audit_statistics(
        self,
        time_range: Optional[TimeRange] = None,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None
    ) -> AuditStatistics:
        """
        Aggregate audit entries.

        Args:
            time_range: Window (default: the last 30 days)
            user_id: Only entries of this user
            integration_id: Only entries of this integration

        Returns:
            Audit statistics
        """
        if time_range is None:
            now = self.clock()
            time_range = TimeRange(start=now - timedelta(days=30), end=now)

        entries = await self._query(
            AuditLogFilter(time_range=time_range, user_id=user_id, integration_id=integration_id)
        )

        stats = AuditStatistics(total_events=len(entries))
        for entry in entries:
            stats.events_by_type[entry.event_type] = stats.events_by_type.get(entry.event_type, 0) + 1
            stats.events_by_risk[entry.risk_level.value] = stats.events_by_risk.get(entry.risk_level.value, 0) + 1
            stats.events_by_action[entry.action] = stats.events_by_action.get(entry.action, 0) + 1

            hour = entry.timestamp.strftime("%Y-%m-%dT%H")
            stats.events_by_hour[hour] = stats.events_by_hour.get(hour, 0) + 1

            if entry.user_id:
                stats.top_users[entry.user_id] = stats.top_users.get(entry.user_id, 0) + 1
            if entry.integration_id:
                stats.top_integrations[entry.integration_id] = stats.top_integrations.get(entry.integration_id, 0) + 1

            bucket = _statistics_bucket(entry.event_type)
            if bucket == "security":
                stats.security_events += 1
            elif bucket == "data":
                stats.data_events += 1
            elif bucket == "configuration":
                stats.configuration_events += 1
            elif bucket == "error":
                stats.error_events += 1

        return stats

    # ========== Trails ==========

    async def create_audit_trail(
        self,
        name: str,
        description: str,
        event_ids: List[str],
        metadata: Optional[Any] = None
    ) -> str:
        """Group related audit entries under a named trail; returns its id."""
        now = self.clock()
        trail = AuditTrail(
            name=name,
            description=description,
            event_ids=list(event_ids),
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(RedisStore.AUDIT_TRAILS, trail)

        logger.info(f"Created audit trail {name}", extra={"trail_id": trail.id, "events": len(event_ids)})
        return trail.id

    async def get_audit_trails(self, limit: int = 50) -> List[AuditTrail]:
        trails = await self.store.list_all(RedisStore.AUDIT_TRAILS, AuditTrail)
        trails.sort(key=lambda trail: trail.created_at, reverse=True)
        return trails[:limit]

    async def get_audit_trail_details(self, trail_id: str) -> AuditTrailDetails:
        """
        Get a trail with its entries sorted by timestamp.

        Entries removed by retention cleanup are skipped.

        Raises:
            AuditTrailNotFound: If the trail does not exist
        """
        trail = await self.store.get(RedisStore.AUDIT_TRAILS, trail_id, AuditTrail)
        if trail is None:
            raise AuditTrailNotFound(f"Audit trail {trail_id} not found")

        events = await self.store.get_many(RedisStore.AUDIT_LOGS, trail.event_ids, AuditLogEntry)
        events.sort(key=lambda entry: entry.timestamp)

        return AuditTrailDetails(**trail.model_dump(), events=events)

    # ========== Alerts ==========

    async def get_audit_alerts(
        self,
        is_active: Optional[bool] = None,
        risk_level: Optional[RiskLevel] = None,
        limit: int = 50
    ) -> List[AuditAlert]:
        alerts = await self.store.list_all(RedisStore.AUDIT_ALERTS, AuditAlert)
        alerts = [
            alert for alert in alerts
            if (is_active is None or alert.is_active == is_active)
            and (risk_level is None or alert.risk_level == risk_level)
        ]
        alerts.sort(key=lambda alert: alert.created_at, reverse=True)
        return alerts[:limit]

    async def acknowledge_audit_alert(
        self,
        alert_id: str,
        acknowledged_by: str,
        notes: Optional[str] = None
    ) -> AuditAlert:
        """
        Acknowledge an audit alert; it stays active.

        Raises:
            AlertNotFound: If the alert does not exist
        """
        def _acknowledge(alert: AuditAlert) -> AuditAlert:
            now = self.clock()
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = now
            alert.notes = notes
            alert.updated_at = now
            return alert

        updated = await self.store.update(RedisStore.AUDIT_ALERTS, alert_id, AuditAlert, _acknowledge)
        if updated is None:
            raise AlertNotFound(f"Audit alert {alert_id} not found")
        return updated

    async def resolve_audit_alert(self, alert_id: str, resolved_by: str, resolution: str) -> AuditAlert:
        """
        Resolve and deactivate an audit alert.

        Raises:
            AlertNotFound: If the alert does not exist
        """
        def _resolve(alert: AuditAlert) -> AuditAlert:
            now = self.clock()
            alert.is_active = False
            alert.resolved_by = resolved_by
            alert.resolved_at = now
            alert.resolution = resolution
            alert.updated_at = now
            return alert

        updated = await self.store.update(RedisStore.AUDIT_ALERTS, alert_id, AuditAlert, _resolve)
        if updated is None:
            raise AlertNotFound(f"Audit alert {alert_id} not found")
        return updated

    # ========== Reporting ==========

    async def generate_compliance_report(
        self,
        start: datetime,
        end: datetime,
        framework: str = "general",
        include_recommendations: bool = False
    ) -> ComplianceReport:
        """
        Build a compliance report for a time window.

        Entries are grouped into data processing, access control, security
        incidents (high/critical risk) and configuration changes.
        Recommendations are threshold based.
        """
        time_range = TimeRange(start=start, end=end)
        entries = await self._query(AuditLogFilter(time_range=time_range))

        high_risk = [entry for entry in entries if entry.risk_level in HIGH_RISK_LEVELS]

        summary = ComplianceSummary(
            total_events=len(entries),
            security_events=sum(
                1 for entry in entries if "auth" in entry.event_type or "security" in entry.event_type
            ),
            data_events=sum(1 for entry in entries if "data" in entry.event_type),
            configuration_changes=sum(
                1 for entry in entries if "config" in entry.event_type or "updated" in entry.event_type
            ),
            high_risk_events=len(high_risk),
        )

        groups = ComplianceGroups(
            data_processing_events=[
                entry for entry in entries
                if any(marker in entry.event_type for marker in ("data_sync", "data_export", "data_import"))
            ],
            access_control_events=[
                entry for entry in entries
                if "auth" in entry.event_type or "permission" in entry.event_type
            ],
            security_incidents=high_risk,
            configuration_changes=[
                entry for entry in entries
                if any(marker in entry.event_type for marker in ("config", "settings", "updated"))
            ],
        )

        return ComplianceReport(
            generated_at=self.clock(),
            time_range=time_range,
            framework=framework,
            summary=summary,
            compliance=groups,
            recommendations=self._recommendations(entries, high_risk) if include_recommendations else [],
        )

    @staticmethod
    def _recommendations(
        entries: List[AuditLogEntry],
        high_risk: List[AuditLogEntry]
    ) -> List[ComplianceRecommendation]:
        recommendations = []

        if len(high_risk) > HIGH_RISK_RECOMMENDATION_THRESHOLD:
            recommendations.append(ComplianceRecommendation(
                priority="high",
                category="security",
                title="High number of high-risk events",
                description=f"Found {len(high_risk)} high-risk events. Review security controls.",
                actions=[
                    "Review and strengthen access controls",
                    "Implement additional monitoring",
                    "Conduct security assessment",
                    "Update security policies",
                ],
            ))

        auth_failures = sum(1 for entry in entries if entry.event_type == AuditEventType.AUTH_FAILURE.value)
        if auth_failures > AUTH_FAILURE_RECOMMENDATION_THRESHOLD:
            recommendations.append(ComplianceRecommendation(
                priority="medium",
                category="authentication",
                title="High number of authentication failures",
                description=f"Detected {auth_failures} failed authentication attempts.",
                actions=[
                    "Implement account lockout policies",
                    "Enable multi-factor authentication",
                    "Review authentication logs",
                    "Consider IP-based restrictions",
                ],
            ))

        return recommendations

    async def export_audit_logs(
        self,
        filters: Optional[AuditLogFilter] = None,
        format: str = "json",
        include_details: bool = False
    ) -> AuditExport:
        """
        Render matching audit entries as a JSON or CSV document.

        The export is capped at settings.audit_export_limit rows and expires
        after 24 hours.

        Raises:
            ValueError: If the format is not json or csv
        """
        from relaykit.config import settings

        if format not in ("json", "csv"):
            raise ValueError(f"Unsupported export format '{format}'. Use json or csv")

        filters = (filters or AuditLogFilter()).model_copy(
            update={"limit": settings.audit_export_limit, "offset": 0}
        )
        entries = await self.get_audit_logs(filters)

        rows = []
        for entry in entries:
            row: Dict[str, Any] = {
                "timestamp": entry.timestamp.isoformat(),
                "event_type": entry.event_type,
                "action": entry.action,
                "description": entry.description,
                "risk_level": entry.risk_level.value,
                "user_id": entry.user_id,
                "integration_id": entry.integration_id,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
                "tags": ", ".join(entry.tags),
            }
            if include_details:
                row["details"] = entry.details
                row["metadata"] = entry.metadata.model_dump(exclude_none=True) if entry.metadata else None
            rows.append(row)

        if format == "csv":
            fieldnames = EXPORT_FIELDS + (["details", "metadata"] if include_details else [])
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=fieldnames)
            writer.writeheader()
            for row in rows:
                if include_details:
                    row["details"] = json.dumps(row["details"], default=str) if row["details"] is not None else ""
                    row["metadata"] = json.dumps(row["metadata"]) if row["metadata"] is not None else ""
                writer.writerow(row)
            content = buffer.getvalue()
        else:
            content = json.dumps(rows, default=str)

        exported_at = self.clock()
        logger.info(f"Exported {len(rows)} audit entries as {format}", extra={"record_count": len(rows)})

        return AuditExport(
            success=True,
            format=format,
            record_count=len(rows),
            exported_at=exported_at,
            expires_at=exported_at + timedelta(hours=24),
            content=content,
        )

    async def cleanup_old_audit_logs(
        self,
        older_than_days: Optional[int] = None,
        keep_critical: bool = False
    ) -> int:
        """
        Delete audit entries older than the cutoff.

        Args:
            older_than_days: Age cutoff in days (default: settings.audit_retention_days)
            keep_critical: Keep critical-risk entries regardless of age

        Returns:
            Number of deleted entries
        """
        if older_than_days is None:
            from relaykit.config import settings
            older_than_days = settings.audit_retention_days

        cutoff = self.clock() - timedelta(days=older_than_days)
        entries = await self.store.list_all(RedisStore.AUDIT_LOGS, AuditLogEntry)
        deleted = 0

        for entry in entries:
            if entry.timestamp >= cutoff:
                continue
            if keep_critical and entry.risk_level == RiskLevel.CRITICAL:
                continue
            if await self.store.delete(RedisStore.AUDIT_LOGS, entry.id, AuditLogEntry):
                deleted += 1

        logger.info(
            f"Cleaned up {deleted} old audit entries",
            extra={"older_than_days": older_than_days, "keep_critical": keep_critical}
        )
        return deleted
