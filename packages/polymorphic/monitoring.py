"""
Query performance metrics, usage statistics and schema alerts.

PolymorphicMonitoring keeps bounded in-memory histories of query metrics,
evolution events and alerts, and can persist them to a DocumentStore.
Alerts are raised for slow queries, error bursts, low-confidence or new
discoveries, unhealthy schema analyses and high-impact config changes.

Usage:
    monitoring = PolymorphicMonitoring(tracker=tracker)
    monitoring.watch(tracker)
    rows = await monitoring.execute(query)          # timed and recorded
    rows = await monitoring.execute(query, cache.execute)
    report = monitoring.generate_report(start, end)
"""

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any

from packages.polymorphic.execution import Row
from packages.polymorphic.query import ChainableQuery
from packages.polymorphic.schemas import (
    AlertSeverity,
    AlertType,
    ChangeImpact,
    Confidence,
    ConfigChange,
    ConfigChangeKind,
    DiscoveryResult,
    EvolutionEvent,
    EvolutionEventType,
    EvolutionSource,
    MonitoringOverview,
    MonitoringReport,
    PerformanceMetric,
    PolymorphicType,
    SchemaAlert,
    SchemaAnalysis,
    UsageStats,
    utc_now,
)
from packages.polymorphic.tracker import PolymorphicTracker
from packages.shared.storage.base import DocumentStore

logger = logging.getLogger(__name__)

MONITORING_DOCUMENT_KEY = "polymorphic-monitoring"

QueryRunner = Callable[[ChainableQuery], Awaitable[list[Row]]]


@dataclass
class AlertThresholds:
    response_time_ms: float = 1000.0
    error_rate: float = 0.05
    unused_days: int = 7
    health_score: float = 0.7
    duplicate_window_seconds: float = 60.0
    auto_resolve_low_after_hours: float = 24.0


class PolymorphicMonitoring:
    """Collects metrics and raises alerts for polymorphic associations."""

    def __init__(
        self,
        *,
        tracker: PolymorphicTracker | None = None,
        store: DocumentStore | None = None,
        document_key: str = MONITORING_DOCUMENT_KEY,
        thresholds: AlertThresholds | None = None,
        max_metrics: int = 1000,
        max_events: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            tracker: Used to tell new discovered targets from tracked ones
            store: Where persist() and load() keep monitoring state
            document_key: Key of the monitoring document in store
            thresholds: Alert thresholds
            max_metrics: Newest metrics kept in memory
            max_events: Newest evolution events kept in memory
            clock: Source of timestamps
        """
        self._tracker = tracker
        self._store = store
        self._document_key = DocumentStore.validate_key(document_key)
        self.thresholds = thresholds or AlertThresholds()
        self.max_metrics = max_metrics
        self.max_events = max_events
        self._clock = clock
        self._metrics: list[PerformanceMetric] = []
        self._events: list[EvolutionEvent] = []
        self._alerts: list[SchemaAlert] = []
        self._usage: dict[PolymorphicType, UsageStats] = {}

    # =========================================================================
    # Metrics
    # =========================================================================

    def record_metric(
        self,
        operation: str,
        duration_ms: float,
        *,
        success: bool = True,
        polymorphic_type: PolymorphicType | None = None,
        target_types: Iterable[str] = (),
        record_count: int | None = None,
        error: str | None = None,
    ) -> PerformanceMetric:
        """Record one timed operation and check it against the thresholds."""
        metric = PerformanceMetric(
            timestamp=self._clock(),
            operation=operation,
            duration_ms=duration_ms,
            success=success,
            polymorphic_type=polymorphic_type,
            record_count=record_count,
            error=error,
        )
        self._metrics.append(metric)
        del self._metrics[: -self.max_metrics]

        if polymorphic_type is not None:
            self._update_usage(polymorphic_type, duration_ms, success, target_types)
        self._check_performance(operation, duration_ms, success)
        return metric

    async def execute(
        self,
        query: ChainableQuery,
        runner: QueryRunner | None = None,
        *,
        operation: str | None = None,
    ) -> list[Row]:
        """
        Run query (query.all() unless a runner is given) and record it.

        Failures are recorded and re-raised.
        """
        operation = operation or f"query:{query.table_name}"
        conditions = query.conditions
        target_types = conditions.target_type or ()
        if isinstance(target_types, str):
            target_types = (target_types,)

        started = time.perf_counter()
        try:
            rows = await (runner(query) if runner is not None else query.all())
        except Exception as e:
            self.record_metric(
                operation,
                (time.perf_counter() - started) * 1000,
                success=False,
                polymorphic_type=query.polymorphic_type,
                target_types=target_types,
                error=str(e),
            )
            raise

        self.record_metric(
            operation,
            (time.perf_counter() - started) * 1000,
            polymorphic_type=query.polymorphic_type,
            target_types=target_types,
            record_count=len(rows),
        )
        return rows

    def _update_usage(
        self,
        polymorphic_type: PolymorphicType,
        duration_ms: float,
        success: bool,
        target_types: Iterable[str],
    ) -> None:
        usage = self._usage.setdefault(polymorphic_type, UsageStats(polymorphic_type=polymorphic_type))
        usage.query_count += 1
        usage.avg_response_time_ms += (duration_ms - usage.avg_response_time_ms) / usage.query_count
        # Exponential decay keeps the rate weighted towards recent queries
        usage.error_rate = usage.error_rate * 0.99 + (0.0 if success else 0.01)
        for target_type in target_types:
            usage.popular_targets[target_type] = usage.popular_targets.get(target_type, 0) + 1
        usage.last_used = self._clock()

    def _check_performance(self, operation: str, duration_ms: float, success: bool) -> None:
        limit = self.thresholds.response_time_ms
        if duration_ms > limit:
            self._raise_alert(
                AlertType.PERFORMANCE_DEGRADATION,
                AlertSeverity.HIGH if duration_ms > limit * 2 else AlertSeverity.MEDIUM,
                f"Slow query detected: {operation} took {duration_ms:.0f}ms",
                {"operation": operation, "duration_ms": duration_ms},
            )

        if not success:
            recent = self._metrics[-10:]
            error_rate = sum(1 for metric in recent if not metric.success) / len(recent)
            if error_rate > self.thresholds.error_rate:
                self._raise_alert(
                    AlertType.HIGH_ERROR_RATE,
                    AlertSeverity.HIGH,
                    f"High error rate detected: {error_rate * 100:.1f}%",
                    {"operation": operation, "error_rate": error_rate},
                )

    def get_operation_metrics(self, operation: str, limit: int = 100) -> list[PerformanceMetric]:
        return [metric for metric in self._metrics if metric.operation == operation][-limit:]

    def get_association_usage(self, polymorphic_type: PolymorphicType) -> UsageStats | None:
        usage = self._usage.get(polymorphic_type)
        return usage.model_copy(deep=True) if usage is not None else None

    # =========================================================================
    # Evolution Events
    # =========================================================================

    def record_evolution_event(
        self,
        event_type: EvolutionEventType,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        source: EvolutionSource = EvolutionSource.MANUAL,
        impact: ChangeImpact = ChangeImpact.MEDIUM,
    ) -> EvolutionEvent:
        """Record a config change; high-impact changes also raise an alert."""
        event = EvolutionEvent(
            id=self._new_id(),
            timestamp=self._clock(),
            type=event_type,
            before=before,
            after=after,
            source=source,
            impact=impact,
        )
        self._events.append(event)
        del self._events[: -self.max_events]

        if impact == ChangeImpact.HIGH:
            self._raise_alert(
                AlertType.SCHEMA_EVOLUTION,
                AlertSeverity.HIGH,
                f"Significant schema change: {event_type.value}",
                {"event_id": event.id},
            )
        return event

    def watch(self, tracker: PolymorphicTracker) -> None:
        """Record an evolution event for every change tracker commits."""
        tracker.add_listener(self._on_config_change)

    def unwatch(self, tracker: PolymorphicTracker) -> None:
        tracker.remove_listener(self._on_config_change)

    def _on_config_change(self, change: ConfigChange) -> None:
        before = change.before.model_dump(mode="json") if change.before else None
        after = change.after.model_dump(mode="json") if change.after else None
        match change.kind:
            case ConfigChangeKind.TYPE_ADDED:
                self.record_evolution_event(
                    EvolutionEventType.TYPE_ADDED, None, {"type": change.polymorphic_type}
                )
            case ConfigChangeKind.TARGET_ADDED:
                self.record_evolution_event(
                    EvolutionEventType.ASSOCIATION_ADDED, None, after, impact=ChangeImpact.LOW
                )
            case ConfigChangeKind.TARGET_REMOVED:
                self.record_evolution_event(EvolutionEventType.ASSOCIATION_REMOVED, before, None)
            case ConfigChangeKind.CONFIG_REPLACED:
                self.record_evolution_event(
                    EvolutionEventType.CONFIG_UPDATED, None, None, impact=ChangeImpact.HIGH
                )
            case _:
                self.record_evolution_event(EvolutionEventType.CONFIG_UPDATED, before, after)

    def get_evolution_timeline(self) -> list[EvolutionEvent]:
        """Evolution events, newest first."""
        return [event.model_copy() for event in reversed(self._events)]

    # =========================================================================
    # Discovery and Schema Health
    # =========================================================================

    def monitor_discovery(self, results: Iterable[DiscoveryResult]) -> None:
        """Alert on low-confidence detections and targets the tracker lacks."""
        for result in results:
            if result.metadata.confidence == Confidence.LOW:
                self._raise_alert(
                    AlertType.MISSING_TYPES,
                    AlertSeverity.MEDIUM,
                    f"Low confidence polymorphic detection: {result.id_field}/{result.type_field} "
                    f"on {', '.join(result.owner_tables)}",
                    {"type": result.type, "owner_tables": result.owner_tables},
                )

            known = set(self._known_targets(result.type))
            new_targets = [
                target.table_name for target in result.targets if target.table_name not in known
            ]
            if new_targets:
                self._raise_alert(
                    AlertType.NEW_TYPE_DISCOVERED,
                    AlertSeverity.LOW,
                    f"New polymorphic targets discovered for {result.type}: "
                    f"{', '.join(new_targets)}",
                    {"type": result.type, "new_targets": new_targets},
                )

    def _known_targets(self, polymorphic_type: PolymorphicType) -> list[str]:
        if self._tracker is None or not self._tracker.is_initialized:
            return []
        return self._tracker.get_valid_targets(polymorphic_type, include_inactive=True)

    @staticmethod
    def calculate_health_score(analysis: SchemaAnalysis) -> float:
        """
        Score a schema analysis between 0 and 1.

        Penalizes inconsistent column pairs, polymorphic coverage under half
        the tables, and a schema with no polymorphic relationships at all.
        """
        score = 1.0
        if analysis.total_tables:
            score -= len(analysis.inconsistencies) / analysis.total_tables * 0.2
        if analysis.polymorphic_coverage < 0.5:
            score -= (0.5 - analysis.polymorphic_coverage) * 0.3
        if not analysis.polymorphic_relationships:
            score -= 0.2
        return max(0.0, score)

    def monitor_schema_analysis(self, analysis: SchemaAnalysis) -> float:
        """Alert on inconsistencies and a low health score. Returns the score."""
        if analysis.inconsistencies:
            tables = sorted({issue.table for issue in analysis.inconsistencies})
            shown = ", ".join(tables[:3]) + ("..." if len(tables) > 3 else "")
            self._raise_alert(
                AlertType.MISSING_TYPES,
                AlertSeverity.LOW,
                f"Inconsistent polymorphic columns in: {shown}",
                {"tables": tables},
            )

        score = self.calculate_health_score(analysis)
        if score < self.thresholds.health_score:
            self._raise_alert(
                AlertType.PERFORMANCE_DEGRADATION,
                AlertSeverity.MEDIUM,
                f"Schema health score below threshold: {score * 100:.1f}%",
                {"health_score": score},
            )
        return score

    # =========================================================================
    # Alerts
    # =========================================================================

    def _raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: dict[str, Any],
    ) -> SchemaAlert | None:
        now = self._clock()
        window = timedelta(seconds=self.thresholds.duplicate_window_seconds)
        for alert in self._alerts:
            if (
                not alert.resolved
                and alert.type == alert_type
                and alert.message == message
                and now - alert.timestamp < window
            ):
                return None

        alert = SchemaAlert(
            id=self._new_id(),
            type=alert_type,
            severity=severity,
            message=message,
            details=details,
            timestamp=now,
        )
        self._alerts.append(alert)
        logger.warning(f"Polymorphic alert [{severity.value}] {message}")
        return alert

    def get_active_alerts(self) -> list[SchemaAlert]:
        """Unresolved alerts. Low-severity alerts older than the auto-resolve age are closed first."""
        self._auto_resolve()
        return [alert.model_copy() for alert in self._alerts if not alert.resolved]

    def resolve_alert(self, alert_id: str, resolved_by: str | None = None) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id and not alert.resolved:
                alert.resolved = True
                alert.resolved_at = self._clock()
                alert.resolved_by = resolved_by
                return True
        return False

    def _auto_resolve(self) -> None:
        cutoff = self._clock() - timedelta(hours=self.thresholds.auto_resolve_low_after_hours)
        for alert in self._alerts:
            if not alert.resolved and alert.severity == AlertSeverity.LOW and alert.timestamp <= cutoff:
                self.resolve_alert(alert.id, "auto")

    def set_alert_thresholds(self, **thresholds: float) -> None:
        """Override individual thresholds, e.g. set_alert_thresholds(response_time_ms=500)."""
        known = {field.name for field in fields(AlertThresholds)}
        unknown = set(thresholds) - known
        if unknown:
            raise ValueError(f"Unknown alert thresholds: {', '.join(sorted(unknown))}")
        for name, value in thresholds.items():
            setattr(self.thresholds, name, value)

    # =========================================================================
    # Reporting and Housekeeping
    # =========================================================================

    def generate_report(self, start: datetime, end: datetime) -> MonitoringReport:
        """Summarize metrics, events and alerts between start and end."""
        metrics = [metric for metric in self._metrics if start <= metric.timestamp <= end]
        events = [event for event in self._events if start <= event.timestamp <= end]
        active_alerts = self.get_active_alerts()
        top = sorted(self._usage.values(), key=lambda usage: usage.query_count, reverse=True)[:10]

        overview = MonitoringOverview(
            total_queries=len(metrics),
            avg_response_time_ms=(
                sum(metric.duration_ms for metric in metrics) / len(metrics) if metrics else 0.0
            ),
            error_rate=(
                sum(1 for metric in metrics if not metric.success) / len(metrics) if metrics else 0.0
            ),
            configurations_updated=sum(
                1 for event in events if event.type == EvolutionEventType.CONFIG_UPDATED
            ),
            alerts_generated=sum(1 for alert in self._alerts if start <= alert.timestamp <= end),
        )

        return MonitoringReport(
            period_start=start,
            period_end=end,
            overview=overview,
            top_associations=[usage.model_copy(deep=True) for usage in top],
            performance_trends=metrics[-100:],
            evolution_events=events,
            active_alerts=active_alerts,
            recommendations=self._recommendations(metrics, active_alerts),
        )

    def _recommendations(
        self,
        metrics: list[PerformanceMetric],
        active_alerts: list[SchemaAlert],
    ) -> list[str]:
        recommendations = []

        slow = [metric for metric in metrics if metric.duration_ms > self.thresholds.response_time_ms]
        if metrics and len(slow) > len(metrics) * 0.1:
            recommendations.append(
                "Consider optimizing database queries - more than 10% of queries are slow"
            )

        unused_cutoff = self._clock() - timedelta(days=self.thresholds.unused_days)
        unused = [
            usage.polymorphic_type
            for usage in self._usage.values()
            if usage.last_used is not None and usage.last_used < unused_cutoff
        ]
        if unused:
            recommendations.append(f"Review unused associations: {', '.join(unused)}")

        alert_types = {alert.type for alert in active_alerts}
        if AlertType.MISSING_TYPES in alert_types or AlertType.NEW_TYPE_DISCOVERED in alert_types:
            recommendations.append("Review and configure newly discovered polymorphic types")
        if AlertType.PERFORMANCE_DEGRADATION in alert_types:
            recommendations.append("Investigate performance degradation causes and optimize queries")

        return recommendations

    def cleanup(self, older_than_days: int = 30) -> None:
        """Forget metrics, events and alerts older than the cutoff."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        self._metrics = [metric for metric in self._metrics if metric.timestamp > cutoff]
        self._events = [event for event in self._events if event.timestamp > cutoff]
        self._alerts = [alert for alert in self._alerts if alert.timestamp > cutoff]

    # =========================================================================
    # Persistence
    # =========================================================================

    async def persist(self) -> None:
        """Save metrics, events, alerts and usage to the configured store."""
        if self._store is None:
            return
        await self._store.save(
            self._document_key,
            {
                "metrics": [metric.model_dump(mode="json") for metric in self._metrics],
                "events": [event.model_dump(mode="json") for event in self._events],
                "alerts": [alert.model_dump(mode="json") for alert in self._alerts],
                "usage": [usage.model_dump(mode="json") for usage in self._usage.values()],
            },
        )

    async def load(self) -> bool:
        """
        Restore state saved by persist().

        Returns:
            True if a saved document was found
        """
        if self._store is None:
            return False
        document = await self._store.load(self._document_key)
        if document is None:
            return False

        self._metrics = [PerformanceMetric.model_validate(item) for item in document.get("metrics", [])]
        self._events = [EvolutionEvent.model_validate(item) for item in document.get("events", [])]
        self._alerts = [SchemaAlert.model_validate(item) for item in document.get("alerts", [])]
        self._usage = {
            usage.polymorphic_type: usage
            for usage in (UsageStats.model_validate(item) for item in document.get("usage", []))
        }
        logger.info(
            f"Loaded monitoring state: {len(self._metrics)} metrics, "
            f"{len(self._events)} events, {len(self._alerts)} alerts"
        )
        return True

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex
