from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.compute import PENDING_TASK_NAMESPACE, WebService
from fargate_stack.config import MonitoringSettings, StackSettings
from fargate_stack.database import DataStore


class MetricKind(str, Enum):
    UTILIZATION = "utilization"
    COUNT = "count"
    FREE_SPACE = "free_space"


class MetricSource(str, Enum):
    SERVICE = "service"
    TARGET_GROUP = "target_group"
    DATA_STORE = "data_store"


class Comparison(str, Enum):
    GREATER_THAN_OR_EQUAL = "GreaterThanOrEqualToThreshold"
    GREATER_THAN = "GreaterThanThreshold"
    LESS_THAN = "LessThanThreshold"
    LESS_THAN_OR_EQUAL = "LessThanOrEqualToThreshold"

    @property
    def is_below(self) -> bool:
        return self in (Comparison.LESS_THAN, Comparison.LESS_THAN_OR_EQUAL)


NOT_BREACHING = "notBreaching"


@dataclass(frozen=True)
class AlarmSpec:
    name: str
    description: str
    source: MetricSource
    namespace: str
    metric_name: str
    statistic: str
    period: int
    kind: MetricKind
    threshold: float
    comparison: Comparison
    evaluation_periods: int
    treat_missing_data: Optional[str] = None  # None keeps the CloudWatch default ("missing")


def validate_alarm(spec: AlarmSpec) -> AlarmSpec:
    if not isinstance(spec.evaluation_periods, int) or spec.evaluation_periods < 1:
        raise ValueError(f"Alarm {spec.name}: evaluation_periods must be a positive integer")
    if spec.period < 10:
        raise ValueError(f"Alarm {spec.name}: period must be at least 10 seconds")
    # Free space breaches by falling; utilisation and counts breach by rising
    if spec.kind == MetricKind.FREE_SPACE and not spec.comparison.is_below:
        raise ValueError(f"Alarm {spec.name}: free-space metrics must use a below-threshold comparison")
    if spec.kind != MetricKind.FREE_SPACE and spec.comparison.is_below:
        raise ValueError(f"Alarm {spec.name}: {spec.kind.value} metrics must use an at/above-threshold comparison")
    return spec


def plan_alarms(monitoring: MonitoringSettings, include_data_store: bool) -> List[AlarmSpec]:
    specs = [
        AlarmSpec(
            name="service-cpu",
            description="ECS service CPU utilisation is high",
            source=MetricSource.SERVICE,
            namespace="AWS/ECS",
            metric_name="CPUUtilization",
            statistic="Average",
            period=300,
            kind=MetricKind.UTILIZATION,
            threshold=monitoring.cpu_threshold,
            comparison=Comparison.GREATER_THAN_OR_EQUAL,
            evaluation_periods=2,
            treat_missing_data=NOT_BREACHING,
        ),
        AlarmSpec(
            name="pending-tasks",
            description="Tasks are stuck pending (scaling or image pull failing)",
            source=MetricSource.SERVICE,
            namespace=PENDING_TASK_NAMESPACE,
            metric_name="PendingTaskCount",
            statistic="Average",
            period=60,
            kind=MetricKind.COUNT,
            threshold=monitoring.pending_task_threshold,
            comparison=Comparison.GREATER_THAN_OR_EQUAL,
            evaluation_periods=2,
        ),
        AlarmSpec(
            name="target-5xx",
            description="Targets returned 5xx responses for 5 consecutive minutes",
            source=MetricSource.TARGET_GROUP,
            namespace="AWS/ApplicationELB",
            metric_name="HTTPCode_Target_5XX_Count",
            statistic="Sum",
            period=60,
            kind=MetricKind.COUNT,
            threshold=monitoring.target_5xx_threshold,
            comparison=Comparison.GREATER_THAN_OR_EQUAL,
            evaluation_periods=5,
        ),
    ]
    if include_data_store:
        specs += [
            AlarmSpec(
                name="db-free-storage",
                description="Database free storage is low",
                source=MetricSource.DATA_STORE,
                namespace="AWS/RDS",
                metric_name="FreeStorageSpace",
                statistic="Average",
                period=300,
                kind=MetricKind.FREE_SPACE,
                threshold=monitoring.db_free_storage_bytes,
                comparison=Comparison.LESS_THAN,
                evaluation_periods=1,
            ),
            AlarmSpec(
                name="db-connections",
                description="Database connection count is high",
                source=MetricSource.DATA_STORE,
                namespace="AWS/RDS",
                metric_name="DatabaseConnections",
                statistic="Average",
                period=300,
                kind=MetricKind.COUNT,
                threshold=monitoring.db_connections_threshold,
                comparison=Comparison.GREATER_THAN_OR_EQUAL,
                evaluation_periods=1,
            ),
        ]
    return [validate_alarm(spec) for spec in specs]


class Monitoring(pulumi.ComponentResource):
    """Threshold alarms over the service, target group and data store, published to one topic."""

    def __init__(self, name: str, settings: StackSettings, web_service: WebService,
                 data_store: Optional[DataStore] = None, opts: Optional[pulumi.ResourceOptions] = None):
        super().__init__("fargate-stack:monitoring:Monitoring", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)
        monitoring = settings.monitoring

        self.topic = aws.sns.Topic(f"{name}-alarm-topic",
            tags=settings.tags("alarm-topic"),
            opts=child_opts)

        if not monitoring.email_addresses:
            pulumi.log.warn("No monitoring.email_addresses configured; alarms publish to a topic with no subscribers",
                            resource=self)
        self.subscriptions = [
            aws.sns.TopicSubscription(f"{name}-alarm-email-{i}",
                topic=self.topic.arn,
                protocol="email",
                endpoint=address,
                opts=child_opts)
            for i, address in enumerate(monitoring.email_addresses)
        ]

        dimensions: Dict[MetricSource, dict] = {
            MetricSource.SERVICE: {
                "ClusterName": web_service.cluster.name,
                "ServiceName": web_service.service.name,
            },
            MetricSource.TARGET_GROUP: {
                "TargetGroup": web_service.target_group.arn_suffix,
                "LoadBalancer": web_service.load_balancer.arn_suffix,
            },
        }
        if data_store is not None:
            dimensions[MetricSource.DATA_STORE] = {"DBInstanceIdentifier": data_store.instance.identifier}

        self.specs = plan_alarms(monitoring, include_data_store=data_store is not None)
        self.alarms: Dict[str, aws.cloudwatch.MetricAlarm] = {}
        for spec in self.specs:
            self.alarms[spec.name] = aws.cloudwatch.MetricAlarm(f"{name}-{spec.name}",
                alarm_description=spec.description,
                namespace=spec.namespace,
                metric_name=spec.metric_name,
                dimensions=dimensions[spec.source],
                statistic=spec.statistic,
                period=spec.period,
                threshold=spec.threshold,
                comparison_operator=spec.comparison.value,
                evaluation_periods=spec.evaluation_periods,
                treat_missing_data=spec.treat_missing_data,
                alarm_actions=[self.topic.arn],
                ok_actions=[self.topic.arn],
                tags=settings.tags(spec.name),
                opts=child_opts)

        self.register_outputs({"alarm_topic_arn": self.topic.arn})
