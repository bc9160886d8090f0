import json
from dataclasses import dataclass
from typing import List, Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.config import (
    ImageSettings,
    ImageSource,
    ScalingSettings,
    ScalingTrigger,
    ServicePlacement,
    ServiceSettings,
    StackSettings,
)
from fargate_stack.identity import ServiceIdentity
from fargate_stack.network import Network
from fargate_stack.security import SecurityGroups

# Valid Fargate memory sizes (MiB) per cpu unit setting
FARGATE_MEMORY = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4097, 1024)),
    1024: tuple(range(2048, 8193, 1024)),
    2048: tuple(range(4096, 16385, 1024)),
    4096: tuple(range(8192, 30721, 1024)),
    8192: tuple(range(16384, 61441, 4096)),
    16384: tuple(range(32768, 122881, 8192)),
}

LOG_STREAM_PREFIX = "app"
PENDING_TASK_NAMESPACE = "ECS/ContainerInsights"


@dataclass(frozen=True)
class ScalingPlan:
    min_capacity: int
    max_capacity: int
    desired_count: int
    trigger: ScalingTrigger
    target_cpu_utilization: float
    scale_in_cooldown: int
    scale_out_cooldown: int


def validate_task_size(cpu: int, memory: int) -> None:
    if cpu not in FARGATE_MEMORY:
        raise ValueError(f"Invalid Fargate cpu value: {cpu} (expected one of {sorted(FARGATE_MEMORY)})")
    if memory not in FARGATE_MEMORY[cpu]:
        raise ValueError(f"Invalid Fargate memory {memory} MiB for cpu {cpu}: allowed {list(FARGATE_MEMORY[cpu])}")


def plan_scaling(service: ServiceSettings, scaling: ScalingSettings) -> ScalingPlan:
    """Check replica bounds and triggers before anything is declared."""
    if scaling.min_capacity < 1:
        raise ValueError(f"min_capacity must be at least 1: {scaling.min_capacity}")
    if not (scaling.min_capacity <= service.desired_count <= scaling.max_capacity):
        raise ValueError(
            "Invalid task count configuration: min <= desired <= max must be true "
            f"(min={scaling.min_capacity}, desired={service.desired_count}, max={scaling.max_capacity})")
    if not 0 < scaling.target_cpu_utilization <= 100:
        raise ValueError(f"target_cpu_utilization must be in (0, 100]: {scaling.target_cpu_utilization}")
    if scaling.scale_in_cooldown < 0 or scaling.scale_out_cooldown < 0:
        raise ValueError("Scaling cooldowns must not be negative")
    return ScalingPlan(
        min_capacity=scaling.min_capacity,
        max_capacity=scaling.max_capacity,
        desired_count=service.desired_count,
        trigger=scaling.trigger,
        target_cpu_utilization=scaling.target_cpu_utilization,
        scale_in_cooldown=scaling.scale_in_cooldown,
        scale_out_cooldown=scaling.scale_out_cooldown,
    )


def validate_service_settings(service: ServiceSettings) -> None:
    validate_task_size(service.cpu, service.memory)
    if not 0 < service.container_port < 65536:
        raise ValueError(f"Invalid container port: {service.container_port}")
    if not service.health_check_path.startswith("/"):
        raise ValueError(f"Health check path must start with '/': {service.health_check_path}")
    if service.health_check_timeout >= service.health_check_interval:
        raise ValueError("Health check timeout must be shorter than its interval")
    if service.min_healthy_percent > service.max_healthy_percent:
        raise ValueError("min_healthy_percent must not exceed max_healthy_percent")


def validate_image_source(image: ImageSettings, placement: ServicePlacement, has_egress: bool) -> None:
    """Isolated tasks reach ECR through VPC endpoints only, so they cannot pull from a public registry."""
    if image.source != ImageSource.PUBLIC_REGISTRY:
        return
    if placement == ServicePlacement.PUBLIC or has_egress:
        return
    raise ValueError(
        f"Image {image.reference} comes from a public registry but the service subnets have no route to the "
        "internet: use image.source repository or local_build, service.placement public, or "
        "private_with_egress subnets with nat_gateways >= 1")


def container_definitions(service: ServiceSettings, image: str, log_group: str, region: str) -> List[dict]:
    return [{
        "name": service.name,
        "image": image,
        "cpu": service.cpu,
        "memory": service.memory,
        "essential": True,
        "portMappings": [{"containerPort": service.container_port, "protocol": "tcp"}],
        "logConfiguration": {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": log_group,
                "awslogs-region": region,
                "awslogs-stream-prefix": LOG_STREAM_PREFIX,
            },
        },
    }]


class WebService(pulumi.ComponentResource):
    """
    Fargate service behind an internet-facing Application Load Balancer.

    Replicas failing the target group health check stop receiving traffic;
    replacing them is left to ECS. Desired count is owned by the autoscaling
    target once the service exists.
    """

    def __init__(self, name: str, settings: StackSettings, network: Network, security: SecurityGroups,
                 identity: ServiceIdentity, image: pulumi.Input[str],
                 opts: Optional[pulumi.ResourceOptions] = None):
        service = settings.service
        validate_service_settings(service)
        scaling_plan = plan_scaling(service, settings.scaling)
        if len(network.public_subnets) < 2:
            raise ValueError("The load balancer needs public subnets in at least two availability zones")

        if service.placement == ServicePlacement.PUBLIC:
            placement_subnets = network.public_subnets
        else:
            placement_subnets = network.workload_subnets()
        if not placement_subnets:
            raise ValueError(f"No subnets available for placement {service.placement.value}")
        validate_image_source(settings.image, service.placement, bool(network.private_subnets))

        super().__init__("fargate-stack:compute:WebService", name, None, opts)
        self.scaling_plan = scaling_plan
        child_opts = pulumi.ResourceOptions(parent=self)

        # --- ECS Cluster ---
        self.cluster = aws.ecs.Cluster(f"{name}-cluster",
            settings=[aws.ecs.ClusterSettingArgs(name="containerInsights", value="enabled")],
            tags=settings.tags("cluster"),
            opts=child_opts)

        self.log_group = aws.cloudwatch.LogGroup(f"{name}-logs",
            name=f"/ecs/{settings.project_name}/{service.name}",
            retention_in_days=service.log_retention_days,
            tags=settings.tags(f"{service.name}-logs"),
            opts=service.log_removal_policy.resource_options(child_opts))

        # --- Task Definition ---
        self.task_definition = aws.ecs.TaskDefinition(f"{name}-td",
            family=f"{settings.project_name}-{service.name}",
            cpu=str(service.cpu),
            memory=str(service.memory),
            network_mode="awsvpc",
            requires_compatibilities=["FARGATE"],
            execution_role_arn=identity.execution_role.arn,
            task_role_arn=identity.task_role.arn,
            container_definitions=pulumi.Output.all(image=image, log_group=self.log_group.name).apply(
                lambda args: json.dumps(container_definitions(service, args["image"], args["log_group"], settings.region))),
            tags=settings.tags(f"{service.name}-td"),
            opts=child_opts)

        # --- Load Balancer ---
        self.load_balancer = aws.lb.LoadBalancer(f"{name}-alb",
            internal=False,
            load_balancer_type="application",
            security_groups=[security.front_door.id],
            subnets=network.public_subnet_ids,
            enable_deletion_protection=False,
            tags=settings.tags("alb"),
            opts=child_opts)

        self.target_group = aws.lb.TargetGroup(f"{name}-tg",
            port=service.container_port,
            protocol="HTTP",
            target_type="ip",  # awsvpc tasks register by IP
            vpc_id=network.vpc.id,
            health_check=aws.lb.TargetGroupHealthCheckArgs(
                path=service.health_check_path,
                protocol="HTTP",
                matcher=service.healthy_http_codes,
                interval=service.health_check_interval,
                timeout=service.health_check_timeout,
            ),
            tags=settings.tags("tg"),
            opts=child_opts)

        self.listener = aws.lb.Listener(f"{name}-http-listener",
            load_balancer_arn=self.load_balancer.arn,
            port=settings.access.front_door_port,
            protocol="HTTP",
            default_actions=[aws.lb.ListenerDefaultActionArgs(
                type="forward",
                target_group_arn=self.target_group.arn,
            )],
            tags=settings.tags("http-listener"),
            opts=child_opts)

        # --- Fargate Service ---
        self.service = aws.ecs.Service(f"{name}-svc",
            cluster=self.cluster.arn,
            task_definition=self.task_definition.arn,
            desired_count=self.scaling_plan.desired_count,
            launch_type="FARGATE",
            deployment_minimum_healthy_percent=service.min_healthy_percent,
            deployment_maximum_percent=service.max_healthy_percent,
            health_check_grace_period_seconds=60,
            network_configuration=aws.ecs.ServiceNetworkConfigurationArgs(
                subnets=[s.id for s in placement_subnets],
                security_groups=[security.application.id],
                assign_public_ip=service.placement == ServicePlacement.PUBLIC,
            ),
            load_balancers=[aws.ecs.ServiceLoadBalancerArgs(
                target_group_arn=self.target_group.arn,
                container_name=service.name,
                container_port=service.container_port,
            )],
            propagate_tags="SERVICE",
            tags=settings.tags(f"{service.name}-svc"),
            opts=pulumi.ResourceOptions.merge(child_opts, pulumi.ResourceOptions(
                depends_on=[self.listener],  # target group must be attached to a load balancer first
                ignore_changes=["desiredCount"],
            )))

        self._create_autoscaling(name, settings)

        self.register_outputs({
            "alb_dns_name": self.load_balancer.dns_name,
            "service_name": self.service.name,
            "target_group_arn": self.target_group.arn,
        })

    def _create_autoscaling(self, name: str, settings: StackSettings) -> None:
        plan = self.scaling_plan
        child_opts = pulumi.ResourceOptions(parent=self)

        self.scaling_target = aws.appautoscaling.Target(f"{name}-scaling-target",
            min_capacity=plan.min_capacity,
            max_capacity=plan.max_capacity,
            resource_id=pulumi.Output.concat("service/", self.cluster.name, "/", self.service.name),
            scalable_dimension="ecs:service:DesiredCount",
            service_namespace="ecs",
            opts=child_opts)

        # Separate cooldowns keep a single threshold crossing from flapping the count
        self.cpu_scaling_policy = aws.appautoscaling.Policy(f"{name}-cpu-scaling",
            policy_type="TargetTrackingScaling",
            resource_id=self.scaling_target.resource_id,
            scalable_dimension=self.scaling_target.scalable_dimension,
            service_namespace=self.scaling_target.service_namespace,
            target_tracking_scaling_policy_configuration=aws.appautoscaling.PolicyTargetTrackingScalingPolicyConfigurationArgs(
                target_value=plan.target_cpu_utilization,
                scale_in_cooldown=plan.scale_in_cooldown,
                scale_out_cooldown=plan.scale_out_cooldown,
                predefined_metric_specification=aws.appautoscaling.PolicyTargetTrackingScalingPolicyConfigurationPredefinedMetricSpecificationArgs(
                    predefined_metric_type="ECSServiceAverageCPUUtilization",
                ),
            ),
            opts=child_opts)

        self.pending_tasks_policy = None
        if plan.trigger == ScalingTrigger.CPU_AND_PENDING_TASKS:
            self.pending_tasks_policy = aws.appautoscaling.Policy(f"{name}-pending-tasks-scaling",
                policy_type="StepScaling",
                resource_id=self.scaling_target.resource_id,
                scalable_dimension=self.scaling_target.scalable_dimension,
                service_namespace=self.scaling_target.service_namespace,
                step_scaling_policy_configuration=aws.appautoscaling.PolicyStepScalingPolicyConfigurationArgs(
                    adjustment_type="ChangeInCapacity",
                    cooldown=plan.scale_out_cooldown,
                    metric_aggregation_type="Average",
                    step_adjustments=[aws.appautoscaling.PolicyStepScalingPolicyConfigurationStepAdjustmentArgs(
                        metric_interval_lower_bound="0",
                        scaling_adjustment=1,
                    )],
                ),
                opts=child_opts)
            aws.cloudwatch.MetricAlarm(f"{name}-pending-tasks-scale-out",
                alarm_description="Add a task while tasks are stuck pending",
                namespace=PENDING_TASK_NAMESPACE,
                metric_name="PendingTaskCount",
                dimensions={"ClusterName": self.cluster.name, "ServiceName": self.service.name},
                statistic="Average",
                period=60,
                evaluation_periods=1,
                threshold=1,
                comparison_operator="GreaterThanOrEqualToThreshold",
                alarm_actions=[self.pending_tasks_policy.arn],
                tags=settings.tags("pending-tasks-scale-out"),
                opts=child_opts)
