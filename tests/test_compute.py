"""Tests for Fargate service planning and the WebService component."""

import dataclasses
import json

import pulumi
import pytest

from factories import field, make_settings
from fargate_stack.compute import (
    LOG_STREAM_PREFIX,
    PENDING_TASK_NAMESPACE,
    WebService,
    container_definitions,
    plan_scaling,
    validate_image_source,
    validate_service_settings,
    validate_task_size,
)
from fargate_stack.config import (
    ImageSettings,
    ImageSource,
    NetworkSettings,
    ScalingSettings,
    ScalingTrigger,
    ServicePlacement,
    ServiceSettings,
    StackSettings,
    SubnetGroup,
    SubnetRole,
)
from fargate_stack.identity import ServiceIdentity
from fargate_stack.network import Network
from fargate_stack.security import SecurityGroups


ECR_IMAGE = "123456789012.dkr.ecr.ap-northeast-1.amazonaws.com/app:latest"


def build_service(name: str, settings: StackSettings, image: str = ECR_IMAGE) -> WebService:
    network = Network(name, settings)
    security = SecurityGroups(name, settings, network)
    identity = ServiceIdentity(name, settings)
    return WebService(name, settings, network, security, identity, image)


class TestPlanScaling:
    def test_defaults_accepted(self) -> None:
        plan = plan_scaling(ServiceSettings(), ScalingSettings())

        assert (plan.min_capacity, plan.desired_count, plan.max_capacity) == (2, 2, 6)
        assert plan.trigger == ScalingTrigger.CPU
        assert (plan.scale_in_cooldown, plan.scale_out_cooldown) == (60, 60)

    def test_desired_above_max_rejected(self) -> None:
        with pytest.raises(ValueError, match="min <= desired <= max"):
            plan_scaling(ServiceSettings(desired_count=8), ScalingSettings())

    def test_desired_below_min_rejected(self) -> None:
        with pytest.raises(ValueError, match="min <= desired <= max"):
            plan_scaling(ServiceSettings(desired_count=1), ScalingSettings())

    def test_zero_min_rejected(self) -> None:
        with pytest.raises(ValueError, match="min_capacity"):
            plan_scaling(ServiceSettings(desired_count=0), ScalingSettings(min_capacity=0))

    @pytest.mark.parametrize("target", [0, 101])
    def test_target_utilization_bounds(self, target) -> None:
        with pytest.raises(ValueError, match="target_cpu_utilization"):
            plan_scaling(ServiceSettings(), ScalingSettings(target_cpu_utilization=target))

    def test_negative_cooldown_rejected(self) -> None:
        with pytest.raises(ValueError, match="cooldowns"):
            plan_scaling(ServiceSettings(), ScalingSettings(scale_in_cooldown=-1))


class TestServiceSettings:
    def test_default_task_size(self) -> None:
        validate_task_size(256, 512)
        validate_task_size(1024, 8192)

    def test_mismatched_memory_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid Fargate memory"):
            validate_task_size(256, 4096)

    def test_unknown_cpu_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid Fargate cpu"):
            validate_task_size(300, 512)

    def test_health_check_path_must_be_absolute(self) -> None:
        with pytest.raises(ValueError, match="Health check path"):
            validate_service_settings(ServiceSettings(health_check_path="health"))

    def test_timeout_shorter_than_interval(self) -> None:
        with pytest.raises(ValueError, match="timeout"):
            validate_service_settings(ServiceSettings(health_check_timeout=30, health_check_interval=30))

    def test_container_definitions(self) -> None:
        definitions = container_definitions(ServiceSettings(), "nginx:latest", "/ecs/demo/app", "ap-northeast-1")

        assert len(definitions) == 1
        container = definitions[0]
        assert container["name"] == "app"
        assert container["image"] == "nginx:latest"
        assert container["portMappings"] == [{"containerPort": 80, "protocol": "tcp"}]
        options = container["logConfiguration"]["options"]
        assert options["awslogs-group"] == "/ecs/demo/app"
        assert options["awslogs-stream-prefix"] == LOG_STREAM_PREFIX


class TestWebServiceRejections:
    def test_invalid_replica_bounds_rejected_before_any_resource(self) -> None:
        settings = make_settings("svc-bounds", service=ServiceSettings(desired_count=8))

        # No network handles needed: bounds are checked before registration
        with pytest.raises(ValueError, match="min <= desired <= max"):
            WebService("svc-bounds", settings, None, None, None, "nginx:latest")


@pulumi.runtime.test
def test_web_service_defaults():
    service = build_service("svc-defaults", make_settings("svc-defaults"))

    assert service.pending_tasks_policy is None

    def check(args):
        (desired, launch_type, network_config, cpu, memory, definitions,
         tg_port, target_type, health_check, min_capacity, max_capacity, listener_port) = args
        assert desired == 2
        assert launch_type == "FARGATE"
        assert (cpu, memory) == ("256", "512")
        assert json.loads(definitions)[0]["image"] == ECR_IMAGE
        assert tg_port == 80
        assert target_type == "ip"
        assert (min_capacity, max_capacity) == (2, 6)
        assert listener_port == 80
        assert field(health_check, "matcher", "matcher") == "200-399"
        assert not field(network_config, "assign_public_ip", "assignPublicIp")

    return pulumi.Output.all(
        service.service.desired_count,
        service.service.launch_type,
        service.service.network_configuration,
        service.task_definition.cpu,
        service.task_definition.memory,
        service.task_definition.container_definitions,
        service.target_group.port,
        service.target_group.target_type,
        service.target_group.health_check,
        service.scaling_target.min_capacity,
        service.scaling_target.max_capacity,
        service.listener.port,
    ).apply(check)


@pulumi.runtime.test
def test_cpu_policy_uses_configured_target_and_cooldowns():
    settings = make_settings("svc-cpu", scaling=ScalingSettings(target_cpu_utilization=55, scale_in_cooldown=120))
    service = build_service("svc-cpu", settings)

    def check(config):
        assert field(config, "target_value", "targetValue") == 55
        assert field(config, "scale_in_cooldown", "scaleInCooldown") == 120

    return service.cpu_scaling_policy.target_tracking_scaling_policy_configuration.apply(check)


@pulumi.runtime.test
def test_pending_tasks_trigger_adds_step_policy():
    settings = make_settings("svc-pending", scaling=ScalingSettings(trigger=ScalingTrigger.CPU_AND_PENDING_TASKS))
    service = build_service("svc-pending", settings)

    assert service.pending_tasks_policy is not None
    assert PENDING_TASK_NAMESPACE == "ECS/ContainerInsights"

    def check(args):
        policy_type, step_config = args
        assert policy_type == "StepScaling"
        assert field(step_config, "adjustment_type", "adjustmentType") == "ChangeInCapacity"

    return pulumi.Output.all(
        service.pending_tasks_policy.policy_type,
        service.pending_tasks_policy.step_scaling_policy_configuration,
    ).apply(check)


@pulumi.runtime.test
def test_public_placement_assigns_public_ips():
    settings = make_settings("svc-public", service=ServiceSettings(placement=ServicePlacement.PUBLIC))
    service = build_service("svc-public", settings)

    def check(network_config):
        assert field(network_config, "assign_public_ip", "assignPublicIp") is True

    return service.service.network_configuration.apply(check)


@pulumi.runtime.test
def test_web_service_needs_two_public_subnets():
    settings = make_settings("svc-one-zone")
    settings = dataclasses.replace(settings, network=dataclasses.replace(settings.network, zone_count=1))

    with pytest.raises(ValueError, match="at least two availability zones"):
        build_service("svc-one-zone", settings)


class TestValidateImageSource:
    PUBLIC_IMAGE = ImageSettings(source=ImageSource.PUBLIC_REGISTRY, reference="nginx:latest")

    def test_public_image_rejected_without_egress(self) -> None:
        with pytest.raises(ValueError, match="no route to the internet"):
            validate_image_source(self.PUBLIC_IMAGE, ServicePlacement.ISOLATED, has_egress=False)

    def test_public_image_allowed_with_public_placement(self) -> None:
        validate_image_source(self.PUBLIC_IMAGE, ServicePlacement.PUBLIC, has_egress=False)

    def test_public_image_allowed_behind_nat(self) -> None:
        validate_image_source(self.PUBLIC_IMAGE, ServicePlacement.ISOLATED, has_egress=True)

    @pytest.mark.parametrize("source", [ImageSource.REPOSITORY, ImageSource.LOCAL_BUILD])
    def test_registry_images_allowed_in_isolated_subnets(self, source) -> None:
        validate_image_source(ImageSettings(source=source), ServicePlacement.ISOLATED, has_egress=False)


@pulumi.runtime.test
def test_public_image_in_isolated_subnets_rejected():
    settings = make_settings("svc-public-image", image=ImageSettings(source=ImageSource.PUBLIC_REGISTRY))

    with pytest.raises(ValueError, match="no route to the internet"):
        build_service("svc-public-image", settings, image="nginx:latest")


@pulumi.runtime.test
def test_public_image_pulled_through_nat():
    settings = make_settings(
        "svc-nat-image",
        image=ImageSettings(source=ImageSource.PUBLIC_REGISTRY),
        network=NetworkSettings(
            availability_zones=("ap-northeast-1a", "ap-northeast-1c"),
            subnet_groups=(SubnetGroup("public", SubnetRole.PUBLIC), SubnetGroup("app", SubnetRole.PRIVATE_WITH_EGRESS)),
            nat_gateways=1,
        ),
    )
    service = build_service("svc-nat-image", settings, image="nginx:latest")

    def check(definitions):
        assert json.loads(definitions)[0]["image"] == "nginx:latest"

    return service.task_definition.container_definitions.apply(check)
