"""Tests for stack settings loading and environment resolution."""

import pulumi
import pytest

from fargate_stack.config import (
    DEFAULT_REGION,
    DataStoreEngine,
    ImageSource,
    MaintenanceMode,
    RemovalPolicy,
    ScalingTrigger,
    ServicePlacement,
    StackSettings,
    SubnetGroup,
    SubnetRole,
    load_settings,
    parse_enum,
    resolve_environment,
)


class FakeConfig:
    """Stands in for pulumi.Config with an in-memory mapping."""

    def __init__(self, values=None):
        self.values = values or {}

    def get(self, key):
        return self.values.get(key)

    def require(self, key):
        if key not in self.values:
            raise KeyError(key)
        return self.values[key]

    def get_object(self, key):
        return self.values.get(key)

    def get_secret(self, key):
        return self.values.get(key)


class TestDefaults:
    def test_network_defaults(self) -> None:
        settings = StackSettings(project_name="demo")

        assert settings.network.cidr == "10.0.0.0/16"
        assert settings.network.zone_count == 2
        assert settings.network.nat_gateways == 0
        assert settings.network.subnet_groups == (
            SubnetGroup("public", SubnetRole.PUBLIC, 24),
            SubnetGroup("private", SubnetRole.PRIVATE_ISOLATED, 24),
        )

    def test_service_and_scaling_defaults(self) -> None:
        settings = StackSettings(project_name="demo")

        assert (settings.service.cpu, settings.service.memory) == (256, 512)
        assert settings.service.desired_count == 2
        assert settings.service.healthy_http_codes == "200-399"
        assert (settings.scaling.min_capacity, settings.scaling.max_capacity) == (2, 6)
        assert settings.scaling.target_cpu_utilization == 70
        assert settings.image.repository_removal_policy == RemovalPolicy.DESTROY

    def test_tags(self) -> None:
        settings = StackSettings(project_name="demo", environment="staging")

        assert settings.tags("vpc", {"Tier": "network"}) == {
            "Name": "demo-vpc",
            "Project": "demo",
            "Environment": "staging",
            "ManagedBy": "pulumi",
            "Tier": "network",
        }


class TestRemovalPolicy:
    def test_retain_keeps_resource_on_delete(self) -> None:
        opts = RemovalPolicy.RETAIN.resource_options(pulumi.ResourceOptions(protect=False))

        assert opts.retain_on_delete is True

    def test_destroy_leaves_options_unchanged(self) -> None:
        opts = pulumi.ResourceOptions(protect=False)

        assert RemovalPolicy.DESTROY.resource_options(opts) is opts


class TestParseEnum:
    def test_case_insensitive(self) -> None:
        assert parse_enum(ImageSource, "LOCAL_BUILD", "image.source") == ImageSource.LOCAL_BUILD

    def test_invalid_value_lists_options(self) -> None:
        with pytest.raises(ValueError, match="expected one of: isolated, public"):
            parse_enum(ServicePlacement, "private", "service.placement")


class TestResolveEnvironment:
    def test_explicit_config_wins(self) -> None:
        config = FakeConfig({"region": "us-west-2", "account": "111111111111"})
        region, account = resolve_environment(config, FakeConfig({"region": "eu-west-1"}),
                                              {"AWS_REGION": "eu-central-1"})

        assert region == "us-west-2"
        assert account == "111111111111"

    def test_provider_config_then_environment(self) -> None:
        assert resolve_environment(FakeConfig(), FakeConfig({"region": "eu-west-1"}), {})[0] == "eu-west-1"
        assert resolve_environment(FakeConfig(), FakeConfig(), {"AWS_DEFAULT_REGION": "sa-east-1"})[0] == "sa-east-1"

    def test_fallback_region(self) -> None:
        region, account = resolve_environment(FakeConfig(), FakeConfig(), {})

        assert region == DEFAULT_REGION == "ap-northeast-1"
        assert account is None

    def test_account_from_environment(self) -> None:
        _, account = resolve_environment(FakeConfig(), FakeConfig(), {"AWS_ACCOUNT_ID": "222222222222"})

        assert account == "222222222222"


class TestLoadSettings:
    def test_nested_objects(self) -> None:
        config = FakeConfig({
            "project_name": "shop",
            "network": {
                "cidr": "10.1.0.0/16",
                "zone_count": 3,
                "nat_gateways": 1,
                "availability_zones": ["us-east-1a", "us-east-1b", "us-east-1c"],
                "subnet_groups": [
                    {"name": "public", "role": "public"},
                    {"name": "app", "role": "private_with_egress", "cidr_mask": 22},
                ],
            },
            "image": {"source": "repository", "tag": "v1.2.3"},
            "service": {"placement": "public", "desired_count": 3},
            "scaling": {"trigger": "cpu_and_pending_tasks", "max_capacity": 10},
            "maintenance": {"mode": "ssh_bastion", "key_name": "ops", "admin_policy_arns": ["arn:aws:iam::aws:policy/ReadOnlyAccess"]},
            "monitoring": {"email_addresses": ["ops@example.com"]},
        })
        settings = load_settings(config, FakeConfig(), {})

        assert settings.project_name == "shop"
        assert settings.region == DEFAULT_REGION
        assert settings.network.zone_count == 3
        assert settings.network.availability_zones == ("us-east-1a", "us-east-1b", "us-east-1c")
        assert settings.network.subnet_groups[1] == SubnetGroup("app", SubnetRole.PRIVATE_WITH_EGRESS, 22)
        assert settings.image.source == ImageSource.REPOSITORY
        assert settings.service.placement == ServicePlacement.PUBLIC
        assert settings.scaling.trigger == ScalingTrigger.CPU_AND_PENDING_TASKS
        assert settings.maintenance.mode == MaintenanceMode.SSH_BASTION
        assert settings.maintenance.admin_policy_arns == ("arn:aws:iam::aws:policy/ReadOnlyAccess",)
        assert settings.monitoring.email_addresses == ("ops@example.com",)

    def test_database_password_from_secret(self) -> None:
        config = FakeConfig({
            "project_name": "shop",
            "database": {"engine": "mysql"},
            "db_password": "s3cret",
        })
        settings = load_settings(config, FakeConfig(), {})

        assert settings.database.engine == DataStoreEngine.MYSQL
        assert settings.database.password == "s3cret"

    def test_password_ignored_without_database(self) -> None:
        config = FakeConfig({"project_name": "shop", "db_password": "s3cret"})

        assert load_settings(config, FakeConfig(), {}).database.password is None

    def test_plaintext_password_rejected(self) -> None:
        config = FakeConfig({"project_name": "shop", "database": {"engine": "mysql", "password": "hunter2"}})

        with pytest.raises(ValueError, match="Unknown keys in database config: password"):
            load_settings(config, FakeConfig(), {})

    def test_unknown_key_rejected(self) -> None:
        config = FakeConfig({"project_name": "shop", "service": {"replicas": 2}})

        with pytest.raises(ValueError, match="Unknown keys in service config: replicas"):
            load_settings(config, FakeConfig(), {})

    def test_invalid_enum_rejected(self) -> None:
        config = FakeConfig({"project_name": "shop", "database": {"engine": "postgres"}})

        with pytest.raises(ValueError, match="database.engine"):
            load_settings(config, FakeConfig(), {})

    def test_project_name_required(self) -> None:
        with pytest.raises(KeyError):
            load_settings(FakeConfig(), FakeConfig(), {})

    def test_loading_is_repeatable(self) -> None:
        values = {"project_name": "shop", "network": {"zone_count": 3}, "scaling": {"min_capacity": 1}}

        assert load_settings(FakeConfig(values), FakeConfig(), {}) == load_settings(FakeConfig(values), FakeConfig(), {})
