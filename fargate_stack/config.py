"""
Stack settings.

Every builder is driven by one frozen settings object loaded from the Pulumi
stack configuration. Enumerated options replace the per-variant stack files:
pick the variant in ``Pulumi.<stack>.yaml`` instead of copying a stack.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

import pulumi

from fargate_stack.utils import create_common_tags

DEFAULT_REGION = "ap-northeast-1"

E = TypeVar("E", bound=Enum)
S = TypeVar("S")


class SubnetRole(str, Enum):
    PUBLIC = "public"
    PRIVATE_WITH_EGRESS = "private_with_egress"
    PRIVATE_ISOLATED = "private_isolated"


class RemovalPolicy(str, Enum):
    DESTROY = "destroy"
    RETAIN = "retain"

    def resource_options(self, opts: pulumi.ResourceOptions) -> pulumi.ResourceOptions:
        """Merge the removal policy into a resource's options."""
        if self == RemovalPolicy.RETAIN:
            return pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(retain_on_delete=True))
        return opts


class ImageSource(str, Enum):
    PUBLIC_REGISTRY = "public_registry"  # e.g. nginx:latest pulled from Docker Hub
    REPOSITORY = "repository"  # tag already pushed to the stack's ECR repository
    LOCAL_BUILD = "local_build"  # build context directory, built and pushed on `pulumi up`


class ServicePlacement(str, Enum):
    ISOLATED = "isolated"
    PUBLIC = "public"


class ScalingTrigger(str, Enum):
    CPU = "cpu"
    CPU_AND_PENDING_TASKS = "cpu_and_pending_tasks"


class DataStoreEngine(str, Enum):
    NONE = "none"
    MYSQL = "mysql"


class MaintenanceMode(str, Enum):
    NONE = "none"
    SSH_BASTION = "ssh_bastion"


def parse_enum(enum_cls: Type[E], value: Any, key: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        options = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid value for {key}: {value!r} (expected one of: {options})")


def _from_mapping(cls: Type[S], data: Optional[Mapping[str, Any]], key: str) -> S:
    """Build a settings dataclass from a config object, coercing enums and lists."""
    data = data or {}
    known = {f.name: f for f in dataclasses.fields(cls) if f.metadata.get("config", True)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown keys in {key} config: {', '.join(unknown)}")
    kwargs = {}
    for name, value in data.items():
        field_type = known[name].type
        if isinstance(field_type, type) and issubclass(field_type, Enum):
            value = parse_enum(field_type, value, f"{key}.{name}")
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class SubnetGroup:
    name: str
    role: SubnetRole
    cidr_mask: int = 24


DEFAULT_SUBNET_GROUPS = (
    SubnetGroup("public", SubnetRole.PUBLIC, 24),
    SubnetGroup("private", SubnetRole.PRIVATE_ISOLATED, 24),
)


@dataclass(frozen=True)
class NetworkSettings:
    cidr: str = "10.0.0.0/16"
    zone_count: int = 2
    subnet_groups: Tuple[SubnetGroup, ...] = DEFAULT_SUBNET_GROUPS
    nat_gateways: int = 0
    availability_zones: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "NetworkSettings":
        data = dict(data or {})
        groups = data.pop("subnet_groups", None)
        settings = _from_mapping(cls, data, "network")
        if groups is not None:
            parsed = tuple(_from_mapping(SubnetGroup, group, "network.subnet_groups") for group in groups)
            settings = dataclasses.replace(settings, subnet_groups=parsed)
        return settings


@dataclass(frozen=True)
class AccessSettings:
    front_door_port: int = 80
    admin_port: int = 22
    data_store_port: int = 3306
    front_door_ingress_cidr: str = "0.0.0.0/0"
    # Unrestricted by default; narrow per stack.
    admin_ingress_cidr: str = "0.0.0.0/0"


@dataclass(frozen=True)
class IdentitySettings:
    read_bucket_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ImageSettings:
    source: ImageSource = ImageSource.PUBLIC_REGISTRY
    reference: str = "nginx:latest"
    tag: str = "latest"
    build_context: str = "../app"  # relative to the Pulumi program directory
    repository_removal_policy: RemovalPolicy = RemovalPolicy.DESTROY


@dataclass(frozen=True)
class ServiceSettings:
    name: str = "app"
    cpu: int = 256
    memory: int = 512
    container_port: int = 80
    desired_count: int = 2
    min_healthy_percent: int = 100
    max_healthy_percent: int = 200
    placement: ServicePlacement = ServicePlacement.ISOLATED
    health_check_path: str = "/"
    healthy_http_codes: str = "200-399"
    health_check_interval: int = 30
    health_check_timeout: int = 5
    log_retention_days: int = 7
    log_removal_policy: RemovalPolicy = RemovalPolicy.DESTROY


@dataclass(frozen=True)
class ScalingSettings:
    min_capacity: int = 2
    max_capacity: int = 6
    trigger: ScalingTrigger = ScalingTrigger.CPU
    target_cpu_utilization: float = 70
    scale_in_cooldown: int = 60
    scale_out_cooldown: int = 60


@dataclass(frozen=True)
class DatabaseSettings:
    engine: DataStoreEngine = DataStoreEngine.NONE
    engine_version: str = "8.0"
    instance_class: str = "db.t3.micro"
    allocated_storage: int = 20
    db_name: str = "app"
    username: str = "admin"
    removal_policy: RemovalPolicy = RemovalPolicy.DESTROY
    # Only from the `db_password` secret, never from the plaintext `database` object
    password: Optional[pulumi.Output] = field(default=None, metadata={"config": False})


@dataclass(frozen=True)
class MaintenanceSettings:
    mode: MaintenanceMode = MaintenanceMode.NONE
    instance_type: str = "t3.micro"
    key_name: Optional[str] = None
    admin_policy_arns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MonitoringSettings:
    email_addresses: Tuple[str, ...] = ()
    cpu_threshold: float = 80
    pending_task_threshold: float = 1
    target_5xx_threshold: float = 5
    db_free_storage_bytes: float = 4 * 1024 * 1024 * 1024  # 4 GiB
    db_connections_threshold: float = 80


@dataclass(frozen=True)
class StackSettings:
    project_name: str
    region: str = DEFAULT_REGION
    account: Optional[str] = None
    environment: str = "development"
    network: NetworkSettings = field(default_factory=NetworkSettings)
    access: AccessSettings = field(default_factory=AccessSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    image: ImageSettings = field(default_factory=ImageSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)
    scaling: ScalingSettings = field(default_factory=ScalingSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    def tags(self, name: str, additional_tags: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        return create_common_tags(self.project_name, name, self.environment, additional_tags)


def resolve_environment(config, aws_config=None, environ: Optional[Mapping[str, str]] = None) -> Tuple[str, Optional[str]]:
    """Resolve the target region and account, falling back to DEFAULT_REGION."""
    environ = os.environ if environ is None else environ
    aws_config = aws_config if aws_config is not None else pulumi.Config("aws")
    region = (
        config.get("region")
        or aws_config.get("region")
        or environ.get("AWS_REGION")
        or environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_REGION
    )
    account = config.get("account") or environ.get("AWS_ACCOUNT_ID")
    return region, account


def load_settings(config=None, aws_config=None, environ: Optional[Mapping[str, str]] = None) -> StackSettings:
    # --- Configuration ---
    config = config if config is not None else pulumi.Config()
    project_name = config.require("project_name")
    region, account = resolve_environment(config, aws_config, environ)

    database = _from_mapping(DatabaseSettings, config.get_object("database"), "database")
    if database.engine != DataStoreEngine.NONE:
        database = dataclasses.replace(database, password=config.get_secret("db_password"))

    settings = StackSettings(
        project_name=project_name,
        region=region,
        account=account,
        environment=config.get("environment") or "development",
        network=NetworkSettings.from_dict(config.get_object("network")),
        access=_from_mapping(AccessSettings, config.get_object("access"), "access"),
        identity=_from_mapping(IdentitySettings, config.get_object("identity"), "identity"),
        image=_from_mapping(ImageSettings, config.get_object("image"), "image"),
        service=_from_mapping(ServiceSettings, config.get_object("service"), "service"),
        scaling=_from_mapping(ScalingSettings, config.get_object("scaling"), "scaling"),
        database=database,
        maintenance=_from_mapping(MaintenanceSettings, config.get_object("maintenance"), "maintenance"),
        monitoring=_from_mapping(MonitoringSettings, config.get_object("monitoring"), "monitoring"),
    )
    pulumi.log.info(f"Loaded settings for {project_name} ({settings.environment}) in {region}")
    return settings
