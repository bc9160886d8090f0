import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.config import AccessSettings, MaintenanceMode, StackSettings
from fargate_stack.network import Network

ANY_IPV4 = "0.0.0.0/0"


class RuleSet(str, Enum):
    FRONT_DOOR = "front_door"
    APPLICATION = "application"
    DATA_STORE = "data_store"
    MAINTENANCE = "maintenance"


DESCRIPTIONS = {
    RuleSet.FRONT_DOOR: "Load balancer security group (HTTP)",
    RuleSet.APPLICATION: "ECS tasks security group",
    RuleSet.DATA_STORE: "RDS security group",
    RuleSet.MAINTENANCE: "Bastion security group",
}


@dataclass(frozen=True)
class AccessRule:
    source: str  # a RuleSet value or an IPv4 CIDR
    destination: RuleSet
    port: int
    description: str

    @property
    def source_is_cidr(self) -> bool:
        return self.source not in {rule_set.value for rule_set in RuleSet}


def listening_ports(access: AccessSettings, application_port: int) -> Dict[RuleSet, int]:
    return {
        RuleSet.FRONT_DOOR: access.front_door_port,
        RuleSet.APPLICATION: application_port,
        RuleSet.DATA_STORE: access.data_store_port,
        RuleSet.MAINTENANCE: access.admin_port,
    }


def admin_ingress_warning(settings: StackSettings) -> Optional[str]:
    """Warning for unrestricted admin ingress, only when a maintenance host listens behind it."""
    if settings.maintenance.mode == MaintenanceMode.NONE:
        return None
    if settings.access.admin_ingress_cidr != ANY_IPV4:
        return None
    return f"Maintenance security group accepts port {settings.access.admin_port} from {ANY_IPV4}"


def plan_access_rules(access: AccessSettings, application_port: int) -> List[AccessRule]:
    """
    One allow rule per consumer -> provider pair, on the provider's port.

    Everything not listed here is denied by the security groups' implicit
    deny-all; there are no deny rules.
    """
    for cidr in (access.front_door_ingress_cidr, access.admin_ingress_cidr):
        try:
            ipaddress.IPv4Network(cidr)
        except ValueError as e:
            raise ValueError(f"Invalid ingress CIDR: {cidr}") from e

    ports = listening_ports(access, application_port)
    for rule_set, port in ports.items():
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port for {rule_set.value}: {port}")

    def allow(source, destination: RuleSet, description: str) -> AccessRule:
        source_value = source.value if isinstance(source, RuleSet) else source
        return AccessRule(source_value, destination, ports[destination], description)

    return [
        allow(access.front_door_ingress_cidr, RuleSet.FRONT_DOOR, "Allow HTTP"),
        allow(RuleSet.FRONT_DOOR, RuleSet.APPLICATION, "Allow ALB to ECS traffic"),
        allow(access.admin_ingress_cidr, RuleSet.MAINTENANCE, "Allow SSH to bastion"),
        allow(RuleSet.APPLICATION, RuleSet.DATA_STORE, "Allow ECS to RDS traffic"),
        allow(RuleSet.MAINTENANCE, RuleSet.DATA_STORE, "Allow Bastion to RDS traffic"),
    ]


class SecurityGroups(pulumi.ComponentResource):
    """One security group per rule set, wired by the planned allow rules."""

    def __init__(self, name: str, settings: StackSettings, network: Network,
                 opts: Optional[pulumi.ResourceOptions] = None):
        super().__init__("fargate-stack:security:SecurityGroups", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)

        self.rules = plan_access_rules(settings.access, settings.service.container_port)
        warning = admin_ingress_warning(settings)
        if warning:
            pulumi.log.warn(warning, resource=self)

        self.groups: Dict[RuleSet, aws.ec2.SecurityGroup] = {}
        for rule_set in RuleSet:
            group_name = f"{rule_set.value.replace('_', '-')}-sg"
            self.groups[rule_set] = aws.ec2.SecurityGroup(f"{name}-{group_name}",
                vpc_id=network.vpc.id,
                description=DESCRIPTIONS[rule_set],
                tags=settings.tags(group_name),
                opts=child_opts)
            # Allow all egress
            aws.ec2.SecurityGroupRule(f"{name}-{group_name}-egress",
                type="egress",
                security_group_id=self.groups[rule_set].id,
                protocol="-1",
                from_port=0,
                to_port=0,
                cidr_blocks=[ANY_IPV4],
                opts=child_opts)

        self.ingress_rules: List[aws.ec2.SecurityGroupRule] = []
        for rule in self.rules:
            source_args = {"cidr_blocks": [rule.source]} if rule.source_is_cidr else {
                "source_security_group_id": self.groups[RuleSet(rule.source)].id}
            source_label = "cidr" if rule.source_is_cidr else rule.source.replace("_", "-")
            destination_label = rule.destination.value.replace("_", "-")
            self.ingress_rules.append(aws.ec2.SecurityGroupRule(
                f"{name}-{destination_label}-from-{source_label}-{rule.port}",
                type="ingress",
                security_group_id=self.groups[rule.destination].id,
                protocol="tcp",
                from_port=rule.port,
                to_port=rule.port,
                description=rule.description,
                opts=child_opts,
                **source_args))

        self.register_outputs({
            f"{rule_set.value}_security_group_id": group.id for rule_set, group in self.groups.items()
        })

    @property
    def front_door(self) -> aws.ec2.SecurityGroup:
        return self.groups[RuleSet.FRONT_DOOR]

    @property
    def application(self) -> aws.ec2.SecurityGroup:
        return self.groups[RuleSet.APPLICATION]

    @property
    def data_store(self) -> aws.ec2.SecurityGroup:
        return self.groups[RuleSet.DATA_STORE]

    @property
    def maintenance(self) -> aws.ec2.SecurityGroup:
        return self.groups[RuleSet.MAINTENANCE]
