import ipaddress
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pulumi
import pulumi_aws as aws

from fargate_stack.config import NetworkSettings, StackSettings, SubnetGroup, SubnetRole

# Interface endpoints needed to pull images and ship logs without a NAT gateway.
INTERFACE_ENDPOINT_SERVICES = ("ecr.api", "ecr.dkr", "logs")


@dataclass(frozen=True)
class SubnetPlan:
    group: str
    role: SubnetRole
    zone: str
    cidr: str
    index: int  # position of the zone, 0-based


@dataclass(frozen=True)
class SubnetAttachment:
    plan: SubnetPlan
    subnet: aws.ec2.Subnet
    route_table: aws.ec2.RouteTable
    association: aws.ec2.RouteTableAssociation


def validate_network_settings(settings: NetworkSettings) -> ipaddress.IPv4Network:
    try:
        block = ipaddress.ip_network(settings.cidr)
    except ValueError as e:
        raise ValueError(f"Invalid VPC CIDR format: {settings.cidr}") from e
    if not isinstance(block, ipaddress.IPv4Network):
        raise ValueError(f"VPC CIDR must be IPv4: {settings.cidr}")
    if not 16 <= block.prefixlen <= 28:
        raise ValueError(f"VPC CIDR prefix must be between /16 and /28: {settings.cidr}")
    if settings.zone_count < 1:
        raise ValueError("At least one availability zone must be specified")
    if not settings.subnet_groups:
        raise ValueError("At least one subnet group must be specified")

    names = [group.name for group in settings.subnet_groups]
    if len(names) != len(set(names)):
        raise ValueError(f"Subnet group names must be unique: {names}")
    roles = {group.role for group in settings.subnet_groups}
    if SubnetRole.PRIVATE_WITH_EGRESS in roles:
        if SubnetRole.PUBLIC not in roles:
            raise ValueError("Private subnets with egress need a public subnet group for their NAT gateways")
        if settings.nat_gateways < 1:
            raise ValueError("Private subnets with egress need nat_gateways >= 1")
    if settings.nat_gateways < 0:
        raise ValueError(f"nat_gateways must not be negative: {settings.nat_gateways}")
    return block


def plan_subnets(cidr: str, zones: Sequence[str], groups: Sequence[SubnetGroup]) -> List[SubnetPlan]:
    """
    Carve the address block into one subnet per group per zone.

    Ranges are handed out in declaration order, group by group and zone by
    zone, each aligned on its own prefix boundary, so no two ranges overlap.
    """
    block = ipaddress.ip_network(cidr)
    cursor = int(block.network_address)
    end = int(block.broadcast_address)
    plans = []
    for group in groups:
        if not block.prefixlen <= group.cidr_mask <= 28:
            raise ValueError(
                f"Subnet group {group.name}: cidr_mask /{group.cidr_mask} does not fit in {cidr}")
        size = 2 ** (32 - group.cidr_mask)
        for index, zone in enumerate(zones):
            start = -(-cursor // size) * size  # align up
            if start + size - 1 > end:
                raise ValueError(
                    f"Address block {cidr} exhausted while allocating subnet group {group.name} in {zone}")
            subnet = ipaddress.ip_network((start, group.cidr_mask))
            plans.append(SubnetPlan(group.name, group.role, zone, str(subnet), index))
            cursor = start + size
    return plans


def find_overlaps(plans: Sequence[SubnetPlan]) -> List[tuple]:
    networks = [(plan, ipaddress.ip_network(plan.cidr)) for plan in plans]
    overlaps = []
    for i, (left, left_net) in enumerate(networks):
        for right, right_net in networks[i + 1:]:
            if left_net.overlaps(right_net):
                overlaps.append((left.cidr, right.cidr))
    return overlaps


def resolve_zones(settings: NetworkSettings, opts: Optional[pulumi.InvokeOptions] = None) -> List[str]:
    if settings.availability_zones:
        zones = list(settings.availability_zones)
    else:
        zones = aws.get_availability_zones(state="available", opts=opts).names
    if len(zones) < settings.zone_count:
        raise ValueError(f"Requested {settings.zone_count} zones but only {len(zones)} are available: {zones}")
    return zones[:settings.zone_count]


class Network(pulumi.ComponentResource):
    """VPC with per-zone subnets, route tables and private service endpoints."""

    def __init__(self, name: str, settings: StackSettings, opts: Optional[pulumi.ResourceOptions] = None):
        network = settings.network
        block = validate_network_settings(network)
        super().__init__("fargate-stack:network:Network", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)
        zones = resolve_zones(network, pulumi.InvokeOptions(parent=self))

        self.cidr_block = str(block)
        self.zones = zones
        self.plans = plan_subnets(self.cidr_block, zones, network.subnet_groups)
        overlaps = find_overlaps(self.plans)
        if overlaps:
            raise ValueError(f"Overlapping subnet ranges: {overlaps}")

        # 1. Create the VPC
        self.vpc = aws.ec2.Vpc(f"{name}-vpc",
            cidr_block=self.cidr_block,
            enable_dns_hostnames=True,  # required for private DNS on interface endpoints
            enable_dns_support=True,
            tags=settings.tags("vpc"),
            opts=child_opts)

        self.subnets: Dict[SubnetRole, List[aws.ec2.Subnet]] = {role: [] for role in SubnetRole}
        self.route_tables: Dict[SubnetRole, List[aws.ec2.RouteTable]] = {role: [] for role in SubnetRole}
        self.internet_gateway = None
        self.nat_gateways: List[aws.ec2.NatGateway] = []
        self.attachments: List[SubnetAttachment] = []

        roles = {plan.role for plan in self.plans}

        # 2. Internet Gateway and shared public route table
        if SubnetRole.PUBLIC in roles:
            self.internet_gateway = aws.ec2.InternetGateway(f"{name}-igw",
                vpc_id=self.vpc.id,
                tags=settings.tags("igw"),
                opts=child_opts)
            public_rt = aws.ec2.RouteTable(f"{name}-public-rt",
                vpc_id=self.vpc.id,
                routes=[aws.ec2.RouteTableRouteArgs(
                    cidr_block="0.0.0.0/0",
                    gateway_id=self.internet_gateway.id,
                )],
                tags=settings.tags("public-rt"),
                opts=child_opts)
            self.route_tables[SubnetRole.PUBLIC].append(public_rt)

        # 3. Isolated route table (no routes: never reaches the internet gateway)
        if SubnetRole.PRIVATE_ISOLATED in roles:
            isolated_rt = aws.ec2.RouteTable(f"{name}-isolated-rt",
                vpc_id=self.vpc.id,
                tags=settings.tags("isolated-rt"),
                opts=child_opts)
            self.route_tables[SubnetRole.PRIVATE_ISOLATED].append(isolated_rt)

        # 4. Public subnets first so NAT gateways can be placed in them
        for plan in self.plans_for(SubnetRole.PUBLIC):
            self._create_subnet(name, settings, plan, self.route_tables[SubnetRole.PUBLIC][0], child_opts)

        # 5. NAT gateways, round-robin over the public subnets
        if SubnetRole.PRIVATE_WITH_EGRESS in roles:
            public_subnets = self.subnets[SubnetRole.PUBLIC]
            for i in range(network.nat_gateways):
                eip = aws.ec2.Eip(f"{name}-nat-eip-{i+1}",
                    domain="vpc",
                    tags=settings.tags(f"nat-eip-{i+1}"),
                    opts=child_opts)
                nat_gw = aws.ec2.NatGateway(f"{name}-nat-gw-{i+1}",
                    allocation_id=eip.id,
                    subnet_id=public_subnets[i % len(public_subnets)].id,
                    tags=settings.tags(f"nat-gw-{i+1}"),
                    opts=child_opts)
                self.nat_gateways.append(nat_gw)

        # 6. Private and isolated subnets
        for plan in self.plans:
            if plan.role == SubnetRole.PRIVATE_WITH_EGRESS:
                private_rt = aws.ec2.RouteTable(f"{name}-{plan.group}-rt-{plan.index+1}",
                    vpc_id=self.vpc.id,
                    routes=[aws.ec2.RouteTableRouteArgs(
                        cidr_block="0.0.0.0/0",
                        nat_gateway_id=self.nat_gateways[plan.index % len(self.nat_gateways)].id,
                    )],
                    tags=settings.tags(f"{plan.group}-rt-{plan.index+1}"),
                    opts=child_opts)
                self.route_tables[SubnetRole.PRIVATE_WITH_EGRESS].append(private_rt)
                self._create_subnet(name, settings, plan, private_rt, child_opts)
            elif plan.role == SubnetRole.PRIVATE_ISOLATED:
                self._create_subnet(name, settings, plan, self.route_tables[SubnetRole.PRIVATE_ISOLATED][0], child_opts)

        # 7. Private connectivity to managed services, isolated subnets only
        self.endpoints: Dict[str, aws.ec2.VpcEndpoint] = {}
        if self.isolated_subnets:
            self._create_endpoints(name, settings, child_opts)
        else:
            pulumi.log.info("No isolated subnets declared; skipping VPC endpoints", resource=self)

        self.register_outputs({
            "vpc_id": self.vpc.id,
            "public_subnet_ids": self.public_subnet_ids,
            "private_subnet_ids": self.private_subnet_ids,
            "isolated_subnet_ids": self.isolated_subnet_ids,
        })

    def plans_for(self, role: SubnetRole) -> List[SubnetPlan]:
        return [plan for plan in self.plans if plan.role == role]

    def _create_subnet(self, name: str, settings: StackSettings, plan: SubnetPlan,
                       route_table: aws.ec2.RouteTable, opts: pulumi.ResourceOptions) -> aws.ec2.Subnet:
        subnet_name = f"{plan.group}-subnet-{plan.index+1}"
        subnet = aws.ec2.Subnet(f"{name}-{subnet_name}",
            vpc_id=self.vpc.id,
            cidr_block=plan.cidr,
            availability_zone=plan.zone,
            map_public_ip_on_launch=plan.role == SubnetRole.PUBLIC,
            tags=settings.tags(subnet_name, {"Tier": plan.role.value}),
            opts=opts)
        association = aws.ec2.RouteTableAssociation(f"{name}-{plan.group}-rta-{plan.index+1}",
            subnet_id=subnet.id,
            route_table_id=route_table.id,
            opts=opts)
        self.subnets[plan.role].append(subnet)
        self.attachments.append(SubnetAttachment(plan, subnet, route_table, association))
        return subnet

    def _create_endpoints(self, name: str, settings: StackSettings, opts: pulumi.ResourceOptions) -> None:
        self.endpoint_security_group = aws.ec2.SecurityGroup(f"{name}-endpoint-sg",
            vpc_id=self.vpc.id,
            description="VPC interface endpoints (HTTPS from the VPC)",
            ingress=[aws.ec2.SecurityGroupIngressArgs(
                protocol="tcp", from_port=443, to_port=443, cidr_blocks=[self.cidr_block])],
            egress=[aws.ec2.SecurityGroupEgressArgs(
                protocol="-1", from_port=0, to_port=0, cidr_blocks=["0.0.0.0/0"])],
            tags=settings.tags("endpoint-sg"),
            opts=opts)

        for service in INTERFACE_ENDPOINT_SERVICES:
            key = service.replace(".", "-")
            self.endpoints[service] = aws.ec2.VpcEndpoint(f"{name}-{key}-endpoint",
                vpc_id=self.vpc.id,
                service_name=f"com.amazonaws.{settings.region}.{service}",
                vpc_endpoint_type="Interface",
                private_dns_enabled=True,
                subnet_ids=[s.id for s in self.endpoint_subnets()],
                security_group_ids=[self.endpoint_security_group.id],
                tags=settings.tags(f"{key}-endpoint"),
                opts=opts)

        # S3 is a gateway endpoint: it attaches to route tables, not subnets
        self.endpoints["s3"] = aws.ec2.VpcEndpoint(f"{name}-s3-endpoint",
            vpc_id=self.vpc.id,
            service_name=f"com.amazonaws.{settings.region}.s3",
            vpc_endpoint_type="Gateway",
            route_table_ids=[rt.id for rt in self.route_tables[SubnetRole.PRIVATE_ISOLATED]],
            tags=settings.tags("s3-endpoint"),
            opts=opts)

    @property
    def public_subnets(self) -> List[aws.ec2.Subnet]:
        return self.subnets[SubnetRole.PUBLIC]

    @property
    def private_subnets(self) -> List[aws.ec2.Subnet]:
        return self.subnets[SubnetRole.PRIVATE_WITH_EGRESS]

    @property
    def isolated_subnets(self) -> List[aws.ec2.Subnet]:
        return self.subnets[SubnetRole.PRIVATE_ISOLATED]

    @property
    def public_subnet_ids(self) -> List[pulumi.Output[str]]:
        return [s.id for s in self.public_subnets]

    @property
    def private_subnet_ids(self) -> List[pulumi.Output[str]]:
        return [s.id for s in self.private_subnets]

    @property
    def isolated_subnet_ids(self) -> List[pulumi.Output[str]]:
        return [s.id for s in self.isolated_subnets]

    def endpoint_subnets(self) -> List[aws.ec2.Subnet]:
        """First isolated subnet in each zone; an interface endpoint takes at most one subnet per zone."""
        chosen: Dict[str, aws.ec2.Subnet] = {}
        for attachment in self.attachments:
            if attachment.plan.role == SubnetRole.PRIVATE_ISOLATED:
                chosen.setdefault(attachment.plan.zone, attachment.subnet)
        return list(chosen.values())

    def workload_subnets(self) -> List[aws.ec2.Subnet]:
        """Subnets that keep workloads off the internet: routed private first, then isolated."""
        return self.private_subnets or self.isolated_subnets
