from dataclasses import dataclass
from typing import Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.bastion import MaintenanceHost
from fargate_stack.compute import WebService
from fargate_stack.config import DataStoreEngine, ImageSource, MaintenanceMode, StackSettings
from fargate_stack.database import DataStore
from fargate_stack.identity import ServiceIdentity
from fargate_stack.monitoring import Monitoring
from fargate_stack.network import Network
from fargate_stack.registry import ImageRegistry, image_reference
from fargate_stack.security import SecurityGroups
from fargate_stack.utils import handle_resource_error


@dataclass
class StackResources:
    network: Network
    security: SecurityGroups
    identity: ServiceIdentity
    web_service: WebService
    monitoring: Monitoring
    registry: Optional[ImageRegistry] = None
    data_store: Optional[DataStore] = None
    maintenance_host: Optional[MaintenanceHost] = None


def create_provider(settings: StackSettings) -> aws.Provider:
    return aws.Provider(f"{settings.project_name}-aws",
        region=settings.region,
        allowed_account_ids=[settings.account] if settings.account else None)


def build_stack(settings: StackSettings, provider: Optional[aws.Provider] = None) -> StackResources:
    """
    Declare the whole stack.

    Order matters: each builder only receives handles from builders that
    already ran (network -> security -> identity -> registry -> data store ->
    compute -> maintenance -> observability).
    """
    project_name = settings.project_name
    provider = provider or create_provider(settings)
    opts = pulumi.ResourceOptions(providers=[provider])
    stage = "network"

    try:
        # --- Networking ---
        network = Network(project_name, settings, opts=opts)

        # --- Security Groups ---
        stage = "security groups"
        security = SecurityGroups(project_name, settings, network, opts=opts)

        # --- IAM ---
        stage = "service identity"
        identity = ServiceIdentity(project_name, settings, opts=opts)

        # --- Image ---
        stage = "image registry"
        registry = None
        if settings.image.source != ImageSource.PUBLIC_REGISTRY:
            registry = ImageRegistry(project_name, settings, opts=opts)
        image = image_reference(settings.image, registry)

        # --- Data Tier ---
        stage = "data store"
        data_store = None
        if settings.database.engine != DataStoreEngine.NONE:
            data_store = DataStore(project_name, settings, network, security, opts=opts)

        # --- Application Tier ---
        stage = "web service"
        web_service = WebService(project_name, settings, network, security, identity, image, opts=opts)

        stage = "maintenance host"
        maintenance_host = None
        if settings.maintenance.mode != MaintenanceMode.NONE:
            if not network.public_subnets:
                raise ValueError("An SSH bastion needs a public subnet")
            maintenance_host = MaintenanceHost(project_name, settings, network.public_subnets[0], security, opts=opts)

        # --- Monitoring ---
        stage = "monitoring"
        monitoring = Monitoring(project_name, settings, web_service, data_store, opts=opts)
    except ValueError as e:
        handle_resource_error(stage, e)

    return StackResources(
        network=network,
        security=security,
        identity=identity,
        web_service=web_service,
        monitoring=monitoring,
        registry=registry,
        data_store=data_store,
        maintenance_host=maintenance_host,
    )


def export_outputs(resources: StackResources) -> None:
    # --- Exports ---
    network = resources.network
    pulumi.export("vpc_id", network.vpc.id)
    pulumi.export("public_subnet_ids", network.public_subnet_ids)
    pulumi.export("private_subnet_ids", network.private_subnet_ids)
    pulumi.export("isolated_subnet_ids", network.isolated_subnet_ids)

    for rule_set, group in resources.security.groups.items():
        pulumi.export(f"{rule_set.value}_security_group_id", group.id)

    web_service = resources.web_service
    pulumi.export("alb_dns_name", web_service.load_balancer.dns_name)
    pulumi.export("service_url", pulumi.Output.concat("http://", web_service.load_balancer.dns_name))
    pulumi.export("service_name", web_service.service.name)
    pulumi.export("target_group_arn", web_service.target_group.arn)

    if resources.registry is not None:
        pulumi.export("ecr_repository_url", resources.registry.repository.repository_url)
        pulumi.export("docker_image_uri", resources.registry.image_uri)
    if resources.data_store is not None:
        pulumi.export("db_endpoint", resources.data_store.endpoint)
    if resources.maintenance_host is not None:
        pulumi.export("bastion_public_ip", resources.maintenance_host.public_ip)

    pulumi.export("alarm_topic_arn", resources.monitoring.topic.arn)
