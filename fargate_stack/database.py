from typing import Optional

import pulumi
import pulumi_aws as aws
import pulumi_random as random

from fargate_stack.config import DataStoreEngine, RemovalPolicy, StackSettings
from fargate_stack.network import Network
from fargate_stack.security import SecurityGroups


class DataStore(pulumi.ComponentResource):
    """MySQL instance in the isolated subnets, reachable only through the data store security group."""

    def __init__(self, name: str, settings: StackSettings, network: Network, security: SecurityGroups,
                 opts: Optional[pulumi.ResourceOptions] = None):
        database = settings.database

        if database.engine != DataStoreEngine.MYSQL:
            raise ValueError(f"Unsupported data store engine: {database.engine.value}")
        if len(network.isolated_subnets) < 2:
            raise ValueError("The data store needs isolated subnets in at least two availability zones")
        if database.allocated_storage < 20:
            raise ValueError(f"allocated_storage must be at least 20 GiB: {database.allocated_storage}")

        super().__init__("fargate-stack:database:DataStore", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)

        self.subnet_group = aws.rds.SubnetGroup(f"{name}-db-sng",
            subnet_ids=network.isolated_subnet_ids,
            tags=settings.tags("db-sng"),
            opts=child_opts)

        password = database.password
        if password is None:
            password = random.RandomPassword(f"{name}-db-password",
                length=32,
                special=False,
                opts=child_opts).result

        retain = database.removal_policy == RemovalPolicy.RETAIN
        self.instance = aws.rds.Instance(f"{name}-db",
            engine="mysql",
            engine_version=database.engine_version,
            instance_class=database.instance_class,
            allocated_storage=database.allocated_storage,
            storage_encrypted=True,
            db_name=database.db_name,
            username=database.username,
            password=password,
            port=settings.access.data_store_port,
            db_subnet_group_name=self.subnet_group.name,
            vpc_security_group_ids=[security.data_store.id],
            publicly_accessible=False,
            backup_retention_period=7,
            deletion_protection=retain,
            skip_final_snapshot=not retain,
            final_snapshot_identifier=f"{settings.project_name}-db-final" if retain else None,
            tags=settings.tags("db"),
            opts=database.removal_policy.resource_options(child_opts))

        self.endpoint = self.instance.endpoint
        self.register_outputs({"endpoint": self.endpoint})
