from typing import Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.config import MaintenanceMode, StackSettings
from fargate_stack.security import SecurityGroups
from fargate_stack.utils import assume_role_policy


def latest_amazon_linux(opts: Optional[pulumi.InvokeOptions] = None) -> str:
    ami = aws.ec2.get_ami(
        most_recent=True,
        owners=["amazon"],
        filters=[
            aws.ec2.GetAmiFilterArgs(name="name", values=["al2023-ami-2023.*-x86_64"]),
            aws.ec2.GetAmiFilterArgs(name="architecture", values=["x86_64"]),
        ],
        opts=opts)
    return ami.id


class MaintenanceHost(pulumi.ComponentResource):
    """SSH bastion for reaching the data store, placed in the subnet it is given."""

    def __init__(self, name: str, settings: StackSettings, subnet: aws.ec2.Subnet, security: SecurityGroups,
                 opts: Optional[pulumi.ResourceOptions] = None):
        maintenance = settings.maintenance

        if maintenance.mode != MaintenanceMode.SSH_BASTION:
            raise ValueError(f"Unsupported maintenance mode: {maintenance.mode.value}")
        if not maintenance.key_name:
            raise ValueError("maintenance.key_name is required for an SSH bastion")

        super().__init__("fargate-stack:bastion:MaintenanceHost", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)

        self.instance_profile = None
        if maintenance.admin_policy_arns:
            pulumi.log.warn(
                f"Bastion role gets administrative policies {list(maintenance.admin_policy_arns)}; "
                "remove them from maintenance.admin_policy_arns when no longer needed",
                resource=self)
            self.role = aws.iam.Role(f"{name}-bastion-role",
                assume_role_policy=assume_role_policy("ec2.amazonaws.com"),
                tags=settings.tags("bastion-role"),
                opts=child_opts)
            for i, policy_arn in enumerate(maintenance.admin_policy_arns):
                aws.iam.RolePolicyAttachment(f"{name}-bastion-policy-attachment-{i}",
                    role=self.role.name,
                    policy_arn=policy_arn,
                    opts=child_opts)
            self.instance_profile = aws.iam.InstanceProfile(f"{name}-bastion-profile",
                role=self.role.name,
                opts=child_opts)

        self.instance = aws.ec2.Instance(f"{name}-bastion",
            ami=latest_amazon_linux(pulumi.InvokeOptions(parent=self)),
            instance_type=maintenance.instance_type,
            key_name=maintenance.key_name,
            subnet_id=subnet.id,
            associate_public_ip_address=True,
            vpc_security_group_ids=[security.maintenance.id],
            iam_instance_profile=self.instance_profile.name if self.instance_profile else None,
            metadata_options=aws.ec2.InstanceMetadataOptionsArgs(http_tokens="required"),
            tags=settings.tags("bastion"),
            opts=child_opts)

        self.public_ip = self.instance.public_ip
        self.register_outputs({"public_ip": self.public_ip})
