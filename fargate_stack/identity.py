import json
from typing import List, Optional

import pulumi
import pulumi_aws as aws

from fargate_stack.config import StackSettings
from fargate_stack.utils import assume_role_policy

ECS_TASKS_PRINCIPAL = "ecs-tasks.amazonaws.com"
TASK_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"


def task_policy_statements(bucket_names) -> List[dict]:
    """Read-only S3 access for the application's runtime identity."""
    if not bucket_names:
        return []
    resources = []
    for bucket in bucket_names:
        resources += [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"]
    return [{"Effect": "Allow", "Action": ["s3:GetObject", "s3:ListBucket"], "Resource": resources}]


class ServiceIdentity(pulumi.ComponentResource):
    """
    Execution and task roles for the Fargate workload.

    The execution role is used by the ECS agent (image pull, log delivery);
    the task role is what the application code runs as. They are kept apart
    so the application never inherits registry or logging permissions.
    """

    def __init__(self, name: str, settings: StackSettings, opts: Optional[pulumi.ResourceOptions] = None):
        super().__init__("fargate-stack:identity:ServiceIdentity", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)

        self.execution_role = aws.iam.Role(f"{name}-ecs-exec-role",
            assume_role_policy=assume_role_policy(ECS_TASKS_PRINCIPAL),
            description="Execution role for ECS tasks (image pull, logs)",
            tags=settings.tags("ecs-exec-role"),
            opts=child_opts)
        aws.iam.RolePolicyAttachment(f"{name}-ecs-exec-policy",
            role=self.execution_role.name,
            policy_arn=TASK_EXECUTION_POLICY_ARN,
            opts=child_opts)

        self.task_role = aws.iam.Role(f"{name}-app-task-role",
            assume_role_policy=assume_role_policy(ECS_TASKS_PRINCIPAL),
            description="Task role for ECS tasks (app role)",
            tags=settings.tags("app-task-role"),
            opts=child_opts)

        self.task_policy = None
        statements = task_policy_statements(settings.identity.read_bucket_names)
        if statements:
            self.task_policy = aws.iam.RolePolicy(f"{name}-app-task-policy",
                role=self.task_role.id,
                policy=json.dumps({"Version": "2012-10-17", "Statement": statements}),
                opts=child_opts)

        self.register_outputs({
            "execution_role_arn": self.execution_role.arn,
            "task_role_arn": self.task_role.arn,
        })
