"""
Fargate web service stack.

Builders, leaf-first:
- network: VPC, subnets per zone, route tables, VPC endpoints
- security: security groups and allow rules per workload role
- identity: ECS execution and task roles
- registry: ECR repository and optional local image build
- database: MySQL RDS instance in the isolated subnets
- compute: ECS cluster, Fargate service, ALB, autoscaling
- bastion: optional SSH maintenance host
- monitoring: CloudWatch alarms and SNS notifications
- stack: composes the builders in dependency order
"""
