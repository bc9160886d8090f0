import json
from typing import Dict, Optional

import pulumi


def create_common_tags(project_name: str, name: str, environment: str = "development",
                       additional_tags: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Create a consistent set of tags for resources."""
    tags = {
        "Name": f"{project_name}-{name}",
        "Project": project_name,
        "Environment": environment,
        "ManagedBy": "pulumi",
    }
    if additional_tags:
        tags.update(additional_tags)
    return tags


# Error handling helper
def handle_resource_error(resource_name: str, e: Exception) -> None:
    """Centralized error handling for resource creation."""
    pulumi.log.error(f"Error creating {resource_name}: {str(e)}")
    raise e


def assume_role_policy(service: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    })
