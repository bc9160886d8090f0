import pulumi

from fargate_stack.config import load_settings
from fargate_stack.stack import build_stack, export_outputs

# --- Configuration ---
settings = load_settings()

resources = build_stack(settings)
export_outputs(resources)

pulumi.log.info("Deployment script completed. Check outputs for resource details.")
