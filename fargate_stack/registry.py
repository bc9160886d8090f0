import os
from typing import Optional

import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx

from fargate_stack.config import ImageSettings, ImageSource, RemovalPolicy, StackSettings

BUILD_RECIPE = "Dockerfile"
BUILD_PLATFORM = "linux/amd64"


def validate_build_context(path: str) -> str:
    """The build context must be a directory holding a Dockerfile."""
    if not os.path.isdir(path):
        raise ValueError(f"Image build context is not a directory: {path}")
    if not os.path.isfile(os.path.join(path, BUILD_RECIPE)):
        raise ValueError(f"Image build context {path} has no {BUILD_RECIPE}")
    return os.path.abspath(path)


def repository_name(project_name: str) -> str:
    return f"{project_name}-repo".lower()


class ImageRegistry(pulumi.ComponentResource):
    """ECR repository and, for LOCAL_BUILD, an image built from the local context."""

    def __init__(self, name: str, settings: StackSettings, opts: Optional[pulumi.ResourceOptions] = None):
        image = settings.image
        context = validate_build_context(image.build_context) if image.source == ImageSource.LOCAL_BUILD else None
        super().__init__("fargate-stack:registry:ImageRegistry", name, None, opts)
        child_opts = pulumi.ResourceOptions(parent=self)

        destroy = image.repository_removal_policy == RemovalPolicy.DESTROY
        if destroy:
            pulumi.log.warn(
                f"Repository {repository_name(settings.project_name)} is deleted with its images "
                "when the stack is destroyed (repository_removal_policy=destroy)",
                resource=self)

        self.repository = aws.ecr.Repository(f"{name}-repo",
            name=repository_name(settings.project_name),
            force_delete=destroy,  # empty the repository on delete
            image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(scan_on_push=True),
            tags=settings.tags("repo"),
            opts=image.repository_removal_policy.resource_options(child_opts))

        self.image = None
        if context is not None:
            self.image = awsx.ecr.Image(f"{name}-image",
                repository_url=self.repository.repository_url,
                context=context,
                dockerfile=os.path.join(context, BUILD_RECIPE),
                platform=BUILD_PLATFORM,
                image_tag=image.tag,
                opts=child_opts)

        self.image_uri = image_reference(image, self)

        self.register_outputs({
            "repository_url": self.repository.repository_url,
            "image_uri": self.image_uri,
        })


def image_reference(image: ImageSettings, registry: Optional[ImageRegistry] = None) -> pulumi.Input[str]:
    """Resolve the container image the workload runs."""
    if image.source == ImageSource.PUBLIC_REGISTRY:
        return image.reference
    if registry is None:
        raise ValueError(f"Image source {image.source.value} needs an image registry")
    if image.source == ImageSource.LOCAL_BUILD:
        return registry.image.image_uri  # pinned to the pushed digest
    return pulumi.Output.concat(registry.repository.repository_url, ":", image.tag)
