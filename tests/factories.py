import dataclasses
import re

from fargate_stack.config import ImageSettings, ImageSource, NetworkSettings, StackSettings

ZONES = ("ap-northeast-1a", "ap-northeast-1c", "ap-northeast-1d")


def make_settings(name: str, **overrides) -> StackSettings:
    """
    Settings with explicit zones and an image from the stack's own repository,
    so the default isolated placement can pull it; `name` keeps resource names
    unique per test.
    """
    project_name = re.sub(r"[^a-z0-9-]", "-", name.lower())[:40]
    settings = StackSettings(
        project_name=project_name,
        region="ap-northeast-1",
        network=NetworkSettings(availability_zones=ZONES),
        image=ImageSettings(source=ImageSource.REPOSITORY),
    )
    return dataclasses.replace(settings, **overrides)


def field(value, name: str, wire_name: str):
    """Read a nested output whether the mock hands back a plain dict or an output type."""
    if isinstance(value, dict):
        for key in (wire_name, name):
            if key in value:
                return value[key]
    return getattr(value, name, None)
