import pulumi

from mocks import MOCKS

pulumi.runtime.set_mocks(MOCKS, project="fargate-stack", stack="test", preview=False)
