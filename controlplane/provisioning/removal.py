"""Process-wide removal policy applied to every resource the controller provisions.

Set once from controller.yaml before any resource is created; each resource
module takes its ResourceOptions from ``resource_options``.
"""

import pulumi
import pulumi_aws

DESTROY = "destroy"
RETAIN = "retain"

_policy = DESTROY


def set_removal_policy(policy: str) -> None:
    global _policy
    if policy not in (DESTROY, RETAIN):
        raise ValueError(f"unknown removal policy: {policy!r}")
    _policy = policy


def get_removal_policy() -> str:
    return _policy


def resource_options(aws_provider: pulumi_aws.Provider, **kwargs) -> pulumi.ResourceOptions:
    """ResourceOptions for ``aws_provider`` honoring the current removal policy."""
    retain = _policy == RETAIN
    return pulumi.ResourceOptions(
        provider=aws_provider,
        retain_on_delete=retain,
        protect=retain,
        **kwargs,
    )
