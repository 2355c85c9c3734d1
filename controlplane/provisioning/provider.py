"""AWS provider for the controller's resources."""

import pulumi_aws


def create_aws_provider(service_name: str, region: str) -> pulumi_aws.Provider:
    """Create AWS provider with default resource tags."""
    return pulumi_aws.Provider(
        "aws-tagged",
        region=region,
        default_tags=pulumi_aws.ProviderDefaultTagsArgs(
            tags={
                "service": service_name,
                "managed-by": "controlplane",
            }
        ),
    )
