"""SNS topic for fatal-condition notifications."""

import pulumi_aws

from controlplane.provisioning.removal import resource_options


def create_notification_topic(service_name: str, aws_provider: pulumi_aws.Provider) -> pulumi_aws.sns.Topic:
    return pulumi_aws.sns.Topic(
        f"{service_name}_alarm_topic",
        name=f"{service_name}-controlplane-alarms",
        tags={"Name": f"{service_name}-controlplane-alarms"},
        opts=resource_options(aws_provider),
    )
