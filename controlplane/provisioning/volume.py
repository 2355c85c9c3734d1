"""Persistent EBS volume for the stateful singleton, plus its utilization alarm."""

import pulumi
import pulumi_aws

from controlplane.config import MetricConfig
from controlplane.provisioning.removal import resource_options


def create_persistent_volume(
    service_name: str,
    availability_zone: str,
    size_gib: int,
    aws_provider: pulumi_aws.Provider,
    volume_type: str = "gp2",
    encrypted: bool = True,
) -> pulumi_aws.ebs.Volume:
    """Size is owned by the controller after creation; later `pulumi up` runs leave it alone."""
    return pulumi_aws.ebs.Volume(
        f"{service_name}_persistent_volume",
        availability_zone=availability_zone,
        size=size_gib,
        type=volume_type,
        encrypted=encrypted,
        tags={"Name": f"{service_name}-persistent"},
        opts=resource_options(aws_provider, ignore_changes=["size"]),
    )


def create_usage_alarm(
    service_name: str,
    volume_id: pulumi.Input[str],
    metric: MetricConfig,
    aws_provider: pulumi_aws.Provider,
    topic_arn: pulumi.Input[str] | None = None,
) -> pulumi_aws.cloudwatch.MetricAlarm:
    """CloudWatch alarm on the same metric and threshold the controller samples."""
    return pulumi_aws.cloudwatch.MetricAlarm(
        f"{service_name}_volume_usage_alarm",
        name=f"{service_name}-volume-usage",
        namespace=metric.namespace,
        metric_name=metric.name,
        dimensions={metric.dimension: volume_id},
        statistic=metric.statistic,
        period=60,
        evaluation_periods=metric.evaluation_periods,
        threshold=metric.threshold,
        comparison_operator="GreaterThanOrEqualToThreshold",
        treat_missing_data="missing",
        alarm_actions=[topic_arn] if topic_arn is not None else [],
        opts=resource_options(aws_provider),
    )
