"""DynamoDB table backing the controller's state store."""

import pulumi_aws

from controlplane.provisioning.removal import resource_options


def create_state_table(
    service_name: str,
    table_name: str,
    aws_provider: pulumi_aws.Provider,
    billing_mode: str = "PAY_PER_REQUEST",
) -> pulumi_aws.dynamodb.Table:
    """One item per record, keyed by ``id`` ("volume/<id>" or "service/<id>")."""
    return pulumi_aws.dynamodb.Table(
        f"{service_name}_state_table",
        name=table_name,
        billing_mode=billing_mode,
        hash_key="id",
        attributes=[pulumi_aws.dynamodb.TableAttributeArgs(name="id", type="S")],
        point_in_time_recovery=pulumi_aws.dynamodb.TablePointInTimeRecoveryArgs(
            enabled=True,
        ),
        tags={"Name": table_name, "managed-by": "controlplane", "service": service_name},
        opts=resource_options(aws_provider),
    )
