"""
Controller resources: provisions what one controller needs from controller.yaml.
Creates the DynamoDB state table, the SNS alarm topic (unless one is configured),
and the persistent EBS volume with its usage alarm (unless spec.volume.id names
an existing volume). Every resource follows spec.removalPolicy.
"""

import pulumi

from controlplane.config import load_controller_config
from controlplane.provisioning.provider import create_aws_provider
from controlplane.provisioning.removal import set_removal_policy
from controlplane.provisioning.state_table import create_state_table
from controlplane.provisioning.topic import create_notification_topic
from controlplane.provisioning.volume import create_persistent_volume, create_usage_alarm

config = load_controller_config()
service_name = config.service_name

set_removal_policy(config.removal_policy)
aws_provider = create_aws_provider(service_name, config.region)

if config.state.backend == "dynamodb":
    table = create_state_table(service_name, config.state_table, aws_provider)
    pulumi.export("state_table_name", table.name)
else:
    pulumi.log.warn("state backend is in-memory; no state table created")

topic_arn: pulumi.Input[str]
if config.notifications.sns_topic_arn:
    pulumi.log.info(f"Notifications go to existing topic {config.notifications.sns_topic_arn}")
    topic_arn = config.notifications.sns_topic_arn
else:
    topic = create_notification_topic(service_name, aws_provider)
    topic_arn = topic.arn
pulumi.export("notification_topic_arn", topic_arn)

if config.volume is not None:
    vol = config.volume
    volume_id: pulumi.Input[str]
    if vol.id:
        pulumi.log.info(f"Using existing volume {vol.id}; size is managed by the controller")
        volume_id = vol.id
    else:
        if not vol.availability_zone:
            raise SystemExit("spec.volume.availabilityZone is required to create the volume")
        volume = create_persistent_volume(
            service_name,
            vol.availability_zone,
            vol.initial_size_gib,
            aws_provider,
            volume_type=vol.volume_type,
        )
        volume_id = volume.id
    create_usage_alarm(service_name, volume_id, vol.metric, aws_provider, topic_arn=topic_arn)
    pulumi.export("volume_id", volume_id)
