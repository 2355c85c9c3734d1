"""EC2 implementation of the Compute API: volume attach/detach and Auto Scaling group membership."""

import logging
from typing import Any

from botocore.exceptions import WaiterError

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client, translate_errors
from controlplane.errors import TransientError
from controlplane.models import Instance, LifecycleState

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "pending": LifecycleState.PENDING,
    "running": LifecycleState.RUNNING,
    "shutting-down": LifecycleState.DRAINING,
    "stopping": LifecycleState.DRAINING,
    "stopped": LifecycleState.TERMINATED,
    "terminated": LifecycleState.TERMINATED,
}


class Ec2Compute:
    """``pool_id`` is the Auto Scaling group name; instances are found by its tag."""

    def __init__(
        self,
        region: str,
        device: str = "/dev/sdf",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        self.device = device
        self.timeout = timeout
        self._client = client or create_client("ec2", region, timeout)

    def _wait(self, waiter_name: str, volume_id: str) -> None:
        delay = 5
        try:
            self._client.get_waiter(waiter_name).wait(
                VolumeIds=[volume_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max(1, int(self.timeout // delay))},
            )
        except WaiterError as e:
            raise TransientError(f"{volume_id} did not reach {waiter_name}: {e}") from e

    def attach_volume(self, instance_id: str, volume_id: str) -> None:
        with translate_errors(f"attach {volume_id} to {instance_id}"):
            self._client.attach_volume(Device=self.device, InstanceId=instance_id, VolumeId=volume_id)
        self._wait("volume_in_use", volume_id)
        logger.info("attached %s to %s at %s", volume_id, instance_id, self.device)

    def detach_volume(self, volume_id: str) -> None:
        with translate_errors(f"detach {volume_id}"):
            self._client.detach_volume(VolumeId=volume_id)
        self._wait("volume_available", volume_id)
        logger.info("detached %s", volume_id)

    def list_instances(self, pool_id: str) -> list[Instance]:
        instances: list[Instance] = []
        with translate_errors(f"describe instances in {pool_id}"):
            paginator = self._client.get_paginator("describe_instances")
            for page in paginator.paginate(
                Filters=[{"Name": "tag:aws:autoscaling:groupName", "Values": [pool_id]}]
            ):
                for reservation in page.get("Reservations", []):
                    for inst in reservation.get("Instances", []):
                        state = inst.get("State", {}).get("Name", "pending")
                        instances.append(
                            Instance(
                                id=inst["InstanceId"],
                                lifecycle_state=_STATE_MAP.get(state, LifecycleState.PENDING),
                            )
                        )
        return instances
