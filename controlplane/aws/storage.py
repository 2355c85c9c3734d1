"""EBS implementation of the Storage API. EBS sizes are whole GiB."""

from typing import Any

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client, translate_errors
from controlplane.capacity.autoscaler import GIB


def to_gib(size_bytes: int) -> int:
    """Round up to whole GiB."""
    return -(-size_bytes // GIB)


class EbsStorage:
    def __init__(self, region: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, client: Any = None) -> None:
        self._client = client or create_client("ec2", region, timeout)

    def resize_volume(self, volume_id: str, new_size_bytes: int) -> None:
        with translate_errors(f"modify {volume_id}"):
            self._client.modify_volume(VolumeId=volume_id, Size=to_gib(new_size_bytes))

    def get_volume_size(self, volume_id: str) -> int:
        with translate_errors(f"describe {volume_id}"):
            resp = self._client.describe_volumes(VolumeIds=[volume_id])
        return int(resp["Volumes"][0]["Size"]) * GIB
