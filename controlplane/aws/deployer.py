"""ECS implementation of RevisionDeployer: one ECS service per blue/green slot."""

import logging
from typing import Any

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client, translate_errors
from controlplane.models import Revision

logger = logging.getLogger(__name__)

# Keys of describe_task_definition output accepted by register_task_definition.
_REGISTER_KEYS = (
    "family",
    "taskRoleArn",
    "executionRoleArn",
    "networkMode",
    "containerDefinitions",
    "volumes",
    "placementConstraints",
    "requiresCompatibilities",
    "cpu",
    "memory",
    "pidMode",
    "ipcMode",
    "proxyConfiguration",
    "runtimePlatform",
)


def _sanitize_container_name(service_name: str) -> str:
    return service_name.replace(".", "-").replace("/", "-")[:255]


class EcsDeployer:
    def __init__(
        self,
        region: str,
        cluster: str,
        services: dict[str, str],
        container_name: str = "",
        desired_count: int = 1,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        self.cluster = cluster
        self.services = dict(services)
        self.container_name = _sanitize_container_name(container_name) if container_name else ""
        self.desired_count = desired_count
        self._client = client or create_client("ecs", region, timeout)

    def _with_image(self, container_defs: list[dict[str, Any]], image_ref: str) -> list[dict[str, Any]]:
        updated = [dict(c) for c in container_defs]
        target = next(
            (c for c in updated if c.get("name") == self.container_name),
            updated[0] if updated else None,
        )
        if target is None:
            raise ValueError("task definition has no container definitions")
        target["image"] = image_ref
        return updated

    def deploy(self, revision: Revision) -> None:
        service = self.services[revision.id]
        with translate_errors(f"deploy {revision.image_ref} to {service}"):
            desc = self._client.describe_services(cluster=self.cluster, services=[service])
            current_td = desc["services"][0]["taskDefinition"]
            td = self._client.describe_task_definition(taskDefinition=current_td)["taskDefinition"]
            args = {k: td[k] for k in _REGISTER_KEYS if td.get(k) is not None}
            args["containerDefinitions"] = self._with_image(td["containerDefinitions"], revision.image_ref)
            new_td = self._client.register_task_definition(**args)["taskDefinition"]["taskDefinitionArn"]
            self._client.update_service(
                cluster=self.cluster,
                service=service,
                taskDefinition=new_td,
                desiredCount=self.desired_count,
            )
        logger.info("slot %s (%s) now runs %s via %s", revision.id, service, revision.image_ref, new_td)

    def decommission(self, revision_id: str) -> None:
        service = self.services[revision_id]
        with translate_errors(f"scale {service} to zero"):
            self._client.update_service(cluster=self.cluster, service=service, desiredCount=0)
        logger.info("slot %s (%s) scaled to zero", revision_id, service)
