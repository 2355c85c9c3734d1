"""controller.yaml configuration loading and validation."""

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from controlplane.capacity.autoscaler import GIB
from controlplane.capacity.monitor import ThresholdPolicy
from controlplane.release.health import HealthPolicy
from controlplane.release.orchestrator import SLOTS, ReleasePolicy
from controlplane.spec.validator import validate_controller_spec

CONFIG_ENV_VAR = "CONTROLLER_YAML_PATH"


@dataclass
class StateConfig:
    backend: str = "dynamodb"
    table: str = ""


@dataclass
class NotificationConfig:
    sns_topic_arn: str | None = None
    slack_webhook_url: str | None = None


@dataclass
class CollaboratorConfig:
    timeout_seconds: float = 30.0
    retries: int = 3
    backoff_seconds: float = 1.0


@dataclass
class MetricConfig:
    """Defaults read the CloudWatch agent's disk usage for the volume."""

    namespace: str = "CWAgent"
    name: str = "disk_used_percent"
    dimension: str = "VolumeId"
    statistic: str = "Maximum"
    threshold: float = 90.0
    evaluation_periods: int = 2
    interval_seconds: float = 30.0

    def threshold_policy(self) -> ThresholdPolicy:
        return ThresholdPolicy(threshold=self.threshold, evaluation_periods=self.evaluation_periods)


@dataclass
class AutoscaleConfig:
    increment_gib: int = 20
    max_size_gib: int = 500
    cooldown_seconds: float = 15 * 60

    @property
    def increment_bytes(self) -> int:
        return self.increment_gib * GIB

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_gib * GIB


@dataclass
class VolumeConfig:
    pool_id: str
    id: str = ""
    device: str = "/dev/sdf"
    availability_zone: str = ""
    initial_size_gib: int = 20
    volume_type: str = "gp2"
    metric: MetricConfig = field(default_factory=MetricConfig)
    autoscale: AutoscaleConfig = field(default_factory=AutoscaleConfig)


@dataclass
class SlotConfig:
    target_group_arn: str
    ecs_service: str
    health_url: str


@dataclass
class ReleaseConfig:
    listener_arn: str
    cluster: str
    initial_image: str
    slots: dict[str, SlotConfig]
    container_name: str = ""
    steps: list[float] = field(default_factory=lambda: [0.1, 1.0])
    dwell_seconds: float = 300.0
    step_timeout_seconds: float = 300.0
    bake_seconds: float = 300.0
    health: HealthPolicy = field(default_factory=HealthPolicy)

    def release_policy(self) -> ReleasePolicy:
        return ReleasePolicy(
            steps=list(self.steps),
            dwell_seconds=self.dwell_seconds,
            step_timeout_seconds=self.step_timeout_seconds,
            bake_seconds=self.bake_seconds,
        )


@dataclass
class ControllerConfig:
    """Parsed and validated controller.yaml configuration."""

    service_name: str
    region: str
    raw_spec: dict[str, Any]
    state: StateConfig = field(default_factory=StateConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    collaborators: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    volume: VolumeConfig | None = None
    release: ReleaseConfig | None = None
    removal_policy: str = "destroy"

    @property
    def state_table(self) -> str:
        return self.state.table or f"{self.service_name}-controlplane-state"

    @classmethod
    def from_file(cls, path: str) -> "ControllerConfig":
        """Load and validate controller.yaml from file path."""
        if not Path(path).exists():
            raise SystemExit(f"controller.yaml not found: {path}")

        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f)

        try:
            validate_controller_spec(data)
        except jsonschema.ValidationError as e:
            raise SystemExit(e.message) from e

        metadata = data["metadata"]
        spec = data.get("spec") or {}

        region = spec.get("region") or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
        if not region:
            raise SystemExit("region missing: set spec.region or AWS_REGION")

        st = spec.get("state") or {}
        state = StateConfig(backend=st.get("backend", "dynamodb"), table=st.get("table", ""))

        n = spec.get("notifications") or {}
        notifications = NotificationConfig(
            sns_topic_arn=n.get("snsTopicArn"),
            slack_webhook_url=n.get("slackWebhookUrl") or os.environ.get("SLACK_WEBHOOK_URL"),
        )

        c = spec.get("collaborators") or {}
        collaborators = CollaboratorConfig(
            timeout_seconds=c.get("timeoutSeconds", 30.0),
            retries=c.get("retries", 3),
            backoff_seconds=c.get("backoffSeconds", 1.0),
        )

        volume = None
        if spec.get("volume") is not None:
            v = spec["volume"]
            m = v.get("metric") or {}
            a = v.get("autoscale") or {}
            volume = VolumeConfig(
                pool_id=v["poolId"],
                id=v.get("id", ""),
                device=v.get("device", "/dev/sdf"),
                availability_zone=v.get("availabilityZone", ""),
                initial_size_gib=v.get("initialSizeGib", 20),
                volume_type=v.get("volumeType", "gp2"),
                metric=MetricConfig(
                    namespace=m.get("namespace", "CWAgent"),
                    name=m.get("name", "disk_used_percent"),
                    dimension=m.get("dimension", "VolumeId"),
                    statistic=m.get("statistic", "Maximum"),
                    threshold=m.get("threshold", 90.0),
                    evaluation_periods=m.get("evaluationPeriods", 2),
                    interval_seconds=m.get("intervalSeconds", 30.0),
                ),
                autoscale=AutoscaleConfig(
                    increment_gib=a.get("incrementGib", 20),
                    max_size_gib=a.get("maxSizeGib", 500),
                    cooldown_seconds=a.get("cooldownSeconds", 15 * 60),
                ),
            )
            if volume.autoscale.max_size_gib < volume.initial_size_gib:
                raise SystemExit(
                    f"volume.autoscale.maxSizeGib ({volume.autoscale.max_size_gib}) is below "
                    f"volume.initialSizeGib ({volume.initial_size_gib})"
                )

        release = None
        if spec.get("release") is not None:
            r = spec["release"]
            hc = r.get("healthCheck") or {}
            try:
                release = ReleaseConfig(
                    listener_arn=r["listenerArn"],
                    cluster=r["cluster"],
                    initial_image=r["initialImage"],
                    container_name=r.get("containerName", ""),
                    slots={
                        name: SlotConfig(
                            target_group_arn=r["slots"][name]["targetGroupArn"],
                            ecs_service=r["slots"][name]["ecsService"],
                            health_url=r["slots"][name]["healthUrl"],
                        )
                        for name in SLOTS
                    },
                    steps=r.get("steps", [0.1, 1.0]),
                    dwell_seconds=r.get("dwellSeconds", 300.0),
                    step_timeout_seconds=r.get("stepTimeoutSeconds", 300.0),
                    bake_seconds=r.get("bakeSeconds", 300.0),
                    health=HealthPolicy(
                        interval_seconds=hc.get("intervalSeconds", 30.0),
                        timeout_seconds=hc.get("timeoutSeconds", 5.0),
                        unhealthy_threshold=hc.get("unhealthyThreshold", 5),
                        healthy_threshold=hc.get("healthyThreshold", 2),
                    ),
                )
                release.release_policy()
            except ValueError as e:
                raise SystemExit(f"release: {e}") from e

        return cls(
            service_name=metadata["name"],
            region=region,
            raw_spec=spec,
            state=state,
            notifications=notifications,
            collaborators=collaborators,
            volume=volume,
            release=release,
            removal_policy=spec.get("removalPolicy", "destroy"),
        )


def load_controller_config() -> ControllerConfig:
    """Load controller.yaml from CONTROLLER_YAML_PATH environment variable."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        raise SystemExit(f"{CONFIG_ENV_VAR} environment variable required")
    if not Path(path).exists():
        raise SystemExit(f"{CONFIG_ENV_VAR} must point to controller.yaml")
    return ControllerConfig.from_file(path)
