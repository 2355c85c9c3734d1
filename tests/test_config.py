"""Tests for controller.yaml config loading."""

from pathlib import Path

import pytest

from controlplane.capacity.autoscaler import GIB
from controlplane.config import ControllerConfig, load_controller_config

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"


def test_full_fixture() -> None:
    """Every section of the full example is parsed."""
    config = ControllerConfig.from_file(str(FIXTURES / "controller.yaml"))

    assert config.service_name == "sequencer"
    assert config.region == "us-west-2"
    assert config.removal_policy == "retain"
    assert config.state_table == "sequencer-controlplane-state"
    assert config.notifications.sns_topic_arn.endswith(":sequencer-controlplane-alarms")
    assert config.volume is not None
    assert config.volume.id == "vol-0123456789abcdef0"
    assert config.volume.pool_id == "sequencer-asg"
    assert config.volume.metric.threshold_policy().evaluation_periods == 2
    assert config.volume.autoscale.max_size_bytes == 200 * GIB
    assert config.release is not None
    assert config.release.slots["green"].ecs_service == "sequencer-green"
    assert config.release.release_policy().steps == [0.1, 1.0]


def test_minimal_fixture_defaults() -> None:
    """Omitted settings fall back to the controller defaults."""
    config = ControllerConfig.from_file(str(FIXTURES / "controller-minimal.yaml"))

    assert config.removal_policy == "destroy"
    assert config.state.backend == "dynamodb"
    assert config.collaborators.retries == 3
    assert config.release is None
    volume = config.volume
    assert volume is not None
    assert volume.id == ""
    assert volume.metric.namespace == "CWAgent"
    assert volume.metric.name == "disk_used_percent"
    assert volume.metric.threshold == 90.0
    assert volume.autoscale.increment_bytes == 20 * GIB
    assert volume.autoscale.cooldown_seconds == 900


def test_missing_file() -> None:
    """A missing path exits with a message."""
    with pytest.raises(SystemExit, match="not found"):
        ControllerConfig.from_file("/nonexistent/controller.yaml")


def test_schema_error_exits(tmp_path: Path) -> None:
    """Schema violations exit with the validator's message."""
    yaml_file = tmp_path / "controller.yaml"
    yaml_file.write_text(
        """
apiVersion: controlplane/v1
kind: StatefulService
metadata:
  name: svc
spec:
  volume:
    poolId: asg
    autoscale:
      incrementGib: 0
"""
    )
    with pytest.raises(SystemExit, match="incrementGib"):
        ControllerConfig.from_file(str(yaml_file))


def test_region_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """spec.region may be omitted when AWS_REGION is set."""
    monkeypatch.setenv("AWS_REGION", "eu-west-1")
    yaml_file = tmp_path / "controller.yaml"
    yaml_file.write_text("apiVersion: controlplane/v1\nkind: StatefulService\nmetadata:\n  name: svc\nspec: {}\n")

    assert ControllerConfig.from_file(str(yaml_file)).region == "eu-west-1"


def test_region_required(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """No region anywhere is a configuration error."""
    monkeypatch.delenv("AWS_REGION", raising=False)
    monkeypatch.delenv("AWS_DEFAULT_REGION", raising=False)
    yaml_file = tmp_path / "controller.yaml"
    yaml_file.write_text("apiVersion: controlplane/v1\nkind: StatefulService\nmetadata:\n  name: svc\nspec: {}\n")

    with pytest.raises(SystemExit, match="region"):
        ControllerConfig.from_file(str(yaml_file))


def test_slack_webhook_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """SLACK_WEBHOOK_URL is used when the file does not set one."""
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.com/services/T/B/X")

    config = ControllerConfig.from_file(str(FIXTURES / "controller-minimal.yaml"))

    assert config.notifications.slack_webhook_url == "https://hooks.slack.com/services/T/B/X"


def test_max_size_below_initial_size(tmp_path: Path) -> None:
    """The size cap may not be below the initial volume size."""
    yaml_file = tmp_path / "controller.yaml"
    yaml_file.write_text(
        """
apiVersion: controlplane/v1
kind: StatefulService
metadata:
  name: svc
spec:
  region: us-east-1
  volume:
    poolId: asg
    initialSizeGib: 100
    autoscale:
      maxSizeGib: 50
"""
    )
    with pytest.raises(SystemExit, match="maxSizeGib"):
        ControllerConfig.from_file(str(yaml_file))


def test_release_steps_must_end_at_full_weight(tmp_path: Path) -> None:
    """Release steps that never reach 1.0 are rejected at load time."""
    slot = (
        "        targetGroupArn: arn:aws:elasticloadbalancing:tg\n"
        "        ecsService: svc\n"
        "        healthUrl: http://svc/health\n"
    )
    yaml_file = tmp_path / "controller.yaml"
    yaml_file.write_text(
        "apiVersion: controlplane/v1\n"
        "kind: StatefulService\n"
        "metadata:\n  name: svc\n"
        "spec:\n"
        "  region: us-east-1\n"
        "  release:\n"
        "    listenerArn: arn:aws:elasticloadbalancing:listener\n"
        "    cluster: c\n"
        "    initialImage: app:1\n"
        "    steps: [0.1, 0.5]\n"
        "    slots:\n"
        "      blue:\n" + slot + "      green:\n" + slot
    )
    with pytest.raises(SystemExit, match="release"):
        ControllerConfig.from_file(str(yaml_file))


def test_load_controller_config_requires_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """CONTROLLER_YAML_PATH must be set."""
    monkeypatch.delenv("CONTROLLER_YAML_PATH", raising=False)
    with pytest.raises(SystemExit, match="CONTROLLER_YAML_PATH"):
        load_controller_config()


def test_load_controller_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """The Pulumi program reads controller.yaml from CONTROLLER_YAML_PATH."""
    monkeypatch.setenv("CONTROLLER_YAML_PATH", str(FIXTURES / "controller.yaml"))
    assert load_controller_config().service_name == "sequencer"
