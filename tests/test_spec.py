"""Tests for controller.yaml schema validation."""

from pathlib import Path

import jsonschema
import pytest
import yaml

from controlplane.spec.validator import load_schema, validate_controller_spec


def _minimal(**spec: object) -> dict:
    return {
        "apiVersion": "controlplane/v1",
        "kind": "StatefulService",
        "metadata": {"name": "my-svc"},
        "spec": spec,
    }


def test_all_fixtures_validate() -> None:
    """All fixtures must pass schema validation (keeps fixtures in sync with schema)."""
    fixture_dir = Path(__file__).resolve().parent.parent / "fixtures"
    paths = sorted(fixture_dir.glob("*.yaml"))
    assert paths
    for path in paths:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        validate_controller_spec(data)


def test_missing_api_version() -> None:
    """Missing apiVersion raises ValidationError."""
    data = _minimal()
    del data["apiVersion"]
    with pytest.raises(jsonschema.ValidationError, match="apiVersion"):
        validate_controller_spec(data)


def test_unsupported_api_version() -> None:
    """Unsupported apiVersion raises ValueError."""
    data = _minimal()
    data["apiVersion"] = "controlplane/v99"
    with pytest.raises(ValueError, match="Unsupported apiVersion"):
        validate_controller_spec(data)


def test_invalid_service_name() -> None:
    """metadata.name must be a lowercase identifier."""
    data = _minimal()
    data["metadata"]["name"] = "Bad_Name"
    with pytest.raises(jsonschema.ValidationError, match="metadata.name"):
        validate_controller_spec(data)


def test_volume_extra_field() -> None:
    """Unknown keys in the volume section are rejected."""
    data = _minimal(volume={"poolId": "asg", "sizeGb": 10})
    with pytest.raises(jsonschema.ValidationError) as exc_info:
        validate_controller_spec(data)
    assert "sizeGb" in str(exc_info.value)


def test_volume_requires_pool() -> None:
    """A volume without a poolId is invalid."""
    with pytest.raises(jsonschema.ValidationError, match="poolId"):
        validate_controller_spec(_minimal(volume={"id": "vol-1"}))


def test_release_requires_both_slots() -> None:
    """Blue/green needs both slots declared."""
    slot = {
        "targetGroupArn": "arn:aws:elasticloadbalancing:tg/blue",
        "ecsService": "svc-blue",
        "healthUrl": "http://blue/health",
    }
    data = _minimal(
        release={
            "listenerArn": "arn:aws:elasticloadbalancing:listener/x",
            "cluster": "c",
            "initialImage": "app:1",
            "slots": {"blue": slot},
        }
    )
    with pytest.raises(jsonschema.ValidationError, match="green"):
        validate_controller_spec(data)


def test_step_weight_above_one_rejected() -> None:
    """Traffic step weights are fractions."""
    slot = {"targetGroupArn": "arn:x", "ecsService": "s", "healthUrl": "https://h/health"}
    data = _minimal(
        release={
            "listenerArn": "arn:x",
            "cluster": "c",
            "initialImage": "app:1",
            "slots": {"blue": slot, "green": slot},
            "steps": [0.5, 1.5],
        }
    )
    with pytest.raises(jsonschema.ValidationError, match="steps"):
        validate_controller_spec(data)


def test_load_schema_v1() -> None:
    """The v1 schema is shipped with the package."""
    schema = load_schema("controlplane/v1")
    assert schema["properties"]["apiVersion"] == {"const": "controlplane/v1"}
