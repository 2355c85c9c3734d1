"""
Controller CLI. Run `controlplane setup` once; `controlplane provision <controller.yaml>`
creates the controller's own resources; `controlplane run` starts the loops.
Operator commands (deploy, rollback, status, bind, unbind, resize) act through
the shared state store, so they work alongside a running controller.
"""

import argparse
import json
import logging
import os
from pathlib import Path
import signal
import subprocess
import sys
from typing import Any

import yaml

from controlplane.capacity.autoscaler import GIB
from controlplane.config import CONFIG_ENV_VAR, ControllerConfig
from controlplane.errors import ControlPlaneError, InvariantViolation
from controlplane.release.orchestrator import flag_rollback, request_release
from controlplane.runner import ControllerRunner, build_controller, build_store, prepare_volume
from controlplane.state.records import load_service, load_volume

CONFIG_DIR = ".controlplane"
CONFIG_FILENAME = "config.yaml"
DEFAULT_STACK_PREFIX = "dev"
LOG_LEVEL_ENV_VAR = "CONTROLPLANE_LOG_LEVEL"
PULUMI_DIR = Path(__file__).resolve().parent


def _project_root() -> Path:
    return Path.cwd()


def _config_path() -> Path:
    return _project_root() / CONFIG_DIR / CONFIG_FILENAME


def _load_settings() -> dict[str, Any] | None:
    path = _config_path()
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else None


def _save_settings(backend_url: str, region: str, stack_prefix: str = DEFAULT_STACK_PREFIX) -> None:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            {
                "backend_url": backend_url,
                "region": region,
                "stack_prefix": stack_prefix,
            },
            f,
            default_flow_style=False,
        )
    print(f"Configuration saved to {path}")


def _require_settings() -> dict[str, Any]:
    settings = _load_settings()
    if not settings or not settings.get("backend_url") or not settings.get("region"):
        print("Configuration missing or incomplete. Run: controlplane setup", file=sys.stderr)
        sys.exit(1)
    return settings


def _check_aws_credentials() -> bool:
    try:
        subprocess.run(
            ["aws", "sts", "get-caller-identity"],
            capture_output=True,
            check=True,
            timeout=10,
        )
        return True
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        return False


def _run(cmd: list[str], env: dict[str, str] | None = None, check: bool = True) -> subprocess.CompletedProcess:
    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    return subprocess.run(cmd, cwd=_project_root(), env=full_env, check=check)


def _pulumi(*args: str) -> list[str]:
    return ["pulumi", *args, "-C", str(PULUMI_DIR)]


def _stack_name(service_name: str, settings: dict[str, Any]) -> str:
    prefix = settings.get("stack_prefix", DEFAULT_STACK_PREFIX)
    return f"{prefix}.{service_name}.{settings['region']}"


def _resolve_yaml(path_arg: str | None) -> Path:
    raw = path_arg or os.environ.get(CONFIG_ENV_VAR)
    if not raw:
        print(f"Pass --config or set {CONFIG_ENV_VAR}.", file=sys.stderr)
        sys.exit(1)
    path = Path(raw)
    if not path.is_absolute():
        path = _project_root() / path
    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        sys.exit(1)
    return path


def _load_config(path_arg: str | None) -> ControllerConfig:
    return ControllerConfig.from_file(str(_resolve_yaml(path_arg)))


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


# --- setup ---


def _cmd_setup() -> None:
    print("First-time setup. You will need:")
    print("  1) AWS credentials (e.g. run: aws sso login)")
    print("  2) Pulumi backend URL for the controller's stack (e.g. s3://your-account-pulumi-state)")
    print("  3) Default AWS region (e.g. us-west-2)")
    print()

    if not _check_aws_credentials():
        print("AWS credentials not found. Log in (e.g. aws sso login) and try again.", file=sys.stderr)
        sys.exit(1)
    print("AWS credentials OK.")

    backend_url = os.environ.get("CONTROLPLANE_BACKEND_URL", "").strip()
    if not backend_url:
        backend_url = input("Pulumi backend URL: ").strip()
    if not backend_url:
        print("Backend URL is required.", file=sys.stderr)
        sys.exit(1)

    region = os.environ.get("CONTROLPLANE_REGION", "").strip()
    if not region:
        region = input("Default AWS region (e.g. us-west-2): ").strip()
    if not region:
        print("Region is required.", file=sys.stderr)
        sys.exit(1)

    stack_prefix = os.environ.get("CONTROLPLANE_STACK_PREFIX", DEFAULT_STACK_PREFIX).strip() or DEFAULT_STACK_PREFIX
    _save_settings(backend_url, region, stack_prefix)
    print("Setup complete. Next: controlplane provision <controller.yaml>")


# --- provision / teardown ---


def _cmd_provision(path_arg: str | None) -> None:
    settings = _require_settings()
    path = _resolve_yaml(path_arg)
    config = ControllerConfig.from_file(str(path))
    stack = _stack_name(config.service_name, settings)
    env = {
        CONFIG_ENV_VAR: str(path.resolve()),
        "PULUMI_BACKEND_URL": settings["backend_url"],
    }
    select = _run(_pulumi("stack", "select", stack), env=env, check=False)
    if select.returncode != 0:
        _run(_pulumi("stack", "init", stack), env=env)
    _run(_pulumi("config", "set", "aws:region", config.region), env=env)
    print(f"Provisioning controller resources for '{config.service_name}'...")
    _run(_pulumi("up", "-y"), env=env)
    print(f"Controller resources for '{config.service_name}' provisioned.")


def _cmd_teardown(service_name: str) -> None:
    settings = _require_settings()
    stack = _stack_name(service_name, settings)
    env = {"PULUMI_BACKEND_URL": settings["backend_url"]}
    select = _run(_pulumi("stack", "select", stack), env=env, check=False)
    if select.returncode != 0:
        print(f"No controller resources found for '{service_name}' (stack {stack}).", file=sys.stderr)
        sys.exit(1)
    confirm = input(f"This will remove the controller resources for '{service_name}'. Continue? [y/N]: ")
    if confirm.strip().lower() != "y":
        print("Cancelled.")
        sys.exit(0)
    _run(_pulumi("destroy", "-y"), env=env)
    _run(_pulumi("stack", "rm", stack, "--yes"), env=env, check=False)
    print(f"Controller resources for '{service_name}' removed.")


# --- run ---


def _cmd_run(path_arg: str | None) -> None:
    config = _load_config(path_arg)
    runner = ControllerRunner(build_controller(config))

    def _shutdown(signum: int, _frame: Any) -> None:
        logging.getLogger(__name__).info("signal %d received; stopping", signum)
        runner.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    runner.start()
    runner.wait()


# --- release ---


def _cmd_deploy(path_arg: str | None, image_ref: str) -> None:
    config = _load_config(path_arg)
    service = request_release(build_store(config), config.service_name, image_ref)
    print(f"Release of {image_ref} queued for '{service.id}' (active: {service.active_revision_id}).")


def _cmd_rollback(path_arg: str | None, reason: str) -> None:
    config = _load_config(path_arg)
    if flag_rollback(build_store(config), config.service_name, reason):
        print(f"Rollback requested for '{config.service_name}'.")
    else:
        print(f"No release in flight for '{config.service_name}'.")


def _cmd_status(path_arg: str | None) -> None:
    config = _load_config(path_arg)
    store = build_store(config)
    status: dict[str, Any] = {"service": config.service_name}
    if config.release is not None:
        service = load_service(store, config.service_name)
        status["release"] = service.to_record() if service else None
    if config.volume is not None and config.volume.id:
        volume = load_volume(store, config.volume.id)
        status["volume"] = volume.to_record() if volume else None
    _print_json(status)


# --- volume ---


def _cmd_bind(path_arg: str | None, instance_id: str) -> None:
    ctl = build_controller(_load_config(path_arg))
    volume_id = prepare_volume(ctl)
    if ctl.binding is None:
        raise InvariantViolation("volume binding is not configured")
    ctl.binding.bind(volume_id, instance_id)
    print(f"Volume {volume_id} bound to {instance_id}.")


def _cmd_unbind(path_arg: str | None) -> None:
    ctl = build_controller(_load_config(path_arg))
    volume_id = prepare_volume(ctl)
    if ctl.binding is None:
        raise InvariantViolation("volume binding is not configured")
    ctl.binding.unbind(volume_id)
    print(f"Volume {volume_id} unbound.")


def _cmd_resize(path_arg: str | None, size_gib: int) -> None:
    ctl = build_controller(_load_config(path_arg))
    volume_id = prepare_volume(ctl)
    if ctl.autoscaler is None:
        raise InvariantViolation("storage autoscaling is not configured")
    outcome = ctl.autoscaler.resize(volume_id, size_gib * GIB)
    print(f"Volume {volume_id}: {outcome.value}")


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get(LOG_LEVEL_ENV_VAR, "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Capacity and release controller for one stateful service. Run 'controlplane setup' first."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def with_config(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--config", "-c", help=f"Path to controller.yaml (default: ${CONFIG_ENV_VAR})")
        return p

    sub.add_parser("setup", help="One-time setup: AWS, Pulumi backend, region")
    with_config(sub.add_parser("provision", help="Create the controller's state table, topic and volume"))
    teardown_p = sub.add_parser("teardown", help="Remove the controller's resources for a service")
    teardown_p.add_argument("service_name", help="Service name (from controller.yaml metadata.name)")
    with_config(sub.add_parser("run", help="Run the capacity and release loops until stopped"))
    deploy_p = with_config(sub.add_parser("deploy", help="Queue a blue/green release of an image"))
    deploy_p.add_argument("image", help="Container image reference")
    rollback_p = with_config(sub.add_parser("rollback", help="Roll back the in-flight release"))
    rollback_p.add_argument("--reason", default="operator request")
    with_config(sub.add_parser("status", help="Show the stored volume and release records"))
    bind_p = with_config(sub.add_parser("bind", help="Attach the volume to an instance"))
    bind_p.add_argument("instance_id")
    with_config(sub.add_parser("unbind", help="Detach the volume (planned replacement only)"))
    resize_p = with_config(sub.add_parser("resize", help="Grow the volume to an absolute size"))
    resize_p.add_argument("size_gib", type=int, help="Target size in GiB")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging()

    try:
        if args.command == "setup":
            _cmd_setup()
        elif args.command == "provision":
            _cmd_provision(args.config)
        elif args.command == "teardown":
            _cmd_teardown(args.service_name)
        elif args.command == "run":
            _cmd_run(args.config)
        elif args.command == "deploy":
            _cmd_deploy(args.config, args.image)
        elif args.command == "rollback":
            _cmd_rollback(args.config, args.reason)
        elif args.command == "status":
            _cmd_status(args.config)
        elif args.command == "bind":
            _cmd_bind(args.config, args.instance_id)
        elif args.command == "unbind":
            _cmd_unbind(args.config)
        elif args.command == "resize":
            _cmd_resize(args.config, args.size_gib)
    except ControlPlaneError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
