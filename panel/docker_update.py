"""
Docker image upgrade / rollback for the gateway and panel containers.

Every mutating operation follows the same steps:

  inspect  -> snapshot of the running container (fatal if missing)
  pull     -> target image, 3 attempts; failure aborts before any mutation
  recreate -> rm -f, docker run with reconstructed args, reconnect networks
  verify   -> two consecutive stable "running" samples within 10 polls
  rollback -> on recreate/verify failure, recreate from the old image

apply_pulled_tag() is for the panel updating its own container: the recreate
+ rollback plan goes to a short-lived helper container started from the
panel image, which ships recreate_agent.

Mutating operations return result dicts rather than raising, so callers can
tell "failed but rolled back" apart from "failed and left stopped". Bad tags
raise ValueError; an uninspectable container raises DockerUpdateError.
"""

import asyncio
import base64
import json
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from audit import audit_log
from commands import RunCommand, run_command
from image_tags import (
    DEFAULT_IMAGE_REPO,
    compare_version_tags,
    image_tag_from_image,
    is_version_tag,
    make_image_ref,
    normalize_tag,
)
from release_discovery import ReleaseLookupError, fetch_latest_release

DEFAULT_CONTAINER_NAME = "openclaw-gateway"
PANEL_CONTAINER_NAME = "openclaw-panel"
PANEL_IMAGE_REPO = "ghcr.io/bianshumeng/openclaw-panel"
RECREATE_PLAN_ENV = "OPENCLAW_RECREATE_PLAN_B64"
DOCKER_SOCKET = "/var/run/docker.sock"
HELPER_LABEL = "openclaw.panel.helper=recreate"

PULL_ATTEMPTS = 3
PULL_TIMEOUT = 120
RUN_TIMEOUT = 60
VERIFY_POLLS = 10
VERIFY_INTERVAL = 1.0

_DEFAULT_NETWORK_MODES = ("bridge", "default", "none")


class DockerUpdateError(Exception):
    """A docker step failed in a way the operation cannot continue from."""


@dataclass
class RecreatePlan:
    """Arguments needed to recreate a container, and to put the old one back."""

    container_name: str
    args: list[str]
    extra_networks: list[str] = field(default_factory=list)
    rollback_args: list[str] = field(default_factory=list)
    rollback_extra_networks: list[str] = field(default_factory=list)
    image: str = ""
    rollback_image: str = ""

    def to_dict(self) -> dict:
        return {
            "containerName": self.container_name,
            "args": list(self.args),
            "extraNetworks": list(self.extra_networks),
            "rollbackArgs": list(self.rollback_args),
            "rollbackExtraNetworks": list(self.rollback_extra_networks),
            "image": self.image,
            "rollbackImage": self.rollback_image,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecreatePlan":
        if not isinstance(data, dict):
            raise DockerUpdateError("Recreate plan must be a JSON object")
        container_name = str(data.get("containerName") or "").strip()
        args = data.get("args")
        if not container_name or not isinstance(args, list) or not args:
            raise DockerUpdateError("Recreate plan is missing containerName or args")
        return cls(
            container_name=container_name,
            args=[str(a) for a in args],
            extra_networks=[str(n) for n in data.get("extraNetworks") or []],
            rollback_args=[str(a) for a in data.get("rollbackArgs") or []],
            rollback_extra_networks=[str(n) for n in data.get("rollbackExtraNetworks") or []],
            image=str(data.get("image") or ""),
            rollback_image=str(data.get("rollbackImage") or ""),
        )

    def encode(self) -> str:
        raw = json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    @classmethod
    def decode(cls, encoded: str) -> "RecreatePlan":
        try:
            data = json.loads(base64.b64decode((encoded or "").strip(), validate=True).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise DockerUpdateError(f"Cannot decode recreate plan: {e}") from e
        return cls.from_dict(data)


def _result_message(result: dict, fallback: str) -> str:
    return result.get("stderr") or result.get("message") or fallback


async def inspect_container(container_name: str, run_cmd: RunCommand = run_command) -> dict:
    """`docker inspect` snapshot of one container. Raises DockerUpdateError."""
    result = await run_cmd("docker", ["inspect", container_name])
    if not result["ok"]:
        raise DockerUpdateError(f"Cannot inspect container {container_name}: {_result_message(result, 'unknown error')}")
    try:
        parsed = json.loads(result["stdout"])
    except (TypeError, ValueError) as e:
        raise DockerUpdateError(f"Cannot parse inspect output for {container_name}") from e
    if not isinstance(parsed, list) or not parsed or not isinstance(parsed[0], dict):
        raise DockerUpdateError(f"Inspect output for {container_name} is empty")
    return parsed[0]


def _format_port_binding(container_port: str, binding) -> str:
    binding = binding if isinstance(binding, dict) else {}
    host_ip = str(binding.get("HostIp") or "")
    host_port = str(binding.get("HostPort") or "")
    if not host_port:
        return container_port
    if not host_ip or host_ip in ("0.0.0.0", "::"):
        return f"{host_port}:{container_port}"
    return f"{host_ip}:{host_port}:{container_port}"


def build_docker_run_args(inspect: dict, image: str) -> RecreatePlan:
    """
    Reconstruct `docker run` arguments from an inspect snapshot.

    Covers restart policy, binds, port bindings, env, labels, working dir,
    user, primary network and command. Networks other than the primary one
    are returned as extra_networks, to be connected after the run.
    """
    inspect = inspect if isinstance(inspect, dict) else {}
    container_name = str(inspect.get("Name") or "").lstrip("/")
    if not container_name:
        raise DockerUpdateError("Inspect snapshot has no container name")

    config = inspect.get("Config") or {}
    host_config = inspect.get("HostConfig") or {}
    args = ["run", "-d", "--name", container_name]

    restart = host_config.get("RestartPolicy") or {}
    restart_name = str(restart.get("Name") or "")
    if restart_name and restart_name != "no":
        max_retries = restart.get("MaximumRetryCount") or 0
        if restart_name == "on-failure" and isinstance(max_retries, int) and max_retries > 0:
            args += ["--restart", f"{restart_name}:{max_retries}"]
        else:
            args += ["--restart", restart_name]

    for bind in host_config.get("Binds") or []:
        if bind:
            args += ["-v", bind]

    for container_port, bindings in (host_config.get("PortBindings") or {}).items():
        for binding in bindings or []:
            args += ["-p", _format_port_binding(container_port, binding)]

    for item in config.get("Env") or []:
        args += ["-e", item]

    for key, value in (config.get("Labels") or {}).items():
        if key:
            args += ["--label", f"{key}={value if value is not None else ''}"]

    if config.get("WorkingDir"):
        args += ["-w", config["WorkingDir"]]
    if config.get("User"):
        args += ["-u", config["User"]]

    networks = list(((inspect.get("NetworkSettings") or {}).get("Networks") or {}).keys())
    network_mode = str(host_config.get("NetworkMode") or "")
    if network_mode and network_mode not in _DEFAULT_NETWORK_MODES:
        primary_network = network_mode
    else:
        primary_network = networks[0] if networks else ""
    if primary_network:
        args += ["--network", primary_network]

    args.append(image)
    cmd = config.get("Cmd")
    if isinstance(cmd, list):
        args += [str(c) for c in cmd]
    elif isinstance(cmd, str) and cmd.strip():
        args.append(cmd.strip())

    return RecreatePlan(
        container_name=container_name,
        args=args,
        extra_networks=[n for n in networks if n and n != primary_network],
        image=image,
    )


def build_recreate_plan(inspect: dict, image: str, rollback_image: str = "") -> RecreatePlan:
    """Plan for `image`, with rollback args rebuilt from the same snapshot."""
    plan = build_docker_run_args(inspect, image)
    if rollback_image:
        rollback = build_docker_run_args(inspect, rollback_image)
        plan.rollback_args = rollback.args
        plan.rollback_extra_networks = rollback.extra_networks
        plan.rollback_image = rollback_image
    return plan


def parse_state_line(text: str) -> tuple[str, Optional[int]]:
    """Parse '{{.State.Status}}|{{.RestartCount}}' output."""
    text = (text or "").strip()
    if not text:
        return "", None
    status, _, restart_raw = text.partition("|")
    try:
        restart_count = int(restart_raw.strip())
    except ValueError:
        restart_count = None
    return status.strip().lower(), restart_count


async def wait_container_running(
    container_name: str,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
    polls: int = VERIFY_POLLS,
    interval: float = VERIFY_INTERVAL,
) -> bool:
    """
    Poll until the container has been seen running twice in a row with an
    unchanged restart count. A crash-looping container never qualifies.
    """
    stable = 0
    last_restart_count: Optional[int] = None
    for _ in range(polls):
        result = await run_cmd(
            "docker",
            ["inspect", "--format", "{{.State.Status}}|{{.RestartCount}}", container_name],
        )
        if result["ok"]:
            status, restart_count = parse_state_line(result["stdout"])
            if status == "running":
                if restart_count is None:
                    stable += 1
                elif last_restart_count is not None and restart_count == last_restart_count:
                    stable += 1
                else:
                    stable = 1
                last_restart_count = restart_count
                if stable >= 2:
                    return True
            else:
                stable = 0
                last_restart_count = restart_count
        else:
            stable = 0
            last_restart_count = None
        await sleep(interval)
    return False


async def pull_image_with_retry(
    image: str,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
    attempts: int = PULL_ATTEMPTS,
) -> dict:
    """docker pull with linear backoff (1s, 2s, ...). Returns the last result."""
    last = None
    for i in range(1, attempts + 1):
        last = await run_cmd("docker", ["pull", image], timeout=PULL_TIMEOUT)
        if last["ok"]:
            return last
        print(f"[docker-update] Pull of {image} failed (attempt {i}/{attempts}): {_result_message(last, 'unknown')}")
        if i < attempts:
            await sleep(i)
    return last or {"ok": False, "code": -1, "stdout": "", "stderr": "", "message": f"Failed to pull {image}"}


async def recreate_container(
    container_name: str,
    args: list[str],
    extra_networks: list[str],
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
) -> str:
    """
    Replace the container and wait for it to run. Returns the new container id.
    Raises DockerUpdateError when the run, a network connect or verification fails.
    """
    # Removal is best effort; the container may already be gone.
    await run_cmd("docker", ["rm", "-f", container_name])

    run_result = await run_cmd("docker", list(args), timeout=RUN_TIMEOUT)
    if not run_result["ok"]:
        raise DockerUpdateError(_result_message(run_result, f"Failed to create container {container_name}"))

    for network in extra_networks:
        connect_result = await run_cmd("docker", ["network", "connect", network, container_name])
        if connect_result["ok"]:
            continue
        stderr = connect_result.get("stderr") or ""
        if "already exists" in stderr.lower() or "already connected" in stderr.lower():
            continue
        raise DockerUpdateError(_result_message(connect_result, f"Failed to connect network {network}"))

    if not await wait_container_running(container_name, run_cmd, sleep):
        raise DockerUpdateError(f"Container {container_name} did not reach a stable running state")
    return run_result.get("stdout", "")


async def execute_plan(plan: RecreatePlan, run_cmd: RunCommand = run_command, sleep=asyncio.sleep) -> dict:
    """
    Recreate from plan.args, falling back to plan.rollback_args on failure.

    Returns {"ok", "rolled_back", "message", "rollback_message"}.
    """
    try:
        await recreate_container(plan.container_name, plan.args, plan.extra_networks, run_cmd, sleep)
        return {"ok": True, "rolled_back": False, "message": f"{plan.container_name} is running", "rollback_message": ""}
    except DockerUpdateError as e:
        error_message = str(e)
    print(f"[docker-update] Recreate of {plan.container_name} failed: {error_message}")

    if not plan.rollback_args:
        return {"ok": False, "rolled_back": False, "message": error_message, "rollback_message": ""}

    if plan.rollback_image:
        # The old image is normally still local, so a failed pull does not stop the rollback.
        pulled = await pull_image_with_retry(plan.rollback_image, run_cmd, sleep)
        if not pulled["ok"]:
            print(f"[docker-update] Using local copy of {plan.rollback_image} for rollback")

    try:
        await recreate_container(
            plan.container_name, plan.rollback_args, plan.rollback_extra_networks, run_cmd, sleep
        )
    except DockerUpdateError as e:
        return {"ok": False, "rolled_back": False, "message": error_message, "rollback_message": str(e)}
    target = plan.rollback_image or "previous image"
    return {
        "ok": False,
        "rolled_back": True,
        "message": error_message,
        "rollback_message": f"Rolled back to {target}",
    }


async def _mutate_version(
    action: str,
    target_tag: str,
    container_name: str,
    image_repo: str,
    run_cmd: RunCommand,
    sleep,
) -> dict:
    target_image = make_image_ref(normalize_tag(target_tag), image_repo)
    snapshot = await inspect_container(container_name, run_cmd)
    old_image = str((snapshot.get("Config") or {}).get("Image") or "")
    result = {
        "ok": False,
        "action": action,
        "container_name": container_name,
        "target_image": target_image,
        "old_image": old_image,
        "rolled_back": False,
        "message": "",
        "rollback_message": "",
    }

    pulled = await pull_image_with_retry(target_image, run_cmd, sleep)
    if not pulled["ok"]:
        result["message"] = _result_message(pulled, f"Failed to pull {target_image}")
        audit_log(f"docker_{action}_failed", result)
        return result

    plan = build_recreate_plan(snapshot, target_image, old_image)
    outcome = await execute_plan(plan, run_cmd, sleep)
    result.update(outcome)
    if outcome["ok"]:
        result["message"] = f"{action} to {target_image} succeeded"
        audit_log(f"docker_{action}", result)
    else:
        audit_log(f"docker_{action}_failed", result)
    return result


async def upgrade_to_tag(
    target_tag: str,
    container_name: str = DEFAULT_CONTAINER_NAME,
    image_repo: str = DEFAULT_IMAGE_REPO,
    *,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
) -> dict:
    """Move the container to `target_tag`, rolling back to the old image on failure."""
    return await _mutate_version("upgrade", target_tag, container_name, image_repo, run_cmd, sleep)


async def rollback_to_tag(
    target_tag: str,
    container_name: str = DEFAULT_CONTAINER_NAME,
    image_repo: str = DEFAULT_IMAGE_REPO,
    *,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
) -> dict:
    return await _mutate_version("rollback", target_tag, container_name, image_repo, run_cmd, sleep)


async def pull_tag(
    target_tag: str,
    image_repo: str = DEFAULT_IMAGE_REPO,
    *,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
) -> dict:
    """Pull an image without touching any container."""
    target_image = make_image_ref(normalize_tag(target_tag), image_repo)
    pulled = await pull_image_with_retry(target_image, run_cmd, sleep)
    result = {
        "ok": pulled["ok"],
        "action": "pull",
        "target_image": target_image,
        "message": f"Pulled {target_image}" if pulled["ok"] else _result_message(pulled, f"Failed to pull {target_image}"),
    }
    audit_log("docker_pull" if pulled["ok"] else "docker_pull_failed", result)
    return result


def build_helper_args(plan: RecreatePlan, helper_image: str, helper_name: str) -> list[str]:
    """`docker run` args for the helper that executes `plan` out of process."""
    return [
        "run", "-d",
        "--name", helper_name,
        "-e", f"{RECREATE_PLAN_ENV}={plan.encode()}",
        "-v", f"{DOCKER_SOCKET}:{DOCKER_SOCKET}",
        "--label", HELPER_LABEL,
        "--entrypoint", "python",
        helper_image,
        "-m", "recreate_agent",
    ]


async def apply_pulled_tag(
    target_tag: str,
    container_name: str = PANEL_CONTAINER_NAME,
    image_repo: str = PANEL_IMAGE_REPO,
    *,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
) -> dict:
    """
    Schedule the recreate of the panel container in a helper and return immediately.

    Only panel images ship recreate_agent, so `container_name` must be a
    panel container. The helper runs the old image when known (it is
    already local), the target image otherwise. On success the
    caller should expect its own connection to drop: requires_reconnect is
    True.
    """
    target_image = make_image_ref(normalize_tag(target_tag), image_repo)
    snapshot = await inspect_container(container_name, run_cmd)
    old_image = str((snapshot.get("Config") or {}).get("Image") or "")
    result = {
        "ok": False,
        "action": "apply",
        "container_name": container_name,
        "target_image": target_image,
        "old_image": old_image,
        "requires_reconnect": False,
        "helper_container_id": "",
        "helper_container_name": "",
        "message": "",
    }

    pulled = await pull_image_with_retry(target_image, run_cmd, sleep)
    if not pulled["ok"]:
        result["message"] = _result_message(pulled, f"Failed to pull {target_image}")
        audit_log("docker_apply_failed", result)
        return result

    plan = build_recreate_plan(snapshot, target_image, old_image)
    helper_name = f"{container_name}-recreate-{int(time.time())}"
    helper_image = old_image or target_image
    helper = await run_cmd("docker", build_helper_args(plan, helper_image, helper_name), timeout=RUN_TIMEOUT)
    if not helper["ok"]:
        result["message"] = f"Cannot start recreate helper: {_result_message(helper, 'unknown error')}"
        audit_log("docker_apply_failed", result)
        return result

    result.update({
        "ok": True,
        "requires_reconnect": True,
        "helper_container_id": (helper.get("stdout") or "").strip(),
        "helper_container_name": helper_name,
        "message": f"Recreate of {container_name} with {target_image} scheduled",
    })
    audit_log("docker_apply_scheduled", result)
    return result


async def check_for_updates(
    container_name: str = DEFAULT_CONTAINER_NAME,
    image_repo: str = DEFAULT_IMAGE_REPO,
    *,
    run_cmd: RunCommand = run_command,
    http_client: Optional[httpx.AsyncClient] = None,
    github_token: str = "",
) -> dict:
    """
    Compare the running image tag with the newest released one.

    Release lookup failures are reported in `warning`, not raised. A current
    tag that is not a version (e.g. a local build) counts as outdated whenever
    it differs from the latest tag.
    """
    snapshot = await inspect_container(container_name, run_cmd)
    current_image = str((snapshot.get("Config") or {}).get("Image") or "")
    current_tag = image_tag_from_image(current_image)
    result = {
        "ok": True,
        "container_name": container_name,
        "image_repo": image_repo,
        "release_repo": "",
        "release_source": "",
        "current_image": current_image,
        "current_tag": current_tag,
        "latest_tag": "",
        "update_available": False,
        "warning": "",
    }

    try:
        latest = await fetch_latest_release(image_repo, client=http_client, github_token=github_token)
    except ReleaseLookupError as e:
        result["warning"] = str(e)
        return result

    latest_tag = latest["tag"]
    result.update({
        "release_repo": latest["release_repo"],
        "release_source": latest["source"],
        "latest_tag": latest_tag,
    })
    if is_version_tag(current_tag):
        result["update_available"] = compare_version_tags(latest_tag, current_tag) > 0
    elif current_tag:
        result["update_available"] = latest_tag != current_tag
    return result
