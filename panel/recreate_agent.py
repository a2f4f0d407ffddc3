"""
Recreate helper, run inside a disposable container:

    docker run -d -e OPENCLAW_RECREATE_PLAN_B64=... \
        -v /var/run/docker.sock:/var/run/docker.sock \
        --entrypoint python <image> -m recreate_agent

Decodes the plan, recreates the target container (rolling back on failure)
and exits. Prints "running" and exits 0 on success; prints the failure and
exits 1 otherwise.
"""

import asyncio
import os
import sys
from typing import Mapping, Optional

from commands import RunCommand, run_command
from docker_update import RECREATE_PLAN_ENV, DockerUpdateError, RecreatePlan, execute_plan

# Lets the requesting process finish its HTTP response before it is replaced.
START_DELAY = 2.0


async def run_agent(
    env: Optional[Mapping[str, str]] = None,
    run_cmd: RunCommand = run_command,
    sleep=asyncio.sleep,
    start_delay: float = START_DELAY,
) -> int:
    env = os.environ if env is None else env
    encoded = env.get(RECREATE_PLAN_ENV, "")
    if not encoded.strip():
        print(f"[recreate-agent] {RECREATE_PLAN_ENV} is not set", flush=True)
        return 1
    try:
        plan = RecreatePlan.decode(encoded)
    except DockerUpdateError as e:
        print(f"[recreate-agent] {e}", flush=True)
        return 1

    print(f"[recreate-agent] Recreating {plan.container_name} with {plan.image or 'new image'}", flush=True)
    if start_delay > 0:
        await sleep(start_delay)

    outcome = await execute_plan(plan, run_cmd, sleep)
    if outcome["ok"]:
        print("running", flush=True)
        return 0

    print(f"[recreate-agent] Recreate failed: {outcome['message']}", flush=True)
    if outcome["rolled_back"]:
        print(f"[recreate-agent] {outcome['rollback_message']}", flush=True)
    elif outcome["rollback_message"]:
        print(f"[recreate-agent] Rollback failed: {outcome['rollback_message']}", flush=True)
    return 1


def main():
    return asyncio.run(run_agent())


if __name__ == "__main__":
    sys.exit(main())
