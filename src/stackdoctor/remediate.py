"""Recreate a client container pointed at a corrected host endpoint.

Not atomic: the old container is removed before the new one is started, so a
failed ``run`` leaves nothing behind. ``RecreateResult.container_absent``
reports that case; there is no rollback.
"""

from __future__ import annotations

from stackdoctor.errors import RecreateFailed
from stackdoctor.logger import logger
from stackdoctor.probe import DEFAULT_TIMEOUT, probe_in_container
from stackdoctor.runtime import ContainerRuntime
from stackdoctor.types import ContainerRecord, ContainerSpec, NetworkEndpoint, RecreateResult


def apply_fix(
    runtime: ContainerRuntime,
    spec: ContainerSpec,
    endpoint: NetworkEndpoint,
    *,
    record: ContainerRecord,
    env_var: str = "OLLAMA_BASE_URL",
    verify_path: str = "/api/tags",
    preserve_volumes: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> RecreateResult:
    """Stop → remove → run with ``env_var`` set to *endpoint* → verify once.

    Named volumes survive ``rm`` regardless; *preserve_volumes* only controls
    whether anonymous volumes are removed with the container.
    """
    result = RecreateResult(name=spec.name)
    log = logger.bind(container=spec.name, endpoint=endpoint.host_port)

    if record.exists and record.running:
        stop = runtime.run("stop", spec.name, timeout=60)
        if stop.returncode != 0:
            result.error = RecreateFailed(f"stop failed: {stop.stderr.strip()}")
            log.error("Stop failed; container left as-is", stderr=stop.stderr.strip())
            return result
        result.stopped = True

    if record.exists:
        rm_args = ["rm", spec.name] if preserve_volumes else ["rm", "-v", spec.name]
        rm = runtime.run(*rm_args)
        if rm.returncode != 0:
            result.error = RecreateFailed(f"remove failed: {rm.stderr.strip()}")
            log.error("Remove failed", stderr=rm.stderr.strip())
            return result
        result.removed = True

    fixed = spec.with_env(env_var, endpoint.url())
    run = runtime.run(*fixed.run_args(), timeout=300)
    if run.returncode != 0:
        result.container_absent = True
        result.error = RecreateFailed(
            f"run failed after removal, container '{spec.name}' is now absent: {run.stderr.strip()}"
        )
        log.error("Recreate failed; container absent", stderr=run.stderr.strip())
        return result
    result.recreated = True
    log.info("Container recreated", env_var=env_var)

    check = probe_in_container(runtime, spec.name, endpoint.url(verify_path), timeout)
    result.verified = check.ok
    if not check.ok:
        result.error = check.error()
        log.warning("Post-fix verification failed", outcome=str(check.outcome), detail=check.detail)
    return result
