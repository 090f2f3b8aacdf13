"""End-to-end runs behind each CLI command.

Each workflow takes a ``RunContext``, appends results to its report and
returns the frozen ``DiagnosticReport``. Per-item failures become FAIL lines
and processing continues; whole-run failures abort the report early.
"""

from __future__ import annotations

from stackdoctor.cleanup import (
    CleanupTarget,
    dangling_volumes,
    exited_containers,
    remove,
    unused_networks,
)
from stackdoctor.config import Settings, StackContainerConfig, get_settings
from stackdoctor.errors import (
    HostResolutionFailed,
    OllamaCommandError,
    RecordStoreCorrupt,
    RecordStoreMissing,
    RuntimeCommandError,
    RuntimeNotFound,
)
from stackdoctor.image_sync import ImageSyncOrchestrator, SyncOutcome
from stackdoctor.inspector import inspect_raw, record_from_attrs, spec_from_attrs
from stackdoctor.logger import logger
from stackdoctor.network import resolve_host_endpoint
from stackdoctor.ollama import (
    list_models,
    load_model,
    normalize_model_name,
    stop_model,
    unload_all,
)
from stackdoctor.probe import count_models, probe, probe_in_container
from stackdoctor.record_store import RecordStore
from stackdoctor.remediate import apply_fix
from stackdoctor.report import CheckStatus, DiagnosticReport, ReportBuilder, RunContext
from stackdoctor.runtime import ContainerRuntime, detect_runtime
from stackdoctor.types import (
    ContainerRecord,
    ContainerSpec,
    ImageStatus,
    NetworkEndpoint,
    ProbeResult,
)


def start_run(command: str, settings: Settings | None = None) -> RunContext:
    return RunContext(settings=settings or get_settings(), report=ReportBuilder(command))


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------


def check_runtime(ctx: RunContext) -> ContainerRuntime | None:
    """Detect the engine; abort the run when there is none."""
    try:
        runtime = detect_runtime(ctx.settings)
    except RuntimeNotFound as exc:
        ctx.report.abort("runtime", str(exc))
        return None
    ctx.runtime = runtime
    ctx.report.passed("runtime", f"{runtime.name} is installed and responding")
    return runtime


def check_host_service(ctx: RunContext, *, require_models: bool = False) -> ProbeResult:
    url = ctx.settings.ollama.host_url
    result = probe(url, ctx.settings.probe.timeout_seconds)
    if not result.ok:
        ctx.report.failed("ollama-host", f"{url} is {result.outcome}", str(result.error()))
        return result
    models = count_models(result)
    if models is None:
        ctx.report.passed("ollama-host", f"{url} reachable (HTTP {result.status})")
    elif models == 0 and require_models:
        ctx.report.failed(
            "ollama-host", f"{url} reachable but no models installed", "ollama pull <model>"
        )
    else:
        ctx.report.passed("ollama-host", f"{url} reachable, {models} model(s) installed")
    return result


def _resolve(ctx: RunContext, runtime: ContainerRuntime) -> NetworkEndpoint | None:
    try:
        endpoint = resolve_host_endpoint(
            runtime,
            ctx.settings.ollama.port,
            host_alias=ctx.settings.network.host_alias,
        )
    except HostResolutionFailed as exc:
        detail = "; ".join(f"{m}: {r}" for m, r in exc.attempts)
        ctx.report.failed("host-endpoint", "no routable host address found", detail)
        return None
    ctx.report.passed("host-endpoint", f"{endpoint.host_port} via {endpoint.method}")
    return endpoint


def _inspect(
    ctx: RunContext, runtime: ContainerRuntime, name: str
) -> tuple[ContainerRecord, dict | None] | None:
    try:
        attrs = inspect_raw(runtime, name)
    except RuntimeCommandError as exc:
        ctx.report.failed(name, "inspect failed", str(exc))
        return None
    threshold = ctx.settings.inspector.restart_loop_threshold
    if attrs is None:
        return ContainerRecord.missing(name), None
    return record_from_attrs(name, attrs, threshold), attrs


def report_container(ctx: RunContext, record: ContainerRecord) -> bool:
    """One PASS/FAIL line per container with every problem listed."""
    problems = record.problems()
    if problems:
        ctx.report.failed(
            record.name,
            str(record.state),
            "; ".join(str(p) for p in problems),
        )
        return False
    ctx.report.passed(
        record.name,
        f"running, health {record.health}, {record.restart_count} restart(s)",
    )
    return True


def _container_base_url(ctx: RunContext, attrs: dict) -> str | None:
    env_var = ctx.settings.ollama.env_var
    for item in (attrs.get("Config") or {}).get("Env") or []:
        key, sep, value = item.partition("=")
        if sep and key == env_var:
            return value.rstrip("/")
    return None


def check_container_link(
    ctx: RunContext, runtime: ContainerRuntime, record: ContainerRecord, attrs: dict
) -> bool:
    """Probe the Ollama URL the container is configured with, from inside it."""
    name = f"{record.name}/link"
    env_var = ctx.settings.ollama.env_var
    if not record.running:
        ctx.report.skipped(name, "container not running")
        return False
    base_url = _container_base_url(ctx, attrs)
    if not base_url:
        ctx.report.failed(name, f"{env_var} is not set")
        return False
    url = base_url + ctx.settings.ollama.tags_path
    result = probe_in_container(runtime, record.name, url, ctx.settings.probe.timeout_seconds)
    if result.ok:
        ctx.report.passed(name, f"{url} reachable from inside the container")
        return True
    ctx.report.failed(
        name, f"{url} is {result.outcome} from inside the container", result.detail or None
    )
    return False


def _spec_for(ctx: RunContext, name: str, attrs: dict | None) -> ContainerSpec | None:
    if attrs is not None:
        return spec_from_attrs(name, attrs)
    cfg: StackContainerConfig | None = ctx.settings.stack.get(name)
    if cfg is None:
        return None
    return ContainerSpec(
        name=name,
        image=cfg.image,
        env=dict(cfg.env),
        ports=list(cfg.ports),
        volumes=list(cfg.volumes),
        network=cfg.network,
        restart=cfg.restart,
    )


def _remediate(
    ctx: RunContext,
    runtime: ContainerRuntime,
    record: ContainerRecord,
    attrs: dict | None,
    endpoint: NetworkEndpoint,
) -> None:
    name = f"{record.name}/fix"
    env_var = ctx.settings.ollama.env_var
    spec = _spec_for(ctx, record.name, attrs)
    if spec is None:
        ctx.report.failed(
            name, "no container spec to recreate from", f"add [stack.{record.name}] to config.toml"
        )
        return
    result = apply_fix(
        runtime,
        spec,
        endpoint,
        record=record,
        env_var=env_var,
        verify_path=ctx.settings.ollama.tags_path,
        timeout=ctx.settings.probe.timeout_seconds,
    )
    if result.ok:
        ctx.report.passed(name, f"recreated with {env_var}={endpoint.url()} and verified")
    elif result.container_absent:
        ctx.report.failed(name, "recreate failed; container is now ABSENT", str(result.error))
    elif result.recreated:
        ctx.report.failed(name, "recreated but verification failed", str(result.error))
    else:
        ctx.report.failed(name, "fix not applied", str(result.error))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def diagnose(ctx: RunContext, *, fix: bool = False, full: bool = False) -> DiagnosticReport:
    """Connectivity diagnosis between the stack containers and the host server."""
    runtime = check_runtime(ctx)
    if runtime is None:
        return ctx.report.finish()

    if full:
        _report_engine_details(ctx, runtime)

    check_host_service(ctx)
    endpoint = _resolve(ctx, runtime)

    for name in ctx.settings.stack:
        inspected = _inspect(ctx, runtime, name)
        if inspected is None:
            continue
        record, attrs = inspected
        report_container(ctx, record)

        linked = False
        if attrs is not None:
            linked = check_container_link(ctx, runtime, record, attrs)
            if full and endpoint is not None and record.running:
                url = endpoint.url(ctx.settings.ollama.tags_path)
                alt = probe_in_container(runtime, name, url, ctx.settings.probe.timeout_seconds)
                ctx.report.info(
                    f"{name}/resolved", f"{url} is {alt.outcome} from inside the container"
                )
        if linked:
            continue

        if endpoint is None:
            ctx.report.skipped(f"{name}/fix", "no resolved endpoint to point the container at")
        elif not fix:
            ctx.report.skipped(
                f"{name}/fix",
                f"would recreate with {ctx.settings.ollama.env_var}={endpoint.url()}",
                "re-run with --fix to apply",
            )
        else:
            _remediate(ctx, runtime, record, attrs, endpoint)

    return ctx.report.finish()


def _report_engine_details(ctx: RunContext, runtime: ContainerRuntime) -> None:
    try:
        info = runtime.info()
        running = runtime.list_running_containers()
    except RuntimeCommandError as exc:
        ctx.report.failed("engine", "could not read engine details", str(exc))
        return
    version = (info.get("ServerVersion") or (info.get("version") or {}).get("Version") or "unknown")
    ctx.report.info("engine", f"{runtime.name} {version}, machine VM: {runtime.has_machine()}")
    ctx.report.info("engine", f"{len(running)} running container(s)", ", ".join(running) or None)


def check_stack(ctx: RunContext) -> DiagnosticReport:
    """Health test of the host server and every configured stack container."""
    runtime = check_runtime(ctx)
    if runtime is None:
        return ctx.report.finish()

    check_host_service(ctx, require_models=True)

    for name in ctx.settings.stack:
        inspected = _inspect(ctx, runtime, name)
        if inspected is None:
            continue
        record, attrs = inspected
        report_container(ctx, record)
        if attrs is not None:
            check_container_link(ctx, runtime, record, attrs)

    return ctx.report.finish()


def _report_sync_outcome(ctx: RunContext, outcome: SyncOutcome) -> None:
    check = outcome.check
    if outcome.error is not None:
        reason = f" ({check.reason})" if check and check.reason else ""
        ctx.report.failed(outcome.name, f"sync failed{reason}", str(outcome.error))
        return
    if outcome.record is not None and check is not None:
        ctx.report.passed(
            outcome.name,
            f"synced ({check.reason}) → {check.local}",
            check.upstream_digest,
        )
        return
    if check is None:
        return
    if check.status == ImageStatus.NEW:
        ctx.report.add(
            CheckStatus.NEW,
            outcome.name,
            f"not mirrored yet, would sync {check.upstream}",
            check.upstream_digest,
        )
    elif check.status == ImageStatus.STALE:
        ctx.report.add(
            CheckStatus.UPDATE,
            outcome.name,
            "upstream changed, would sync",
            f"{check.previous_digest} → {check.upstream_digest}",
        )
    elif check.eligible:
        ctx.report.add(
            CheckStatus.UPDATE, outcome.name, "current, would force sync", check.upstream_digest
        )
    else:
        ctx.report.passed(outcome.name, "current", check.upstream_digest)


def sync_images(
    ctx: RunContext,
    *,
    only: str | None = None,
    force: bool = False,
    sync_now: bool = False,
    init: bool = False,
) -> DiagnosticReport:
    """Check (and with *sync_now* mirror) the configured upstream images."""
    runtime = check_runtime(ctx)
    if runtime is None:
        return ctx.report.finish()

    images = dict(ctx.settings.sync.images)
    if only is not None:
        if only not in images:
            configured = ", ".join(images) or "none"
            ctx.report.abort("images", f"unknown image '{only}'; configured: {configured}")
            return ctx.report.finish()
        images = {only: images[only]}
    if not images:
        ctx.report.skipped("images", "no images configured under [sync.images]")
        return ctx.report.finish()

    try:
        store = RecordStore.load(
            ctx.settings.state_path, registry=ctx.settings.sync.registry, create=init
        )
    except (RecordStoreMissing, RecordStoreCorrupt) as exc:
        ctx.report.abort("record-store", str(exc))
        return ctx.report.finish()

    ctx.report.info("registry", store.registry, str(store.path))
    if not sync_now:
        ctx.report.info("mode", "check only", "re-run with --sync-now to pull, tag and push")

    orchestrator = ImageSyncOrchestrator(runtime, store, platform=ctx.settings.sync.platform)
    for outcome in orchestrator.run(images, force=force, sync_now=sync_now):
        _report_sync_outcome(ctx, outcome)
    return ctx.report.finish()


def cleanup(ctx: RunContext, *, apply: bool = False) -> DiagnosticReport:
    """Exited stack containers, dangling volumes and unused networks."""
    runtime = check_runtime(ctx)
    if runtime is None:
        return ctx.report.finish()

    targets: list[CleanupTarget] = []
    collectors = (
        ("containers", lambda: exited_containers(runtime, list(ctx.settings.stack))),
        ("volumes", lambda: dangling_volumes(runtime)),
        ("networks", lambda: unused_networks(runtime)),
    )
    for label, collect in collectors:
        try:
            targets += collect()
        except RuntimeCommandError as exc:
            ctx.report.failed(label, "listing failed", str(exc))

    if not targets:
        ctx.report.info("cleanup", "nothing to clean up")
        return ctx.report.finish()

    for target in targets:
        name = f"{target.kind}/{target.name}"
        if not apply:
            ctx.report.skipped(name, "would remove", "re-run with --apply to remove")
            continue
        ok, err = remove(runtime, target)
        if ok:
            ctx.report.passed(name, "removed")
        else:
            ctx.report.failed(name, "remove failed", err or None)
    return ctx.report.finish()


def manage_models(
    ctx: RunContext,
    *,
    name: str | None = None,
    stop: bool = False,
    unload: bool = False,
    load: bool = False,
) -> DiagnosticReport:
    """List Ollama models; optionally load one, or unload one or all of them."""
    try:
        if unload:
            for model, err in unload_all():
                if err is None:
                    ctx.report.passed(model, "unloaded")
                else:
                    ctx.report.failed(model, "unload failed", str(err))
        elif stop:
            if not name:
                ctx.report.abort("models", "--stop needs a model name")
                return ctx.report.finish()
            stop_model(name)
            ctx.report.passed(name, "unloaded")
        elif load:
            if not name:
                ctx.report.abort("models", "--load needs a model name")
                return ctx.report.finish()
            load_model(name)
            ctx.report.passed(name, "loaded")

        models = list_models()
    except OllamaCommandError as exc:
        ctx.report.failed("ollama", str(exc))
        return ctx.report.finish()

    if name and not stop:
        wanted = normalize_model_name(name)
        models = [m for m in models if normalize_model_name(m.name) == wanted]
    if not models:
        ctx.report.info("models", "no models found", "ollama pull <model>")
    for model in models:
        ctx.report.info(model.name, "loaded" if model.loaded else "installed")
    logger.debug("Models listed", count=len(models))
    return ctx.report.finish()
