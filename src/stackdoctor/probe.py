"""One-shot HTTP reachability probes, from the host and from inside a container.

No retries here; callers decide whether a second attempt makes sense.
"""

from __future__ import annotations

import asyncio

import aiohttp

from stackdoctor.logger import logger
from stackdoctor.runtime import ContainerRuntime
from stackdoctor.types import ProbeOutcome, ProbeResult

DEFAULT_TIMEOUT = 5.0

# curl exit codes: 28 = operation timed out
_CURL_TIMEOUT = 28


async def probe_async(url: str, timeout: float = DEFAULT_TIMEOUT) -> ProbeResult:
    """Single GET against *url*. Any status below 500 counts as reachable."""
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as session:
            async with session.get(url) as resp:
                body = None
                if resp.content_type == "application/json":
                    try:
                        body = await resp.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        body = None
                if resp.status < 500:
                    return ProbeResult(url, ProbeOutcome.REACHABLE, status=resp.status, body=body)
                return ProbeResult(
                    url,
                    ProbeOutcome.UNREACHABLE,
                    status=resp.status,
                    detail=f"HTTP {resp.status}",
                )
    except TimeoutError:
        return ProbeResult(url, ProbeOutcome.TIMEOUT, detail=f"no response within {timeout}s")
    except (aiohttp.ClientError, OSError) as exc:
        return ProbeResult(url, ProbeOutcome.UNREACHABLE, detail=str(exc) or type(exc).__name__)


def probe(url: str, timeout: float = DEFAULT_TIMEOUT) -> ProbeResult:
    """Blocking wrapper around :func:`probe_async`."""
    result = asyncio.run(probe_async(url, timeout))
    logger.debug("Probe finished", url=url, outcome=str(result.outcome), status=result.status)
    return result


def probe_in_container(
    runtime: ContainerRuntime,
    container: str,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> ProbeResult:
    """GET *url* from inside *container* with curl.

    Same rule as the host probe: a status of 500 or above is unreachable.
    """
    result = runtime.run(
        "exec",
        container,
        "curl",
        "-sS",
        "-o",
        "/dev/null",
        "-w",
        "%{http_code}",
        "-m",
        str(int(max(1, round(timeout)))),
        url,
        timeout=timeout + 10,
    )
    stdout = (result.stdout or "").strip()
    status = int(stdout) if stdout.isdigit() and int(stdout) > 0 else None
    detail = (result.stderr or "").strip()
    if result.returncode == 0:
        if status is not None and status >= 500:
            outcome = ProbeOutcome.UNREACHABLE
            detail = f"HTTP {status}"
        else:
            outcome = ProbeOutcome.REACHABLE
    elif result.returncode == _CURL_TIMEOUT:
        outcome = ProbeOutcome.TIMEOUT
    else:
        outcome = ProbeOutcome.UNREACHABLE
    logger.debug(
        "In-container probe finished",
        container=container,
        url=url,
        outcome=str(outcome),
        status=status,
        returncode=result.returncode,
    )
    return ProbeResult(url, outcome, status=status, detail=detail)


def count_models(result: ProbeResult) -> int | None:
    """Number of models in an Ollama ``/api/tags`` body, or None if absent."""
    if not isinstance(result.body, dict):
        return None
    models = result.body.get("models")
    return len(models) if isinstance(models, list) else None
