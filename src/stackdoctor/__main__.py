"""Entry point for `python -m stackdoctor` / `stackdoctor`.

Subcommands:
    stackdoctor diagnose [--fix] [--full]        Container → host connectivity
    stackdoctor health                           Whole-stack health test
    stackdoctor sync [IMAGE] [--sync-now] [--force-all] [--init]
    stackdoctor cleanup [--apply]                Exited containers, dangling volumes
    stackdoctor models [NAME] [--load] [--stop] [--unload-all]

Every subcommand takes ``--json``. Nothing mutates state without its flag.
Exit code 0 when every check passed, 1 otherwise.
"""

from __future__ import annotations

import argparse
import os
import sys

from pydantic import ValidationError

from stackdoctor import __version__
from stackdoctor.config import get_settings
from stackdoctor.logger import logger, set_level
from stackdoctor.report import emit
from stackdoctor.workflows import (
    check_stack,
    cleanup,
    diagnose,
    manage_models,
    start_run,
    sync_images,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackdoctor",
        description="Diagnose, repair and mirror a containerized local Ollama stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    def add(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--json", action="store_true", help="Print a JSON report")
        return p

    p = add("diagnose", "Check that stack containers can reach the host Ollama server")
    p.add_argument("--fix", action="store_true", help="Recreate failing containers")
    p.add_argument("--full", action="store_true", help="Include engine details and extra probes")

    add("health", "Health-test the host server and every stack container")

    p = add("sync", "Mirror upstream images into the local registry")
    p.add_argument("image", nargs="?", default=None, help="Only this logical image name")
    p.add_argument("--sync-now", action="store_true", help="Pull, tag and push eligible images")
    p.add_argument("--force-all", action="store_true", help="Treat every image as eligible")
    p.add_argument("--init", action="store_true", help="Create the record store if missing")

    p = add("cleanup", "Remove exited stack containers, dangling volumes, unused networks")
    p.add_argument("--apply", action="store_true", help="Actually remove what was found")

    p = add("models", "List installed and loaded Ollama models")
    p.add_argument("name", nargs="?", default=None, help="Only this model")
    p.add_argument("--load", action="store_true", help="Load the named model and keep it in memory")
    p.add_argument("--stop", action="store_true", help="Unload the named model")
    p.add_argument("--unload-all", action="store_true", help="Unload every loaded model")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as exc:
        logger.error("Invalid configuration", err=str(exc))
        return 1
    if "LOG_LEVEL" not in os.environ:
        set_level(settings.logging.level)

    ctx = start_run(args.command, settings)
    match args.command:
        case "diagnose":
            report = diagnose(ctx, fix=args.fix, full=args.full)
        case "health":
            report = check_stack(ctx)
        case "sync":
            report = sync_images(
                ctx,
                only=args.image,
                force=args.force_all,
                sync_now=args.sync_now,
                init=args.init,
            )
        case "cleanup":
            report = cleanup(ctx, apply=args.apply)
        case "models":
            report = manage_models(
                ctx, name=args.name, stop=args.stop, unload=args.unload_all, load=args.load
            )
        case _:  # pragma: no cover - argparse rejects unknown commands
            raise SystemExit(2)

    emit(report, as_json=args.json)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
