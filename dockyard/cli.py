# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# COMMAND LINE
# -----------------------------------------------------------------------------
#   dockyard env <op>        the core development environment
#   dockyard container <op>  an application container for the current project
#
# Exit codes: 0 success, 1 configuration/validation error, 2 engine error.
# `exec` and `shell` exit with the command's own code once it has run.
# -----------------------------------------------------------------------------

import argparse
import asyncio
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from dockyard.config import (
    EngineSettings,
    app_container_spec,
    core_env_spec,
    load_config,
)
from dockyard.core.reconciler import Reconciler
from dockyard.core.reporter import StreamReporter
from dockyard.domain.errors import DockyardError, SpecValidationError
from dockyard.domain.models import ReconcileReport
from dockyard.infra.docker_client import EngineClient

console = Console()

EXIT_INTERRUPTED = 130
DEFAULT_SHELL = "/bin/bash"


def _parse_env(values: list[str] | None) -> dict[str, str]:
    env = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise SpecValidationError(f"environment variable '{item}' must look like KEY=VALUE", "cli")
        env[key] = value
    return env


def _report_exit(reporter: StreamReporter, report: ReconcileReport) -> int:
    reporter.render_report(report)
    return report.exit_code


def _exec_exit(reporter: StreamReporter, report: ReconcileReport) -> int:
    if not report.ok or report.exec_exit_code is None:
        reporter.render_report(report)
        return report.exit_code
    return report.exec_exit_code


async def dispatch(args: argparse.Namespace, reconciler: Reconciler, reporter: StreamReporter, config, settings) -> int:
    """Run one parsed command and return its exit code."""
    if args.scope == "env":
        spec = core_env_spec(config)
    else:
        spec = app_container_spec(
            config,
            Path.cwd(),
            image=getattr(args, "image", None),
            name=getattr(args, "name", None),
            ports=getattr(args, "port", None),
            env_vars=_parse_env(getattr(args, "env", None)),
            command=getattr(args, "cmd", None) or None,
            dockerfile=getattr(args, "file", "Dockerfile"),
            detach=not getattr(args, "tty", False),
            auto_remove=getattr(args, "rm", False),
        )
    if getattr(args, "name", None) and args.scope == "env":
        spec = spec.model_copy(update={"container_name": args.name})

    # application specs come from this invocation's flags, not the container's
    reconcile = args.scope == "env"

    op = args.op
    if op == "build":
        return _report_exit(reporter, await reconciler.build(spec, no_cache=args.no_cache))
    if op == "start":
        return _report_exit(reporter, await reconciler.ensure_running(spec))
    if op == "rebuild":
        return _report_exit(reporter, await reconciler.rebuild(spec))
    if op == "shell":
        report = await reconciler.exec(
            spec, [args.shell], interactive=True, workdir=args.workdir, reconcile=reconcile
        )
        return _exec_exit(reporter, report)
    if op == "exec":
        report = await reconciler.exec(
            spec, args.command, interactive=args.interactive, workdir=args.workdir, reconcile=reconcile
        )
        return _exec_exit(reporter, report)
    if op == "status":
        reporter.render_status(await reconciler.status(spec))
        return 0
    if op == "stop":
        return _report_exit(reporter, await reconciler.stop(spec.container_name, timeout=args.time))
    if op == "logs":
        await reconciler.logs(spec.container_name, follow=args.follow, tail=args.lines or settings.log_tail)
        return 0
    if op == "remove":
        return _report_exit(reporter, await reconciler.remove(spec.container_name, force=args.force))
    if op == "prune":
        return _report_exit(reporter, await reconciler.prune(f"{config.core_env.image_name}-", force=args.force))
    if op == "rmi":
        return _report_exit(reporter, await reconciler.remove_image(spec, force=args.force))
    raise SpecValidationError(f"unknown operation '{op}'", "cli")


def _add_common(parser: argparse.ArgumentParser, scope: str) -> None:
    help_text = "Container name (default: <image_name>-instance)" if scope == "env" else (
        "Container name (default: dockyard-app-<dirname>)"
    )
    parser.add_argument("--name", help=help_text)
    if scope == "container":
        parser.add_argument("--image", help="Image reference (default: [<prefix>-]<dirname>:latest)")
        parser.add_argument("--file", default="Dockerfile", help="Dockerfile in the project directory")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dockyard",
        description="Manage a containerized development environment and project containers",
    )
    scopes = parser.add_subparsers(dest="scope", required=True)

    for scope, help_text in (
        ("env", "Manage the core development environment"),
        ("container", "Manage the application container for the current project"),
    ):
        scope_parser = scopes.add_parser(scope, help=help_text)
        ops = scope_parser.add_subparsers(dest="op", required=True)

        build = ops.add_parser("build", help="Build the image")
        build.add_argument("--no-cache", action="store_true", help="Do not use the build cache")

        start = ops.add_parser("start", aliases=["run"] if scope == "container" else [], help="Ensure the container is running")
        if scope == "container":
            start.add_argument("-p", "--port", action="append", help="HOST:CONTAINER[/proto], repeatable")
            start.add_argument("-e", "--env", action="append", help="KEY=VALUE, repeatable")
            start.add_argument("-t", "--tty", action="store_true", help="Allocate a TTY and keep stdin open")
            start.add_argument("--rm", action="store_true", help="Remove the container when it exits")
            start.add_argument("cmd", nargs=argparse.REMAINDER, help="Command override")

        shell = ops.add_parser("shell", help="Open an interactive shell")
        shell.add_argument("--shell", default=DEFAULT_SHELL, help=f"Shell to run (default: {DEFAULT_SHELL})")
        shell.add_argument("-w", "--workdir", help="Working directory inside the container")

        exec_parser = ops.add_parser("exec", help="Run a command in the container")
        exec_parser.add_argument("-i", "--interactive", action="store_true", help="Attach the terminal")
        exec_parser.add_argument("-w", "--workdir", help="Working directory inside the container")
        exec_parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")

        ops.add_parser("status", help="Show container status")

        stop = ops.add_parser("stop", help="Stop the container")
        stop.add_argument("-t", "--time", type=int, help="Seconds to wait before killing")

        logs = ops.add_parser("logs", help="Show container logs")
        logs.add_argument("-f", "--follow", action="store_true", help="Follow log output")
        logs.add_argument("-n", "--lines", help="Number of lines to show, or 'all'")

        remove = ops.add_parser("remove", aliases=["rm"], help="Remove the container")
        remove.add_argument("-f", "--force", action="store_true", help="Remove even if running")

        if scope == "env":
            ops.add_parser("rebuild", help="Rebuild the image from scratch and restart")
            prune = ops.add_parser("prune", help="Remove stopped environment containers")
            prune.add_argument("-f", "--force", action="store_true", help="Actually remove (default: dry run)")
        else:
            rmi = ops.add_parser("rmi", help="Remove the project image")
            rmi.add_argument("-f", "--force", action="store_true", help="Remove the container first")

        # aliases map to the same parser
        for sub in {id(p): p for p in ops.choices.values()}.values():
            _add_common(sub, scope)

    return parser


_ALIASES = {"run": "start", "rm": "remove"}


async def _main(args: argparse.Namespace) -> int:
    settings = EngineSettings.from_env()
    config = load_config()
    reporter = StreamReporter(tail_lines=settings.build_tail_lines)
    engine = EngineClient(connect_timeout=settings.connect_timeout)
    reconciler = Reconciler(engine, reporter, stop_timeout=settings.stop_timeout)
    return await dispatch(args, reconciler, reporter, config, settings)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `dockyard` command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args.op = _ALIASES.get(args.op, args.op)
    if args.op == "exec":
        if args.command and args.command[0] == "--":
            args.command = args.command[1:]
        if not args.command:
            parser.error("exec needs a command")
    if getattr(args, "cmd", None) and args.cmd[0] == "--":
        args.cmd = args.cmd[1:]

    try:
        return asyncio.run(_main(args))
    except DockyardError as e:
        console.print(f"[red][DOCKYARD] {escape(str(e))}[/red]")
        return e.exit_code
    except KeyboardInterrupt:
        console.print("[yellow][DOCKYARD] Interrupted[/yellow]")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
