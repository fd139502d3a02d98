"""Human-facing terminal output for the terraoperator commands."""

from __future__ import annotations

import json
import traceback
from typing import Iterable, Optional

import click

from terraoperator.agent.models import ExecutionResult

RULE = "=" * 60


class Console:
    """
    Formats results and errors for the terminal.

    Results go to stdout so `--json` output can be piped; errors and
    diagnostics go to stderr.
    """

    def __init__(self, debug: bool = False):
        # debug also echoes the tool's raw output and full tracebacks
        self.debug = debug

    def _section(self, title: str) -> None:
        click.echo(f"\n{title}")
        click.echo("-" * len(title))

    def _banner(self, title: str, rows: Iterable[tuple[str, Optional[object]]]) -> None:
        click.echo(f"\n{title}")
        for label, value in rows:
            if value is not None:
                click.echo(f"{label}: {value}")
        click.echo()

    def print_execution_started(self, mode: str, module: str, version: str, remote: Optional[str] = None) -> None:
        self._banner(f"{mode.upper()} STARTED", [
            ("Module", module),
            ("Terraform", version),
            ("Agent", remote),
        ])

    def print_agent_started(self, host: str, port: int, toolchain_dir: str, workspace_dir: str) -> None:
        self._banner("AGENT LISTENING", [
            ("Address", f"http://{host}:{port}"),
            ("Toolchains", toolchain_dir),
            ("Workspaces", workspace_dir),
        ])

    def print_controller_started(self, image: str, resync: int, agent_url: Optional[str]) -> None:
        self._banner("CONTROLLER WATCHING", [
            ("Runner image", image),
            ("Resync", f"{resync}s"),
            ("Agent", agent_url),
        ])

    def print_result(self, result: ExecutionResult) -> None:
        self._section(f"{result.mode.upper()} RESULT")
        click.echo(f"Status: {'success' if result.success else 'failed'}")
        if result.summary:
            counts = ", ".join(f"{k}={v}" for k, v in sorted(result.summary.items()))
            click.echo(f"Changes: {counts}")
        if result.partial:
            click.echo("Output: unstructured, shown raw")
        if not result.success and result.error_kind:
            click.echo(f"{result.error_kind.value}: {result.error}", err=True)
            for line in result.diagnostics:
                click.echo(f"  {line}", err=True)
        if (self.debug or result.partial) and result.raw_output:
            click.echo(RULE)
            click.echo(result.raw_output.rstrip())
            click.echo(RULE)

    def print_result_json(self, result: ExecutionResult) -> None:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))

    def print_error(self, title: str, message: str, suggestion: Optional[str] = None) -> None:
        click.echo(f"\nERROR: {title}", err=True)
        click.echo(message, err=True)
        if suggestion:
            click.echo(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Show an unexpected error; the traceback only in debug mode."""
        if self.debug:
            click.echo("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            click.echo(f"Unexpected error: {exc}", err=True)


_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
