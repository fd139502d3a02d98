# cli.py
from __future__ import annotations

import json
import os
import sys
from typing import Mapping, Optional

import click

from terraoperator import settings
from terraoperator.agent.agent import ExecutionAgent
from terraoperator.agent.api_client import APIClient, APIError
from terraoperator.agent.models import ExecutionMode, ExecutionRequest, ExecutionResult
from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.logging_config import configure_logging, get_logging_config
from terraoperator.toolchain import ToolchainCache
from terraoperator.ui.console import Console, get_console, set_console
from terraoperator.workspace import WorkspaceProvisioner


def parse_vars(values: tuple[str, ...]) -> dict[str, str]:
    """
    Turn repeated `--var key=value` options into a mapping.

    Later assignments of the same key win.
    """
    variables: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--var")
        variables[key] = value
    return variables


def request_from_env(env: Mapping[str, str]) -> tuple[ExecutionRequest, ExecutionMode]:
    """
    Build the execution request a Job was created with.

    Reads MODULEPATH, TF_VERSION, TF_VARIABLES (JSON object) and TF_MODE.

    Raises:
        ExecutionError: InvalidRequest when the environment is malformed
    """
    raw_vars = env.get("TF_VARIABLES") or "{}"
    try:
        variables = json.loads(raw_vars)
    except json.JSONDecodeError as e:
        raise ExecutionError(ErrorKind.INVALID_REQUEST, f"TF_VARIABLES is not valid JSON: {e}")
    if not isinstance(variables, dict):
        raise ExecutionError(ErrorKind.INVALID_REQUEST, "TF_VARIABLES must be a JSON object")

    try:
        mode = ExecutionMode(env.get("TF_MODE") or "plan")
    except ValueError:
        raise ExecutionError(ErrorKind.INVALID_REQUEST, f"unknown TF_MODE {env.get('TF_MODE')!r}")

    request = ExecutionRequest(
        version=env.get("TF_VERSION", ""),
        module_path=env.get("MODULEPATH", ""),
        variables={str(k): str(v) for k, v in variables.items()},
    )
    return request, mode


def _execute(
    request: ExecutionRequest,
    mode: ExecutionMode,
    *,
    api: Optional[str],
    toolchain_dir: str,
    workspace_dir: str,
    json_output: bool,
) -> None:
    console = get_console()
    if not json_output:
        console.print_execution_started(mode.value, request.module_path, request.version, remote=api)

    try:
        if api:
            client = APIClient(api)
            if not client.healthy():
                raise APIError(f"{api}/healthz did not answer")
            result = client.execute(request, mode)
        else:
            agent = ExecutionAgent(
                toolchain=ToolchainCache(toolchain_dir),
                provisioner=WorkspaceProvisioner(workspace_dir),
            )
            result = agent.handle(request, mode)
    except APIError as e:
        console.print_error(
            "Agent unreachable",
            str(e),
            suggestion=f"Check that the agent at {api} is running.",
        )
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_error("Interrupted", f"{mode.value} of {request.module_path} abandoned")
        sys.exit(130)

    if json_output:
        console.print_result_json(result)
    else:
        console.print_result(result)

    if not result.success:
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--log-level", default=settings.LOG_LEVEL, show_default=True, help="Log level")
@click.pass_context
def cli(ctx, debug, log_level):
    """terraoperator: run Terraform modules declared as cluster resources."""
    level = "DEBUG" if debug else log_level
    configure_logging(level)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["log_level"] = level


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", default=8080, type=int, show_default=True, help="Bind port")
@click.option("--toolchain-dir", default=settings.TOOLCHAIN_DIR, show_default=True, help="Where Terraform versions are installed")
@click.option("--workspace-dir", default=settings.WORKSPACE_DIR, show_default=True, help="Where per-request workspaces are created")
@click.option("--database-url", default=settings.DATABASE_URL, help="Store results in this database")
@click.option("--redis-url", default=settings.REDIS_URL, help="Push results onto a Redis list")
@click.pass_context
def serve(ctx, host, port, toolchain_dir, workspace_dir, database_url, redis_url):
    """Run the execution agent HTTP service."""
    import uvicorn

    from terraoperator.agent.api import create_app
    from terraoperator.storage import sink_from_settings

    console = get_console()
    agent = ExecutionAgent(
        toolchain=ToolchainCache(toolchain_dir),
        provisioner=WorkspaceProvisioner(workspace_dir),
    )
    app = create_app(agent, sink_from_settings(database_url, redis_url))

    console.print_agent_started(host, port, toolchain_dir, workspace_dir)
    uvicorn.run(app, host=host, port=port, log_config=get_logging_config(ctx.obj["log_level"]))


@cli.command()
@click.option("--in-cluster", is_flag=True, default=False, help="Use the pod's service account")
@click.option("--kubeconfig", default=None, help="Kubeconfig path (defaults to ~/.kube/config)")
@click.option("--image", default=settings.RUNNER_IMAGE, show_default=True, help="Image for execution Jobs")
@click.option("--agent-url", default=settings.AGENT_URL, help="Agent URL handed to execution Jobs")
@click.option("--resync", default=settings.RESYNC_SECONDS, type=int, show_default=True, help="Seconds between full re-lists")
@click.pass_context
def controller(ctx, in_cluster, kubeconfig, image, agent_url, resync):
    """Run the controller that keeps one Job per Terraform resource."""
    from terraoperator.controller.cluster import ClusterClient, load_config
    from terraoperator.controller.manager import ControllerManager
    from terraoperator.controller.reconciler import ModuleReconciler

    console = get_console()
    try:
        load_config(in_cluster=in_cluster, kubeconfig=kubeconfig)
    except Exception as e:
        console.print_error(
            "Could not load cluster configuration",
            str(e),
            suggestion="Use --in-cluster inside a pod, or --kubeconfig <path>.",
        )
        sys.exit(1)

    cluster = ClusterClient()
    reconciler = ModuleReconciler(cluster, image=image, agent_url=agent_url)
    console.print_controller_started(image, resync, agent_url)
    try:
        ControllerManager(cluster, reconciler, resync_seconds=resync).run()
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--version", "tf_version", required=True, help="Exact Terraform version, e.g. 1.6.0")
@click.option("--module", "module_path", required=True, help="Module source, e.g. git::https://host/repo.git//dir?ref=v1")
@click.option("--var", "variables", multiple=True, help="Variable assignment key=value (repeatable)")
@click.option("--apply", "apply_", is_flag=True, default=False, help="Apply instead of plan")
@click.option("--api", default=None, help="Send to a running agent instead of executing locally")
@click.option("--toolchain-dir", default=settings.TOOLCHAIN_DIR, show_default=True)
@click.option("--workspace-dir", default=settings.WORKSPACE_DIR, show_default=True)
@click.option("--json", "json_output", is_flag=True, default=False, help="Print the result as JSON")
@click.pass_context
def run(ctx, tf_version, module_path, variables, apply_, api, toolchain_dir, workspace_dir, json_output):
    """Plan (or apply) a module once."""
    request = ExecutionRequest(
        version=tf_version,
        module_path=module_path,
        variables=parse_vars(variables),
    )
    mode = ExecutionMode.APPLY if apply_ else ExecutionMode.PLAN
    _execute(
        request,
        mode,
        api=api,
        toolchain_dir=toolchain_dir,
        workspace_dir=workspace_dir,
        json_output=json_output,
    )


@cli.command("run-job")
@click.option("--toolchain-dir", default=settings.TOOLCHAIN_DIR, show_default=True)
@click.option("--workspace-dir", default=settings.WORKSPACE_DIR, show_default=True)
@click.option("--json/--no-json", "json_output", default=True, show_default=True, help="Print the result as JSON")
@click.pass_context
def run_job(ctx, toolchain_dir, workspace_dir, json_output):
    """Entry point of an execution Job: run the request described by the environment."""
    console = get_console()
    try:
        request, mode = request_from_env(os.environ)
    except ExecutionError as e:
        result = ExecutionResult.failure(os.environ.get("TF_MODE") or "plan", e)
        if json_output:
            console.print_result_json(result)
        else:
            console.print_error("Invalid job environment", e.message)
        sys.exit(1)

    _execute(
        request,
        mode,
        api=os.environ.get("AGENT_URL") or None,
        toolchain_dir=toolchain_dir,
        workspace_dir=workspace_dir,
        json_output=json_output,
    )


if __name__ == "__main__":
    cli()
