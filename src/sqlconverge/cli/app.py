# src/sqlconverge/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from sqlconverge.config.loader import apply_overrides, load_config
from sqlconverge.config.models import DeploymentConfig
from sqlconverge.config.validation import collect_problems
from sqlconverge.deploy.fleet import FleetCoordinator
from sqlconverge.deploy.planner import build_run_plan, describe
from sqlconverge.errors import ConvergeError, ValidationFailure
from sqlconverge.logging.log import init_logging
from sqlconverge.observers.console import ConsoleObserver
from sqlconverge.observers.jsonfile import JsonFileObserver
from sqlconverge.observers.logger import LoggerObserver
from sqlconverge.transport.ssh import SshPowerShellTransport
from sqlconverge.utils.execution import ExecutionContext


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="SQL Server fleet convergence CLI")

EXIT_FAILED = 1
EXIT_INVALID = 2


def make_transport() -> SshPowerShellTransport:
    return SshPowerShellTransport()


def _load(
    config: Path,
    *,
    nodes: Optional[List[str]] = None,
    install_source: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    ssh_key: Optional[Path] = None,
    features: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> DeploymentConfig:
    try:
        cfg = load_config(config)
        cfg = apply_overrides(
            cfg,
            nodes=nodes,
            install_source=install_source,
            username=username,
            password=password,
            features={k: v for k, v in (features or {}).items() if v is not None},
            options={k: v for k, v in (options or {}).items() if v is not None},
        )
        if ssh_key:
            if cfg.credential is None:
                raise ValueError("--ssh-key given without a username")
            cfg = cfg.model_copy(update={"credential": cfg.credential.model_copy(update={"key_path": ssh_key})})
        return cfg
    except (OSError, ValueError) as e:
        # pydantic's ValidationError is a ValueError
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_INVALID)


def _print_problems(problems: List[str]) -> None:
    typer.secho("Validation failed:", fg=typer.colors.RED, bold=True, err=True)
    for p in problems:
        typer.echo(f"  - {p}", err=True)


@app.command()
def deploy(
    config: Path = typer.Argument(..., help="Deployment definition YAML"),
    node: Optional[List[str]] = typer.Option(None, "--node", help="Target node; repeat for more. First is Primary."),
    install_source: Optional[str] = typer.Option(None, "--install-source", help="Path/share holding SQL media"),
    username: Optional[str] = typer.Option(None, "--username"),
    password: Optional[str] = typer.Option(None, "--password"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    skip_drive_config: Optional[bool] = typer.Option(None, "--skip-drive-config", help="Leave disks alone"),
    skip_install: Optional[bool] = typer.Option(None, "--skip-install", help="Do not install SQL Server"),
    availability_group: Optional[bool] = typer.Option(
        None,
        "--availability-group/--no-availability-group",
        help="Build the failover cluster and availability group",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Probe only, report what would change"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Stop a node at its first failure"),
    primary_first: bool = typer.Option(False, "--primary-first", help="Finish the Primary before Secondaries start"),
    keep_artifacts: bool = typer.Option(False, "--keep-artifacts"),
    verbose: bool = typer.Option(False, "--verbose"),
):
    """Converge every node to the declared state."""
    cfg = _load(
        config,
        nodes=node,
        install_source=install_source,
        username=username,
        password=password,
        ssh_key=ssh_key,
        features={
            "skip_drive_config": skip_drive_config,
            "skip_install": skip_install,
            "in_availability_group": availability_group,
        },
        options={
            "dry_run": dry_run or None,
            "fail_fast": fail_fast or None,
            "primary_first": primary_first or None,
            "keep_artifacts": keep_artifacts or None,
        },
    )

    logger, run_id, log_path = init_logging(verbose=verbose)

    typer.echo("")
    typer.secho("sqlconverge run started", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo(f"  Nodes    : {', '.join(n.name for n in cfg.nodes)}")
    typer.echo("")

    observers = [
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".sqlconverge" / "logs" / f"{run_id}.jsonl"),
    ]
    if verbose:
        observers.append(ConsoleObserver())

    coordinator = FleetCoordinator(
        make_transport(),
        observers=observers,
        ctx=ExecutionContext(dry_run=cfg.options.dry_run, run_id=run_id),
        run_id=run_id,
    )

    try:
        report = coordinator.run(cfg)
    except ValidationFailure as e:
        _print_problems(e.problems)
        raise typer.Exit(EXIT_INVALID)
    except ConvergeError as e:
        typer.secho(f"Planning failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_INVALID)

    typer.echo(report.render())
    if not report.ok:
        typer.secho(f"{len(report.failures())} resource(s) failed", fg=typer.colors.RED, bold=True)
        raise typer.Exit(EXIT_FAILED)
    typer.secho("Converged", fg=typer.colors.GREEN, bold=True)


@app.command()
def plan(
    config: Path = typer.Argument(..., help="Deployment definition YAML"),
    node: Optional[List[str]] = typer.Option(None, "--node"),
    install_source: Optional[str] = typer.Option(None, "--install-source"),
):
    """Validate and print each node's execution order. Contacts nothing."""
    cfg = _load(config, nodes=node, install_source=install_source)
    problems = collect_problems(cfg)
    if problems:
        _print_problems(problems)
        raise typer.Exit(EXIT_INVALID)

    try:
        run_plan = build_run_plan(cfg)
    except ConvergeError as e:
        typer.secho(f"Planning failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_INVALID)

    current = None
    for node_name, step, decl in describe(run_plan):
        if node_name != current:
            role = cfg.by_name()[node_name].role.value
            typer.secho(f"\n{node_name} ({role})", bold=True)
            current = node_name
        deps = ", ".join(str(r) for r in decl.depends_on)
        line = f"  {step:>3}. {decl.label}"
        if deps:
            line += f"  <- {deps}"
        typer.echo(line)


@app.command()
def validate(
    config: Path = typer.Argument(..., help="Deployment definition YAML"),
    node: Optional[List[str]] = typer.Option(None, "--node"),
    install_source: Optional[str] = typer.Option(None, "--install-source"),
):
    """Run the pre-flight checks only."""
    cfg = _load(config, nodes=node, install_source=install_source)
    problems = collect_problems(cfg)
    if problems:
        _print_problems(problems)
        raise typer.Exit(EXIT_INVALID)
    typer.secho("Configuration is valid", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
