"""Typer-powered command line interface for ``nodehealth``.

``nodehealth check`` resolves a node, runs the applicable probes and prints a
sectioned report; ``nodehealth plan`` shows which probes a run would execute
without touching the node.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .diagnostics import (
    DeepCheckFlags,
    DiagnosticsEngine,
    GatePlan,
    HealthReport,
    Node,
    NodeResolutionError,
    ProbeExecutorOptions,
    ProbeKind,
    ProbeOutcome,
    ProbeResult,
    RunConfig,
)
from .diagnostics.engine import AgentFactory
from .diagnostics.utils import serialize_plan, serialize_report
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import (
    FailureHistoryStore,
    InventoryError,
    InventoryResolver,
    NodeAgentClient,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nodehealth's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)
QUEUES_OPTION = typer.Option(
    False,
    "--queues",
    help="Run the queue deep checks (default: all deep checks when none is given).",
)
MAILFLOW_OPTION = typer.Option(
    False,
    "--mailflow",
    help="Run the mail flow deep checks.",
)
REPLICATION_OPTION = typer.Option(
    False,
    "--replication",
    help="Run the replication deep checks (primary nodes only).",
)
LEVEL_OPTION = typer.Option(
    1,
    "--level",
    "-l",
    min=1,
    max=2,
    help="Escalation level: 1 runs fast checks, 2 adds slower exhaustive ones.",
)
STRICT_OPTION = typer.Option(
    False,
    "--strict",
    help="Exit with code 4 when any probe fails.",
)

_OUTCOME_STYLE = {
    ProbeOutcome.PASS: "[green]PASS[/green]",
    ProbeOutcome.DEGRADED: "[yellow]DEGR[/yellow]",
    ProbeOutcome.FAIL: "[red]FAIL[/red]",
    ProbeOutcome.SKIPPED: "[dim]SKIP[/dim]",
}
_SUMMARY_STYLE = {
    ProbeOutcome.PASS: "[green]HEALTHY[/green]",
    ProbeOutcome.DEGRADED: "[yellow]DEGRADED[/yellow]",
    ProbeOutcome.FAIL: "[red]FAILING[/red]",
    ProbeOutcome.SKIPPED: "[dim]NOT CHECKED[/dim]",
}
_SECTION_TITLES = {
    ProbeKind.UPTIME: "Process uptime",
    ProbeKind.ACTIVITY: "Recent activity",
    ProbeKind.SUBSYSTEM: "Subsystem health",
    ProbeKind.ROLE_SPECIFIC: "Role-specific checks",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Point-in-time health checks for service nodes.

        Resolve a node from the inventory, run uptime, activity, subsystem and
        role-specific probes within a short time budget, and print the result.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Shared collaborators for every command invocation."""

    config: AppConfig
    logger: StructuredLogger
    resolver: InventoryResolver
    failures: FailureHistoryStore
    agent_factory: AgentFactory

    def build_engine(self) -> DiagnosticsEngine:
        """Return a diagnostics engine wired to this runtime."""
        return DiagnosticsEngine(
            resolver=self.resolver,
            failures=self.failures,
            agent_factory=self.agent_factory,
            services=self.config.services,
            thresholds=self.config.thresholds,
            options=ProbeExecutorOptions(
                max_concurrency=self.config.subsystem.max_concurrency,
                component_timeout=self.config.subsystem.timeout,
            ),
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    agent_config = config.agent

    def _agent_factory(node: Node) -> NodeAgentClient:
        return NodeAgentClient.for_node(node, agent_config)

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        resolver=InventoryResolver(config.inventory_file),
        failures=FailureHistoryStore(config.failures_file),
        agent_factory=_agent_factory,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nodehealth version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"nodehealth {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _print_json(payload: object) -> None:
    console.print(
        json.dumps(payload, indent=2, default=str),
        markup=False,
        highlight=False,
        emoji=False,
        soft_wrap=True,
    )


def _flags(queues: bool, mailflow: bool, replication: bool) -> DeepCheckFlags:
    return DeepCheckFlags(queues=queues, mailflow=mailflow, replication=replication)


def _collect_ids(results: Sequence[ProbeResult], outcome: ProbeOutcome) -> list[str]:
    """Return identifiers for results matching a particular outcome."""
    return [result.id for result in results if result.outcome is outcome]


def _known_failures(report: HealthReport) -> list[Mapping[str, object]]:
    for result in report.results:
        if result.data and result.data.get("known_failures"):
            return list(result.data["known_failures"])
    return []


def _render_report(report: HealthReport) -> None:
    """Render a health report in a human-friendly, sectioned format."""
    node = report.node
    metadata = report.metadata or {}
    console.print(
        f"[bold]Node {escape(node.name)}[/bold] "
        f"(role={node.role.value}, level={metadata.get('level', 1)})"
    )
    if node.metadata:
        details = ", ".join(f"{key}={value}" for key, value in node.metadata.items())
        console.print(f"  {escape(details)}")

    current_kind: ProbeKind | None = None
    for result in report.results:
        if result.kind is not current_kind:
            current_kind = result.kind
            console.print()
            console.print(f"[bold underline]{_SECTION_TITLES[result.kind]}[/bold underline]")
        label = _OUTCOME_STYLE[result.outcome]
        console.print(f"{label} {result.id}: {escape(result.message)}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")
        if result.outcome is not ProbeOutcome.SKIPPED and result.duration_ms is not None:
            console.print(f"  duration: {result.duration_ms} ms")

    failures = _known_failures(report)
    if failures:
        console.print()
        console.print("[bold underline]Known failures[/bold underline]")
        for record in failures:
            console.print(f"  {escape(json.dumps(record, default=str, sort_keys=True))}")

    totals = report.summary.totals
    console.print()
    console.print(
        f"Summary: {_SUMMARY_STYLE[report.summary.outcome]} "
        f"pass={totals.get(ProbeOutcome.PASS, 0)} "
        f"degraded={totals.get(ProbeOutcome.DEGRADED, 0)} "
        f"fail={totals.get(ProbeOutcome.FAIL, 0)} "
        f"skipped={totals.get(ProbeOutcome.SKIPPED, 0)}"
    )
    console.print(f"Elapsed: {report.duration_ms / 1000:.2f} s")
    for note in metadata.get("notes", []) or []:
        console.print(f"[yellow]{escape(str(note))}[/yellow]")
    if metadata.get("budget_exceeded"):
        console.print(
            f"[yellow]Run exceeded the {metadata.get('budget_seconds')} s time budget.[/yellow]"
        )


def _render_plan(node: Node, plan: GatePlan) -> None:
    table = Table(title=f"Probe plan for {node.name} (role={node.role.value}, level={plan.level})")
    table.add_column("Probe", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Runs")
    table.add_column("Reason")
    for entry in plan.entries:
        table.add_row(
            entry.spec.id,
            entry.spec.kind.value,
            "yes" if entry.selected else "no",
            "" if entry.selected else entry.skip_message(),
        )
    console.print(table)


@app.command()
def check(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node name, alias or FQDN from the inventory."),
    queues: bool = QUEUES_OPTION,
    mailflow: bool = MAILFLOW_OPTION,
    replication: bool = REPLICATION_OPTION,
    level: int = LEVEL_OPTION,
    json_output: bool = JSON_OPTION,
    strict: bool = STRICT_OPTION,
) -> None:
    """Run the health checks for NODE and print the report."""
    runtime = _get_runtime(ctx)
    flags = _flags(queues, mailflow, replication)
    with runtime.logger.operation(
        "check",
        args={
            "flags": flags.to_dict(),
            "level": level,
            "json": json_output,
            "strict": strict,
        },
        target={"kind": "node", "identifier": node},
    ) as op:
        try:
            run_config = RunConfig(target=node, flags=flags, level=level)
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        engine = runtime.build_engine()
        try:
            report = engine.run(run_config, strict=strict)
        except NodeResolutionError as exc:
            _command_error(op, str(exc), rc=ExitCode.RESOLUTION)
        except InventoryError as exc:
            _command_error(
                op,
                f"Node '{node}': directory lookup failed: {exc}",
                rc=ExitCode.RESOLUTION,
            )

        payload = serialize_report(report)
        if json_output:
            _print_json(payload)
        else:
            _render_report(report)

        summary = report.summary
        degraded_ids = _collect_ids(report.results, ProbeOutcome.DEGRADED)
        failed_ids = _collect_ids(report.results, ProbeOutcome.FAIL)
        log_context = {"report": payload}
        if summary.exit_code != ExitCode.OK:
            op.error(
                "Health check found failing probes.",
                rc=summary.exit_code,
                errors=failed_ids or None,
                warnings=degraded_ids or None,
                context=log_context,
            )
            raise typer.Exit(code=summary.exit_code)
        if failed_ids or degraded_ids:
            op.warning(
                "Health check completed with findings.",
                warnings=degraded_ids or None,
                errors=failed_ids or None,
                context=log_context,
            )
            return
        op.success("Health check completed.", context=log_context)


@app.command()
def plan(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node name, alias or FQDN from the inventory."),
    queues: bool = QUEUES_OPTION,
    mailflow: bool = MAILFLOW_OPTION,
    replication: bool = REPLICATION_OPTION,
    level: int = LEVEL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show which probes a check of NODE would run, without running them."""
    runtime = _get_runtime(ctx)
    flags = _flags(queues, mailflow, replication)
    with runtime.logger.operation(
        "plan",
        args={"flags": flags.to_dict(), "level": level, "json": json_output},
        target={"kind": "node", "identifier": node},
    ) as op:
        try:
            prepared = runtime.build_engine().prepare(
                RunConfig(target=node, flags=flags, level=level)
            )
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except NodeResolutionError as exc:
            _command_error(op, str(exc), rc=ExitCode.RESOLUTION)
        except InventoryError as exc:
            _command_error(
                op,
                f"Node '{node}': directory lookup failed: {exc}",
                rc=ExitCode.RESOLUTION,
            )

        payload = {"node": prepared.node.to_dict(), **serialize_plan(prepared.plan)}
        if json_output:
            _print_json(payload)
        else:
            _render_plan(prepared.node, prepared.plan)
        op.success(
            "Probe plan computed.",
            context={"selected": list(prepared.plan.selected_ids())},
        )


@app.command()
def nodes(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the nodes known to the inventory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("nodes", target={"kind": "inventory"}) as op:
        try:
            entries = runtime.resolver.entries()
        except InventoryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if json_output:
            _print_json([entry.to_dict() for entry in entries])
        elif not entries:
            console.print("No nodes in the inventory.")
        else:
            table = Table(title="Inventory")
            table.add_column("Name", no_wrap=True)
            table.add_column("FQDN")
            table.add_column("Role")
            for entry in entries:
                table.add_row(entry.name, entry.fqdn or "", entry.role_label or "")
            console.print(table)
        op.success(f"Listed {len(entries)} node(s).")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the effective configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", target={"kind": "config"}) as op:
        payload = runtime.config.to_dict()
        if json_output:
            _print_json(payload)
        else:
            for key, value in payload.items():
                console.print(f"{key}: {escape(json.dumps(value))}")
        op.success("Displayed configuration.")


def main() -> None:
    """Console script entry point."""
    app()
