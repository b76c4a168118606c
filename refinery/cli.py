"""
REFINERY CLI — The Interface

Pipeline commands:
  - refinery refine <target> --intent "..."   (start a pipeline)
  - refinery next <pipeline_id>               (advance one step)
  - refinery status [pipeline_id]             (inspect)
  - refinery cancel / purge

Engine commands:
  - refinery register / ingest / consensus / triage
  - refinery approve / decide / decisions
  - refinery audit [--verify]
  - refinery doctor                           (config + API keys)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig, load_config, validate_api_keys
from refinery.decision import ADRManager, OscillationEngine, PolicyEngine, TriageEngine
from refinery.event_bus import EventBus
from refinery.governance import GovernanceGate, InvalidApprovalError
from refinery.identity import BANNER, __codename__, __tagline__, __version__
from refinery.models import ADRInput, TargetConfig
from refinery.orchestrator import Orchestrator, normalize_target
from refinery.research import ConsensusEngine, FindingValidationError, ResearchService, normalize_findings
from refinery.routing import DeliberationEngine, Router
from refinery.state import StepResult
from refinery.storage import Database, RecordNotFoundError, StaleRecordError

load_dotenv()
load_dotenv(Path.home() / ".refinery" / ".env")

app = typer.Typer(
    name="refinery",
    help=f"{__codename__} — {__tagline__}\nThe governed refinement pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner / wiring
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _context(repo: Optional[Path], verbose: bool) -> tuple[RefineryConfig, Database, AuditLog, EventBus]:
    _configure_logging(verbose)
    config = load_config(repo.resolve() if repo else None)
    audit = AuditLog(config.data_path)
    bus = EventBus()
    db = Database(config.data_path, bus=bus, audit=audit)
    return config, db, audit, bus


def _orchestrator(repo: Optional[Path], verbose: bool, deliberate: bool = False) -> Orchestrator:
    config, db, audit, bus = _context(repo, verbose)
    deliberation = DeliberationEngine(config, db, audit, Router(config)) if deliberate else None
    return Orchestrator(config, db=db, audit=audit, bus=bus, deliberation=deliberation)


def _print_step(result: StepResult) -> None:
    color = {
        "waiting_agent": "cyan",
        "waiting_user": "yellow",
        "completed": "green",
        "error": "red",
        "cancelled": "red",
    }.get(result.status, "white")
    body = [
        f"[bold]{result.message}[/]",
        "",
        f"Pipeline: {result.pipeline_id}",
        f"Progress: {result.data.get('progress', '?')}  ({' → '.join(result.data.get('overlays', []))})",
    ]
    if result.agents:
        body.append(f"Agents:   {', '.join(result.agents)}")
    body += ["", f"[bold]Next ({result.next.control}):[/] {result.next.description}"]
    console.print(Panel("\n".join(body), title=f"{result.overlay} · {result.status}", border_style=color))
    if result.next.instruction:
        console.print(result.next.instruction, highlight=False, markup=False)


def _read_findings(path: Path) -> list:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and "findings" in data:
        return data["findings"]
    return data


# ---------------------------------------------------------------------------
# Pipeline commands
# ---------------------------------------------------------------------------

@app.command()
def refine(
    target: str = typer.Argument(..., help="Target id (use 'self' for this engine)"),
    intent: str = typer.Option("refine", "--intent", "-i", help="What you want done"),
    context: str = typer.Option("", "--context", "-c", help="Extra context for the research prompts"),
    content: Optional[Path] = typer.Option(None, "--content", help="File with external research content"),
    multi_model: bool = typer.Option(False, "--multi-model", help="Request multi-source deliberation"),
    deliberate: bool = typer.Option(False, "--deliberate", help="Call the configured models during deliberation"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Repository holding .refinery/config.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start a refinement pipeline."""
    _print_banner()
    orch = _orchestrator(repo, verbose, deliberate)
    research_content = content.read_text(encoding="utf-8") if content else ""
    result = orch.start(
        target, intent,
        context=context,
        research_content=research_content,
        multi_model=multi_model,
    )
    _print_step(result)


@app.command("next")
def next_step(
    pipeline_id: str = typer.Argument(..., help="Pipeline id"),
    findings: Optional[Path] = typer.Option(None, "--findings", "-f", help="JSON file with findings"),
    session: Optional[str] = typer.Option(None, "--session", help="Deliberation session id"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Notes for the current overlay"),
    force: bool = typer.Option(False, "--force", help="Skip the current overlay"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Advance a pipeline by one step."""
    orch = _orchestrator(repo, verbose)
    agent_input: dict = {}
    if findings:
        agent_input["findings"] = _read_findings(findings)
    if session:
        agent_input["session_id"] = session
    if notes:
        agent_input["notes"] = notes

    try:
        result = orch.advance(pipeline_id, agent_input, force_advance=force)
    except RecordNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except StaleRecordError as e:
        console.print(f"[red]Pipeline changed underneath this call: {e}[/]")
        raise typer.Exit(1)
    _print_step(result)


@app.command()
def status(
    pipeline_id: Optional[str] = typer.Argument(None, help="Pipeline id (default: active pipeline)"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Active pipeline for this target"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Show a pipeline and what it is waiting for."""
    orch = _orchestrator(repo, False)
    try:
        state = orch.status(pipeline_id) if pipeline_id else orch.active_pipeline(target)
    except RecordNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    if state is None:
        console.print("[dim]No active pipeline.[/]")
        return

    table = Table(title=f"Pipeline {state.pipeline_id}", border_style="cyan")
    table.add_column("Property")
    table.add_column("Value")
    table.add_row("Target", state.target)
    table.add_row("Command", state.command)
    table.add_row("Status", state.status)
    table.add_row("Overlays", " → ".join(
        f"[bold]{o}[/]" if i == state.overlay_index else o for i, o in enumerate(state.overlays)
    ))
    table.add_row("Step", str(state.step_within_overlay))
    if state.error:
        table.add_row("Error", f"[red]{state.error}[/]")
    console.print(table)
    console.print_json(json.dumps(orch.overlay_requirements(state), default=str))


@app.command()
def cancel(
    pipeline_id: str = typer.Argument(..., help="Pipeline id"),
    reason: str = typer.Option("Cancelled by user", "--reason"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Cancel a pipeline."""
    orch = _orchestrator(repo, False)
    try:
        state = orch.cancel(pipeline_id, reason)
    except RecordNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[yellow]{state.pipeline_id}: {state.status}[/]")


@app.command()
def purge(
    reason: str = typer.Option("Purged: orphaned pipeline from a prior session", "--reason"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Cancel every pipeline that is not finished."""
    result = _orchestrator(repo, False).purge_stuck(reason)
    console.print(f"[yellow]Purged {result['purged']} pipeline(s)[/]")
    for p in result["pipelines"]:
        console.print(f"  {p['pipeline_id']} ({p['target']}) at {p['was_at']}")


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------

@app.command()
def approve(
    target_type: str = typer.Argument(..., help="proposal | plan | release | adr_override | pipeline"),
    target_id: str = typer.Argument(..., help="Id of the thing being approved"),
    approved_by: str = typer.Option(..., "--by", help="Who approves"),
    notes: str = typer.Option("", "--notes"),
    risk_acknowledged: bool = typer.Option(True, "--risk-ack/--no-risk-ack"),
    rollback_acknowledged: bool = typer.Option(True, "--rollback-ack/--no-rollback-ack"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Record a governance approval."""
    _, db, audit, _ = _context(repo, False)
    try:
        approval = GovernanceGate(db, audit).record_approval(
            target_type, target_id, approved_by, risk_acknowledged, rollback_acknowledged, notes,
        )
    except InvalidApprovalError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {approval.approval_id}: {target_type} {target_id} approved by {approved_by}[/]")


@app.command()
def register(
    target: str = typer.Argument(..., help="Target id"),
    autonomy: str = typer.Option("pr_only", "--autonomy", help="advisory | pr_only | auto_merge | auto_release"),
    budget: int = typer.Option(5, "--budget", help="Changes allowed per window"),
    window_hours: int = typer.Option(24, "--window-hours"),
    max_loc: int = typer.Option(500, "--max-loc"),
    category: list[str] = typer.Option([], "--category", help="Allowed proposal category (repeatable)"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Register or update a target's governance settings."""
    config, db, audit, _ = _context(repo, False)
    saved = db.upsert_target(TargetConfig(
        target=normalize_target(target),
        autonomy_level=autonomy,
        change_budget_per_window=budget,
        window_hours=window_hours,
        allowed_categories=category,
        max_loc_per_pr=max_loc,
        scorecard_weights=dict(config.triage.scorecard_weights),
    ))
    PolicyEngine(config, db, audit).seed_defaults()
    console.print(f"[green]✓ Registered {saved.target} ({saved.autonomy_level}, budget {saved.change_budget_per_window})[/]")


# ---------------------------------------------------------------------------
# Research / decision engines
# ---------------------------------------------------------------------------

@app.command()
def ingest(
    target: str = typer.Argument(..., help="Target id"),
    perspective: str = typer.Option(..., "--perspective", "-p"),
    findings: Path = typer.Option(..., "--findings", "-f", help="JSON file with findings"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Store one perspective's findings."""
    _, db, audit, _ = _context(repo, verbose)
    try:
        parsed = normalize_findings(_read_findings(findings))
    except FindingValidationError as e:
        console.print(f"[red]Findings rejected:[/]")
        for problem in e.problems:
            console.print(f"  - {problem}")
        raise typer.Exit(1)
    entry = ResearchService(db, audit).store(normalize_target(target), perspective, "manual", parsed)
    console.print(f"[green]✓ {entry.feed_id}: {len(parsed)} finding(s), confidence {entry.confidence:.2f}[/]")


@app.command()
def consensus(
    target: str = typer.Argument(..., help="Target id"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Compute consensus over every stored feed for a target."""
    config, db, audit, _ = _context(repo, verbose)
    result = ConsensusEngine(config, db, audit).compute(normalize_target(target))

    table = Table(title=f"Consensus {result.consensus_id}", border_style="cyan")
    table.add_column("Claim")
    table.add_column("Perspectives")
    table.add_column("Agreement")
    table.add_column("Confidence")
    table.add_column("Risk")
    for f in result.findings:
        table.add_row(f.claim[:70], ", ".join(f.supporting_perspectives),
                      f"{f.agreement_score:.2f}", f"{f.combined_confidence:.2f}", f.risk_level)
    console.print(table)
    console.print(f"[dim]Overall agreement: {result.overall_agreement:.2f}[/]")


@app.command()
def triage(
    target: str = typer.Argument(..., help="Target id"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Triage the latest consensus for a target into proposals."""
    config, db, audit, bus = _context(repo, verbose)
    latest = db.latest_consensus(normalize_target(target))
    if latest is None:
        console.print(f"[red]No consensus for {target}. Run `refinery consensus {target}` first.[/]")
        raise typer.Exit(1)

    policy = PolicyEngine(config, db, audit)
    oscillation = OscillationEngine(config, db, audit)
    result = TriageEngine(config, db, audit, policy, oscillation, bus=bus).triage(latest)

    table = Table(title=f"Triage: {result.target}", border_style="cyan")
    table.add_column("Proposal", style="dim")
    table.add_column("Priority")
    table.add_column("Category")
    table.add_column("Risk")
    table.add_column("Reason")
    for t in result.proposals:
        color = "green" if t.actionable else "red"
        table.add_row(t.proposal.proposal_id, str(t.proposal.priority), t.proposal.category,
                      t.proposal.risk_level, f"[{color}]{t.reason}[/]")
    console.print(table)
    for esc in result.escalations:
        console.print(f"[yellow]⚠ {esc.message}[/]")
    console.print(f"[dim]Budget remaining: {result.budget_remaining}[/]")


@app.command()
def decide(
    target: str = typer.Argument(..., help="Target id"),
    title: str = typer.Option(..., "--title"),
    decision: str = typer.Option(..., "--decision"),
    rationale: str = typer.Option("", "--rationale"),
    confidence: float = typer.Option(0.7, "--confidence"),
    cooldown_hours: Optional[float] = typer.Option(None, "--cooldown-hours"),
    supersede: Optional[str] = typer.Option(None, "--supersede", help="ADR id this decision replaces"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Record an architecture decision."""
    config, db, audit, _ = _context(repo, False)
    manager = ADRManager(config, db, audit)
    data = ADRInput(
        target=normalize_target(target), title=title, decision=decision,
        rationale=rationale, confidence=confidence, cooldown_hours=cooldown_hours,
    )
    try:
        if supersede:
            old, adr = manager.supersede(supersede, data)
            console.print(f"[yellow]{old.adr_id} superseded[/]")
        else:
            adr = manager.record(data)
    except (RecordNotFoundError, StaleRecordError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {adr.adr_id}: {adr.title} (cooldown until {adr.cooldown_until[:19]})[/]")


@app.command()
def decisions(
    target: Optional[str] = typer.Argument(None, help="Target id"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """List active architecture decisions."""
    config, db, audit, _ = _context(repo, False)
    adrs = ADRManager(config, db, audit).active(normalize_target(target) if target else None)
    if not adrs:
        console.print("[dim]No active decisions.[/]")
        return
    table = Table(title="Active Decisions", border_style="cyan")
    table.add_column("ADR", style="dim")
    table.add_column("Target")
    table.add_column("Title")
    table.add_column("Confidence")
    table.add_column("Cooldown until", style="dim")
    for adr in adrs:
        table.add_row(adr.adr_id, adr.target, adr.title, f"{adr.confidence:.2f}", adr.cooldown_until[:19])
    console.print(table)


@app.command()
def audit(
    action: Optional[str] = typer.Option(None, "--action"),
    target_id: Optional[str] = typer.Option(None, "--target-id"),
    pipeline: Optional[str] = typer.Option(None, "--pipeline", help="Correlation id"),
    limit: int = typer.Option(20, "--limit", "-n"),
    verify: bool = typer.Option(False, "--verify", help="Verify the hash chain"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Query the audit log."""
    _, _, log, _ = _context(repo, False)

    if verify:
        result = log.verify()
        if result.valid:
            console.print(f"[green]✓ Audit chain intact ({result.entries} entries)[/]")
            return
        console.print(f"[red]✗ Audit chain broken at line {result.broken_at}: {result.reason}[/]")
        raise typer.Exit(1)

    entries = log.query(action=action, target_id=target_id, correlation_id=pipeline, limit=limit)
    if not entries:
        console.print("[dim]No audit entries.[/]")
        return
    table = Table(title=f"Audit (latest {limit})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Action")
    table.add_column("Actor")
    table.add_column("Target")
    for e in entries:
        table.add_row(e["timestamp"][:19], e["action"], e["actor"], f"{e['target_type']}:{e['target_id']}")
    console.print(table)


@app.command()
def doctor(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check REFINERY configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    console.print(f"\n[bold]Storage:[/]")
    console.print(f"  Data:   {config.data_path}")
    console.print(f"  Source: {config.source_path}")

    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Architect:  {config.routing.architect}")
    console.print(f"  Workhorse:  {config.routing.workhorse}")
    console.print(f"  Fast:       {config.routing.fast}")
    if config.routing.architect_pair:
        console.print(f"  Pair:       {' + '.join(config.routing.architect_pair)}")

    console.print(f"\n[bold]Defaults:[/]")
    console.print(f"  Autonomy:          {config.defaults.autonomy_level}")
    console.print(f"  Change budget:     {config.defaults.change_budget_per_window} / {config.defaults.window_hours}h")
    console.print(f"  ADR cooldown:      {config.defaults.cooldown_hours}h")
    console.print(f"  Confidence margin: {config.defaults.min_confidence_margin}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
