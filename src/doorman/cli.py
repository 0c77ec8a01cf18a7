"""Command-line interface for doorman."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from doorman import __version__
from doorman.config import CONFIG_FILE_NAMES, DoormanSettings, generate_example_settings, load_settings
from doorman.core.backup import BackupStore
from doorman.core.migration import auto_migrate
from doorman.core.models import (
    ChangeSet,
    IdRepair,
    IssueSeverity,
    ProviderType,
    SyncOptions,
    UnifiedConfig,
    ValidationResult,
)
from doorman.core.orchestrator import Downloaded, OrchestratedSync, SyncOrchestrator
from doorman.core.storage import ConfigStore
from doorman.core.templates import apply_template, get_template, list_templates
from doorman.core.validation import validate_config_data
from doorman.errors import ConfigValidationError, DoormanError
from doorman.providers.registry import (
    DetectionResult,
    ProviderDetector,
    create_default_registry,
    create_offline_service,
)
from doorman.translation.compatibility import CompatibilityMatrix
from doorman.utils.logging import configure_logging, get_logger

app = typer.Typer(
    name="doorman",
    help="Firewall rules as code for Vercel Firewall and Cloudflare WAF.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
logger = get_logger(__name__)


@dataclass
class CliState:
    """Options shared by every command."""

    settings_path: Path | None = None
    rules_path: Path | None = None
    provider: str | None = None
    level_forced: bool = False


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"doorman version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output."),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Suppress non-essential output."),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to the rules configuration (JSON).",
            dir_okay=False,
        ),
    ] = None,
    settings: Annotated[
        Path | None,
        typer.Option(
            "--settings",
            help="Path to a .doorman.yml settings file.",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    provider: Annotated[
        str | None,
        typer.Option("--provider", "-p", help="Provider to use (vercel, cloudflare)."),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """Doorman - keep firewall rules in version control."""
    log_level = "DEBUG" if verbose else "WARNING" if quiet else "INFO"
    configure_logging(level=log_level)
    ctx.obj = CliState(
        settings_path=settings,
        rules_path=config,
        provider=provider,
        level_forced=verbose or quiet,
    )


def _handle_cli_error(error: Exception) -> None:
    """Display a user-friendly error and exit.

    Raises:
        typer.Exit: Always exits with code 1.
    """
    if isinstance(error, ConfigValidationError):
        console.print(f"[bold red]Error:[/bold red] configuration has {len(error.issues)} error(s)")
        _print_issues(ValidationResult(issues=error.issues))
        console.print(f"[yellow]Hint:[/yellow] {error.hint}")
    elif isinstance(error, DoormanError):
        console.print(f"[bold red]Error:[/bold red] {error.message}")
        if error.hint:
            console.print(f"[yellow]Hint:[/yellow] {error.hint}")
    else:
        console.print(f"[red]Error: {error}[/red]")
        logger.exception("Command failed")

    raise typer.Exit(code=1)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _settings(state: CliState) -> DoormanSettings:
    settings = load_settings(state.settings_path)
    if not state.level_forced:
        configure_logging(level=settings.log_level)
    return settings


def _store(state: CliState, settings: DoormanSettings) -> ConfigStore:
    return ConfigStore(state.rules_path or Path(settings.config_path))


def _raw_config(store: ConfigStore) -> dict[str, Any]:
    if not store.exists():
        return {}
    raw, _ = auto_migrate(store.load_raw())
    return raw


def _prompt_provider(choices: list[ProviderType]) -> ProviderType | None:
    if not sys.stdin.isatty():
        return None
    answer = typer.prompt(
        f"Which provider? ({', '.join(c.value for c in choices)})",
        default=ProviderType.VERCEL.value,
    )
    try:
        return ProviderType(answer.strip().lower())
    except ValueError:
        return None


def _detect(state: CliState, settings: DoormanSettings, raw: dict[str, Any]) -> DetectionResult:
    detection = ProviderDetector().resolve(raw, explicit=state.provider or settings.provider, prompt=_prompt_provider)
    logger.debug("Using %s (%s confidence): %s", detection.display_name, detection.confidence.value, "; ".join(detection.reasons))
    return detection


def _print_issues(result: ValidationResult) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Severity")
    table.add_column("Path")
    table.add_column("Message")
    for issue in result.issues:
        color = "red" if issue.severity == IssueSeverity.ERROR else "yellow"
        table.add_row(f"[{color}]{issue.severity.value}[/{color}]", issue.path or "<root>", issue.message)
    console.print(table)


def _print_changes(changes: ChangeSet) -> None:
    if not changes.has_changes:
        console.print("[green]No changes.[/green] Remote configuration matches local.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Change")
    table.add_column("Type")
    table.add_column("Name")
    rows = [
        ("[red]delete[/red]", "rule", [r.name for r in changes.rules_to_delete]),
        ("[red]delete[/red]", "ip", [r.ip for r in changes.ips_to_delete]),
        ("[green]add[/green]", "rule", [r.name for r in changes.rules_to_add]),
        ("[green]add[/green]", "ip", [r.ip for r in changes.ips_to_add]),
        ("[yellow]update[/yellow]", "rule", [r.name for r in changes.rules_to_update]),
        ("[yellow]update[/yellow]", "ip", [r.ip for r in changes.ips_to_update]),
    ]
    for label, kind, names in rows:
        for name in names:
            table.add_row(label, kind, name)
    console.print(table)
    console.print(f"{changes.total} change(s) pending")


@app.command()
def validate(ctx: typer.Context) -> None:
    """Validate the local rules configuration."""
    state = _state(ctx)
    try:
        settings = _settings(state)
        store = _store(state, settings)
        raw = _raw_config(store) if store.exists() else store.load_raw()
        config, result = validate_config_data(raw)
        if config is not None:
            detection = _detect(state, settings, raw)
            result = create_offline_service(detection.provider or ProviderType.VERCEL).validate_config(config)
    except DoormanError as e:
        _handle_cli_error(e)
        return

    if result.issues:
        _print_issues(result)
    if not result.valid:
        console.print(f"[bold red]Invalid:[/bold red] {len(result.errors)} error(s), {len(result.warnings)} warning(s)")
        raise typer.Exit(code=1)
    console.print(f"[green]Valid.[/green] {len(result.warnings)} warning(s)")


@app.command()
def diff(ctx: typer.Context) -> None:
    """Show the changes a sync would make."""
    state = _state(ctx)

    async def run() -> ChangeSet:
        settings = _settings(state)
        store = _store(state, settings)
        raw = _raw_config(store)
        detection = _detect(state, settings, raw)
        registry = create_default_registry(settings, raw)
        try:
            service = registry.get(detection.provider or ProviderType.VERCEL)
            _, changes = await SyncOrchestrator(service, store).plan()
            return changes
        finally:
            await registry.aclose()

    try:
        changes = asyncio.run(run())
    except DoormanError as e:
        _handle_cli_error(e)
        return
    _print_changes(changes)


@app.command()
def sync(
    ctx: typer.Context,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Report changes without applying them."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Apply identifier repairs without asking."),
    ] = False,
) -> None:
    """Push the local rules to the provider."""
    state = _state(ctx)

    def confirm(repairs: list[IdRepair]) -> bool:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Rule")
        table.add_column("Local id")
        table.add_column("Remote id")
        for repair in repairs:
            table.add_row(repair.name, repair.old_id or "<none>", repair.new_id)
        console.print(table)
        if yes:
            return True
        if not sys.stdin.isatty():
            return False
        return typer.confirm("Update local rule ids to match the provider?", default=True)

    async def run() -> OrchestratedSync:
        settings = _settings(state)
        store = _store(state, settings)
        raw = _raw_config(store)
        detection = _detect(state, settings, raw)
        registry = create_default_registry(settings, raw)
        try:
            service = registry.get(detection.provider or ProviderType.VERCEL)
            orchestrator = SyncOrchestrator(service, store)
            options = SyncOptions(
                dry_run=dry_run,
                max_attempts=settings.http.max_retries or 1,
                retry_delay=settings.http.retry_delay,
            )
            return await orchestrator.sync(options, confirm_repairs=confirm)
        finally:
            await registry.aclose()

    try:
        outcome = asyncio.run(run())
    except DoormanError as e:
        _handle_cli_error(e)
        return

    if outcome.result.dry_run:
        _print_changes(outcome.changes)
    console.print(f"[green]{outcome.summary}[/green]")
    if outcome.repairs_applied:
        console.print(f"Updated {len(outcome.id_repairs)} local rule id(s)")


@app.command()
def health(ctx: typer.Context) -> None:
    """Score the local rules configuration."""
    state = _state(ctx)
    try:
        settings = _settings(state)
        store = _store(state, settings)
        config = store.load()
        detection = _detect(state, settings, _raw_config(store))
        score = create_offline_service(detection.provider or ProviderType.VERCEL).get_health_score(config)
    except DoormanError as e:
        _handle_cli_error(e)
        return

    color = {"excellent": "green", "good": "green", "fair": "yellow"}.get(score.grade, "red")
    console.print(f"Health score: [{color}]{score.score}/100 ({score.grade})[/{color}]")
    if score.issues:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Severity")
        table.add_column("Category")
        table.add_column("Issue")
        for issue in score.issues:
            table.add_row(issue.severity.value, issue.category, issue.message)
        console.print(table)
    for recommendation in score.recommendations:
        console.print(f"  - {recommendation}")


@app.command()
def compat(
    source: Annotated[str, typer.Argument(help="Provider the rules target today.")],
    target: Annotated[str, typer.Argument(help="Provider to compare against.")],
) -> None:
    """Show which features carry over between two providers."""
    try:
        report = CompatibilityMatrix().get_migration_report(ProviderType(source.lower()), ProviderType(target.lower()))
    except ValueError:
        console.print(f"[bold red]Error:[/bold red] providers must be one of: {', '.join(p.value for p in ProviderType)}")
        raise typer.Exit(code=1) from None

    console.print(f"[bold]{source} -> {target}[/bold]")
    console.print(f"[green]Fully supported ({len(report.fully_supported)})[/green]")
    for entry in report.fully_supported:
        console.print(f"  {entry}")
    console.print(f"[yellow]Partially supported ({len(report.partially_supported)})[/yellow]")
    for entry in report.partially_supported:
        console.print(f"  {entry}")
    console.print(f"[red]Not supported ({len(report.not_supported)})[/red]")
    for entry in report.not_supported:
        console.print(f"  {entry}")
    if report.warnings:
        console.print("[bold]Warnings[/bold]")
        for warning in report.warnings:
            console.print(f"  - {warning}")


@app.command()
def detect(ctx: typer.Context) -> None:
    """Show which provider would be used and why."""
    state = _state(ctx)
    try:
        settings = _settings(state)
        raw = _raw_config(_store(state, settings))
    except DoormanError as e:
        _handle_cli_error(e)
        return
    result = ProviderDetector().detect(raw, explicit=state.provider or settings.provider)
    console.print(f"Provider: [bold]{result.display_name}[/bold] ({result.confidence.value} confidence)")
    for reason in result.reasons:
        console.print(f"  - {reason}")


def _print_rules(config: UnifiedConfig) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Action")
    table.add_column("Conditions", justify="right")
    for rule in config.rules:
        table.add_row(
            "[green]on[/green]" if rule.enabled else "[red]off[/red]",
            rule.id or "-",
            rule.name,
            rule.action.type.value,
            str(len(rule.conditions)),
        )
    console.print(table)
    console.print(f"{len(config.rules)} rule(s), {len(config.ips)} IP rule(s)")


@app.command()
def download(
    ctx: typer.Context,
    remote_version: Annotated[
        int | None,
        typer.Option("--remote-version", help="Download a historical remote version (Vercel only)."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show the remote rules without writing them."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Overwrite the local file without asking."),
    ] = False,
) -> None:
    """Replace the local rules with the provider's current rules."""
    state = _state(ctx)

    async def run() -> Downloaded:
        settings = _settings(state)
        store = _store(state, settings)
        overwriting = store.exists()

        def confirm(config: UnifiedConfig) -> bool:
            _print_rules(config)
            if yes or not overwriting:
                return True
            if not sys.stdin.isatty():
                console.print("[yellow]Local configuration exists; pass --yes to overwrite it.[/yellow]")
                return False
            return typer.confirm("Overwrite the local configuration with these rules?", default=False)

        raw = _raw_config(store)
        detection = _detect(state, settings, raw)
        registry = create_default_registry(settings, raw)
        try:
            service = registry.get(detection.provider or ProviderType.VERCEL)
            return await SyncOrchestrator(service, store).download(remote_version, dry_run=dry_run, confirm=confirm)
        finally:
            await registry.aclose()

    try:
        result = asyncio.run(run())
    except DoormanError as e:
        _handle_cli_error(e)
        return

    if dry_run:
        _print_rules(result.config)
        console.print("Dry run: no changes made.")
    elif result.written:
        console.print(f"[green]Downloaded {len(result.config.rules)} rule(s)[/green] (version {result.config.metadata.version})")
    else:
        console.print("Download cancelled.")
        raise typer.Exit(code=1)


@app.command()
def backup(
    ctx: typer.Context,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Backup directory (defaults to backup_dir setting)."),
    ] = None,
    list_backups: Annotated[
        bool,
        typer.Option("--list", "-l", help="List available backups."),
    ] = False,
    restore: Annotated[
        str | None,
        typer.Option("--restore", "-r", help="Restore the local configuration from a backup."),
    ] = None,
    local: Annotated[
        bool,
        typer.Option("--local", help="Back up the local file instead of the remote state."),
    ] = False,
) -> None:
    """Back up, list or restore firewall configurations."""
    state = _state(ctx)

    async def fetch_remote(settings: DoormanSettings, store: ConfigStore) -> tuple[UnifiedConfig, str]:
        raw = _raw_config(store)
        detection = _detect(state, settings, raw)
        registry = create_default_registry(settings, raw)
        try:
            service = registry.get(detection.provider or ProviderType.VERCEL)
            return await service.fetch_config(), service.provider.value
        finally:
            await registry.aclose()

    try:
        settings = _settings(state)
        backups = BackupStore(output or Path(settings.backup_dir))
        store = _store(state, settings)

        if list_backups:
            entries = backups.list_backups()
            if not entries:
                console.print("[yellow]No backups found.[/yellow]")
                return
            table = Table(show_header=True, header_style="bold")
            table.add_column("Backup")
            table.add_column("Created")
            table.add_column("Size", justify="right")
            for entry in entries:
                table.add_row(entry.name, entry.created.strftime("%Y-%m-%d %H:%M:%S"), f"{entry.size / 1024:.1f} KB")
            console.print(table)
            return

        if restore:
            config = backups.restore(restore, store)
            console.print(f"[green]Restored {store.path}[/green] from {restore} ({len(config.rules)} rule(s))")
            return

        if local:
            config = store.load()
            provider = (config.provider or _detect(state, settings, _raw_config(store)).provider or ProviderType.VERCEL).value
            path = backups.create(config, provider, source="local")
        else:
            config, provider = asyncio.run(fetch_remote(settings, store))
            path = backups.create(config, provider)
    except DoormanError as e:
        _handle_cli_error(e)
        return

    console.print(f"[green]Backup created:[/green] {path}")
    console.print(f"  {len(config.rules)} rule(s), {len(config.ips)} IP rule(s)")
    console.print(f"Restore with: doorman backup --restore {path.name}")


@app.command()
def template(
    ctx: typer.Context,
    name: Annotated[
        str | None,
        typer.Argument(help="Template to add; lists templates when omitted."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show the rules without adding them."),
    ] = False,
) -> None:
    """Add a ready-made rule template to the local configuration."""
    if name is None:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Template")
        table.add_column("Title")
        table.add_column("Rules", justify="right")
        for entry in list_templates():
            table.add_row(entry.name, entry.title, str(len(entry.rules)))
        console.print(table)
        return

    state = _state(ctx)
    try:
        chosen = get_template(name)
        settings = _settings(state)
        store = _store(state, settings)
        config = store.load() if store.exists() else UnifiedConfig()
        result = apply_template(config, chosen)
        if not dry_run and result.added:
            detection = _detect(state, settings, _raw_config(store))
            validation = create_offline_service(detection.provider or ProviderType.VERCEL).validate_config(
                result.config
            )
            if not validation.valid:
                raise ConfigValidationError(validation.errors)
            store.save(result.config)
    except DoormanError as e:
        _handle_cli_error(e)
        return

    for skipped in result.skipped:
        console.print(f"[yellow]Skipped existing rule:[/yellow] {skipped}")
    if dry_run:
        console.print(f"Dry run: template '{chosen.name}' would add {len(result.added)} rule(s)")
        for added in result.added:
            console.print(f"  + {added}")
        return
    console.print(f"[green]Added {len(result.added)} rule(s)[/green] from template '{chosen.name}' ({chosen.reference})")


@app.command()
def init(
    path: Annotated[
        Path,
        typer.Argument(help="Directory to create the settings file in."),
    ] = Path(),
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing settings file."),
    ] = False,
) -> None:
    """Create a .doorman.yml settings file."""
    settings_path = path / CONFIG_FILE_NAMES[0]

    if settings_path.exists() and not force:
        console.print(f"[yellow]Settings file already exists: {settings_path}[/yellow]")
        console.print("Use --force to overwrite.")
        raise typer.Exit(code=1)

    settings_path.write_text(generate_example_settings())
    console.print(f"Created settings file: {settings_path}")


if __name__ == "__main__":
    app()
