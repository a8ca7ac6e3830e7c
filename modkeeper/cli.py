from __future__ import annotations

import json
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text

from . import logs as logs_module
from . import mods as mods_module
from .config import (
    DEFAULT_CONFIG_FILENAME,
    ConfigError,
    ModkeeperConfig,
    USER_CONFIG_PATH,
    load_config,
    load_user_config,
    save_user_config,
)
from .coordinator import CheckRequest
from .errors import ModkeeperError, NotFound
from .notify import ConsoleNotificationSink
from .services import ERROR_REPORT_FILENAME, Services, build_services

app = typer.Typer(help="Mod lifecycle manager for Minecraft servers (modkeeper)")
mods_app = typer.Typer(help="Manage server mods and manifest entries")
integrity_app = typer.Typer(help="Verify file checksums and review corruption alerts")
watch_app = typer.Typer(help="Watch incompatible mods until a compatible version appears")
errors_app = typer.Typer(help="Review download and verification errors")
logs_app = typer.Typer(help="Inspect modkeeper logs")
user_config_app = typer.Typer(help="Manage user-level defaults")

app.add_typer(mods_app, name="mods")
app.add_typer(integrity_app, name="integrity")
app.add_typer(watch_app, name="watch")
app.add_typer(errors_app, name="errors")
app.add_typer(logs_app, name="logs")
app.add_typer(user_config_app, name="config")

_rich_console = Console()


def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, err=True, fg="red")
    raise typer.Exit(code=code)


def _load_or_exit(root: Path | None = None) -> ModkeeperConfig:
    try:
        return load_config(root=root)
    except ConfigError as exc:
        _fail(str(exc), code=2)


def _get_config(ctx: typer.Context) -> ModkeeperConfig:
    if ctx.obj is None:
        ctx.obj = {}
    cfg = ctx.obj.get("config")
    if cfg is None:
        cfg = _load_or_exit()
        ctx.obj["config"] = cfg
    return cfg


def _get_services(ctx: typer.Context) -> Services:
    cfg = _get_config(ctx)
    services = ctx.obj.get("services")
    if services is None:
        logs_module.configure_logging(cfg, verbose=ctx.obj.get("verbose", False))
        services = build_services(cfg, notifier=ConsoleNotificationSink(_rich_console))
        ctx.obj["services"] = services
    return services


def _load_manifest_or_exit(cfg: ModkeeperConfig) -> mods_module.ModManifest:
    try:
        return mods_module.load_manifest(cfg)
    except ModkeeperError as exc:
        _fail(str(exc))


def _persist_error_report(services: Services) -> None:
    if services.monitor.entries():
        services.monitor.periodic_report()


def _load_user_config_or_exit():
    try:
        return load_user_config()
    except ConfigError as exc:
        _fail(str(exc), code=2)


def _format_time(value: Optional[datetime]) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "-"


def _download_progress() -> Progress:
    return Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=_rich_console,
        transient=True,
    )


@user_config_app.command("show")
def user_config_show():
    """Display the user-level defaults stored under ~/.config."""
    cfg = _load_user_config_or_exit()
    table = Table(title="User config", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Server root", str(cfg.server_root) if cfg.server_root else "(not set)")
    table.add_row("File", str(USER_CONFIG_PATH))
    _rich_console.print(table)


@user_config_app.command("set-root")
def user_config_set_root(
    path: Path = typer.Argument(..., help="Path to your Minecraft server root (contains .modkeeper.json)"),
):
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        _fail(f"{resolved} does not exist.")
    if not resolved.is_dir():
        _fail(f"{resolved} is not a directory.")
    config_file = resolved / DEFAULT_CONFIG_FILENAME
    if not config_file.exists():
        typer.secho(
            f"Warning: {config_file} does not exist yet. Commands may fail until it's created.",
            fg="yellow",
        )
    cfg = _load_user_config_or_exit()
    cfg.server_root = resolved
    save_user_config(cfg)
    typer.secho(f"Default server root set to {resolved}", fg="green")
    typer.secho(f"Saved to {USER_CONFIG_PATH}", fg="cyan")


@user_config_app.command("clear-root")
def user_config_clear_root():
    cfg = _load_user_config_or_exit()
    cfg.server_root = None
    save_user_config(cfg)
    typer.secho("Cleared stored server root.", fg="yellow")


@app.callback()
def main(
    ctx: typer.Context,
    root: Path = typer.Option(None, "--root", help="Optional explicit server root directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs on the terminal"),
):
    ctx.obj = ctx.obj or {}
    ctx.obj["verbose"] = verbose
    if root is not None:
        ctx.obj["config"] = _load_or_exit(root=root)


@app.command("status")
def status_command(ctx: typer.Context):
    """Show configuration, installed mods and watch state."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)

    table = Table(title="modkeeper status", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Name", Text(cfg.name, style="bold cyan"))
    table.add_row("Type", Text(f"{cfg.server_type} {cfg.minecraft_version}", style="magenta"))
    table.add_row("Server root", Text(str(cfg.server_root), style="dim"))
    table.add_row("Data dir", Text(str(cfg.data_dir), style="dim"))
    table.add_row("Log file", Text(str(cfg.log_file), style="dim"))
    table.add_row("Registry", Text(cfg.registry_url, style="cyan"))

    try:
        manifest = mods_module.load_manifest(cfg)
    except ModkeeperError:
        table.add_row("Mods", Text("no manifest (run 'modkeeper mods init')", style="yellow"))
    else:
        pending = sum(1 for mod in manifest.mods if mod.available_update)
        table.add_row("Mods", f"{len(manifest.mods)} tracked, {pending} update(s) available")
        table.add_row("Last update check", _format_time(manifest.last_update_check))

    state = services.watcher.registry.state(cfg.server_root)
    table.add_row("Watched mods", str(len(state.watches)))
    table.add_row("Next availability check", _format_time(state.next_check))
    _rich_console.print(table)


@logs_app.command("tail")
def logs_tail(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to display"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
):
    """Tail the modkeeper log file."""
    cfg = _get_config(ctx)
    try:
        logs_module.tail_logs(cfg, lines=lines, follow=follow)
    except ModkeeperError as exc:
        _fail(str(exc))


@mods_app.command("init")
def mods_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing manifest"),
    adopt_existing: bool = typer.Option(False, "--adopt-existing", help="Add current files to manifest"),
):
    """Create a mods manifest in the server data directory."""
    cfg = _get_config(ctx)
    services = _get_services(ctx) if adopt_existing else None
    try:
        manifest, adopted = mods_module.init_manifest(
            cfg,
            force=force,
            adopt_existing=adopt_existing,
            verifier=services.verifier if services else None,
            registry=services.registry if services else None,
        )
    except ModkeeperError as exc:
        _fail(str(exc))
    typer.secho(
        f"Initialized manifest for loader={manifest.loader or 'unknown'} at {mods_module.manifest_path(cfg)}",
        fg="green",
    )
    if adopted:
        typer.secho(f"Adopted {adopted} existing mod(s).", fg="cyan")


@mods_app.command("status")
def mods_status(ctx: typer.Context):
    """Show manifest summary and filesystem drift."""
    cfg = _get_config(ctx)
    manifest = _load_manifest_or_exit(cfg)
    try:
        inv = mods_module.inventory(cfg, manifest)
    except ModkeeperError as exc:
        _fail(str(exc))

    summary = inv.summary
    table = Table(title="Mods summary", box=box.SIMPLE_HEAVY)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Tracked mods", str(summary["total"]))
    table.add_row("Healthy", str(summary["ok"]))
    table.add_row("Missing", str(summary["missing"]))
    table.add_row("Misplaced", str(summary["moved"]))
    table.add_row("Hash mismatch", str(summary["hash_mismatch"]))
    table.add_row("Extras", str(summary["extras"]))
    table.add_row("Updates available", str(sum(1 for mod in manifest.mods if mod.available_update)))
    _rich_console.print(table)

    if inv.extras:
        extra_table = Table(title="Untracked files", box=box.MINIMAL)
        extra_table.add_column("Filename")
        extra_table.add_column("Location")
        for extra in inv.extras:
            extra_table.add_row(extra.filename, extra.location)
        _rich_console.print(extra_table)


@mods_app.command("list")
def mods_list(
    ctx: typer.Context,
    include_extras: bool = typer.Option(True, "--show-extras/--no-show-extras", help="Toggle untracked files display"),
):
    """List mods tracked in the manifest."""
    cfg = _get_config(ctx)
    manifest = _load_manifest_or_exit(cfg)
    try:
        inv = mods_module.inventory(cfg, manifest)
    except ModkeeperError as exc:
        _fail(str(exc))

    table = Table(title="Tracked mods", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Filename")
    table.add_column("Version")
    table.add_column("Update")
    table.add_column("Enabled")
    table.add_column("Status")
    for status in inv.entries:
        entry = status.entry
        status_style = {
            "ok": "green",
            "missing": "red",
            "moved": "yellow",
            "hash-mismatch": "magenta",
        }.get(status.status, "white")
        table.add_row(
            entry.id,
            entry.name or "-",
            entry.file_name,
            entry.current_version_number or "-",
            Text(entry.available_update.version_number, style="green") if entry.available_update else "-",
            "yes" if entry.enabled else "no",
            Text(status.status, style=status_style),
        )
    _rich_console.print(table)

    if include_extras and inv.extras:
        extra_table = Table(title="Untracked files", box=box.MINIMAL)
        extra_table.add_column("Filename")
        extra_table.add_column("Location")
        for extra in inv.extras:
            extra_table.add_row(extra.filename, extra.location)
        _rich_console.print(extra_table)


@mods_app.command("add")
def mods_add(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Modrinth project slug or id (e.g. sodium)"),
    mod_id: str = typer.Option(None, "--id", help="Explicit manifest ID"),
    disable: bool = typer.Option(False, "--disable", help="Install into mods-disabled"),
    loader: str = typer.Option(None, "--loader", help="Loader override (defaults to the server type)"),
    game_version: str = typer.Option(None, "--mc-version", help="Minecraft version override"),
    stable_only: bool = typer.Option(False, "--stable-only", help="Never fall back to alpha/beta versions"),
    watch: bool = typer.Option(False, "--watch", help="Watch the mod if no compatible version exists yet"),
):
    """Install the best compatible version of a registry project."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    manifest = _load_manifest_or_exit(cfg)

    try:
        project_info = mods_module.lookup_project(services.registry, project)
    except NotFound:
        _fail(f"Project '{project}' was not found on the registry.")
    except ModkeeperError as exc:
        _fail(str(exc))

    try:
        target = mods_module.server_target(
            cfg, manifest, project_info.project_id, loader=loader, game_version=game_version
        )
        version = services.resolver.resolve(target, require_stable_only=stable_only)
    except NotFound:
        typer.secho(
            f"{project_info.title} has no version for {target.loader} {target.game_version} yet.",
            fg="yellow",
        )
        if not watch:
            _persist_error_report(services)
            _fail("Re-run with --watch to be notified when one is released.", code=3)
        services.watcher.add_watch(
            cfg.server_root,
            project_id=project_info.project_id,
            mod_name=project_info.title,
            loader=target.loader,
            game_version=target.game_version,
        )
        typer.secho(f"Watching {project_info.title}; checks run every {cfg.watch_interval_hours}h.", fg="cyan")
        return
    except ModkeeperError as exc:
        _persist_error_report(services)
        _fail(str(exc))

    try:
        with _download_progress() as progress:
            task = progress.add_task(project_info.title, total=None)
            entry = mods_module.install_mod(
                services,
                manifest,
                project_info,
                mod_id=mod_id,
                loader=loader,
                game_version=game_version,
                version=version,
                enabled=not disable,
                on_progress=lambda done, total: progress.update(task, completed=done, total=total),
            )
    except ModkeeperError as exc:
        _persist_error_report(services)
        _fail(str(exc))

    state = "disabled" if disable else "enabled"
    typer.secho(
        f"Installed {entry.name} {entry.current_version_number} as {entry.id} ({state})",
        fg="green",
    )


@mods_app.command("enable")
def mods_enable(
    ctx: typer.Context,
    mod_id: str = typer.Argument(..., help="Manifest mod ID"),
    no_move: bool = typer.Option(False, "--no-move", help="Only toggle manifest flag"),
):
    """Enable a mod (moves file back into mods directory)."""
    cfg = _get_config(ctx)
    manifest = _load_manifest_or_exit(cfg)
    try:
        entry = mods_module.set_enabled(cfg, manifest=manifest, mod_id=mod_id, enabled=True, move_files=not no_move)
    except ModkeeperError as exc:
        _fail(str(exc))
    typer.secho(f"Enabled mod {entry.id}", fg="green")


@mods_app.command("disable")
def mods_disable(
    ctx: typer.Context,
    mod_id: str = typer.Argument(..., help="Manifest mod ID"),
    no_move: bool = typer.Option(False, "--no-move", help="Only toggle manifest flag"),
):
    """Disable a mod (moves file into mods-disabled)."""
    cfg = _get_config(ctx)
    manifest = _load_manifest_or_exit(cfg)
    try:
        entry = mods_module.set_enabled(cfg, manifest=manifest, mod_id=mod_id, enabled=False, move_files=not no_move)
    except ModkeeperError as exc:
        _fail(str(exc))
    typer.secho(f"Disabled mod {entry.id}", fg="yellow")


@mods_app.command("remove")
def mods_remove(
    ctx: typer.Context,
    mod_id: str = typer.Argument(None, help="Manifest mod ID"),
    keep_files: bool = typer.Option(False, "--keep-files", help="Only drop the manifest entry"),
    all_mods: bool = typer.Option(False, "--all", help="Remove every tracked mod"),
):
    """Remove a mod (or all mods) from the manifest and disk."""
    cfg = _get_config(ctx)
    manifest = _load_manifest_or_exit(cfg)
    if all_mods:
        count, deleted = mods_module.purge_mods(cfg, manifest=manifest, remove_files=not keep_files)
        typer.secho(f"Removed {count} mod(s); deleted {len(deleted)} file(s).", fg="yellow")
        return
    if not mod_id:
        _fail("Pass a mod ID or --all.")
    try:
        entry, deleted = mods_module.remove_mod(cfg, manifest=manifest, mod_id=mod_id, remove_files=not keep_files)
    except ModkeeperError as exc:
        _fail(str(exc))
    typer.secho(f"Removed mod {entry.id}", fg="yellow")
    for path in deleted:
        typer.secho(f"  deleted {path}", fg="bright_black")


@mods_app.command("check")
def mods_check(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Ignore cached registry results"),
    only: Optional[List[str]] = typer.Option(None, "--mod", help="Limit the check to these mod or project IDs"),
):
    """Check the registry for updates to installed mods."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    request = CheckRequest(
        server_path=cfg.server_root,
        force_refresh=force,
        targets=frozenset(only) if only else None,
    )
    services.coordinator.trigger_check(request)
    _persist_error_report(services)

    error = services.coordinator.last_error
    if error is not None:
        _fail(str(error))
    report: mods_module.UpdateReport = services.coordinator.last_result

    if report.updates:
        table = Table(title="Available updates", box=box.MINIMAL_DOUBLE_HEAD)
        table.add_column("File")
        table.add_column("New version", style="green")
        for file_name, version in sorted(report.updates.items()):
            table.add_row(file_name, version)
        _rich_console.print(table)
    for file_name, message in sorted(report.failures.items()):
        typer.secho(f"{file_name}: {message}", fg="red")
    typer.secho(
        f"Checked {report.checked} mod(s): {report.enabled_updates} update(s) for enabled mods, "
        f"{report.disabled_updates} for disabled mods.",
        fg="cyan",
    )


@mods_app.command("update")
def mods_update(
    ctx: typer.Context,
    mod_id: str = typer.Argument(None, help="Manifest mod ID"),
    all_mods: bool = typer.Option(False, "--all", help="Apply every recorded update"),
):
    """Download and install updates found by 'modkeeper mods check'."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    manifest = _load_manifest_or_exit(cfg)

    if all_mods:
        targets = [mod.id for mod in manifest.mods if mod.available_update]
    elif mod_id:
        targets = [mod_id]
    else:
        _fail("Pass a mod ID or --all.")
    if not targets:
        typer.secho("No updates recorded. Run 'modkeeper mods check' first.", fg="yellow")
        return

    failed = 0
    for target in targets:
        try:
            entry = mods_module.update_mod(services, manifest, target)
        except ModkeeperError as exc:
            failed += 1
            typer.secho(f"{target}: {exc}", fg="red")
            continue
        typer.secho(f"Updated {entry.id} to {entry.current_version_number}", fg="green")
    _persist_error_report(services)
    if failed:
        _fail(f"{failed} update(s) failed.")


@mods_app.command("verify")
def mods_verify(ctx: typer.Context):
    """Re-hash installed mods against the hashes recorded at install time."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    manifest = _load_manifest_or_exit(cfg)
    result = mods_module.verify_installed(services, manifest)
    _persist_error_report(services)
    _print_batch(result)
    if result.invalid:
        raise typer.Exit(code=4)


def _print_batch(result) -> None:
    table = Table(title="Verification", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("File")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for item in result.files:
        if item.is_valid is True:
            cell = Text("valid", style="green")
        elif item.is_valid is False:
            cell = Text("MISMATCH", style="bold red")
        elif item.error:
            cell = Text("error", style="red")
        else:
            cell = Text("unverified", style="yellow")
        table.add_row(Path(item.file_path).name, cell, item.error or item.reason or "")
    _rich_console.print(table)
    typer.secho(
        f"{result.valid} valid, {result.invalid} invalid, {result.unverifiable} unverifiable, {result.errors} error(s)",
        fg="red" if result.invalid or result.errors else "green",
    )


@integrity_app.command("verify")
def integrity_verify(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="File to verify"),
    expected: str = typer.Option(None, "--expected", help="Expected checksum (defaults to the stored record)"),
    algorithm: str = typer.Option(None, "--algorithm", help="md5, sha1, sha256 or sha512"),
    store: bool = typer.Option(False, "--store", help="Record the current checksum instead of verifying"),
):
    """Verify one file, or record its checksum with --store."""
    services = _get_services(ctx)
    try:
        if store:
            record = services.verifier.store_checksum(path, expected, algorithm or "sha1")
            typer.secho(f"Stored {record.algorithm} {record.checksum} for {path}", fg="green")
            return
        result = services.verifier.verify(path, expected, algorithm)
    except ModkeeperError as exc:
        _fail(str(exc))

    if result.reason == "algorithm_mismatch":
        typer.secho(
            f"{path}: the stored record is {result.algorithm}; omit --algorithm or pass --expected.",
            fg="yellow",
        )
        raise typer.Exit(code=3)
    if result.is_valid is None:
        typer.secho(f"{path}: no checksum on record; use --expected or --store.", fg="yellow")
        raise typer.Exit(code=3)
    if not result.is_valid:
        _persist_error_report(services)
        _fail(f"{path}: {result.algorithm} mismatch (expected {result.expected}, got {result.actual})", code=4)
    typer.secho(f"{path}: {result.algorithm} ok ({result.actual})", fg="green")


@integrity_app.command("batch")
def integrity_batch(
    ctx: typer.Context,
    paths: List[Path] = typer.Argument(..., help="Files to verify against their stored records"),
):
    """Verify many files against their stored checksum records."""
    services = _get_services(ctx)
    result = services.verifier.batch_verify(paths)
    _persist_error_report(services)
    _print_batch(result)
    if result.invalid:
        raise typer.Exit(code=4)


@integrity_app.command("alerts")
def integrity_alerts(
    ctx: typer.Context,
    directory: Path = typer.Option(None, "--dir", help="Directory to scan (defaults to the mods directory)"),
):
    """List recorded corruption alerts."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    alerts = services.verifier.corruption_alerts(directory or mods_module.mods_dir(cfg))
    if not alerts:
        typer.secho("No corruption alerts.", fg="green")
        return
    table = Table(title="Corruption alerts", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("File")
    table.add_column("Count", justify="right")
    table.add_column("Last seen")
    table.add_column("Expected", style="dim")
    table.add_column("Actual", style="dim")
    for alert in alerts:
        table.add_row(
            alert.file_path,
            str(alert.alert_count),
            _format_time(alert.last_seen_at),
            alert.expected or "-",
            alert.actual or "-",
        )
    _rich_console.print(table)


@integrity_app.command("clear-alert")
def integrity_clear_alert(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="File whose alert should be cleared"),
):
    services = _get_services(ctx)
    if services.verifier.clear_corruption_alert(path):
        typer.secho(f"Cleared corruption alert for {path}", fg="green")
    else:
        typer.secho(f"No corruption alert recorded for {path}", fg="yellow")


@watch_app.command("add")
def watch_add(
    ctx: typer.Context,
    project: str = typer.Argument(..., help="Modrinth project slug or id"),
    name: str = typer.Option(None, "--name", help="Display name (defaults to the project title)"),
    loader: str = typer.Option(None, "--loader", help="Loader override"),
    game_version: str = typer.Option(None, "--mc-version", help="Minecraft version override"),
):
    """Watch a project until it supports this server."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    try:
        manifest = mods_module.load_manifest(cfg)
    except ModkeeperError:
        manifest = mods_module.default_manifest(cfg)
    try:
        project_info = mods_module.lookup_project(services.registry, project)
        target = mods_module.server_target(
            cfg, manifest, project_info.project_id, loader=loader, game_version=game_version
        )
        watch = services.watcher.add_watch(
            cfg.server_root,
            project_id=project_info.project_id,
            mod_name=name or project_info.title,
            loader=target.loader,
            game_version=target.game_version,
        )
    except ModkeeperError as exc:
        _fail(str(exc))
    typer.secho(f"Watching {watch.mod_name} for {watch.target.loader} {watch.target.game_version}", fg="green")


@watch_app.command("remove")
def watch_remove(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project id of the watch"),
):
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    if services.watcher.remove_watch(cfg.server_root, project_id):
        typer.secho(f"Stopped watching {project_id}", fg="yellow")
    else:
        _fail(f"No watch for {project_id}.")


@watch_app.command("list")
def watch_list(ctx: typer.Context):
    """List watched mods."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    watches = services.watcher.list_watches(cfg.server_root)
    if not watches:
        typer.secho("No mods are being watched.", fg="bright_black")
        return
    table = Table(title="Watched mods", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Project", style="cyan")
    table.add_column("Name")
    table.add_column("Loader")
    table.add_column("Game version")
    table.add_column("Added")
    table.add_column("Last checked")
    for watch in watches:
        table.add_row(
            watch.project_id,
            watch.mod_name,
            watch.target.loader,
            watch.target.game_version,
            _format_time(watch.added_at),
            _format_time(watch.last_checked_at),
        )
    _rich_console.print(table)
    state = services.watcher.registry.state(cfg.server_root)
    typer.secho(f"Next check: {_format_time(state.next_check)}", fg="cyan")


@watch_app.command("clear")
def watch_clear(ctx: typer.Context):
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    count = services.watcher.clear_watches(cfg.server_root)
    typer.secho(f"Removed {count} watch(es).", fg="yellow")


@watch_app.command("history")
def watch_history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
    clear: bool = typer.Option(False, "--clear", help="Delete the history"),
):
    """Show mods that became available while watched."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    if clear:
        services.watcher.clear_history(cfg.server_root)
        typer.secho("Cleared watch history.", fg="yellow")
        return
    records = services.watcher.get_history(cfg.server_root, limit=limit)
    if not records:
        typer.secho("No watched mod has become available yet.", fg="bright_black")
        return
    table = Table(title="Availability history", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Found")
    table.add_column("Name")
    table.add_column("Version", style="green")
    table.add_column("Target")
    for record in reversed(records):
        table.add_row(_format_time(record.found_at), record.mod_name, record.version_found, str(record.target))
    _rich_console.print(table)


@watch_app.command("interval")
def watch_interval(
    ctx: typer.Context,
    hours: int = typer.Argument(None, help="12 or 24"),
):
    """Show or change how often watched mods are re-checked."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    if hours is None:
        typer.echo(json.dumps(services.watcher.get_config(), indent=2))
        return
    services.watcher.registry.state(cfg.server_root)
    try:
        services.watcher.set_interval_hours(hours)
    except ModkeeperError as exc:
        _fail(str(exc))

    config_file = cfg.server_root / DEFAULT_CONFIG_FILENAME
    data = services.store.read(config_file, default={})
    data["watch_interval_hours"] = hours
    services.store.write(config_file, data)
    typer.secho(f"Watched mods will be checked every {hours} hours.", fg="green")


@watch_app.command("check")
def watch_check(ctx: typer.Context):
    """Re-check every watched mod now."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    fulfilled = services.watcher.run_pass(cfg.server_root)
    _persist_error_report(services)
    remaining = len(services.watcher.list_watches(cfg.server_root))
    typer.secho(f"{len(fulfilled)} mod(s) became available; {remaining} still watched.", fg="cyan")


@watch_app.command("run")
def watch_run(
    ctx: typer.Context,
    update_every: float = typer.Option(
        0, "--update-every", help="Also check installed mods for updates every N hours (0 disables)"
    ),
):
    """Run the watcher and error monitor in the foreground until interrupted."""
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    services.watcher.registry.state(cfg.server_root)
    services.start_background()
    if update_every > 0:
        services.coordinator.start_periodic(update_every * 3600, CheckRequest(server_path=cfg.server_root))
    typer.secho(f"Watching mods for {cfg.server_root}. Press Ctrl+C to stop.", fg="cyan")
    try:
        services.watcher.tick()
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        typer.secho("Stopping.", fg="yellow")
    finally:
        services.stop_background()
        _persist_error_report(services)


@errors_app.command("stats")
def errors_stats(ctx: typer.Context):
    """Summarize the most recent error report."""
    report = _read_error_report(ctx)
    summary = report["summary"]
    table = Table(title="Errors", box=box.SIMPLE_HEAVY)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(summary["total_errors"]))
    table.add_row("Critical", str(summary["critical_errors"]))
    table.add_row("High severity", str(summary["high_severity_errors"]))
    table.add_row("Affected mods", str(summary["affected_mods"]))
    table.add_row("Unique patterns", str(summary["unique_patterns"]))
    for category, count in sorted(report["breakdown"]["by_category"].items()):
        table.add_row(f"  {category}", str(count))
    _rich_console.print(table)


@errors_app.command("report")
def errors_report(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the raw report"),
):
    """Show the most recent error report with recommendations."""
    report = _read_error_report(ctx)
    if as_json:
        typer.echo(json.dumps(report, indent=2))
        return
    typer.secho(f"Report generated {report['generated_at']}", fg="cyan")
    patterns = report["top_issues"]["frequent_patterns"]
    if patterns:
        table = Table(title="Frequent patterns", box=box.MINIMAL)
        table.add_column("Category")
        table.add_column("Source")
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for item in patterns:
            table.add_row(item["category"], item["source"], item["type"], str(item["count"]))
        _rich_console.print(table)
    for recommendation in report["recommendations"]:
        colour = "red" if recommendation["priority"] == "high" else "yellow"
        typer.secho(f"[{recommendation['priority']}] {recommendation['title']}", fg=colour)
        typer.echo(f"    {recommendation['description']}. {recommendation['suggestion']}.")


def _read_error_report(ctx: typer.Context) -> dict:
    cfg = _get_config(ctx)
    services = _get_services(ctx)
    if services.monitor.entries():
        return services.monitor.report()
    report = services.store.read(cfg.state_dir / ERROR_REPORT_FILENAME)
    if not report:
        typer.secho("No errors have been recorded yet.", fg="green")
        raise typer.Exit(code=0)
    return report
