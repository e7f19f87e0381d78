"""Command-line interface for OKR remote sync and backup."""

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import click
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from . import __version__
from .config.settings import AppConfig, CredentialsConfig, GitConfig, ProxyConfig, S3Config, TokenAuth
from .exceptions import OkrSyncError
from .service import OperationResult, SyncService
from .sync.backup_manager import RestoreMode
from .utils.file_utils import FileHelper
from .utils.logging import setup_logging

console = Console()

Action = Callable[[SyncService], Awaitable[OperationResult]]


def _load_config(ctx: click.Context) -> AppConfig:
    config_path: Path = ctx.obj['config']
    try:
        app_config = AppConfig.from_yaml(config_path).apply_credentials(CredentialsConfig.from_env())
    except (OkrSyncError, FileNotFoundError) as e:
        console.print(f"❌ Error: {e}", style="red bold")
        sys.exit(1)

    logging_config = app_config.logging
    setup_logging(
        log_level=ctx.obj['log_level'] or logging_config.level,
        log_file=logging_config.file,
        log_to_console=logging_config.console,
    )
    return app_config


def _execute(ctx: click.Context, action: Action, needs: Sequence[str] = ()) -> OperationResult:
    """Build the service, initialize the engines in ``needs`` and run ``action``."""
    app_config = _load_config(ctx)

    async def run() -> OperationResult:
        service = SyncService(app_config)
        try:
            for engine in needs:
                result = await (service.git_initialize() if engine == "git" else service.s3_initialize())
                if not result.success:
                    return result
            return await action(service)
        finally:
            service.shutdown()

    result = asyncio.run(run())
    if not result.success:
        console.print(f"❌ {result.error}", style="red bold")
        sys.exit(1)
    return result


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c',
              type=click.Path(path_type=Path),
              default=Path('config/config.yaml'),
              help='Path to configuration file')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx: click.Context, config: Path, log_level: Optional[str]):
    """OKR remote sync

    Keeps the local OKR database safe in a Git repository and/or an S3 bucket.
    """
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['log_level'] = log_level


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Create a sample configuration file."""
    config: Path = ctx.obj['config']
    if config.exists():
        if not click.confirm(f"Configuration file {config} already exists. Overwrite?"):
            return

    sample = AppConfig(
        git=GitConfig(
            enabled=False,
            auth=TokenAuth(token="your-personal-access-token"),
            auto_create_repo=True,
        ),
        s3=S3Config(enabled=False, bucket="my-okr-backups", path_prefix="okr-backups/"),
    )
    sample.to_yaml(config)

    console.print(f"✅ Configuration saved to {config}", style="green")
    console.print("\n📝 Next steps:")
    console.print("1. Edit the configuration file and enable git and/or s3")
    console.print("2. Export secrets (OKR_SYNC_GIT_TOKEN, AWS_ACCESS_KEY_ID, ...) instead of storing them")
    console.print("3. Run 'okr-sync git test' or 'okr-sync s3 status' to verify connections")


# Git

@cli.group()
def git():
    """Git repository sync."""


@git.command('init')
@click.pass_context
def git_init(ctx: click.Context):
    """Initialize the working copy and bind the remote."""
    _execute(ctx, lambda service: service.git_initialize())
    console.print("✅ Git repository initialized", style="green")


@git.command('sync')
@click.pass_context
def git_sync(ctx: click.Context):
    """Pull, export, commit and push."""
    with console.status("Syncing with remote repository..."):
        result = _execute(ctx, lambda service: service.git_sync(), needs=("git",))

    table = Table(title=f"Synced at {result.data.last_sync}")
    table.add_column("Collection", style="cyan")
    table.add_column("Records", justify="right", style="green")
    for name, count in result.data.counts().items():
        table.add_row(name, str(count))
    console.print(table)


@git.command('test')
@click.pass_context
def git_test(ctx: click.Context):
    """Check the remote is reachable with the configured credentials."""
    result = _execute(ctx, lambda service: service.git_test_connection(), needs=("git",))
    rprint(f"✅ [green]Remote reachable[/green] via {result.data['method']}")
    for key, value in result.data.items():
        if key != 'method':
            rprint(f"   • {key}: {value}")


@git.command('status')
@click.pass_context
def git_status(ctx: click.Context):
    """Show working copy status."""
    result = _execute(ctx, lambda service: service.git_status(), needs=("git",))
    _print_status("Git sync", result.data)


@git.command('auto')
@click.option('--interval', type=int, help='Override the sync interval (minutes)')
@click.pass_context
def git_auto(ctx: click.Context, interval: Optional[int]):
    """Run auto sync in the foreground until interrupted."""
    app_config = _load_config(ctx)
    if app_config.git is None:
        console.print("❌ Git sync is not configured", style="red bold")
        sys.exit(1)
    updates = {'auto_sync': True, 'enabled': True}
    if interval:
        updates['sync_interval'] = interval
    app_config.git = app_config.git.model_copy(update=updates)
    app_config.s3 = None
    _run_daemon(app_config)


# S3

@cli.group()
def s3():
    """S3 backups."""


@s3.command('init')
@click.pass_context
def s3_init(ctx: click.Context):
    """Build the client and test bucket access."""
    _execute(ctx, lambda service: service.s3_initialize())
    console.print("✅ S3 bucket reachable", style="green")


@s3.command('backup')
@click.pass_context
def s3_backup(ctx: click.Context):
    """Upload a backup now and prune old ones."""
    with console.status("Uploading backup..."):
        result = _execute(ctx, lambda service: service.s3_backup(), needs=("s3",))

    for backup in result.data['backups']:
        rprint(f"✅ [green]{backup['key']}[/green] ({FileHelper.format_file_size(backup['size'])})")
    for key in result.data['pruned']:
        rprint(f"🗑️  pruned {key}")


@s3.command('list')
@click.pass_context
def s3_list(ctx: click.Context):
    """List backups, newest first."""
    result = _execute(ctx, lambda service: service.s3_list(), needs=("s3",))

    table = Table(title="Backups")
    table.add_column("Key", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Size", justify="right")
    table.add_column("Last Modified")
    for backup in result.data:
        table.add_row(backup['key'], backup['type'], FileHelper.format_file_size(backup['size']),
                      backup['last_modified'])
    console.print(table)


@s3.command('status')
@click.pass_context
def s3_status(ctx: click.Context):
    """Show backup count, size and latest backup."""
    result = _execute(ctx, lambda service: service.s3_status(), needs=("s3",))
    _print_status("S3 backup", result.data)


@s3.command('restore')
@click.argument('key')
@click.option('--mode', '-m',
              type=click.Choice([mode.value for mode in RestoreMode]),
              default=RestoreMode.MERGE.value,
              help='database: replace the store file, json: overwrite records, merge: add missing records')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def s3_restore(ctx: click.Context, key: str, mode: str, yes: bool):
    """Restore a backup into the local store."""
    if mode != RestoreMode.MERGE.value and not yes:
        if not click.confirm(f"Restoring in {mode} mode replaces local data. Continue?"):
            return
    result = _execute(ctx, lambda service: service.s3_restore(key, mode), needs=("s3",))
    rprint(f"✅ [green]Restored {key}[/green]")
    for name, value in result.data.items():
        rprint(f"   • {name}: {value}")


@s3.command('prune')
@click.pass_context
def s3_prune(ctx: click.Context):
    """Delete backups beyond max_backups."""
    result = _execute(ctx, lambda service: service.s3_cleanup(), needs=("s3",))
    if not result.data:
        console.print("Nothing to prune")
    for key in result.data:
        rprint(f"🗑️  deleted {key}")


@s3.command('details')
@click.argument('key')
@click.pass_context
def s3_details(ctx: click.Context, key: str):
    """Show size and metadata of one backup."""
    result = _execute(ctx, lambda service: service.s3_details(key), needs=("s3",))
    details = result.data
    rprint(f"📦 [bold]{details['key']}[/bold]")
    rprint(f"   • Size: {FileHelper.format_file_size(details['size'])}")
    rprint(f"   • Last modified: {details['last_modified']}")
    rprint(f"   • Content type: {details['content_type']}")
    for name, value in sorted(details['metadata'].items()):
        rprint(f"   • {name}: {value}")


@s3.command('auto')
@click.option('--interval', type=int, help='Override the backup interval (minutes)')
@click.pass_context
def s3_auto(ctx: click.Context, interval: Optional[int]):
    """Run auto backup in the foreground until interrupted."""
    app_config = _load_config(ctx)
    if app_config.s3 is None:
        console.print("❌ S3 backup is not configured", style="red bold")
        sys.exit(1)
    updates = {'auto_backup': True, 'enabled': True}
    if interval:
        updates['backup_interval'] = interval
    app_config.s3 = app_config.s3.model_copy(update=updates)
    app_config.git = None
    _run_daemon(app_config)


# Proxy

@cli.group()
def proxy():
    """Proxy checks."""


@proxy.command('test')
@click.option('--host', help='Proxy host (defaults to the git proxy from the configuration)')
@click.option('--port', type=int, default=8080)
@click.option('--type', 'proxy_type', type=click.Choice(['http', 'https', 'socks5']), default='http')
@click.option('--username')
@click.option('--password', envvar='OKR_SYNC_PROXY_PASSWORD')
@click.pass_context
def proxy_test(ctx: click.Context, host: Optional[str], port: int, proxy_type: str,
               username: Optional[str], password: Optional[str]):
    """Send one request through the proxy."""
    proxy_config = None
    if host:
        proxy_config = ProxyConfig(enabled=True, type=proxy_type, host=host, port=port,
                                   username=username, password=password)
    result = _execute(ctx, lambda service: service.test_proxy(proxy_config))
    rprint(f"✅ [green]Proxy works[/green] ({result.data['proxy']}, {result.data['elapsed_ms']} ms)")


# Daemon

@cli.command()
@click.pass_context
def daemon(ctx: click.Context):
    """Run every enabled auto sync / auto backup until interrupted."""
    _run_daemon(_load_config(ctx))


def _run_daemon(app_config: AppConfig) -> None:
    async def run() -> OperationResult:
        service = SyncService(app_config)
        result = await service.initialize()
        if not result.success:
            return result

        jobs = []
        if app_config.git and app_config.git.enabled and app_config.git.auto_sync:
            jobs.append(f"git sync every {app_config.git.sync_interval} min")
        if app_config.s3 and app_config.s3.enabled and app_config.s3.auto_backup:
            jobs.append(f"s3 backup every {app_config.s3.backup_interval} min")
        if not jobs:
            service.shutdown()
            return OperationResult(success=False, error="Neither auto_sync nor auto_backup is enabled")

        console.print(f"🚀 Running: {', '.join(jobs)} (Ctrl+C to stop)")
        try:
            await asyncio.Event().wait()
        finally:
            service.shutdown()
        return OperationResult(success=True)

    try:
        result = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n👋 Stopped")
        return
    if not result.success:
        console.print(f"❌ {result.error}", style="red bold")
        sys.exit(1)


def _print_status(title: str, status: dict) -> None:
    console.print(f"📊 [bold]{title} status:[/bold]")
    for name, value in status.items():
        if name == 'total_size':
            value = FileHelper.format_file_size(value)
        style = "red" if name == 'error' else ""
        rprint(f"   • {name}: [{style}]{value}[/{style}]" if style else f"   • {name}: {value}")


if __name__ == '__main__':
    cli()
