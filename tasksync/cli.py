"""CLI interface for tasksync."""

import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import click
from rich.progress import Progress, SpinnerColumn, TextColumn

from .api import DropboxClient
from .config import config
from .exceptions import ConfigError, RemoteStoreError, TaskSyncError
from .models import EntityKind, Snapshot, entity_key
from .output import OutputFormatter
from .sync import (
    JsonIndexStore,
    JsonSnapshotStore,
    SyncEngine,
    SyncIndex,
    load_sync_settings_from_json,
)
from .utils import format_iso_timestamp, utc_now

logger = logging.getLogger(__name__)

KIND_CHOICE = click.Choice([kind.value for kind in EntityKind])


@click.group()
@click.option(
    "--token", "-t", envvar="TASKSYNC_ACCESS_TOKEN", help="Dropbox access token"
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    token: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """tasksync - Sync task data with a Dropbox app folder."""
    ctx.ensure_object(dict)
    ctx.obj["token"] = token
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("tasksync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


# =============================================================================
# Helpers
# =============================================================================


def _create_engine(ctx: Any) -> SyncEngine:
    """Build a sync engine from the stored configuration."""
    settings = load_sync_settings_from_json(config.sync_settings_path)
    client = DropboxClient(access_token=ctx.obj["token"])
    return SyncEngine(client, JsonIndexStore(config.index_path), settings)


async def _close_engine(engine: SyncEngine) -> None:
    await engine.close()
    remote = engine.remote
    if isinstance(remote, DropboxClient):
        await remote.close()


def _require_token(ctx: Any) -> None:
    out: OutputFormatter = ctx.obj["out"]
    if not ctx.obj["token"] and not config.is_configured():
        out.error("Dropbox access token not configured.")
        out.info("Run 'tasksync init' to configure your access token")
        ctx.exit(1)


@contextmanager
def _spinner(out: OutputFormatter, description: str) -> Iterator[None]:
    if out.quiet or out.json_output:
        yield
        return
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        yield


def _stats_items(stats: dict[str, int]) -> list[tuple[str, str]]:
    return [
        ("Uploaded", str(stats["uploads"])),
        ("Downloaded", str(stats["downloads"])),
        ("Deleted locally", str(stats["deletes_local"])),
        ("Deleted remotely", str(stats["deletes_remote"])),
        ("Unchanged", str(stats["skips"])),
        ("Failed", str(stats["failures"])),
    ]


# =============================================================================
# Commands
# =============================================================================


@main.command()
@click.option(
    "--token",
    "-t",
    prompt="Enter your Dropbox access token",
    hide_input=True,
    help="Dropbox access token",
)
@click.pass_context
def init(ctx: Any, token: str) -> None:
    """Initialize tasksync configuration.

    Stores your access token in ~/.config/tasksync/config.json for future use.
    """
    out: OutputFormatter = ctx.obj["out"]

    async def _validate() -> None:
        async with DropboxClient(access_token=token) as client:
            await client.get_latest_cursor()

    try:
        out.info("Validating access token...")
        try:
            asyncio.run(_validate())
            out.success("✓ Access token is valid")
        except RemoteStoreError as e:
            out.error(f"Access token validation failed: {e}")
            if not click.confirm("Save access token anyway?", default=False):
                out.warning("Configuration cancelled.")
                ctx.exit(1)

        config.save_access_token(token)
        out.print_summary(
            "Initialization Complete",
            [
                ("Status", "✓ Configuration saved successfully"),
                ("Config file", str(config.get_config_path())),
            ],
        )
    except ConfigError as e:
        out.error(f"Initialization failed: {e}")
        ctx.exit(1)


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show local data and sync state."""
    out: OutputFormatter = ctx.obj["out"]

    async def _load() -> tuple[Snapshot, SyncIndex]:
        snapshot = await JsonSnapshotStore(config.snapshot_path).load_snapshot()
        index = await engine.index_store.load_index()
        return snapshot, index

    try:
        engine = _create_engine(ctx)
        snapshot, index = asyncio.run(_load())
    except TaskSyncError as e:
        out.error(f"Status failed: {e}")
        ctx.exit(1)
    counts = snapshot.count_by_kind()

    if out.json_output:
        out.output_json(
            {
                "signed_in": engine.is_signed_in,
                "entities": {kind.value: n for kind, n in counts.items()},
                "last_modified": format_iso_timestamp(snapshot.last_modified),
                "indexed": len(index.entities),
                "tombstones": len(index.deletions),
            }
        )
        return

    out.output_table(
        [{"kind": kind.value, "count": n} for kind, n in counts.items()],
        ["kind", "count"],
        {"kind": "Kind", "count": "Entities"},
    )
    out.print_summary(
        "Sync Status",
        [
            ("Signed in", "yes" if engine.is_signed_in else "no"),
            ("Last modified", format_iso_timestamp(snapshot.last_modified)),
            ("Indexed entities", str(len(index.entities))),
            ("Tombstones", str(len(index.deletions))),
            ("Data directory", str(config.data_dir)),
        ],
    )


@main.command()
@click.pass_context
def sync(ctx: Any) -> None:
    """Run a full two-way sync of the local snapshot."""
    out: OutputFormatter = ctx.obj["out"]
    _require_token(ctx)

    async def _sync() -> dict[str, int]:
        engine = _create_engine(ctx)
        store = JsonSnapshotStore(config.snapshot_path)
        try:
            snapshot = await store.load_snapshot()
            await engine.init(snapshot)
            with _spinner(out, "Syncing with Dropbox..."):
                result = await engine.full_sync(snapshot)
            await store.save_snapshot(result)
            return engine.stats
        finally:
            await _close_engine(engine)

    try:
        stats = asyncio.run(_sync())
    except TaskSyncError as e:
        out.error(f"Sync failed: {e}")
        ctx.exit(1)

    if out.json_output:
        out.output_json(stats)
    else:
        out.print_summary("Sync Complete", _stats_items(stats))


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def upload(ctx: Any, yes: bool) -> None:
    """Replace all remote data with the local snapshot."""
    out: OutputFormatter = ctx.obj["out"]
    _require_token(ctx)
    if not yes and not click.confirm(
        "This overwrites all data in Dropbox. Continue?", default=False
    ):
        out.warning("Upload cancelled.")
        return

    async def _upload() -> dict[str, int]:
        engine = _create_engine(ctx)
        try:
            snapshot = await JsonSnapshotStore(config.snapshot_path).load_snapshot()
            await engine.init(snapshot)
            with _spinner(out, "Uploading all entities..."):
                await engine.force_upload_all(snapshot)
            return engine.stats
        finally:
            await _close_engine(engine)

    try:
        stats = asyncio.run(_upload())
    except TaskSyncError as e:
        out.error(f"Upload failed: {e}")
        ctx.exit(1)

    if out.json_output:
        out.output_json(stats)
    else:
        out.print_summary(
            "Upload Complete",
            [("Uploaded", str(stats["uploads"])), ("Failed", str(stats["failures"]))],
        )


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def download(ctx: Any, yes: bool) -> None:
    """Replace the local snapshot with all remote data."""
    out: OutputFormatter = ctx.obj["out"]
    _require_token(ctx)
    if not yes and not click.confirm(
        "This replaces all local data. Continue?", default=False
    ):
        out.warning("Download cancelled.")
        return

    async def _download() -> dict[str, int]:
        engine = _create_engine(ctx)
        store = JsonSnapshotStore(config.snapshot_path)
        try:
            await engine.init(await store.load_snapshot())
            with _spinner(out, "Downloading all entities..."):
                snapshot = await engine.force_download_all()
            if snapshot is not None:
                await store.save_snapshot(snapshot)
            return engine.stats
        finally:
            await _close_engine(engine)

    try:
        stats = asyncio.run(_download())
    except TaskSyncError as e:
        out.error(f"Download failed: {e}")
        ctx.exit(1)

    if out.json_output:
        out.output_json(stats)
    else:
        out.print_summary(
            "Download Complete",
            [
                ("Downloaded", str(stats["downloads"])),
                ("Failed", str(stats["failures"])),
            ],
        )


@main.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("entity_id")
@click.argument("file", type=click.File("r", encoding="utf-8"))
@click.pass_context
def put(ctx: Any, kind: str, entity_id: str, file: Any) -> None:
    """Create or replace an entity from a JSON FILE ('-' for stdin).

    The change is stored locally and, if signed in, pushed to Dropbox.
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        data = json.load(file)
    except json.JSONDecodeError as e:
        out.error(f"Invalid JSON: {e}")
        ctx.exit(1)
    if not isinstance(data, dict):
        out.error("Entity must be a JSON object")
        ctx.exit(1)
    if data.setdefault("id", entity_id) != entity_id:
        out.error(f"Entity id {data['id']!r} does not match {entity_id!r}")
        ctx.exit(1)

    key = entity_key(kind, entity_id)

    async def _put() -> None:
        engine = _create_engine(ctx)
        store = JsonSnapshotStore(config.snapshot_path)
        try:
            snapshot = await store.load_snapshot()
            await engine.init(snapshot)
            snapshot.put(key, data)
            snapshot.last_modified = utc_now()
            await store.save_snapshot(snapshot)
            engine.push_entity(key, data)
            await engine.flush()
        finally:
            await _close_engine(engine)

    try:
        asyncio.run(_put())
    except TaskSyncError as e:
        out.error(f"Failed to store {key}: {e}")
        ctx.exit(1)
    out.success(f"✓ Stored {key}")


@main.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("entity_id")
@click.pass_context
def delete(ctx: Any, kind: str, entity_id: str) -> None:
    """Delete an entity locally and, if signed in, from Dropbox."""
    out: OutputFormatter = ctx.obj["out"]
    key = entity_key(kind, entity_id)

    async def _delete() -> bool:
        engine = _create_engine(ctx)
        store = JsonSnapshotStore(config.snapshot_path)
        try:
            snapshot = await store.load_snapshot()
            await engine.init(snapshot)
            if not snapshot.remove(key):
                return False
            snapshot.last_modified = utc_now()
            await store.save_snapshot(snapshot)
            engine.push_deletion(key)
            await engine.flush()
            return True
        finally:
            await _close_engine(engine)

    try:
        deleted = asyncio.run(_delete())
    except TaskSyncError as e:
        out.error(f"Failed to delete {key}: {e}")
        ctx.exit(1)
    if not deleted:
        out.error(f"{key} not found")
        ctx.exit(1)
    out.success(f"✓ Deleted {key}")


@main.command()
@click.pass_context
def watch(ctx: Any) -> None:
    """Pull remote changes continuously until interrupted."""
    out: OutputFormatter = ctx.obj["out"]
    _require_token(ctx)

    async def _watch() -> None:
        engine = _create_engine(ctx)
        store = JsonSnapshotStore(config.snapshot_path)
        current = [await store.load_snapshot()]

        async def on_changed(snapshot: Snapshot) -> None:
            current[0] = snapshot
            await store.save_snapshot(snapshot)
            out.info(
                f"Applied remote changes: {engine.stats['downloads']} updated, "
                f"{engine.stats['deletes_local']} deleted"
            )

        engine.on_remote_data_changed = on_changed
        try:
            await engine.init(current[0])
            await engine.resume(lambda: current[0])
            out.info("Watching for remote changes (Ctrl-C to stop)...")
            await asyncio.Event().wait()
        finally:
            await _close_engine(engine)

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        out.warning("\nStopped watching")
        ctx.exit(130)
    except TaskSyncError as e:
        out.error(f"Watch failed: {e}")
        ctx.exit(1)


if __name__ == "__main__":
    main()
