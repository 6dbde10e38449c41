"""Device CLI for TaskSync: record offline changes and sync them with a server."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import secrets
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from cli.engine import CURSOR_KEY, SyncEngine
from cli.local_store import LocalStore
from cli.mutation_log import MutationLog
from cli.transport import SyncTransport
from domain.entities import EntityState, parse_entity_kind
from domain.errors import PushRejected, SyncError
from domain.timestamps import format_timestamp

logger = logging.getLogger(__name__)

CONFIG_FILE = ".tasksync.json"
STORE_FILE = ".tasksync.db"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load device config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save device config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))
    config_path.chmod(0o600)


def generate_device_id() -> str:
    """Mint a device id usable as a tie-break origin (``[A-Za-z0-9_-]``)."""
    return f"dev-{secrets.token_urlsafe(12)}"


def parse_assignments(pairs: list[str]) -> dict[str, Any]:
    """Parse ``field=value`` pairs; values are JSON when they parse as JSON."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected field=value, got {pair!r}")
        try:
            fields[name] = json.loads(raw)
        except json.JSONDecodeError:
            fields[name] = raw
    return fields


def format_entity(state: EntityState) -> str:
    """One-line human-readable rendering of an entity."""
    marker = " (deleted)" if state.is_deleted else ""
    fields = json.dumps(state.fields, sort_keys=True, ensure_ascii=False)
    return f"{state.id}{marker} @ {format_timestamp(state.updated_at)} {fields}"


def login(server_url: str, username: str, password: str) -> str:
    """Login and return an access token."""
    with httpx.Client(base_url=server_url, timeout=30.0) as client:
        resp = client.post(
            "/api/auth/login",
            json={"username": username, "password": password},
        )
        resp.raise_for_status()
        token: str = resp.json()["access_token"]
        return token


def _report_rejection(rejection: PushRejected) -> None:
    print(f"  REJECTED #{rejection.seq}: {rejection}")


def _require(config: dict[str, str], key: str, hint: str) -> str:
    value = config.get(key)
    if not value:
        print(f"Error: {hint}")
        sys.exit(1)
    return value


def _build_engine(
    store: LocalStore, log: MutationLog, config: dict[str, str], allow_insecure_http: bool
) -> SyncEngine:
    server = _require(config, "server", "No server configured. Run 'tasksync-sync init' first.")
    token = _require(config, "token", "Not logged in. Run 'tasksync-sync login' first.")
    try:
        server_url = validate_server_url(server, allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    transport = SyncTransport(server_url, token, log.device_id)
    return SyncEngine(store, log, transport, on_rejected=_report_rejection)


async def _run_sync(engine: SyncEngine, watch: float | None) -> int:
    try:
        if watch is None:
            result = await engine.sync_once()
            print(
                f"Sync complete. pushed={result.pushed} pulled={result.pulled} "
                f"rejected={len(result.rejected)}" + (" (resynced)" if result.resynced else "")
            )
            if not result.ok:
                print(f"  Warning: {result.error}")
                return 1
            return 0
        engine.start(interval=watch)
        # Runs until interrupted
        await asyncio.Event().wait()
        return 0
    finally:
        await engine.stop()
        await engine.transport.aclose()


async def _run_resync(engine: SyncEngine) -> int:
    try:
        count = await engine.resync_from_scratch()
        print(f"Resync complete. {count} change(s) applied.")
        return 0
    finally:
        await engine.transport.aclose()


async def _run_check(engine: SyncEngine) -> int:
    try:
        drifted = await engine.check_drift()
        print("Drift detected and repaired." if drifted else "No drift detected.")
        return 0
    finally:
        await engine.transport.aclose()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tasksync-sync",
        description="Record changes offline and sync them with a TaskSync server",
    )
    parser.add_argument("--dir", "-d", default=".", help="Data directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Initialize device configuration")
    login_parser = subparsers.add_parser("login", help="Log in and store an access token")
    login_parser.add_argument("--username", "-u", help="Username")
    subparsers.add_parser("status", help="Show queued and rejected mutations")
    sync_parser = subparsers.add_parser("sync", help="Push queued mutations and pull changes")
    sync_parser.add_argument(
        "--watch", type=float, metavar="SECONDS", help="Keep syncing every SECONDS"
    )
    subparsers.add_parser("resync", help="Rebuild local state from the server")
    subparsers.add_parser("check", help="Compare local and server state digests")
    retry_parser = subparsers.add_parser("retry", help="Re-queue rejected mutations")
    retry_parser.add_argument("seqs", nargs="*", type=int, help="Log entries (default: all)")
    discard_parser = subparsers.add_parser("discard", help="Drop rejected mutations")
    discard_parser.add_argument("seqs", nargs="+", type=int, help="Log entries to drop")
    put_parser = subparsers.add_parser("put", help="Create or update an entity")
    put_parser.add_argument("entity", help="Entity kind, e.g. Task")
    put_parser.add_argument("assignments", nargs="+", help="field=value pairs")
    put_parser.add_argument("--id", dest="entity_id", help="Entity id (default: new)")
    delete_parser = subparsers.add_parser("delete", help="Soft-delete an entity")
    delete_parser.add_argument("entity", help="Entity kind")
    delete_parser.add_argument("entity_id", help="Entity id")
    show_parser = subparsers.add_parser("show", help="List local entities of a kind")
    show_parser.add_argument("entity", help="Entity kind")
    show_parser.add_argument("--all", action="store_true", help="Include deleted entities")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    data_dir = Path(args.dir).resolve()

    if args.command == "init":
        config = load_config(data_dir)
        if args.server:
            try:
                config["server"] = validate_server_url(args.server, args.allow_insecure_http)
            except ValueError as exc:
                print(f"Error: {exc}")
                sys.exit(1)
        if not config.get("server"):
            print("Error: --server required for init")
            sys.exit(1)
        config.setdefault("device_id", generate_device_id())
        data_dir.mkdir(parents=True, exist_ok=True)
        save_config(data_dir, config)
        print(f"Initialized device {config['device_id']} in {data_dir / CONFIG_FILE}")
        return

    config = load_config(data_dir)
    if args.server:
        config["server"] = args.server
    device_id = _require(config, "device_id", "Not initialized. Run 'tasksync-sync init' first.")

    if args.command == "login":
        server = _require(config, "server", "No server configured.")
        try:
            server_url = validate_server_url(server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        username = args.username or config.get("username") or input("Username: ")
        password = getpass.getpass("Password: ")
        try:
            config["token"] = login(server_url, username, password)
        except httpx.HTTPError as exc:
            print(f"Error: Login failed ({exc})")
            sys.exit(1)
        config["username"] = username
        save_config(data_dir, config)
        print(f"Logged in as {username}")
        return

    store = LocalStore(data_dir / STORE_FILE)
    log = MutationLog(store, device_id)
    try:
        exit_code = _dispatch(parser, args, config, store, log)
    except (SyncError, ValueError) as exc:
        print(f"Error: {exc}")
        exit_code = 1
    finally:
        store.close()
    if exit_code:
        sys.exit(exit_code)


def _dispatch(
    parser: argparse.ArgumentParser,
    args: argparse.Namespace,
    config: dict[str, str],
    store: LocalStore,
    log: MutationLog,
) -> int:
    if args.command == "status":
        print(f"Device:   {log.device_id}")
        print(f"Server:   {config.get('server', '-')}")
        print(f"Cursor:   {store.read_meta(CURSOR_KEY) or '-'}")
        print(f"Pending:  {log.pending_count()}")
        rejected = log.rejected()
        print(f"Rejected: {len(rejected)}")
        for pending in rejected:
            record = pending.record
            print(
                f"    ! #{pending.seq} {record.op} {record.entity} {record.id}: "
                f"{pending.rejected_reason}"
            )
        return 0

    if args.command == "put":
        record = log.record_upsert(args.entity, args.entity_id, parse_assignments(args.assignments))
        print(f"Queued upsert {record.entity} {record.id}")
        return 0

    if args.command == "delete":
        record = log.record_delete(args.entity, args.entity_id)
        print(f"Queued delete {record.entity} {record.id}")
        return 0

    if args.command == "show":
        kind = parse_entity_kind(args.entity)
        for state in store.list_entities(kind, include_deleted=args.all):
            print(format_entity(state))
        return 0

    if args.command == "retry":
        seqs = args.seqs or [p.seq for p in log.rejected()]
        log.retry(seqs)
        print(f"Re-queued {len(seqs)} mutation(s)")
        return 0

    if args.command == "discard":
        removed = log.discard(args.seqs)
        print(f"Discarded {removed} rejected mutation(s)")
        return 0

    if args.command in {"sync", "resync", "check"}:
        engine = _build_engine(store, log, config, args.allow_insecure_http)
        if args.command == "sync":
            return asyncio.run(_run_sync(engine, args.watch))
        if args.command == "resync":
            return asyncio.run(_run_resync(engine))
        return asyncio.run(_run_check(engine))

    parser.print_help()
    return 0


if __name__ == "__main__":
    main()
