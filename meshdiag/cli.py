# -*- coding: utf-8 -*-
# meshdiag/cli.py
"""
meshdiag: mesh health and routing report for a Zigbee2MQTT bridge.

Usage:
  meshdiag [-u URL] [-j] [-v] <command> [args]

  meshdiag test
  meshdiag diagnose
  meshdiag routing
  meshdiag -j devices
  meshdiag device-set "Hall plug" '{"state": "OFF"}'
  meshdiag permit-join on 120
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from .client import LOG_LEVELS, BridgeClient
from .config import load_config
from .errors import MeshDiagError
from .models import DiagnosticReport, Role, RoutingAnalysis, RoutingGraph, Severity

console = Console()
err_console = Console(stderr=True)


# ------------------------------------------------------------
# Formatting
# ------------------------------------------------------------

def fmt_lqi(lqi: Optional[float]) -> str:
    if lqi is None:
        return "[dim]--[/dim]"
    if lqi < 30:
        return f"[red]{lqi}[/red]"
    if lqi < 50:
        return f"[yellow]{lqi}[/yellow]"
    return f"[green]{lqi}[/green]"


def fmt_battery(battery: Optional[float]) -> str:
    if battery is None:
        return "[dim]--[/dim]"
    if battery < 15:
        return f"[red]{battery}%[/red]"
    if battery < 25:
        return f"[yellow]{battery}%[/yellow]"
    return f"[green]{battery}%[/green]"


SEVERITY_STYLE = {
    Severity.CRITICAL: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: "cyan",
}


def build_devices_table(nodes, states: Dict[str, Dict[str, Any]]) -> Table:
    table = Table(title="Zigbee Devices", expand=True)
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("LQI")
    table.add_column("Battery")
    table.add_column("Last seen")

    for node in nodes:
        st = states.get(node.name) or {}
        name = f"[dim]{node.name}[/dim]" if node.disabled else node.name
        table.add_row(
            name,
            node.role.value,
            fmt_lqi(st.get("linkquality")),
            fmt_battery(st.get("battery")),
            str(st.get("last_seen", "-")),
        )
    return table


def build_issue_table(report: DiagnosticReport) -> Table:
    s = report.summary
    table = Table(
        title="Zigbee Network Diagnostic Report",
        caption=f"{s.total_devices} devices ({s.routers} routers, {s.end_devices} end devices), "
                f"{s.critical} critical, {s.warnings} warnings",
        expand=True,
    )
    table.add_column("Severity")
    table.add_column("Device", style="bold")
    table.add_column("Issue")

    for issue in report.issues:
        style = SEVERITY_STYLE[issue.severity]
        table.add_row(f"[{style}]{issue.severity.value.upper()}[/{style}]", issue.device, issue.message)
    return table


def build_routing_table(graph: RoutingGraph, analysis: RoutingAnalysis) -> Table:
    def name(ieee: str) -> str:
        node = graph.nodes.get(ieee)
        return node.name if node else ieee

    table = Table(
        title="Routing Proposals",
        caption=f"{len(analysis.anomalies)} anomalies, {len(analysis.optimal)} optimal, "
                f"{len(analysis.unplaced)} without location/parent",
        expand=True,
    )
    table.add_column("Device", style="bold")
    table.add_column("Current parent")
    table.add_column("Dist")
    table.add_column("LQI")
    table.add_column("Proposed")
    table.add_column("Alternatives")

    for c in analysis.anomalies:
        current = "?" if c.current_distance >= 999 else f"{c.current_distance:g}"
        alts = ", ".join(f"{name(p)} ({d:g})" for p, d in c.alternatives[1:]) or "-"
        table.add_row(
            name(c.device),
            name(c.current_parent),
            current,
            fmt_lqi(c.current_lqi),
            f"[green]{name(c.proposed_parent)}[/green]",
            alts,
        )
    return table


def _dump(obj: Any) -> None:
    console.print_json(json.dumps(obj, default=str))


# ------------------------------------------------------------
# Commands
# ------------------------------------------------------------

async def cmd_test(client: BridgeClient, args) -> int:
    result = await client.test_connection()
    if args.json:
        _dump(result)
    elif result["success"]:
        info = result.get("info") or {}
        console.print("[green]✓ Connected to Zigbee2MQTT[/green]")
        console.print(f"  Version: [cyan]{info.get('version', 'unknown')}[/cyan]")
        console.print(f"  Channel: [cyan]{(info.get('network') or {}).get('channel', 'unknown')}[/cyan]")
    else:
        err_console.print(f"[red]Error: {result['error']}[/red]")
    return 0 if result["success"] else 1


async def cmd_devices(client: BridgeClient, args) -> int:
    nodes, states = await asyncio.gather(client.get_devices(), client.collect_device_states())
    if args.json:
        _dump([{**asdict(n), "state": states.get(n.name)} for n in nodes])
    else:
        console.print(build_devices_table(nodes, states))
    return 0


async def cmd_device(client: BridgeClient, args) -> int:
    node = await client.get_device(args.name)
    state = await client.get_device_state(node.name)
    if args.json:
        _dump({"device": asdict(node), "state": state})
        return 0
    console.print(f"[bold]{node.name}[/bold]")
    console.print(f"  IEEE Address:  [cyan]{node.ieee}[/cyan]")
    console.print(f"  Type:          {node.role.value}")
    console.print(f"  Model:         {node.model or 'unknown'}")
    console.print(f"  Vendor:        {node.vendor or 'unknown'}")
    console.print(f"  Power Source:  {node.power_source or 'unknown'}")
    console.print(f"  Interview:     {'[green]completed[/green]' if node.interview_completed else '[red]incomplete[/red]'}")
    if state:
        console.print(f"  LQI:           {fmt_lqi(state.get('linkquality'))}")
        console.print(f"  Battery:       {fmt_battery(state.get('battery'))}")
    return 0


def _done(args, text: str, **extra: Any) -> int:
    if args.json:
        _dump({"success": True, **extra})
    else:
        console.print(f"[green]✓ {text}[/green]")
    return 0


async def cmd_device_set(client: BridgeClient, args) -> int:
    await client.set_device_state(args.name, args.payload)
    return _done(args, f"Command sent to {args.name}")


async def cmd_device_options(client: BridgeClient, args) -> int:
    await client.set_device_options(args.name, args.payload)
    return _done(args, f"Options updated for {args.name}")


async def cmd_device_rename(client: BridgeClient, args) -> int:
    await client.rename_device(args.old_name, args.new_name)
    return _done(args, f"Device renamed: {args.old_name} -> {args.new_name}")


async def cmd_device_remove(client: BridgeClient, args) -> int:
    await client.remove_device(args.name, force=args.force)
    return _done(args, f"Device {args.name} removed")


async def cmd_search(client: BridgeClient, args) -> int:
    nodes = await client.search_devices(args.query)
    if args.json:
        _dump([asdict(n) for n in nodes])
        return 0
    console.print(f'[bold]Found {len(nodes)} device(s) matching "{args.query}"[/bold]')
    for n in nodes:
        console.print(f"  [cyan]{n.name}[/cyan]  [dim]{n.vendor or ''} {n.model or ''}[/dim]")
    return 0


async def cmd_routers(client: BridgeClient, args) -> int:
    nodes, states = await asyncio.gather(
        client.find_devices_by_type(Role.ROUTER), client.collect_device_states(),
    )
    if args.json:
        _dump([asdict(n) for n in nodes])
    else:
        table = build_devices_table(nodes, states)
        table.title = f"Routers ({len(nodes)})"
        console.print(table)
    return 0


async def cmd_groups(client: BridgeClient, args) -> int:
    groups = await client.get_groups()
    if args.json:
        _dump([asdict(g) for g in groups])
        return 0
    table = Table(title="Groups")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Members", justify="right")
    for g in groups:
        table.add_row(str(g.id), g.name, str(len(g.members)))
    console.print(table)
    return 0


async def cmd_group(client: BridgeClient, args) -> int:
    _dump(asdict(await client.get_group(args.name)))
    return 0


async def cmd_group_set(client: BridgeClient, args) -> int:
    await client.set_group_state(args.name, args.payload)
    return _done(args, f"Command sent to group {args.name}")


async def cmd_bridge_info(client: BridgeClient, args) -> int:
    _dump(await client.get_bridge_info())
    return 0


async def cmd_bridge_state(client: BridgeClient, args) -> int:
    _dump(await client.get_bridge_state())
    return 0


async def cmd_bridge_restart(client: BridgeClient, args) -> int:
    await client.restart_bridge()
    return _done(args, "Bridge restart initiated")


async def cmd_permit_join(client: BridgeClient, args) -> int:
    permit = args.state == "on"
    await client.permit_join(permit, time_s=args.time, device=args.device)
    text = f"Permit join: {'enabled' if permit else 'disabled'}"
    if permit and args.time:
        text += f" for {args.time}s"
    return _done(args, text, permit_join=permit)


async def cmd_log_level(client: BridgeClient, args) -> int:
    await client.set_log_level(args.level)
    return _done(args, f"Log level set to: {args.level}")


async def cmd_network_map(client: BridgeClient, args) -> int:
    _dump(await client.get_network_map(args.timeout))
    return 0


async def cmd_diagnose(client: BridgeClient, args) -> int:
    err_console.print(f"[dim]Collecting device states ({client.config.state_window_s:g}s)...[/dim]")
    report = await client.diagnose()
    if args.json:
        _dump(report.to_dict())
        return 0
    if not report.issues:
        console.print("[green]✓ No issues detected![/green]")
    else:
        console.print(build_issue_table(report))
    return 0


async def cmd_routing(client: BridgeClient, args) -> int:
    err_console.print("[dim]Requesting network map (this can take a while)...[/dim]")
    graph, analysis = await client.analyze_routing(args.timeout)
    if args.json:
        _dump({
            "assignments": analysis.assignments,
            "optimal": analysis.optimal,
            "unplaced": analysis.unplaced,
            "anomalies": [asdict(c) for c in analysis.anomalies],
        })
        return 0
    console.print(build_routing_table(graph, analysis))
    return 0


COMMANDS = {
    "test": cmd_test,
    "devices": cmd_devices,
    "device": cmd_device,
    "device-set": cmd_device_set,
    "device-options": cmd_device_options,
    "device-rename": cmd_device_rename,
    "device-remove": cmd_device_remove,
    "search": cmd_search,
    "routers": cmd_routers,
    "groups": cmd_groups,
    "group": cmd_group,
    "group-set": cmd_group_set,
    "bridge-info": cmd_bridge_info,
    "bridge-state": cmd_bridge_state,
    "bridge-restart": cmd_bridge_restart,
    "permit-join": cmd_permit_join,
    "log-level": cmd_log_level,
    "network-map": cmd_network_map,
    "diagnose": cmd_diagnose,
    "routing": cmd_routing,
}


def json_object(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}")
    if not isinstance(value, dict):
        raise argparse.ArgumentTypeError("payload must be a JSON object")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meshdiag", description="Zigbee mesh diagnostics and routing report")
    parser.add_argument("-u", "--url", help="Bridge URL (default: $Z2M_URL or ws://localhost:8080)")
    parser.add_argument("-j", "--json", action="store_true", help="Output raw JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("test", help="Test connection to the bridge")
    sub.add_parser("devices", help="List all devices")
    p = sub.add_parser("device", help="Device info and state")
    p.add_argument("name")
    p = sub.add_parser("device-set", help="Set device state, e.g. '{\"state\": \"ON\"}'")
    p.add_argument("name")
    p.add_argument("payload", type=json_object)
    p = sub.add_parser("device-options", help="Change device options")
    p.add_argument("name")
    p.add_argument("payload", type=json_object)
    p = sub.add_parser("device-rename", help="Rename a device")
    p.add_argument("old_name")
    p.add_argument("new_name")
    p = sub.add_parser("device-remove", help="Remove a device from the network")
    p.add_argument("name")
    p.add_argument("--force", action="store_true")
    p = sub.add_parser("search", help="Search devices by name/model/vendor")
    p.add_argument("query")
    sub.add_parser("routers", help="List router devices")

    sub.add_parser("groups", help="List all groups")
    p = sub.add_parser("group", help="Group details")
    p.add_argument("name", help="Group name or ID")
    p = sub.add_parser("group-set", help="Set state of every group member")
    p.add_argument("name", help="Group name or ID")
    p.add_argument("payload", type=json_object)

    sub.add_parser("bridge-info", help="Bridge information")
    sub.add_parser("bridge-state", help="Bridge state")
    sub.add_parser("bridge-restart", help="Restart the bridge")
    p = sub.add_parser("permit-join", help="Enable/disable joining")
    p.add_argument("state", choices=("on", "off"))
    p.add_argument("time", type=int, nargs="?", default=None, help="Seconds")
    p.add_argument("--device", default=None, help="Join through this router only")
    p = sub.add_parser("log-level", help="Set bridge log level")
    p.add_argument("level", choices=LOG_LEVELS)

    for name, text in (("network-map", "Raw network map"), ("routing", "Routing proposals")):
        p = sub.add_parser(name, help=text)
        p.add_argument("--timeout", type=float, default=None, help="Network map timeout in seconds")
    sub.add_parser("diagnose", help="Run network diagnostics")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    client = BridgeClient(load_config(cli_url=args.url))
    try:
        code = asyncio.run(COMMANDS[args.command](client, args))
    except MeshDiagError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        code = 1
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Stopped by user.[/yellow]")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
