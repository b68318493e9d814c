"""
Command-line interface for sourceperm.
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

from sourceperm.config.settings import settings
from sourceperm.projection.rows import group_rows
from sourceperm.projection.source_info import connection_kind, relative_time
from sourceperm.registry.events import SourceChangeFeed
from sourceperm.registry.file import FileSourceRegistry
from sourceperm.registry.watcher import WorkspaceSourceWatch
from sourceperm.sync.controller import SyncController
from sourceperm.sync.state import PermissionsView
from sourceperm.utils.logging import configure_logging


def format_view(view: PermissionsView, now_ms: int) -> str:
    """Render a view as plain text."""
    lines: list[str] = []
    if view.selection_error is not None:
        return f"error: {view.selection_error.message}"

    source = view.source
    if source is not None:
        lines.append(f"{source.name} ({source.slug})")
        lines.append(f"  type: {connection_kind(source).value}")
        if source.endpoint:
            lines.append(f"  endpoint: {source.endpoint}")
        tested = relative_time(source.last_tested_at, now_ms)
        lines.append(f"  last tested: {tested.unit}" + (f" ({tested.count})" if tested.count else ""))
        if source.connection_error:
            lines.append(f"  connection error: {source.connection_error}")
    if view.local_mcp_disabled:
        lines.append("  warning: local MCP servers are disabled for this workspace")

    if view.policy_state.warning is not None:
        lines.append(f"warning: {view.policy_state.warning.message}")
    if view.policy_state.error is not None:
        lines.append(f"permissions error: {view.policy_state.error.message}")

    lines.append("")
    lines.append("Permissions")
    if not view.permission_rows:
        lines.append("  (none)")
    for rule_type, rows in group_rows(view.permission_rows).items():
        for row in rows:
            comment = f"  # {row.comment}" if row.comment else ""
            lines.append(f"  {row.access:<8} {rule_type.value:<5} {row.pattern}{comment}")

    if source is not None and source.is_live:
        lines.append("")
        lines.append("Tools")
        if view.capability_state.error is not None:
            lines.append(f"  error: {view.capability_state.error.message}")
        elif not view.tool_rows:
            lines.append("  (none)")
        for tool in view.tool_rows:
            lines.append(f"  {tool.permission.value:<20} {tool.name}")

    return "\n".join(lines)


def _print_view(view: PermissionsView, as_json: bool) -> None:
    if as_json:
        print(view.model_dump_json(indent=2))
    else:
        print(format_view(view, int(time.time() * 1000)))
    sys.stdout.flush()


async def _show(args: argparse.Namespace) -> int:
    registry = FileSourceRegistry(args.root)
    controller = SyncController(registry, args.workspace, discovery_timeout=args.timeout)
    controller.select_source(args.slug)
    await controller.wait_idle()
    _print_view(controller.view, args.json)

    if not args.watch:
        await controller.aclose()
        return 1 if controller.view.selection_error else 0

    feed = SourceChangeFeed(asyncio.get_running_loop())
    watch = WorkspaceSourceWatch(registry, args.workspace, feed)
    controller.attach(feed)
    controller.subscribe(
        lambda view: _print_view(view, args.json) if view.ready and not view.loading else None
    )
    watch.start()
    try:
        await asyncio.Event().wait()
    finally:
        watch.stop()
        await controller.aclose()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect source permissions")
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help=f"Log level (default: {settings.log_level})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show = subparsers.add_parser("show", help="Show resolved permissions of a source")
    show.add_argument("workspace", help="Workspace id")
    show.add_argument("slug", help="Source slug")
    show.add_argument(
        "--root",
        type=Path,
        default=settings.workspaces_root,
        help=f"Workspaces root directory (default: {settings.workspaces_root})",
    )
    show.add_argument(
        "--timeout",
        type=float,
        default=settings.discovery_timeout,
        help="Tool discovery timeout in seconds",
    )
    show.add_argument("--watch", action="store_true", help="Keep running and reprint on changes")
    show.add_argument("--json", action="store_true", help="Print the view as JSON")

    args = parser.parse_args(argv)
    configure_logging(args.log_level, settings.log_format)

    try:
        return asyncio.run(_show(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
