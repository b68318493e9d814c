"""
Tests for SyncController.

The fake registry can hold individual calls open so tests decide the order
in which completions arrive.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from sourceperm.domain.models import (
    Grade,
    McpToolsResult,
    RuleType,
    Source,
    SourceType,
    WorkspaceSettings,
)
from sourceperm.errors import ErrorKind, PolicyLoadError
from sourceperm.registry.events import SourceChangeFeed
from sourceperm.registry.file import FileSourceRegistry
from sourceperm.registry.watcher import WorkspaceSourceWatch
from sourceperm.sync.controller import SyncController
from sourceperm.sync.state import Phase


def mcp_source(slug, url=None, transport="http"):
    return Source(
        slug=slug,
        type=SourceType.MCP,
        name=slug.title(),
        transport=transport,
        url=url or f"https://{slug}.example.com/mcp",
        command="server" if transport == "stdio" else None,
    )


class FakeRegistry:
    """In-memory registry with per-call gating."""

    def __init__(self):
        self.sources = {
            "x": mcp_source("x"),
            "y": mcp_source("y"),
            "billing": Source(
                slug="billing",
                type=SourceType.API,
                name="Billing",
                base_url="https://billing.example.com",
            ),
        }
        self.policies = {
            "x": {"allowedMcpPatterns": ["x_*"]},
            "y": {"allowedMcpPatterns": ["y_read"], "blockedTools": ["y_delete"]},
            "billing": {
                "blockedTools": ["rm"],
                "allowedBashPatterns": ["ls *"],
                "allowedApiEndpoints": [{"method": "GET", "path": "/invoices"}],
            },
        }
        self.tools = {
            "x": [{"name": "x_one"}, {"name": "other"}],
            "y": [{"name": "y_read"}, {"name": "y_write"}, {"name": "y_delete"}],
        }
        self.workspace = WorkspaceSettings()
        self.hold: set[tuple[str, str]] = set()
        self.pending: list[tuple[str, str, asyncio.Event]] = []
        self.calls: list[tuple[str, str]] = []

    async def _gate(self, kind, slug):
        self.calls.append((kind, slug))
        if (kind, slug) in self.hold:
            event = asyncio.Event()
            self.pending.append((kind, slug, event))
            await event.wait()

    def release(self, kind=None, slug=None, index=None):
        """Release held calls, all matching ones or the one at index."""
        matching = [
            p for p in self.pending
            if (kind is None or p[0] == kind) and (slug is None or p[1] == slug)
        ]
        selected = [matching[index]] if index is not None else matching
        for item in selected:
            self.pending.remove(item)
            item[2].set()

    def count(self, kind, slug):
        return self.calls.count((kind, slug))

    async def get_sources(self, workspace_id):
        sources = list(self.sources.values())
        await self._gate("sources", workspace_id)
        return sources

    async def get_source_permissions_config(self, workspace_id, slug):
        record = self.policies.get(slug)
        await self._gate("policy", slug)
        if isinstance(record, Exception):
            raise record
        return record

    async def get_mcp_tools(self, workspace_id, slug):
        tools = self.tools.get(slug)
        await self._gate("tools", slug)
        if tools is None:
            return McpToolsResult(success=False, error="Connection refused")
        return McpToolsResult(success=True, tools=tools)

    async def get_workspace_settings(self, workspace_id):
        return self.workspace


async def spin(times=50):
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest_asyncio.fixture
async def controller(registry):
    controller = SyncController(registry, "ws", discovery_timeout=5.0)
    yield controller
    await controller.aclose()


def grades(view):
    return {row.name: row.permission for row in view.tool_rows}


class TestSelection:
    """Selecting sources and resolving their tools."""

    @pytest.mark.asyncio
    async def test_select_live_source(self, controller):
        controller.select_source("y")
        await controller.wait_idle()

        view = controller.view
        assert view.slug == "y"
        assert view.ready and not view.loading
        assert view.policy_state.phase == Phase.READY
        assert view.capability_state.phase == Phase.READY
        assert grades(view) == {
            "y_read": Grade.ALLOWED,
            "y_write": Grade.REQUIRES_PERMISSION,
            "y_delete": Grade.BLOCKED,
        }
        assert [(r.access, r.type, r.pattern) for r in view.permission_rows] == [
            ("blocked", RuleType.MCP, "y_delete"),
            ("allowed", RuleType.MCP, "y_read"),
        ]

    @pytest.mark.asyncio
    async def test_not_ready_while_discovering(self, controller, registry):
        registry.hold.add(("tools", "y"))

        controller.select_source("y")
        await spin()

        view = controller.view
        assert view.policy_state.phase == Phase.READY
        assert view.capability_state.phase == Phase.DISCOVERING
        assert view.loading
        assert not view.ready
        assert view.resolved == []
        assert len(view.permission_rows) == 2

        registry.release()
        await controller.wait_idle()
        assert controller.view.ready

    @pytest.mark.asyncio
    async def test_unknown_source(self, controller):
        controller.select_source("missing")
        await controller.wait_idle()

        view = controller.view
        assert view.selection_error is not None
        assert view.selection_error.kind == ErrorKind.NOT_FOUND
        assert view.source is None
        assert not view.ready

    @pytest.mark.asyncio
    async def test_api_source_is_unsupported_for_discovery(self, controller, registry):
        controller.select_source("billing")
        await controller.wait_idle()

        view = controller.view
        assert view.capability_state.phase == Phase.UNSUPPORTED
        assert view.capability_state.error is None
        assert view.ready
        assert view.tool_rows == []
        assert registry.count("tools", "billing") == 0
        assert [(r.access, r.type, r.pattern) for r in view.permission_rows] == [
            ("blocked", RuleType.TOOL, "rm"),
            ("allowed", RuleType.BASH, "ls *"),
            ("allowed", RuleType.API, "GET /invoices"),
        ]

    @pytest.mark.asyncio
    async def test_missing_policy_is_empty(self, controller, registry):
        del registry.policies["x"]

        controller.select_source("x")
        await controller.wait_idle()

        view = controller.view
        assert view.policy_state.phase == Phase.READY
        assert view.policy_state.warning is None
        assert view.permission_rows == []
        assert set(grades(view).values()) == {Grade.REQUIRES_PERMISSION}

    @pytest.mark.asyncio
    async def test_local_mcp_disabled_flag(self, controller, registry):
        registry.sources["shell"] = mcp_source("shell", transport="stdio")
        registry.tools["shell"] = []
        registry.workspace = WorkspaceSettings(local_mcp_enabled=False)

        controller.select_source("shell")
        await controller.wait_idle()

        assert controller.view.local_mcp_disabled is True


class TestStaleResults:
    """Completions for superseded requests never reach the view."""

    @pytest.mark.asyncio
    async def test_switching_selection_drops_previous_results(self, controller, registry):
        registry.hold.update({("policy", "x"), ("tools", "x")})
        views = []
        controller.subscribe(views.append)

        controller.select_source("x")
        await spin()
        controller.select_source("y")
        await spin()
        assert controller.view.slug == "y"
        assert controller.view.ready

        registry.release()
        await controller.wait_idle()

        view = controller.view
        assert view.slug == "y"
        assert set(grades(view)) == {"y_read", "y_write", "y_delete"}
        first_y = next(i for i, v in enumerate(views) if v.slug == "y")
        after_switch = views[first_y:]
        assert all(v.slug == "y" for v in after_switch)
        assert all(row.name.startswith("y_") for v in after_switch for row in v.tool_rows)

    @pytest.mark.asyncio
    async def test_newest_policy_wins(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        registry.hold.add(("policy", "x"))
        registry.policies["x"] = {"allowedMcpPatterns": ["first"]}
        controller.notify_external_change("x")
        await spin()
        registry.policies["x"] = {"allowedMcpPatterns": ["second"]}
        controller.notify_external_change("x")
        await spin()
        assert len(registry.pending) == 2

        registry.release(index=1)
        await spin()
        registry.release(index=0)
        await controller.wait_idle()

        assert [row.pattern for row in controller.view.permission_rows] == ["second"]

    @pytest.mark.asyncio
    async def test_deselect_discards_results(self, controller, registry):
        registry.hold.add(("policy", "x"))

        controller.select_source("x")
        await spin()
        controller.deselect()
        registry.release()
        await controller.wait_idle()

        view = controller.view
        assert view.slug is None
        assert view.policy is None
        assert controller.active_slug is None

    @pytest.mark.asyncio
    async def test_reselect_same_slug_starts_fresh(self, controller, registry):
        registry.hold.add(("tools", "x"))

        controller.select_source("x")
        await spin()
        registry.tools["x"] = [{"name": "x_new"}]
        controller.select_source("x")
        await spin()
        registry.release(index=1)
        await spin()
        registry.release()
        await controller.wait_idle()

        assert set(grades(controller.view)) == {"x_new"}


class TestExternalChanges:
    """Policy edits and source list notifications."""

    @pytest.mark.asyncio
    async def test_change_for_other_source_ignored(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()
        before = controller.view

        controller.notify_external_change("y")
        await controller.wait_idle()

        assert registry.count("policy", "y") == 0
        assert controller.view == before

    @pytest.mark.asyncio
    async def test_change_for_active_source_reloads_policy(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()
        assert grades(controller.view)["other"] == Grade.REQUIRES_PERMISSION

        registry.policies["x"] = {"allowedMcpPatterns": ["*"], "blockedTools": ["x_one"]}
        controller.notify_external_change("x")
        await controller.wait_idle()

        assert grades(controller.view) == {"x_one": Grade.BLOCKED, "other": Grade.ALLOWED}
        assert registry.count("tools", "x") == 1

    @pytest.mark.asyncio
    async def test_sources_changed_same_connection_keeps_tools(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        renamed = registry.sources["x"].model_copy(update={"name": "Renamed"})
        controller.handle_sources_changed([renamed, registry.sources["y"]])
        await controller.wait_idle()

        assert controller.view.source.name == "Renamed"
        assert registry.count("tools", "x") == 1
        assert registry.count("policy", "x") == 2
        assert controller.view.ready

    @pytest.mark.asyncio
    async def test_sources_changed_new_connection_rediscovers(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        moved = mcp_source("x", url="https://moved.example.com/mcp")
        registry.tools["x"] = [{"name": "x_moved"}]
        controller.handle_sources_changed([moved])
        await controller.wait_idle()

        assert registry.count("tools", "x") == 2
        assert set(grades(controller.view)) == {"x_moved"}
        assert controller.view.source.url == "https://moved.example.com/mcp"

    @pytest.mark.asyncio
    async def test_sources_changed_without_active_source_ignored(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()
        before = controller.view

        controller.handle_sources_changed([registry.sources["y"]])
        await controller.wait_idle()

        assert controller.view == before

    @pytest.mark.asyncio
    async def test_attached_feed(self, controller, registry):
        feed = SourceChangeFeed()
        controller.attach(feed)
        controller.select_source("x")
        await controller.wait_idle()

        registry.policies["x"] = {"allowedMcpPatterns": ["other"]}
        feed.publish(list(registry.sources.values()))
        await controller.wait_idle()
        assert grades(controller.view)["other"] == Grade.ALLOWED

        controller.detach()
        assert len(feed) == 0


class TestFailures:
    """Errors on one path never block the other."""

    @pytest.mark.asyncio
    async def test_malformed_policy_shows_warning(self, controller, registry):
        registry.policies["y"] = {"blockedTools": "y_delete"}

        controller.select_source("y")
        await controller.wait_idle()

        view = controller.view
        assert view.policy_state.phase == Phase.READY
        assert view.policy_state.warning.kind == ErrorKind.PARSE_ERROR
        assert view.permission_rows == []
        assert set(grades(view).values()) == {Grade.REQUIRES_PERMISSION}

    @pytest.mark.asyncio
    async def test_policy_load_error(self, controller, registry):
        registry.policies["y"] = PolicyLoadError("disk on fire")

        controller.select_source("y")
        await controller.wait_idle()

        view = controller.view
        assert view.policy_state.phase == Phase.ERROR
        assert view.policy_state.error.kind == ErrorKind.LOAD_ERROR
        assert view.ready
        assert set(grades(view).values()) == {Grade.REQUIRES_PERMISSION}

    @pytest.mark.asyncio
    async def test_discovery_timeout_keeps_permission_rows(self, registry):
        registry.hold.add(("tools", "y"))
        controller = SyncController(registry, "ws", discovery_timeout=0.05)
        try:
            controller.select_source("y")
            await controller.wait_idle()

            view = controller.view
            assert view.capability_state.phase == Phase.ERROR
            assert view.capability_state.error.kind == ErrorKind.TIMEOUT
            assert len(view.permission_rows) == 2
            assert view.ready
            assert view.tool_rows == []
        finally:
            await controller.aclose()

    @pytest.mark.asyncio
    async def test_discovery_failure_message(self, controller, registry):
        del registry.tools["x"]

        controller.select_source("x")
        await controller.wait_idle()

        state = controller.view.capability_state
        assert state.phase == Phase.ERROR
        assert state.error.kind == ErrorKind.CONNECTION_ERROR
        assert state.error.message == "Connection refused"

    @pytest.mark.asyncio
    async def test_refresh_after_failure(self, controller, registry):
        del registry.tools["x"]
        controller.select_source("x")
        await controller.wait_idle()

        registry.tools["x"] = [{"name": "x_back"}]
        controller.refresh_capabilities()
        await controller.wait_idle()

        assert controller.view.capability_state.phase == Phase.READY
        assert grades(controller.view) == {"x_back": Grade.ALLOWED}


class TestListeners:
    """View listeners."""

    @pytest.mark.asyncio
    async def test_listener_receives_views_and_unsubscribes(self, controller):
        views = []
        unsubscribe = controller.subscribe(views.append)

        controller.select_source("x")
        await controller.wait_idle()
        assert views and views[-1] == controller.view

        unsubscribe()
        count = len(views)
        controller.deselect()
        assert len(views) == count

    @pytest.mark.asyncio
    async def test_failing_listener_is_contained(self, controller):
        def broken(view):
            raise RuntimeError("boom")

        controller.subscribe(broken)
        controller.select_source("x")
        await controller.wait_idle()

        assert controller.view.ready

    @pytest.mark.asyncio
    async def test_independent_controllers(self, registry):
        first = SyncController(registry, "ws")
        second = SyncController(registry, "ws")
        try:
            first.select_source("x")
            second.select_source("y")
            await asyncio.gather(first.wait_idle(), second.wait_idle())

            assert first.view.slug == "x"
            assert second.view.slug == "y"
        finally:
            await first.aclose()
            await second.aclose()


class TestConcurrentStart:
    """Discovery runs alongside the policy load when the record is known."""

    @pytest.mark.asyncio
    async def test_discovery_starts_with_passed_record(self, controller, registry):
        registry.hold.add(("sources", "ws"))

        controller.select_source("x", source=registry.sources["x"])
        await spin()

        assert registry.count("tools", "x") == 1
        assert controller.view.ready
        assert set(grades(controller.view)) == {"x_one", "other"}

        registry.release()
        await controller.wait_idle()
        assert registry.count("tools", "x") == 1

    @pytest.mark.asyncio
    async def test_discovery_starts_with_known_record(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()
        controller.select_source("y")
        await controller.wait_idle()

        registry.hold.add(("sources", "ws"))
        controller.select_source("x")
        await spin()

        assert registry.count("tools", "x") == 2
        assert controller.view.capability_state.phase == Phase.READY

        registry.release()
        await controller.wait_idle()
        assert registry.count("tools", "x") == 2

    @pytest.mark.asyncio
    async def test_lookup_miss_drops_known_record(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        removed = registry.sources.pop("x")
        controller.select_source("x", source=removed)
        await controller.wait_idle()

        view = controller.view
        assert view.selection_error.kind == ErrorKind.NOT_FOUND
        assert view.source is None
        assert view.tool_rows == []
        assert not view.ready


class TestUnrelatedChanges:
    """A change to another source leaves the selected view alone."""

    @pytest.mark.asyncio
    async def test_other_slug_change_keeps_view(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()
        before = controller.view
        views = []
        controller.subscribe(views.append)

        controller.handle_sources_changed(list(registry.sources.values()), changed="y")
        await controller.wait_idle()

        assert controller.view == before
        assert controller.view.ready
        assert views == []
        assert registry.count("policy", "x") == 1

    @pytest.mark.asyncio
    async def test_other_slug_change_with_new_active_record_reloads(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        renamed = registry.sources["x"].model_copy(update={"name": "Renamed"})
        controller.handle_sources_changed([renamed, registry.sources["y"]], changed="y")
        await controller.wait_idle()

        assert controller.view.source.name == "Renamed"
        assert registry.count("policy", "x") == 2

    @pytest.mark.asyncio
    async def test_active_slug_change_reloads(self, controller, registry):
        controller.select_source("x")
        await controller.wait_idle()

        registry.policies["x"] = {"allowedMcpPatterns": ["*"]}
        controller.handle_sources_changed(list(registry.sources.values()), changed="x")
        await controller.wait_idle()

        assert set(grades(controller.view).values()) == {Grade.ALLOWED}


def write_local_source(root, slug, permissions):
    folder = root / "ws" / "sources" / slug
    folder.mkdir(parents=True)
    (folder / "config.json").write_text(
        json.dumps({"type": "local", "name": slug.title(), "local": {"path": f"/srv/{slug}"}})
    )
    data = permissions if isinstance(permissions, bytes) else json.dumps(permissions).encode()
    (folder / "permissions.json").write_bytes(data)
    return folder


class TestFileBackedWorkspace:
    """Controller wired to the file registry and folder watch."""

    @pytest.mark.asyncio
    async def test_policy_not_utf8_is_parse_warning(self, tmp_path):
        write_local_source(tmp_path, "notes", b'{"blockedTools": ["\xff\xfe"]}')
        controller = SyncController(FileSourceRegistry(tmp_path), "ws")
        try:
            controller.select_source("notes")
            await controller.wait_idle()

            state = controller.view.policy_state
            assert state.phase == Phase.READY
            assert state.error is None
            assert state.warning.kind == ErrorKind.PARSE_ERROR
            assert controller.view.permission_rows == []
            assert controller.view.ready
        finally:
            await controller.aclose()

    @pytest.mark.asyncio
    async def test_watched_change_to_other_source_keeps_view(self, tmp_path):
        write_local_source(tmp_path, "notes", {"allowedBashPatterns": ["cat *"]})
        other = write_local_source(tmp_path, "wiki", {"allowedBashPatterns": ["ls"]})
        registry = FileSourceRegistry(tmp_path)
        feed = SourceChangeFeed(asyncio.get_running_loop())
        watch = WorkspaceSourceWatch(registry, "ws", feed, debounce=0)
        controller = SyncController(registry, "ws")
        controller.attach(feed)
        try:
            controller.select_source("notes")
            await controller.wait_idle()
            before = controller.view
            views = []
            controller.subscribe(views.append)

            (other / "permissions.json").write_text(json.dumps({"blockedTools": ["rm"]}))
            watch.watcher.on_change("wiki", other / "permissions.json")
            await spin()
            await controller.wait_idle()

            assert views == []
            assert controller.view == before
            assert controller.view.ready
        finally:
            await controller.aclose()

    @pytest.mark.asyncio
    async def test_watched_change_to_active_source_reloads(self, tmp_path):
        folder = write_local_source(tmp_path, "notes", {"allowedBashPatterns": ["cat *"]})
        registry = FileSourceRegistry(tmp_path)
        feed = SourceChangeFeed(asyncio.get_running_loop())
        watch = WorkspaceSourceWatch(registry, "ws", feed, debounce=0)
        controller = SyncController(registry, "ws")
        controller.attach(feed)
        try:
            controller.select_source("notes")
            await controller.wait_idle()

            (folder / "permissions.json").write_text(json.dumps({"blockedTools": ["rm"]}))
            watch.watcher.on_change("notes", folder / "permissions.json")
            await spin()
            await controller.wait_idle()

            assert [row.pattern for row in controller.view.permission_rows] == ["rm"]
        finally:
            await controller.aclose()
