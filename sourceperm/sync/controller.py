"""
Synchronization controller.

Keeps the permission view of the selected source current while policy
loads, tool discovery and change notifications complete in any order.

Every request is tagged with a generation drawn from one monotonically
increasing counter. A completion is applied only if its generation is still
the latest for its path on the active selection; anything else is a stale
result and is dropped. Requests are never force-cancelled to achieve this.

All state changes happen in synchronous sections on the event loop thread,
so there is exactly one writer and no awaits between check and write.
"""

import asyncio
import itertools
from collections.abc import Coroutine
from typing import Any, Callable

from sourceperm.discovery.discoverer import CapabilityDiscoverer
from sourceperm.domain.models import (
    PermissionPolicy,
    Source,
    ToolCapability,
    WorkspaceSettings,
)
from sourceperm.errors import (
    DiscoveryError,
    ErrorInfo,
    ErrorKind,
    PolicyNotFoundError,
    PolicyParseError,
    SourceNotFoundError,
    SourcePermError,
    StaleResultError,
)
from sourceperm.permission.policy import PolicyLoader
from sourceperm.permission.resolver import resolve
from sourceperm.projection.rows import build_permission_rows, build_tool_rows
from sourceperm.projection.source_info import local_mcp_disabled
from sourceperm.registry.base import SourceRegistry
from sourceperm.registry.events import SourceChangeFeed
from sourceperm.sync.state import Phase, PathState, PermissionsView, SelectionContext
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)

ViewListener = Callable[[PermissionsView], Any]


class SyncController:
    """
    Owns all policy, capability and resolved state for one view.

    Controllers share nothing; several can watch the same workspace
    (one per window, for example) without interfering.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        workspace_id: str,
        policy_loader: PolicyLoader | None = None,
        discoverer: CapabilityDiscoverer | None = None,
        discovery_timeout: float | None = None,
    ) -> None:
        """
        Initialize controller.

        Args:
            registry: Source registry (external collaborator)
            workspace_id: Workspace whose sources are shown
            policy_loader: Policy loader (default: built on registry)
            discoverer: Capability discoverer (default: built on registry)
            discovery_timeout: Bounded discovery wait in seconds for the default discoverer
        """
        self.registry = registry
        self.workspace_id = workspace_id
        self.policy_loader = policy_loader or PolicyLoader(registry, workspace_id)
        self.discoverer = discoverer or CapabilityDiscoverer(
            registry, workspace_id, timeout=discovery_timeout
        )

        self._generations = itertools.count(1)
        self._context: SelectionContext | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._listeners: list[ViewListener] = []
        self._feed_unsubscribe: Callable[[], None] | None = None
        self._view = PermissionsView()
        # Last known source records, by slug
        self._known: dict[str, Source] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active_slug(self) -> str | None:
        return self._context.slug if self._context else None

    @property
    def view(self) -> PermissionsView:
        return self._view

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Receive a PermissionsView after every applied change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def attach(self, feed: SourceChangeFeed) -> None:
        """Follow source list changes published on a feed."""
        self.detach()
        self._feed_unsubscribe = feed.subscribe(self.handle_sources_changed)

    def detach(self) -> None:
        if self._feed_unsubscribe is not None:
            self._feed_unsubscribe()
            self._feed_unsubscribe = None

    def select_source(self, slug: str, source: Source | None = None) -> None:
        """
        Make slug the active selection.

        Invalidates everything in flight for the previous selection, then
        starts the source lookup, workspace settings load, policy load and
        discovery concurrently.

        Discovery needs the source record. It starts right away when the
        record is passed in or already known from an earlier lookup or
        source list notification; otherwise it starts as soon as the lookup
        returns. The lookup still runs and re-discovers only if the fresh
        record has different connection details.
        """
        previous = self._context
        if previous is not None:
            logger.debug("selection_invalidated", slug=previous.slug)

        ctx = SelectionContext(workspace_id=self.workspace_id, slug=slug)
        self._context = ctx
        logger.info("source_selected", workspace_id=self.workspace_id, slug=slug)

        ctx.source_token = self._next()
        self._spawn(self._lookup_source(slug, ctx.source_token))
        ctx.settings_token = self._next()
        self._spawn(self._load_workspace_settings(slug, ctx.settings_token))
        self._start_policy_load(ctx)

        known = source if source is not None else self._known.get(slug)
        if known is not None and known.slug == slug:
            self._adopt_source(ctx, known)
        self._recompute()

    def deselect(self) -> None:
        """Drop the active selection. Outstanding calls may finish; their results are discarded."""
        if self._context is None:
            return
        logger.info("source_deselected", slug=self._context.slug)
        self._context = None
        self._recompute()

    def notify_external_change(self, slug: str) -> None:
        """Reload the policy if slug is the active selection; otherwise ignore."""
        ctx = self._context
        if ctx is None or ctx.slug != slug:
            logger.debug("external_change_ignored", slug=slug, active=self.active_slug)
            return

        logger.info("external_change_reload", slug=slug)
        self._start_policy_load(ctx)
        self._recompute()

    def handle_sources_changed(
        self, sources: list[Source], changed: str | None = None
    ) -> None:
        """
        Handle a full source list notification.

        Args:
            sources: Full current source list
            changed: Slug whose files changed, None when unknown

        When changed names another source and the active record is
        identical, the notification is ignored. Otherwise the active record
        is replaced and its policy reloaded; discovery is re-run only when
        the connection details changed.
        """
        self._known = {source.slug: source for source in sources}
        ctx = self._context
        if ctx is None:
            return

        updated = self._known.get(ctx.slug)
        if updated is None:
            logger.debug("active_source_not_in_change", slug=ctx.slug)
            return

        if changed is not None and changed != ctx.slug and updated == ctx.source:
            logger.debug("external_change_ignored", slug=changed, active=ctx.slug)
            return

        logger.info("source_changed", slug=ctx.slug, changed=changed)
        # A lookup still in flight started before this notification
        ctx.source_token = self._next()
        self._adopt_source(ctx, updated)
        self._start_policy_load(ctx)
        self._recompute()

    def refresh_capabilities(self) -> None:
        """Re-run discovery for the active live source."""
        ctx = self._context
        if ctx is None or ctx.source is None or not ctx.source.is_live:
            return
        self._start_discovery(ctx)
        self._recompute()

    async def wait_idle(self) -> None:
        """Wait until no request is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Tear down: deselect, stop following the feed, cancel outstanding work."""
        self.deselect()
        self.detach()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Request paths
    # ------------------------------------------------------------------

    def _next(self) -> int:
        return next(self._generations)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _start_policy_load(self, ctx: SelectionContext) -> None:
        ctx.policy_token = self._next()
        ctx.policy_state = PathState(phase=Phase.LOADING)
        self._spawn(self._load_policy(ctx.slug, ctx.policy_token))

    def _start_discovery(self, ctx: SelectionContext) -> None:
        assert ctx.source is not None
        ctx.capability_token = self._next()
        ctx.capability_state = PathState(phase=Phase.DISCOVERING)
        self._spawn(self._discover(ctx.slug, ctx.source, ctx.capability_token))

    def _adopt_source(self, ctx: SelectionContext, source: Source) -> None:
        previous = ctx.source
        ctx.source = source
        ctx.selection_error = None

        unchanged = (
            previous is not None
            and previous.connection_signature() == source.connection_signature()
            and ctx.capability_state.phase != Phase.IDLE
        )
        if unchanged:
            return

        if source.is_live:
            self._start_discovery(ctx)
        else:
            # Drops any discovery still running for a previous live record
            ctx.capability_token = self._next()
            ctx.capabilities = []
            ctx.capability_state = PathState(phase=Phase.UNSUPPORTED)

    async def _lookup_source(self, slug: str, token: int) -> None:
        source: Source | None = None
        error: ErrorInfo | None = None
        try:
            sources = await self.registry.get_sources(self.workspace_id)
            self._known = {s.slug: s for s in sources}
            source = self._known.get(slug)
            if source is None:
                raise SourceNotFoundError(f"Source {slug} not found")
        except SourcePermError as e:
            error = e.to_info()
        except Exception as e:
            logger.error("source_lookup_failed", slug=slug, error=str(e), exc_info=True)
            error = ErrorInfo(kind=ErrorKind.LOAD_ERROR, message=f"Failed to load source: {e}")

        self._apply("source", slug, token, self._apply_source, source, error)

    async def _load_workspace_settings(self, slug: str, token: int) -> None:
        try:
            workspace = await self.registry.get_workspace_settings(self.workspace_id)
        except Exception as e:
            logger.error(
                "workspace_settings_load_failed",
                workspace_id=self.workspace_id,
                error=str(e),
                exc_info=True,
            )
            return

        self._apply("settings", slug, token, self._apply_settings, workspace)

    async def _load_policy(self, slug: str, token: int) -> None:
        policy: PermissionPolicy | None = None
        warning: ErrorInfo | None = None
        error: ErrorInfo | None = None
        try:
            policy = await self.policy_loader.load(slug)
        except PolicyNotFoundError:
            policy = PermissionPolicy.empty()
        except PolicyParseError as e:
            # User-edited file: show an empty policy and say why
            logger.warning("policy_parse_failed", slug=slug, error=e.message)
            policy = PermissionPolicy.empty()
            warning = e.to_info()
        except SourcePermError as e:
            logger.error("policy_load_failed", slug=slug, error=e.message)
            error = e.to_info()
        except Exception as e:
            logger.error("policy_load_failed", slug=slug, error=str(e), exc_info=True)
            error = ErrorInfo(kind=ErrorKind.LOAD_ERROR, message=f"Failed to load permissions: {e}")

        self._apply("policy", slug, token, self._apply_policy, policy, warning, error)

    async def _discover(self, slug: str, source: Source, token: int) -> None:
        capabilities: list[ToolCapability] | None = None
        error: ErrorInfo | None = None
        try:
            capabilities = await self.discoverer.discover(source)
        except DiscoveryError as e:
            logger.warning("tool_discovery_failed", slug=slug, kind=e.kind.value, error=e.message)
            error = e.to_info()
        except Exception as e:
            logger.error("tool_discovery_failed", slug=slug, error=str(e), exc_info=True)
            error = ErrorInfo(
                kind=ErrorKind.CONNECTION_ERROR, message=f"Failed to load tools: {e}"
            )

        self._apply("capability", slug, token, self._apply_capabilities, capabilities, error)

    # ------------------------------------------------------------------
    # Apply (single writer)
    # ------------------------------------------------------------------

    def _current(self, path: str, slug: str, token: int) -> SelectionContext:
        ctx = self._context
        if ctx is None or ctx.slug != slug or ctx.token_for(path) != token:
            raise StaleResultError(f"{path} result for {slug} (generation {token}) superseded")
        return ctx

    def _apply(
        self,
        path: str,
        slug: str,
        token: int,
        apply: Callable[..., None],
        *args: Any,
    ) -> None:
        try:
            ctx = self._current(path, slug, token)
        except StaleResultError:
            logger.debug("stale_result_dropped", path=path, slug=slug, generation=token)
            return
        apply(ctx, *args)
        self._recompute()

    def _apply_source(
        self, ctx: SelectionContext, source: Source | None, error: ErrorInfo | None
    ) -> None:
        if error is not None or source is None:
            ctx.selection_error = error
            # Drop a record adopted from the cache, and any discovery for it
            ctx.source = None
            ctx.capability_token = self._next()
            ctx.capabilities = None
            ctx.capability_state = PathState()
            return
        self._adopt_source(ctx, source)

    def _apply_settings(self, ctx: SelectionContext, workspace: WorkspaceSettings) -> None:
        ctx.workspace = workspace

    def _apply_policy(
        self,
        ctx: SelectionContext,
        policy: PermissionPolicy | None,
        warning: ErrorInfo | None,
        error: ErrorInfo | None,
    ) -> None:
        if error is not None:
            ctx.policy = None
            ctx.policy_state = PathState(phase=Phase.ERROR, error=error)
            return
        ctx.policy = policy
        ctx.policy_state = PathState(phase=Phase.READY, warning=warning)
        logger.info(
            "policy_loaded",
            slug=ctx.slug,
            rules=policy.rule_count if policy else 0,
            recovered=warning is not None,
        )

    def _apply_capabilities(
        self,
        ctx: SelectionContext,
        capabilities: list[ToolCapability] | None,
        error: ErrorInfo | None,
    ) -> None:
        if error is not None:
            ctx.capabilities = None
            ctx.capability_state = PathState(phase=Phase.ERROR, error=error)
            return
        ctx.capabilities = capabilities
        ctx.capability_state = PathState(phase=Phase.READY)
        logger.info("tools_loaded", slug=ctx.slug, tools=len(capabilities or []))

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def _build_view(self) -> PermissionsView:
        ctx = self._context
        if ctx is None:
            return PermissionsView()

        source = ctx.source
        rows = []
        if source is not None and ctx.policy is not None:
            rows = build_permission_rows(ctx.policy, source.type)

        ready = ctx.policy_state.terminal and ctx.capability_state.terminal
        resolved = []
        tool_rows = []
        if ready:
            resolved = resolve(ctx.policy or PermissionPolicy.empty(), ctx.capabilities or [])
            tool_rows = build_tool_rows(resolved)

        return PermissionsView(
            slug=ctx.slug,
            source=source,
            selection_error=ctx.selection_error,
            policy_state=ctx.policy_state,
            capability_state=ctx.capability_state,
            policy=ctx.policy,
            permission_rows=rows,
            resolved=resolved,
            tool_rows=tool_rows,
            local_mcp_disabled=source is not None and local_mcp_disabled(source, ctx.workspace),
            ready=ready,
        )

    def _recompute(self) -> None:
        self._view = self._build_view()
        for listener in list(self._listeners):
            try:
                listener(self._view)
            except Exception as e:
                logger.error("view_listener_error", error=str(e), exc_info=True)


__all__ = ["SyncController", "ViewListener"]
