"""
Capability discovery for live sources.
"""

import asyncio
from typing import Any

import httpx

from sourceperm.config.settings import settings
from sourceperm.domain.models import Source, ToolCapability
from sourceperm.errors import (
    DiscoveryTimeoutError,
    DiscoveryUnsupportedError,
    SourceConnectionError,
    SourcePermError,
)
from sourceperm.registry.base import SourceRegistry
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)


class CapabilityDiscoverer:
    """
    Queries a live source for its current tool list.

    Only mcp sources are live. Discovery is bounded by a timeout; a result
    that arrives for a source no longer selected is the caller's to drop.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        workspace_id: str,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize discoverer.

        Args:
            registry: Source registry providing the live discovery adapter
            workspace_id: Workspace the sources belong to
            timeout: Bounded wait in seconds (default: settings.discovery_timeout)
        """
        self.registry = registry
        self.workspace_id = workspace_id
        self.timeout = timeout if timeout is not None else settings.discovery_timeout

    async def discover(self, source: Source) -> list[ToolCapability]:
        """
        Discover the tools of a live source.

        Raises:
            DiscoveryUnsupportedError: Source type is not live (api/local)
            DiscoveryTimeoutError: No answer within the bounded wait
            SourceConnectionError: Adapter reported a failure or could not connect
        """
        if not source.is_live:
            raise DiscoveryUnsupportedError(
                f"Source {source.slug} is of type {source.type.value} and has no live tool list"
            )

        try:
            result = await asyncio.wait_for(
                self.registry.get_mcp_tools(self.workspace_id, source.slug),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise DiscoveryTimeoutError(
                f"Tool discovery for {source.slug} timed out after {self.timeout:g}s"
            ) from e
        except SourcePermError:
            raise
        except (httpx.HTTPError, OSError) as e:
            raise SourceConnectionError(f"Failed to load tools for {source.slug}: {e}") from e

        if not result.success or result.tools is None:
            raise SourceConnectionError(
                result.error or f"Failed to load tools for {source.slug}"
            )

        capabilities = self._to_capabilities(source.slug, result.tools)
        logger.debug("tools_discovered", slug=source.slug, tools=len(capabilities))
        return capabilities

    def _to_capabilities(
        self, slug: str, tools: list[dict[str, Any]]
    ) -> list[ToolCapability]:
        capabilities: list[ToolCapability] = []
        seen: set[str] = set()
        for tool in tools:
            name = tool.get("name") if isinstance(tool, dict) else None
            if not isinstance(name, str) or not name:
                logger.warning("tool_without_name_skipped", slug=slug, tool=str(tool)[:200])
                continue
            if name in seen:
                continue
            seen.add(name)
            description = tool.get("description")
            capabilities.append(
                ToolCapability(
                    name=name,
                    description=description if isinstance(description, str) else "",
                )
            )
        return capabilities


__all__ = ["CapabilityDiscoverer"]
