"""
Live capability discovery.
"""

from sourceperm.discovery.discoverer import CapabilityDiscoverer
from sourceperm.discovery.mcp_client import BaseMcpClient, McpHttpClient, McpStdioClient

__all__ = ["CapabilityDiscoverer", "BaseMcpClient", "McpHttpClient", "McpStdioClient"]
