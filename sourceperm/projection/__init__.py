"""
Display projections of resolved permission state.
"""

from sourceperm.projection.rows import (
    build_permission_rows,
    build_tool_rows,
    count_grades,
    group_rows,
)
from sourceperm.projection.source_info import (
    ConnectionKind,
    RelativeTime,
    connection_kind,
    endpoint_opens_externally,
    local_mcp_disabled,
    relative_time,
    source_endpoint,
    source_files,
)

__all__ = [
    "build_permission_rows",
    "build_tool_rows",
    "count_grades",
    "group_rows",
    "ConnectionKind",
    "RelativeTime",
    "connection_kind",
    "endpoint_opens_externally",
    "local_mcp_disabled",
    "relative_time",
    "source_endpoint",
    "source_files",
]
