"""
Permission policy parsing and resolution.
"""

from sourceperm.permission.matcher import glob_match, method_match
from sourceperm.permission.policy import (
    PolicyLoader,
    normalize_api_rule,
    normalize_rule,
    parse_policy,
    serialize_policy,
)
from sourceperm.permission.resolver import resolve, resolve_one

__all__ = [
    "glob_match",
    "method_match",
    "PolicyLoader",
    "normalize_rule",
    "normalize_api_rule",
    "parse_policy",
    "serialize_policy",
    "resolve",
    "resolve_one",
]
