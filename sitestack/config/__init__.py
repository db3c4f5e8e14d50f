"""
Configuration Management.

This module provides:

- settings: Main Settings class with environment variable loading
- document: Desired-state document and variable file loading

Configuration sources (in order of precedence):
1. Environment variables (SITESTACK_*)
2. .env file
3. Default values

Example:
    from sitestack.config import get_settings, load_document

    settings = get_settings()
    document = load_document("samples/static-website.yaml")
"""

from sitestack.config.settings import Settings, get_settings
from sitestack.config.document import (
    collect_variables,
    load_document,
    load_variable_file,
    parse_document,
    parse_var_arguments,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    # Documents
    "collect_variables",
    "load_document",
    "load_variable_file",
    "parse_document",
    "parse_var_arguments",
]
