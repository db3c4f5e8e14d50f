"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings pointing at a temporary state file, no retry backoff
- plane / provider: In-memory control plane and its provider
- store: State store for the temporary state file
- reconciler: Reconciler wired to the above
- site_document: A static website document using the memory provider
"""

from typing import Any

import pytest

from sitestack.config.document import parse_document
from sitestack.config.settings import Settings
from sitestack.engine.reconciler import Reconciler
from sitestack.providers.memory import MemoryControlPlane, MemoryProvider
from sitestack.state.store import StateStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated to a temp directory."""
    return Settings(
        state_path=tmp_path / "sitestack.state.json",
        retry_attempts=3,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        max_workers=4,
    )


@pytest.fixture
def plane() -> MemoryControlPlane:
    """Fresh in-memory control plane."""
    return MemoryControlPlane()


@pytest.fixture
def provider(plane) -> MemoryProvider:
    """Memory provider sharing the plane fixture."""
    return MemoryProvider({"control_plane": plane})


@pytest.fixture
def store(settings) -> StateStore:
    """State store on the temp state file."""
    return StateStore(settings.state_path)


@pytest.fixture
def reconciler(provider, store, settings) -> Reconciler:
    """Reconciler against the memory provider."""
    return Reconciler(provider, store, settings)


@pytest.fixture
def site_data() -> dict[str, Any]:
    """Raw static website document."""
    return {
        "provider": {"name": "memory"},
        "variables": {
            "bucket_name": {"type": "string", "default": "example-site"},
            "index_document": {"type": "string", "default": "index.html"},
            "enable_cdn": {"type": "bool", "default": True},
        },
        "resources": [
            {
                "type": "s3_bucket",
                "name": "site",
                "attributes": {"bucket": "${var.bucket_name}", "tags": {"env": "test"}},
            },
            {
                "type": "s3_bucket_website",
                "name": "site",
                "attributes": {
                    "bucket": "${s3_bucket.site}",
                    "index_document": "${var.index_document}",
                },
            },
            {
                "type": "s3_bucket_policy",
                "name": "public_read",
                "attributes": {
                    "bucket": "${s3_bucket.site}",
                    "policy": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Principal": "*",
                                "Action": "s3:GetObject",
                                "Resource": "${s3_bucket.site.arn}/*",
                            }
                        ],
                    },
                },
            },
            {
                "type": "cloudfront_distribution",
                "name": "cdn",
                "attributes": {
                    "origin_domain_name": "${s3_bucket_website.site.website_endpoint}",
                    "default_root_object": "${var.index_document}",
                    "enabled": "${var.enable_cdn}",
                },
            },
        ],
        "outputs": {
            "website_endpoint": {"value": "http://${s3_bucket_website.site.website_endpoint}"},
            "cdn_domain": {"value": "${cloudfront_distribution.cdn.domain_name}"},
        },
    }


@pytest.fixture
def site_document(site_data):
    """Parsed static website document."""
    return parse_document(site_data)
