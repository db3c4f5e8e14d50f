"""
Control plane providers.

- base: Provider / ResourceHandler interfaces
- registry: name -> provider class lookup
- aws: boto3 handlers for S3 static websites and CloudFront
- memory: in-process control plane for dry runs and tests
"""

from sitestack.providers.base import Provider, RemoteResource, ResourceHandler
from sitestack.providers.registry import get_provider, list_providers, register_provider

__all__ = [
    "Provider",
    "RemoteResource",
    "ResourceHandler",
    "get_provider",
    "list_providers",
    "register_provider",
]
