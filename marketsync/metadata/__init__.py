"""Content-addressed metadata resolution."""

from marketsync.metadata.resolver import MetadataResolver, to_gateway_url

__all__ = [
    "MetadataResolver",
    "to_gateway_url",
]
