"""
SDK for Search Quota Guard.

Provides the discovery API client and the governed search client.
"""

from .discovery_client import DiscoveryClient
from .guarded_client import GuardedSearchClient, date_range

__all__ = ["DiscoveryClient", "GuardedSearchClient", "date_range"]
