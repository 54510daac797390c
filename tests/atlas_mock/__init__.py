"""Admin API mock for integration testing.

This package provides an in-memory implementation of the admin REST API
that enables pipeline tests without network access.

Key Features:
- In-memory projects and per-project resource stores
- The same get/post/patch/put/delete/list_all surface as the HTTP transport
- Call recording with mutation counting
- Error injection by method and path pattern, optionally for N calls
- Latency injection and in-flight tracking for concurrency tests

Usage:
    from atlas_mock import MockAtlasAPI

    api = MockAtlasAPI()
    project = api.state.add_project("p1")
    pipeline = Pipeline(config, api=api)
    ...
    assert api.mutation_count == 1
"""

from .api import InjectedError, MockAtlasAPI
from .state import MockAtlasState

__all__ = [
    "InjectedError",
    "MockAtlasAPI",
    "MockAtlasState",
]
