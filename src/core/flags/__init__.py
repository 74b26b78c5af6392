"""
Feature Flags: hierarchical feature flag resolution

This module owns flag resolution and mutation for accounts, courses and users:
- Definitions and the immutable registry (definitions.py)
- Context hierarchy (context.py)
- Resolution and its cache (resolver.py, cache.py)
- Transition validation (transitions.py, access.py)
- Mutation and audit (service.py, repository.py, audit.py, database.py)
- Configuration (config.py)
- REST API (api.py)
"""

__version__ = "0.1.0"
