#!/usr/bin/env python3
"""
Core Module for the billing lifecycle services

COMPONENTS:
    - config/: Dataclass configuration loaded from the environment
    - logger.py: Service logger setup
    - nats_client.py: NATS event bus for event-driven architecture
    - postgres_client.py: asyncpg connection pool wrapper
    - service_client_base.py: Base HTTP client for collaborator services
"""

__version__ = "1.0.0"
