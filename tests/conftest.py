# tests/conftest.py
"""
Global test bootstrap
- Keeps the process-wide settings away from any developer .env
- Pulls in the shared fixtures (app, services, fakes)
"""

from __future__ import annotations

import os

# Set BEFORE importing mediagate so the module-level settings pick them up
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from tests.fixtures.app import *  # noqa: F401,F403,E402
