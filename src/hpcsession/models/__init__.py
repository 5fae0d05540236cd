"""
hpcsession Data Models

Shared dataclasses and data structures to avoid circular dependencies.

Philosophy:
- Zero dependencies on other hpcsession modules
- Self-contained data definitions
- Shared types used across multiple modules
"""

from .session_models import (
    IsolationLevel,
    JobDescriptor,
    LauncherSettings,
    SessionApp,
    SessionPaths,
    SessionRequest,
)

__all__ = [
    "IsolationLevel",
    "JobDescriptor",
    "LauncherSettings",
    "SessionApp",
    "SessionPaths",
    "SessionRequest",
]
