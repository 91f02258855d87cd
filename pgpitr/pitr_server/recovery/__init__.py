"""
Recovery engine: plans and runs point-in-time recovery sessions.
"""

from .engine import RecoveryEngine, RecoverySession, SessionState

__all__ = ["RecoveryEngine", "RecoverySession", "SessionState"]
