"""
Purchase session management
"""

from agentmarket.sessions.manager import ALLOWED_TRANSITIONS, SessionManager
from agentmarket.sessions.tasks import run_session_sweeper

__all__ = ["ALLOWED_TRANSITIONS", "SessionManager", "run_session_sweeper"]
