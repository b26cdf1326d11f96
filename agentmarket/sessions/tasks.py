import asyncio

import structlog

from agentmarket.sessions.manager import SessionManager

logger = structlog.get_logger()


async def run_session_sweeper(sessions: SessionManager, interval_seconds: int = 300):
    """Background task that drops expired sessions; lazy expiry stays authoritative"""
    while True:
        try:
            await asyncio.sleep(interval_seconds)

            removed = sessions.cleanup()
            if removed > 0:
                logger.info("expired_sessions_swept", count=removed)

        except asyncio.CancelledError:
            logger.info("session_sweeper_stopped")
            raise
        except Exception as e:
            logger.error("session_sweeper_error", error=str(e))
