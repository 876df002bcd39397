"""
Mail Sync Router Package

API endpoints for starting and supervising mailbox sync runs.
"""

from mailsync.routers.sync import router as sync_router

__all__ = [
    "sync_router",
]
