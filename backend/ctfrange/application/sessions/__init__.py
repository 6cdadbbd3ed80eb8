"""
Session Lifecycle Application Service Module
"""

from ctfrange.application.sessions.service import SessionService

__all__ = ["SessionService"]
