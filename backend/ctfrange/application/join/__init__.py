"""
Join Application Service Module
"""

from ctfrange.application.join.service import JoinResult, JoinService

__all__ = ["JoinService", "JoinResult"]
