"""
Reporting Application Service Module
"""

from ctfrange.application.reporting.service import ReportingService

__all__ = ["ReportingService"]
