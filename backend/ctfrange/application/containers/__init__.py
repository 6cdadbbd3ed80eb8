"""
Container Pool Application Service Module
"""

from ctfrange.application.containers.service import ContainerPoolService

__all__ = ["ContainerPoolService"]
