"""
Service interfaces for the background loops.
"""

from .periodic import PeriodicService

__all__ = ['PeriodicService']
