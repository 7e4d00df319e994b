"""Perforce depot access."""

from .models import Change, Session
from .client import PerforceClient, parse_change, parse_changes

__all__ = ['Change', 'Session', 'PerforceClient', 'parse_change', 'parse_changes']
