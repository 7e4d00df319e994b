"""Perforce to Mercurial Migration

Periodically mirrors submitted Perforce changes into Mercurial bookmarks,
keeping author, date and description of every change.
"""

__version__ = '0.1.0'

__all__ = ['__version__']
