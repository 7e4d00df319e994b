"""Mercurial working copy access."""

from .client import MercurialClient

__all__ = ['MercurialClient']
