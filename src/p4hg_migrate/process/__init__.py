"""Command execution for external version control tools."""

from .runner import ProcessResult, ProcessRunner

__all__ = ['ProcessResult', 'ProcessRunner']
