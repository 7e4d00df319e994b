"""Change markers stored in the first line of migrated commit messages.

A migrated commit message looks like::

    change #1234
    Original description with non-ASCII characters escaped as \\u{e9}

The marker of the newest commit on a bookmark is the only record of how far
a mapping has been migrated.
"""

import re
from typing import Optional

from .exceptions import ChangeParseError
from .perforce.models import Change

MARKER_PREFIX = 'change #'

_ESCAPE_PATTERN = re.compile(r'\\u\{([0-9a-f]{1,6})\}')


def escape(text: str) -> str:
    """Replace every non-ASCII character with its ``\\u{xxxx}`` form."""
    return ''.join(ch if ch.isascii() else f'\\u{{{ord(ch):x}}}' for ch in text)


def unescape(text: str) -> str:
    """Reverse :func:`escape`."""
    return _ESCAPE_PATTERN.sub(lambda match: chr(int(match.group(1), 16)), text)


def encode(change_id: int, body: str = '') -> str:
    """Build a commit message carrying the marker for ``change_id``.

    Args:
        change_id: Perforce change number
        body: Change description

    Returns:
        ASCII-only commit message
    """
    return f'{MARKER_PREFIX}{change_id}\n{escape(body)}'


def decode(text: str) -> Optional[int]:
    """Extract the change number from a commit message.

    Args:
        text: Commit message or its first line

    Returns:
        The change number, or None if the message carries no marker

    Raises:
        ChangeParseError: If the marker is not followed by a number
    """
    if not text.startswith(MARKER_PREFIX):
        return None

    digits = re.match(r'\d*', text[len(MARKER_PREFIX):]).group(0)
    if not digits:
        raise ChangeParseError(f'Invalid change marker: {text!r}')

    return int(digits)


def format_change(change: Change) -> str:
    """Build the commit message for a Perforce change."""
    return encode(change.change, change.description)
