"""Perforce data models."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Change:
    """A submitted Perforce change."""

    change: int
    date: datetime
    user: str
    description: str = ''


@dataclass
class Session:
    """Ticket handed out by ``p4 login``.

    A session is active from a successful login until it is passed to
    ``logout``. Authenticated client operations refuse inactive sessions.
    """

    token: str = field(repr=False)
    active: bool = True
