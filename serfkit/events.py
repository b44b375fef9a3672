"""Cluster events delivered to event handlers."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Callable, Optional


class EventType(enum.Enum):
    """The kinds of event a cluster can deliver."""

    MEMBER_JOIN = "member-join"
    MEMBER_LEAVE = "member-leave"
    MEMBER_FAILED = "member-failed"
    MEMBER_UPDATE = "member-update"
    MEMBER_REAP = "member-reap"
    USER = "user"
    QUERY = "query"

    def __str__(self) -> str:
        return self.value


@dataclass
class Member:
    """A single node of the cluster."""

    name: str = ""
    addr: str = ""
    port: int = 0
    tags: dict[str, str] = field(default_factory=dict)
    status: str = ""


@dataclass
class MemberEvent:
    """A change in membership affecting one or more members."""

    type: EventType = EventType.MEMBER_JOIN
    members: list[Member] = field(default_factory=list)

    @property
    def event_type(self) -> EventType:
        return self.type

    def __str__(self) -> str:
        return str(self.type)


@dataclass
class UserEvent:
    """A custom event fired by a user."""

    ltime: int = 0
    name: str = ""
    payload: bytes = b""
    coalesce: bool = False

    @property
    def event_type(self) -> EventType:
        return EventType.USER

    def __str__(self) -> str:
        return f"user-event: {self.name}"


@dataclass(eq=False)
class Query:
    """A query that members may answer.

    ``responder`` is called with the answer when :meth:`respond` is used;
    ``deadline`` is an optional wall-clock time after which answers are
    refused.
    """

    ltime: int = 0
    name: str = ""
    payload: bytes = b""
    deadline: Optional[float] = None
    responder: Optional[Callable[[bytes], None]] = None
    response: Optional[bytes] = field(default=None, init=False)

    @property
    def event_type(self) -> EventType:
        return EventType.QUERY

    def respond(self, payload: bytes) -> None:
        """Send ``payload`` as this node's answer; a query is answered once."""
        if self.response is not None:
            raise RuntimeError("Response already sent")
        if self.deadline is not None and time.time() > self.deadline:
            raise RuntimeError("Response is past the deadline")
        if self.responder is not None:
            self.responder(bytes(payload))
        self.response = bytes(payload)

    def __str__(self) -> str:
        return f"query: {self.name}"