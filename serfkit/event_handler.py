"""Event handlers that run configured scripts for matching events."""

from __future__ import annotations

import abc
import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from serfkit.events import Member, Query, UserEvent
from serfkit.invoke import invoke_event_script

_VALID_EVENTS = frozenset(
    {
        "member-join",
        "member-leave",
        "member-failed",
        "member-update",
        "member-reap",
        "user",
        "query",
        "*",
    }
)


class EventHandler(abc.ABC):
    """Something that acts when an event happens."""

    @abc.abstractmethod
    def handle_event(self, event) -> None:
        """React to ``event``."""


@dataclass(frozen=True)
class EventFilter:
    """Selects events by type and, for user events and queries, by name."""

    event: str
    name: str = ""

    def invoke(self, event) -> bool:
        """Whether ``event`` passes this filter."""
        if self.event == "*":
            return True
        if str(event.event_type) != self.event:
            return False
        if self.event == "user" and self.name:
            if not isinstance(event, UserEvent) or event.name != self.name:
                return False
        if self.event == "query" and self.name:
            if not isinstance(event, Query) or event.name != self.name:
                return False
        return True

    def valid(self) -> bool:
        """Whether the filter names a known event type."""
        return self.event in _VALID_EVENTS


@dataclass(frozen=True)
class EventScript(EventFilter):
    """A script to run for events that pass the filter."""

    script: str = ""

    def __str__(self) -> str:
        if self.name:
            return f"Event '{self.event}:{self.name}' invoking '{self.script}'"
        return f"Event '{self.event}' invoking '{self.script}'"


class ScriptEventHandler(EventHandler):
    """Runs every matching script for each event it receives."""

    def __init__(
        self,
        self_func: Callable[[], Member],
        scripts: Optional[Iterable[EventScript]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.self_func = self_func
        self.scripts = list(scripts or [])
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._new_scripts: Optional[list[EventScript]] = None

    def handle_event(self, event) -> None:
        with self._lock:
            if self._new_scripts is not None:
                self.scripts = self._new_scripts
                self._new_scripts = None
            scripts = self.scripts

        self_member = self.self_func()
        for script in scripts:
            if not script.invoke(event):
                continue
            try:
                invoke_event_script(self.logger, script.script, self_member, event)
            except (OSError, subprocess.SubprocessError, ValueError) as err:
                self.logger.error(
                    "agent: Error invoking script '%s': %s", script.script, err
                )

    def update_scripts(self, scripts: Iterable[EventScript]) -> None:
        """Replace the scripts; takes effect at the next event."""
        with self._lock:
            self._new_scripts = list(scripts)


def parse_event_script(value: str) -> list[EventScript]:
    """Parse ``"filters=script"`` (or a bare script) into event scripts."""
    filters, sep, script = value.partition("=")
    if not sep:
        filters, script = "", filters
    return [
        EventScript(event=f.event, name=f.name, script=script)
        for f in parse_event_filter(filters)
    ]


def parse_event_filter(value: str) -> list[EventFilter]:
    """Parse a comma-separated list of event filters; empty means all."""
    results = []
    for event in (value or "*").split(","):
        name = ""
        for prefix in ("user", "query"):
            if event.startswith(prefix + ":"):
                name = event[len(prefix) + 1 :]
                event = prefix
                break
        results.append(EventFilter(event=event, name=name))
    return results