"""Running event scripts in a shell with the event passed on stdin."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
from typing import Union

from serfkit.events import Member, MemberEvent, Query, UserEvent

# Limit on collected script output, so a faulty script cannot exhaust memory.
MAX_BUF_SIZE = 8 * 1024

# Seconds after which a still-running script is reported as slow.
WARN_SLOW = 1.0

_SANITIZE_TAG = re.compile(r"[^A-Z0-9_]")

Event = Union[MemberEvent, UserEvent, Query]


class _TailBuffer:
    """Keeps the last ``size`` bytes written and counts everything written."""

    def __init__(self, size: int) -> None:
        self.size = size
        self.total_written = 0
        self._data = bytearray()

    def write(self, chunk: bytes) -> None:
        self.total_written += len(chunk)
        self._data.extend(chunk)
        if len(self._data) > self.size:
            del self._data[: len(self._data) - self.size]

    def getvalue(self) -> bytes:
        return bytes(self._data)


def sanitize_tag_name(name: str) -> str:
    """Turn a tag name into a valid environment variable suffix."""
    return _SANITIZE_TAG.sub("_", name.upper())


def event_clean(value: str) -> str:
    """Escape tabs and newlines so a value fits on one tab-separated line."""
    return value.replace("\t", "\\t").replace("\n", "\\n")


def member_event_stdin(event: MemberEvent) -> bytes:
    """Render a member event as lines of NAME, ADDRESS, ROLE and TAGS."""
    lines = []
    for member in event.members:
        tags = ",".join(f"{name}={value}" for name, value in member.tags.items())
        lines.append(
            f"{event_clean(member.name)}\t{member.addr}\t"
            f"{event_clean(member.tags.get('role', ''))}\t{event_clean(tags)}\n"
        )
    return "".join(lines).encode()


def payload_stdin(payload: bytes) -> bytes:
    """Return the payload, ending in a newline if it is not empty."""
    if payload and not payload.endswith(b"\n"):
        return payload + b"\n"
    return payload


def _feed(logger: logging.Logger, pipe, data: bytes) -> None:
    try:
        pipe.write(data)
    except (BrokenPipeError, OSError) as err:
        logger.error("Error writing payload: %s", err)
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def invoke_event_script(
    logger: logging.Logger, script: str, self_member: Member, event: Event
) -> None:
    """Run ``script`` for ``event``.

    The event type and details are passed in ``SERF_*`` environment
    variables and the event data on stdin. A non-zero exit raises
    :class:`subprocess.CalledProcessError`. If the event is a query and
    the script wrote output, that output is sent as the answer.
    """
    env = dict(os.environ)
    env["SERF_EVENT"] = str(getattr(event, "event_type", ""))
    env["SERF_SELF_NAME"] = self_member.name
    env["SERF_SELF_ROLE"] = self_member.tags.get("role", "")
    for name, value in self_member.tags.items():
        env[f"SERF_TAG_{sanitize_tag_name(name)}"] = value

    if isinstance(event, MemberEvent):
        stdin_data = member_event_stdin(event)
    elif isinstance(event, UserEvent):
        env["SERF_USER_EVENT"] = event.name
        env["SERF_USER_LTIME"] = str(event.ltime)
        stdin_data = payload_stdin(event.payload)
    elif isinstance(event, Query):
        env["SERF_QUERY_NAME"] = event.name
        env["SERF_QUERY_LTIME"] = str(event.ltime)
        stdin_data = payload_stdin(event.payload)
    else:
        raise ValueError(
            f"Unknown event type: {getattr(event, 'event_type', type(event).__name__)}"
        )

    if os.name == "nt":
        command = ["cmd", "/C", script]
    else:
        command = ["/bin/sh", "-c", script]

    output = _TailBuffer(MAX_BUF_SIZE)
    slow_timer = threading.Timer(
        WARN_SLOW,
        lambda: logger.warning(
            "agent: Script '%s' slow, execution exceeding %ss", script, WARN_SLOW
        ),
    )
    slow_timer.daemon = True
    slow_timer.start()
    try:
        proc = subprocess.Popen(
            command,
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError:
        slow_timer.cancel()
        raise

    feeder = threading.Thread(
        target=_feed, args=(logger, proc.stdin, stdin_data), daemon=True
    )
    feeder.start()
    with proc.stdout:
        for chunk in iter(lambda: proc.stdout.read1(4096), b""):
            output.write(chunk)
    returncode = proc.wait()
    feeder.join()
    slow_timer.cancel()

    if output.total_written > output.size:
        logger.warning(
            "agent: Script '%s' generated %d bytes of output, truncated to %d",
            script,
            output.total_written,
            output.size,
        )
    result = output.getvalue()
    logger.debug(
        "agent: Event '%s' script output: %s",
        env["SERF_EVENT"],
        result.decode(errors="replace"),
    )
    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, script, output=result)

    if isinstance(event, Query) and output.total_written > 0:
        try:
            event.respond(result)
        except Exception as err:  # the answer is best effort
            logger.warning("agent: Failed to respond to query '%s': %s", event, err)