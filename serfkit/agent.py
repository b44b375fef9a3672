"""The agent: wraps a cluster member and adds tag persistence, keyrings and event fan-out."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import platform
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, TextIO

from serfkit.config import Config
from serfkit.event_handler import EventHandler

# Query names starting with this prefix are reserved for internal use.
INTERNAL_QUERY_PREFIX = "_serf_"

_VALID_KEY_SIZES = (16, 24, 32)


class AgentError(Exception):
    """An agent operation failed."""


@dataclass
class SerfSettings:
    """Settings handed to the factory that builds the underlying cluster member.

    ``keyring`` holds the decoded keys with the primary key first.
    ``event_handler`` is called with each event the member delivers.
    """

    node_name: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    keyring: Optional[list[bytes]] = None
    enable_compression: bool = False
    log_output: Optional[TextIO] = None
    event_handler: Optional[Callable[[Any], None]] = None


def _make_logger(output: TextIO) -> logging.Logger:
    logger = logging.Logger("serfkit.agent")
    handler = logging.StreamHandler(output)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return logger


def _runtime_stats() -> dict[str, str]:
    return {
        "os": sys.platform,
        "arch": platform.machine(),
        "version": platform.python_version(),
        "max_procs": str(os.cpu_count() or 1),
        "threads": str(threading.active_count()),
    }


class Agent:
    """Starts and manages a cluster member and fans events out to handlers."""

    def __init__(
        self, agent_conf: Config, serf_conf: SerfSettings, logger: logging.Logger
    ) -> None:
        self.agent_conf = agent_conf
        self.serf_config = serf_conf
        self.logger = logger
        self.serf: Any = None
        self._handlers: dict[EventHandler, None] = {}
        self._handler_list: list[EventHandler] = []
        self._handlers_lock = threading.Lock()
        self._shutdown = False
        self._shutdown_lock = threading.Lock()
        self.shutdown_event = threading.Event()

    def start(self, serf_factory: Callable[[SerfSettings], Any]) -> None:
        """Build the underlying member from the settings and start delivering events."""
        self.logger.info("agent: Serf agent starting")
        try:
            serf = serf_factory(self.serf_config)
        except Exception as err:
            raise AgentError(f"Error creating Serf: {err}") from err
        self.serf = serf

    def leave(self) -> None:
        """Ask the member to leave the cluster gracefully."""
        if self.serf is None:
            return
        self.logger.info("agent: requesting graceful leave from Serf")
        self.serf.leave()

    def shutdown(self) -> None:
        """Shut the agent down; further calls do nothing."""
        with self._shutdown_lock:
            if self._shutdown:
                return
            if self.serf is not None:
                self.logger.info("agent: requesting serf shutdown")
                self.serf.shutdown()
            self.logger.info("agent: shutdown complete")
            self._shutdown = True
            self.shutdown_event.set()

    def join(self, addrs: Iterable[str], replay: bool) -> int:
        """Join the cluster through ``addrs``; returns the number of nodes joined."""
        addrs = list(addrs)
        self.logger.info("agent: joining: %s replay: %s", addrs, replay)
        try:
            count = self.serf.join(addrs, not replay)
        except Exception as err:
            self.logger.warning("agent: error joining: %s", err)
            raise
        if count > 0:
            self.logger.info("agent: joined: %d nodes", count)
        return count

    def force_leave(self, node: str) -> None:
        """Eject a failed node from the cluster."""
        self.logger.info("agent: Force leaving node: %s", node)
        try:
            self.serf.remove_failed_node(node)
        except Exception as err:
            self.logger.warning("agent: failed to remove node: %s", err)
            raise

    def user_event(self, name: str, payload: bytes, coalesce: bool) -> None:
        """Send a user event to the cluster."""
        self.logger.debug(
            "agent: Requesting user event send: %s. Coalesced: %r. Payload: %r",
            name,
            coalesce,
            payload,
        )
        try:
            self.serf.user_event(name, payload, coalesce)
        except Exception as err:
            self.logger.warning("agent: failed to send user event: %s", err)
            raise

    def query(self, name: str, payload: Optional[bytes], params: Any) -> Any:
        """Start a query; names with the internal prefix are refused except a bare ping."""
        if name.startswith(INTERNAL_QUERY_PREFIX):
            if name != INTERNAL_QUERY_PREFIX + "ping" or payload is not None:
                raise AgentError(
                    f"Queries cannot contain the '{INTERNAL_QUERY_PREFIX}' prefix"
                )
        self.logger.debug(
            "agent: Requesting query send: %s. Payload: %r", name, payload
        )
        try:
            return self.serf.query(name, payload, params)
        except Exception as err:
            self.logger.warning("agent: failed to start user query: %s", err)
            raise

    def register_event_handler(self, handler: EventHandler) -> None:
        """Add a handler that receives every event."""
        with self._handlers_lock:
            self._handlers[handler] = None
            self._handler_list = list(self._handlers)

    def deregister_event_handler(self, handler: EventHandler) -> None:
        """Remove a handler so it is no longer invoked."""
        with self._handlers_lock:
            self._handlers.pop(handler, None)
            self._handler_list = list(self._handlers)

    def dispatch_event(self, event: Any) -> None:
        """Hand ``event`` to every registered handler, unless shut down."""
        if self.shutdown_event.is_set():
            return
        self.logger.info("agent: Received event: %s", event)
        with self._handlers_lock:
            handlers = self._handler_list
        for handler in handlers:
            handler.handle_event(event)

    def install_key(self, key: str) -> Any:
        """Install a new encryption key on all members."""
        self.logger.info("agent: Initiating key installation")
        return self.serf.key_manager().install_key(key)

    def use_key(self, key: str) -> Any:
        """Switch all members to a new primary key."""
        self.logger.info("agent: Initiating primary key change")
        return self.serf.key_manager().use_key(key)

    def remove_key(self, key: str) -> Any:
        """Remove a key from every member's keyring."""
        self.logger.info("agent: Initiating key removal")
        return self.serf.key_manager().remove_key(key)

    def list_keys(self) -> Any:
        """List the keys held by every member."""
        self.logger.info("agent: Initiating key listing")
        return self.serf.key_manager().list_keys()

    def set_tags(self, tags: dict[str, str]) -> None:
        """Persist the tags, if a tags file is configured, then gossip them."""
        if self.agent_conf.tags_file:
            try:
                self._write_tags_file(tags)
            except AgentError as err:
                self.logger.error("agent: %s", err)
                raise
        self.serf.set_tags(tags)

    def stats(self) -> dict[str, dict[str, str]]:
        """Runtime information about the agent and its member."""
        local = self.serf.local_member()
        event_handlers = {
            f"{script.event}:{script.name}": script.script
            for script in self.agent_conf.event_scripts()
        }
        return {
            "agent": {"name": local.name},
            "runtime": _runtime_stats(),
            "serf": self.serf.stats(),
            "tags": dict(local.tags),
            "event_handlers": event_handlers,
        }

    def _load_tags_file(self, tags_file: str) -> None:
        if self.agent_conf.tags:
            raise AgentError("Tags config not allowed while using tag files")
        if not os.path.exists(tags_file):
            return
        try:
            with open(tags_file, "rb") as handle:
                data = handle.read()
        except OSError as err:
            raise AgentError(f"Failed to read tags file: {err}") from err
        try:
            decoded = json.loads(data)
        except (ValueError, UnicodeDecodeError) as err:
            raise AgentError(f"Failed to decode tags file: {err}") from err
        if decoded is None:
            decoded = {}
        if not isinstance(decoded, dict) or not all(
            isinstance(v, str) for v in decoded.values()
        ):
            raise AgentError(
                "Failed to decode tags file: expected an object of strings"
            )
        if self.serf_config.tags is None:
            self.serf_config.tags = {}
        self.serf_config.tags.update(decoded)
        self.logger.info(
            "agent: Restored %d tag(s) from %s", len(self.serf_config.tags), tags_file
        )

    def _write_tags_file(self, tags: dict[str, str]) -> None:
        try:
            encoded = json.dumps(tags, indent=2, sort_keys=True).encode()
        except (TypeError, ValueError) as err:
            raise AgentError(f"Failed to encode tags: {err}") from err
        try:
            fd = os.open(
                self.agent_conf.tags_file,
                os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                0o600,
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(encoded)
        except OSError as err:
            raise AgentError(f"Failed to write tags file: {err}") from err

    def _load_keyring_file(self, keyring_file: str) -> None:
        if self.agent_conf.encrypt_key:
            raise AgentError("Encryption key not allowed while using a keyring")
        os.stat(keyring_file)
        try:
            with open(keyring_file, "rb") as handle:
                data = handle.read()
        except OSError as err:
            raise AgentError(f"Failed to read keyring file: {err}") from err
        try:
            keys = json.loads(data)
        except (ValueError, UnicodeDecodeError) as err:
            raise AgentError(f"Failed to decode keyring file: {err}") from err
        if keys is None:
            keys = []
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise AgentError(
                "Failed to decode keyring file: expected an array of strings"
            )
        decoded = []
        for key in keys:
            try:
                decoded.append(base64.b64decode(key, validate=True))
            except (binascii.Error, ValueError) as err:
                raise AgentError(f"Failed to decode key from keyring: {err}") from err
        if not decoded:
            raise AgentError("Keyring file contains no keys")
        for key in decoded:
            if len(key) not in _VALID_KEY_SIZES:
                raise AgentError(
                    "Failed to restore keyring: key size must be 16, 24 or 32 bytes"
                )
        self.serf_config.keyring = decoded
        self.logger.info(
            "agent: Restored keyring with %d keys from %s", len(keys), keyring_file
        )


def create(
    agent_conf: Config,
    serf_conf: SerfSettings,
    log_output: Optional[TextIO] = None,
) -> Agent:
    """Create an agent, restoring tags and keyring from their files if configured.

    Handlers may be registered before :meth:`Agent.start` is called.
    """
    if log_output is None:
        log_output = sys.stderr
    serf_conf.log_output = log_output
    serf_conf.enable_compression = agent_conf.enable_compression

    agent = Agent(agent_conf, serf_conf, _make_logger(log_output))
    serf_conf.event_handler = agent.dispatch_event

    if agent_conf.tags_file:
        agent._load_tags_file(agent_conf.tags_file)
    if agent_conf.keyring_file:
        agent._load_keyring_file(agent_conf.keyring_file)
    return agent


def marshal_tags(tags: dict[str, str]) -> list[str]:
    """Render tags as ``key=value`` strings."""
    return [f"{name}={value}" for name, value in tags.items()]


def unmarshal_tags(tags: Iterable[str]) -> dict[str, str]:
    """Parse ``key=value`` strings into a tag mapping."""
    result: dict[str, str] = {}
    for tag in tags:
        name, sep, value = tag.partition("=")
        if not sep or not name:
            raise AgentError(f"Invalid tag: '{tag}'")
        result[name] = value
    return result