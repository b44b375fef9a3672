"""Agent configuration: defaults, JSON decoding, merging and loading from disk."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import ipaddress
import json
import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Any, Iterable

from serfkit.event_handler import EventScript, parse_event_script

# The port used for cluster communication when an address names none.
DEFAULT_BIND_PORT = 7946

# The newest cluster protocol version spoken by default.
PROTOCOL_VERSION_MAX = 5

_MISSING_PORT = "missing port in address"
_TOO_MANY_COLONS = "too many colons in address"


class ConfigError(ValueError):
    """A configuration could not be read, decoded or interpreted."""


def _opt(key: str, kind: type) -> Any:
    metadata = {"key": key, "kind": kind}
    if kind is list:
        return field(default_factory=list, metadata=metadata)
    if kind is dict:
        return field(default_factory=dict, metadata=metadata)
    return field(default=kind(), metadata=metadata)


def _duration() -> Any:
    return field(default=timedelta(0))


@dataclass
class Config:
    """Settings for an agent, as given on the command line or in files."""

    node_name: str = _opt("node_name", str)
    role: str = _opt("role", str)
    disable_coordinates: bool = _opt("disable_coordinates", bool)
    tags: dict[str, str] = _opt("tags", dict)
    tags_file: str = _opt("tags_file", str)
    bind_addr: str = _opt("bind", str)
    advertise_addr: str = _opt("advertise", str)
    encrypt_key: str = _opt("encrypt_key", str)
    keyring_file: str = _opt("keyring_file", str)
    log_level: str = _opt("log_level", str)
    rpc_addr: str = _opt("rpc_addr", str)
    rpc_auth_key: str = _opt("rpc_auth", str)
    protocol: int = _opt("protocol", int)
    replay_on_join: bool = _opt("replay_on_join", bool)
    query_response_size_limit: int = _opt("query_response_size_limit", int)
    query_size_limit: int = _opt("query_size_limit", int)
    user_event_size_limit: int = _opt("user_event_size_limit", int)
    start_join: list[str] = _opt("start_join", list)
    event_handlers: list[str] = _opt("event_handlers", list)
    profile: str = _opt("profile", str)
    snapshot_path: str = _opt("snapshot_path", str)
    leave_on_term: bool = _opt("leave_on_terminate", bool)
    skip_leave_on_int: bool = _opt("skip_leave_on_interrupt", bool)
    discover: str = _opt("discover", str)
    interface: str = _opt("interface", str)
    reconnect_interval_raw: str = _opt("reconnect_interval", str)
    reconnect_interval: timedelta = _duration()
    reconnect_timeout_raw: str = _opt("reconnect_timeout", str)
    reconnect_timeout: timedelta = _duration()
    tombstone_timeout_raw: str = _opt("tombstone_timeout", str)
    tombstone_timeout: timedelta = _duration()
    disable_name_resolution: bool = _opt("disable_name_resolution", bool)
    enable_syslog: bool = _opt("enable_syslog", bool)
    syslog_facility: str = _opt("syslog_facility", str)
    retry_join: list[str] = _opt("retry_join", list)
    retry_max_attempts: int = _opt("retry_max_attempts", int)
    retry_interval_raw: str = _opt("retry_interval", str)
    retry_interval: timedelta = _duration()
    rejoin_after_leave: bool = _opt("rejoin_after_leave", bool)
    enable_compression: bool = _opt("enable_compression", bool)
    statsite_addr: str = _opt("statsite_addr", str)
    statsd_addr: str = _opt("statsd_addr", str)
    broadcast_timeout_raw: str = _opt("broadcast_timeout", str)
    broadcast_timeout: timedelta = _duration()

    def addr_parts(self, address: str) -> tuple[str, int]:
        """Split ``address`` into a resolved IP and a port.

        The default bind port is used when the address has none.
        """
        try:
            host, port_text = _split_host_port(address)
        except ConfigError as err:
            if str(err) != f"address {address}: {_MISSING_PORT}":
                raise
            address = f"{address}:{DEFAULT_BIND_PORT}"
            host, port_text = _split_host_port(address)
        return _resolve_host(host), _parse_port(port_text)

    def encrypt_bytes(self) -> bytes:
        """The configured encryption key, decoded from base64."""
        try:
            return base64.b64decode(self.encrypt_key, validate=True)
        except (binascii.Error, ValueError) as err:
            raise ConfigError(f"illegal base64 data: {err}") from err

    def event_scripts(self) -> list[EventScript]:
        """All event scripts named by the ``event_handlers`` setting."""
        return [
            script
            for handler in self.event_handlers
            for script in parse_event_script(handler)
        ]


def default_config() -> Config:
    """A configuration holding the agent's defaults."""
    return Config(
        disable_coordinates=False,
        tags={},
        bind_addr="0.0.0.0",
        advertise_addr="",
        log_level="INFO",
        rpc_addr="127.0.0.1:7373",
        protocol=PROTOCOL_VERSION_MAX,
        replay_on_join=False,
        profile="lan",
        retry_interval=timedelta(seconds=30),
        syslog_facility="LOCAL0",
        query_response_size_limit=1024,
        query_size_limit=1024,
        user_event_size_limit=512,
        broadcast_timeout=timedelta(seconds=5),
    )


def _split_host_port(hostport: str) -> tuple[str, str]:
    def fail(reason: str) -> ConfigError:
        return ConfigError(f"address {hostport}: {reason}")

    last_colon = hostport.rfind(":")
    if last_colon < 0:
        raise fail(_MISSING_PORT)
    start_search, end_search = 0, 0
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        if end + 1 == len(hostport):
            raise fail(_MISSING_PORT)
        if end + 1 != last_colon:
            if hostport[end + 1] == ":":
                raise fail(_TOO_MANY_COLONS)
            raise fail(_MISSING_PORT)
        host = hostport[1:end]
        start_search, end_search = 1, end + 1
    else:
        host = hostport[:last_colon]
        if ":" in host:
            raise fail(_TOO_MANY_COLONS)
    if "[" in hostport[start_search:]:
        raise fail("unexpected '[' in address")
    if "]" in hostport[end_search:]:
        raise fail("unexpected ']' in address")
    return host, hostport[last_colon + 1 :]


def _parse_port(text: str) -> int:
    if text == "":
        return 0
    if text.isdigit():
        port = int(text)
        if port > 65535:
            raise ConfigError(f"invalid port {text}")
        return port
    try:
        return socket.getservbyname(text, "tcp")
    except OSError as err:
        raise ConfigError(f"unknown port tcp/{text}") from err


def _format_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _resolve_host(host: str) -> str:
    if host == "":
        return ""
    literal = host.split("%", 1)[0]
    try:
        return _format_ip(ipaddress.ip_address(literal))
    except ValueError:
        pass
    try:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except OSError as err:
        raise ConfigError(f"lookup {host}: {err}") from err
    addresses = [info[4][0] for info in infos]
    if not addresses:
        raise ConfigError(f"lookup {host}: no such host")
    ipv4 = [a for a in addresses if ":" not in a]
    chosen = (ipv4 or addresses)[0].split("%", 1)[0]
    return _format_ip(ipaddress.ip_address(chosen))


_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as ``"300ms"``, ``"1.5h"`` or ``"2h45m"``."""
    original = value

    def invalid() -> ConfigError:
        return ConfigError(f'time: invalid duration "{original}"')

    negative = False
    if value and value[0] in "+-":
        negative = value[0] == "-"
        value = value[1:]
    if value == "0":
        return timedelta(0)
    if value == "":
        raise invalid()

    total = 0
    while value:
        if not (value[0].isdigit() or value[0] == "."):
            raise invalid()
        pos = 0
        while pos < len(value) and value[pos].isdigit():
            pos += 1
        whole_digits = value[:pos]
        frac_digits = ""
        if pos < len(value) and value[pos] == ".":
            pos += 1
            frac_start = pos
            while pos < len(value) and value[pos].isdigit():
                pos += 1
            frac_digits = value[frac_start:pos]
        if not whole_digits and not frac_digits:
            raise invalid()
        value = value[pos:]

        unit_end = 0
        while unit_end < len(value) and not (
            value[unit_end].isdigit() or value[unit_end] == "."
        ):
            unit_end += 1
        unit = value[:unit_end]
        if unit == "":
            raise ConfigError(f'time: missing unit in duration "{original}"')
        if unit not in _UNITS:
            raise ConfigError(f'time: unknown unit "{unit}" in duration "{original}"')
        value = value[unit_end:]

        scale = _UNITS[unit]
        amount = int(whole_digits or "0") * scale
        if frac_digits:
            amount += int(Fraction(int(frac_digits), 10 ** len(frac_digits)) * scale)
        total += amount
        if total > 2**63:
            raise invalid()

    if negative:
        total = -total
    elif total > 2**63 - 1:
        raise invalid()
    seconds, nanos = divmod(total, 1_000_000_000)
    return timedelta(seconds=seconds, microseconds=nanos / 1000)


def _coerce(key: str, kind: type, value: Any) -> Any:
    def mismatch(expected: str) -> ConfigError:
        return ConfigError(
            f"'{key}' expected type '{expected}', got '{type(value).__name__}'"
        )

    if kind is str:
        if not isinstance(value, str):
            raise mismatch("string")
        return value
    if kind is bool:
        if not isinstance(value, bool):
            raise mismatch("bool")
        return value
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise mismatch("int")
        return int(value)
    if kind is list:
        if not isinstance(value, list):
            raise mismatch("slice")
        for index, item in enumerate(value):
            if not isinstance(item, str):
                raise ConfigError(
                    f"'{key}[{index}]' expected type 'string', "
                    f"got '{type(item).__name__}'"
                )
        return list(value)
    if not isinstance(value, dict):
        raise mismatch("map")
    for name, item in value.items():
        if not isinstance(item, str):
            raise ConfigError(
                f"'{key}[{name}]' expected type 'string', got '{type(item).__name__}'"
            )
    return dict(value)


def _from_mapping(raw: Any) -> Config:
    if raw is None:
        return Config()
    if not isinstance(raw, dict):
        raise ConfigError(f"'' expected a map, got '{type(raw).__name__}'")

    by_key = {
        f.metadata["key"]: f for f in dataclasses.fields(Config) if "key" in f.metadata
    }
    values: dict[str, Any] = {}
    errors: list[str] = []
    unused: list[str] = []
    for key, value in raw.items():
        target = by_key.get(key)
        if target is None:
            target = next(
                (f for k, f in by_key.items() if k.lower() == str(key).lower()), None
            )
        if target is None:
            unused.append(str(key))
            continue
        if value is None:
            continue
        try:
            values[target.name] = _coerce(key, target.metadata["kind"], value)
        except ConfigError as err:
            errors.append(str(err))
    if unused:
        errors.append(f"'' has invalid keys: {', '.join(sorted(unused))}")
    if errors:
        raise ConfigError("; ".join(errors))

    config = Config(**values)
    for raw_name, name in (
        ("reconnect_interval_raw", "reconnect_interval"),
        ("reconnect_timeout_raw", "reconnect_timeout"),
        ("tombstone_timeout_raw", "tombstone_timeout"),
        ("retry_interval_raw", "retry_interval"),
        ("broadcast_timeout_raw", "broadcast_timeout"),
    ):
        text = getattr(config, raw_name)
        if text:
            setattr(config, name, parse_duration(text))
    return config


def decode_config(reader) -> Config:
    """Decode a JSON configuration read from the file-like ``reader``.

    Unknown keys and values of the wrong type raise :class:`ConfigError`.
    """
    data = reader.read()
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as err:
            raise ConfigError(str(err)) from err
    try:
        raw, _ = json.JSONDecoder().raw_decode(data.lstrip(" \t\r\n"))
    except json.JSONDecodeError as err:
        raise ConfigError(str(err)) from err
    return _from_mapping(raw)


def merge_config(a: Config, b: Config) -> Config:
    """Combine two configurations; values set in ``b`` take precedence.

    Event handlers and join addresses from both are kept, ``a``'s first.
    """
    result = dataclasses.replace(a, tags=dict(a.tags) if a.tags is not None else {})

    for name in (
        "node_name",
        "role",
        "bind_addr",
        "advertise_addr",
        "encrypt_key",
        "log_level",
        "rpc_addr",
        "rpc_auth_key",
        "profile",
        "snapshot_path",
        "discover",
        "interface",
        "tags_file",
        "keyring_file",
        "syslog_facility",
        "statsite_addr",
        "statsd_addr",
    ):
        if getattr(b, name):
            setattr(result, name, getattr(b, name))

    for name in (
        "disable_coordinates",
        "replay_on_join",
        "leave_on_term",
        "skip_leave_on_int",
        "disable_name_resolution",
        "enable_syslog",
        "rejoin_after_leave",
    ):
        if getattr(b, name):
            setattr(result, name, True)

    for name in (
        "reconnect_interval",
        "reconnect_timeout",
        "tombstone_timeout",
        "retry_max_attempts",
        "retry_interval",
        "query_response_size_limit",
        "query_size_limit",
        "user_event_size_limit",
        "broadcast_timeout",
    ):
        if getattr(b, name):
            setattr(result, name, getattr(b, name))

    if b.protocol > 0:
        result.protocol = b.protocol
    if b.tags:
        result.tags.update(b.tags)
    result.enable_compression = b.enable_compression

    result.event_handlers = [*a.event_handlers, *b.event_handlers]
    result.start_join = [*a.start_join, *b.start_join]
    result.retry_join = [*a.retry_join, *b.retry_join]
    return result


def read_config_paths(paths: Iterable[str | os.PathLike]) -> Config:
    """Load and merge configurations from files and directories, in order.

    A directory is read one level deep: its ``.json`` files are merged
    in lexical order of their names.
    """
    result = Config()
    for path in paths:
        path = os.fspath(path)
        try:
            is_dir = os.path.isdir(path)
            if not is_dir:
                handle = open(path, "rb")
        except OSError as err:
            raise ConfigError(f"Error reading '{path}': {err}") from err

        if not is_dir:
            with handle:
                try:
                    config = decode_config(handle)
                except (ConfigError, OSError) as err:
                    raise ConfigError(f"Error decoding '{path}': {err}") from err
            result = merge_config(result, config)
            continue

        try:
            with os.scandir(path) as entries:
                contents = sorted(entries, key=lambda entry: entry.name)
        except OSError as err:
            raise ConfigError(f"Error reading '{path}': {err}") from err

        for entry in contents:
            if entry.is_dir(follow_symlinks=False):
                continue
            if not entry.name.endswith(".json"):
                continue
            subpath = os.path.join(path, entry.name)
            try:
                handle = open(subpath, "rb")
            except OSError as err:
                raise ConfigError(f"Error reading '{subpath}': {err}") from err
            with handle:
                try:
                    config = decode_config(handle)
                except (ConfigError, OSError) as err:
                    raise ConfigError(f"Error decoding '{subpath}': {err}") from err
            result = merge_config(result, config)

    return result