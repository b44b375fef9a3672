# serfkit

Building blocks for a Serf cluster-membership agent, in pure Python with no
third-party dependencies:

- **Agent configuration** (`serfkit.config`): defaults, JSON configuration
  files and directories, merging of several configurations, and duration
  strings such as `"15s"`, `"1.5h"` or `"2h45m"`.
- **Events** (`serfkit.events`): `EventType`, `Member`, `MemberEvent`,
  `UserEvent` and `Query`.
- **Event scripts** (`serfkit.event_handler`, `serfkit.invoke`): filters such
  as `member-join`, `user:deploy` or `query:uptime`, and a handler that runs
  shell scripts for matching events.
- **The agent** (`serfkit.agent`): tag and keyring files, event-handler
  registration and fan-out, key management and statistics, on top of a
  cluster member that you supply.
- **Small helpers**: `GatedWriter` and `AppendSliceValue`.

## Configuration

```python
from serfkit.config import default_config, merge_config, read_config_paths

config = merge_config(default_config(), read_config_paths(["/etc/serf"]))
host, port = config.addr_parts(config.bind_addr)   # ("0.0.0.0", 7946) by default
for script in config.event_scripts():
    print(script)
```

`read_config_paths` reads each path in turn. A file is decoded as JSON; a
directory is read one level deep, taking its `*.json` files in lexical order
of their names. Values set in later configurations override earlier ones,
while `event_handlers`, `start_join` and `retry_join` are concatenated.
Unknown keys, values of the wrong type and bad durations raise `ConfigError`.

`decode_config` decodes one JSON document from a file-like object, and
`parse_duration` turns a duration string into a `datetime.timedelta`.
`Config.encrypt_bytes()` returns the base64-decoded `encrypt_key`.

## Event scripts

```python
from serfkit.event_handler import ScriptEventHandler, parse_event_script
from serfkit.events import Member, UserEvent

scripts = parse_event_script("member-join,user:deploy=./handler.sh")
handler = ScriptEventHandler(lambda: Member(name="node1", tags={"role": "web"}), scripts)
handler.handle_event(UserEvent(ltime=1, name="deploy", payload=b"v2"))
```

A string without `=` is a script run for every event. Each matching script
is run through `/bin/sh -c` (or `cmd /C` on Windows) with these environment
variables:

- `SERF_EVENT`, `SERF_SELF_NAME`, `SERF_SELF_ROLE`;
- `SERF_TAG_<NAME>` for each tag of the local member, the name upper-cased
  with characters outside `A-Z0-9_` replaced by `_`;
- `SERF_USER_EVENT` and `SERF_USER_LTIME` for user events;
- `SERF_QUERY_NAME` and `SERF_QUERY_LTIME` for queries.

Member events write one `NAME<TAB>ADDRESS<TAB>ROLE<TAB>TAGS` line per member
to standard input; user events and queries write their payload, ending in a
newline. For a query, whatever the script prints (up to 8 KiB) is sent as the
answer through `Query.respond`. Script failures are logged, not raised.
`ScriptEventHandler.update_scripts` replaces the scripts from the next event
on.

## The agent

```python
from serfkit.agent import SerfSettings, create
from serfkit.config import default_config

agent = create(default_config(), SerfSettings(node_name="node1"))
agent.register_event_handler(handler)
agent.start(build_member)      # build_member(settings) -> your cluster member
...
agent.leave()
agent.shutdown()
```

`create` restores tags from `tags_file` and keys from `keyring_file` into the
`SerfSettings`, and sets `settings.event_handler` to `Agent.dispatch_event`,
which passes each event to every registered handler. `set_tags` writes the
tags file (mode 0600) before handing the tags to the member. Query names
starting with `_serf_` are refused, except a bare `_serf_ping`.
`marshal_tags` and `unmarshal_tags` convert between a tag mapping and
`key=value` strings. Failures raise `AgentError`.

## Helpers

`GatedWriter` wraps a binary stream and holds everything written to it until
`flush()` is called; from then on writes pass straight through.
`AppendSliceValue` is a list whose `set()` appends a value and whose `str()`
joins the values with commas, for options that may be given several times.

## What this package does not do

- It does not implement the gossip protocol or cluster membership itself.
  `Agent.start` takes a factory that builds the member; the agent calls its
  `join`, `leave`, `shutdown`, `remove_failed_node`, `user_event`, `query`,
  `set_tags`, `local_member`, `stats` and `key_manager` methods.
- It has no RPC client or server for talking to a running agent.
- It has no command-line program.