import logging
import os

import pytest

from serfkit.event_handler import (
    EventFilter,
    EventScript,
    ScriptEventHandler,
    parse_event_filter,
    parse_event_script,
)
from serfkit.events import EventType, Member, MemberEvent, Query, UserEvent

EVENT_SCRIPT = r"""#!/bin/sh
RESULT_FILE="%s"
echo $SERF_SELF_NAME $SERF_SELF_ROLE >>${RESULT_FILE}
echo $SERF_TAG_DC >> ${RESULT_FILE}
echo $SERF_TAG_BAD_TAG >> ${RESULT_FILE}
echo $SERF_EVENT $SERF_USER_EVENT "$@" >>${RESULT_FILE}
echo $os_env_var >> ${RESULT_FILE}
while read line; do
	printf "${line}\n" >>${RESULT_FILE}
done
"""

USER_EVENT_SCRIPT = r"""#!/bin/sh
RESULT_FILE="%s"
echo $SERF_SELF_NAME $SERF_SELF_ROLE >>${RESULT_FILE}
echo $SERF_TAG_DC >> ${RESULT_FILE}
echo $SERF_EVENT $SERF_USER_EVENT "$@" >>${RESULT_FILE}
echo $SERF_EVENT $SERF_USER_LTIME "$@" >>${RESULT_FILE}
while read line; do
	printf "${line}\n" >>${RESULT_FILE}
done
"""

QUERY_SCRIPT = r"""#!/bin/sh
RESULT_FILE="%s"
echo $SERF_SELF_NAME $SERF_SELF_ROLE >>${RESULT_FILE}
echo $SERF_TAG_DC >> ${RESULT_FILE}
echo $SERF_EVENT $SERF_QUERY_NAME "$@" >>${RESULT_FILE}
echo $SERF_EVENT $SERF_QUERY_LTIME "$@" >>${RESULT_FILE}
while read line; do
	printf "${line}\n" >>${RESULT_FILE}
done
"""


def _event_script(tmp_path, body):
    script = tmp_path / "script.sh"
    result = tmp_path / "result.txt"
    result.write_text("")
    script.write_text(body % result)
    os.chmod(script, 0o755)
    return str(script), result


def _handler(script, tags):
    return ScriptEventHandler(
        self_func=lambda: Member(name="ourname", tags=tags),
        scripts=[EventScript(event="*", script=script)],
        logger=logging.getLogger("test-handler"),
    )


def test_script_event_handler(tmp_path, monkeypatch):
    monkeypatch.setenv("os_env_var", "os-env-foo")
    script, results = _event_script(tmp_path, EVENT_SCRIPT)
    h = _handler(script, {"role": "ourrole", "dc": "east-aws", "bad-tag": "bad"})
    event = MemberEvent(
        type=EventType.MEMBER_JOIN,
        members=[Member(name="foo", addr="1.2.3.4", tags={"role": "bar", "foo": "bar"})],
    )
    assert h.scripts[0].invoke(event) is True
    h.handle_event(event)

    expected1 = "ourname ourrole\neast-aws\nbad\nmember-join\nos-env-foo\nfoo\t1.2.3.4\tbar\trole=bar,foo=bar\n"
    expected2 = "ourname ourrole\neast-aws\nbad\nmember-join\nos-env-foo\nfoo\t1.2.3.4\tbar\tfoo=bar,role=bar\n"
    assert results.read_text() in (expected1, expected2)


def test_script_user_event_handler(tmp_path):
    script, results = _event_script(tmp_path, USER_EVENT_SCRIPT)
    h = _handler(script, {"role": "ourrole", "dc": "east-aws"})
    event = UserEvent(ltime=1, name="baz", payload=b"foobar", coalesce=True)
    assert h.scripts[0].invoke(event) is True
    h.handle_event(event)
    assert results.read_text() == "ourname ourrole\neast-aws\nuser baz\nuser 1\nfoobar\n"


def test_script_query_event_handler(tmp_path):
    script, results = _event_script(tmp_path, QUERY_SCRIPT)
    h = _handler(script, {"role": "ourrole", "dc": "east-aws"})
    event = Query(ltime=42, name="uptime", payload=b"load average")
    assert h.scripts[0].invoke(event) is True
    h.handle_event(event)
    assert results.read_text() == (
        "ourname ourrole\neast-aws\nquery uptime\nquery 42\nload average\n"
    )


def test_update_scripts_takes_effect_on_next_event(tmp_path):
    script, results = _event_script(tmp_path, USER_EVENT_SCRIPT)
    h = _handler(script, {"role": "ourrole", "dc": "east-aws"})
    h.update_scripts([EventScript(event="query", script=script)])
    h.handle_event(UserEvent(ltime=1, name="baz", payload=b"foobar"))
    assert results.read_text() == ""
    assert h.scripts == [EventScript(event="query", script=script)]


def test_failing_script_is_logged_not_raised(tmp_path, caplog):
    script = tmp_path / "fail.sh"
    script.write_text("#!/bin/sh\nexit 1\n")
    os.chmod(script, 0o755)
    h = _handler(str(script), {})
    with caplog.at_level(logging.ERROR, logger="test-handler"):
        h.handle_event(UserEvent(name="x"))
    assert "Error invoking script" in caplog.text


@pytest.mark.parametrize(
    "script, event, invoke",
    [
        (EventScript("*", "", "script.sh"), MemberEvent(), True),
        (EventScript("user", "", "script.sh"), MemberEvent(), False),
        (EventScript("user", "deploy", "script.sh"), UserEvent(name="deploy"), True),
        (EventScript("user", "deploy", "script.sh"), UserEvent(name="restart"), False),
        (EventScript("member-join", "", "script.sh"), MemberEvent(type=EventType.MEMBER_JOIN), True),
        (EventScript("member-join", "", "script.sh"), MemberEvent(type=EventType.MEMBER_LEAVE), False),
        (EventScript("member-reap", "", "script.sh"), MemberEvent(type=EventType.MEMBER_REAP), True),
        (EventScript("query", "deploy", "script.sh"), Query(name="deploy"), True),
        (EventScript("query", "uptime", "script.sh"), Query(name="deploy"), False),
        (EventScript("query", "", "script.sh"), Query(name="deploy"), True),
    ],
)
def test_event_script_invoke(script, event, invoke):
    assert script.invoke(event) is invoke


@pytest.mark.parametrize(
    "event, valid",
    [
        ("member-join", True),
        ("member-leave", True),
        ("member-failed", True),
        ("member-update", True),
        ("member-reap", True),
        ("user", True),
        ("User", False),
        ("member", False),
        ("query", True),
        ("Query", False),
        ("*", True),
    ],
)
def test_event_script_valid(event, valid):
    assert EventScript(event=event).valid() is valid


@pytest.mark.parametrize(
    "value, expected",
    [
        ("script.sh", [("*", "", "script.sh")]),
        ("member-join=script.sh", [("member-join", "", "script.sh")]),
        ("foo,bar=script.sh", [("foo", "", "script.sh"), ("bar", "", "script.sh")]),
        ("user:deploy=script.sh", [("user", "deploy", "script.sh")]),
        (
            "foo,user:blah,bar,query:tubez=script.sh",
            [
                ("foo", "", "script.sh"),
                ("user", "blah", "script.sh"),
                ("bar", "", "script.sh"),
                ("query", "tubez", "script.sh"),
            ],
        ),
        ("query:load=script.sh", [("query", "load", "script.sh")]),
        ("query=script.sh", [("query", "", "script.sh")]),
    ],
)
def test_parse_event_script(value, expected):
    results = parse_event_script(value)
    assert [(r.event, r.name, r.script) for r in results] == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", [("*", "")]),
        ("member-join", [("member-join", "")]),
        ("member-reap", [("member-reap", "")]),
        ("foo,bar", [("foo", ""), ("bar", "")]),
        ("user:deploy", [("user", "deploy")]),
        ("foo,user:blah,bar", [("foo", ""), ("user", "blah"), ("bar", "")]),
        ("query:load", [("query", "load")]),
    ],
)
def test_parse_event_filter(value, expected):
    assert [(f.event, f.name) for f in parse_event_filter(value)] == expected
    assert all(isinstance(f, EventFilter) for f in parse_event_filter(value))


def test_event_script_str():
    assert str(EventScript("user", "deploy", "script.sh")) == (
        "Event 'user:deploy' invoking 'script.sh'"
    )
    assert str(EventScript("*", "", "script.sh")) == "Event '*' invoking 'script.sh'"