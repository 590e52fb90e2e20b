import re
from datetime import datetime, timedelta, timezone

import pytest

from remoteexec.command import (
    Command,
    ExecutionOptions,
    Identifiers,
    InputExclusion,
    InputSpec,
    InputType,
    Result,
    ResultStatus,
    TimeInterval,
    VirtualInput,
    default_execution_options,
    from_proto,
    new_local_error_result,
    new_remote_error_result,
    new_result_from_exit_code,
    new_timeout_result,
    result_from_proto,
    result_to_proto,
    time_from_proto,
    time_interval_from_proto,
    time_interval_to_proto,
    time_to_proto,
    to_proto,
)
from remoteexec.messages import EnvironmentVariable, Platform, PlatformProperty, RECommand

_ID_RE = re.compile(r"[0-9a-f]{8}")


def _exclusions(*pairs):
    return [InputExclusion(regex, kind) for regex, kind in pairs]


SAME_CASES = [
    (
        {"platform": {"a": "1", "b": "2", "c": "3"}},
        {"platform": {"c": "3", "b": "2", "a": "1"}},
    ),
    (
        {"input_spec": {"inputs": ["a", "b", "c"]}},
        {"input_spec": {"inputs": ["c", "b", "a"]}},
    ),
    ({"output_files": ["a", "b", "c"]}, {"output_files": ["c", "b", "a"]}),
    ({"output_dirs": ["a", "b", "c"]}, {"output_dirs": ["c", "b", "a"]}),
    (
        {"input_spec": {"environment_variables": {"a": "1", "b": "2", "c": "3"}}},
        {"input_spec": {"environment_variables": {"c": "3", "b": "2", "a": "1"}}},
    ),
    (
        {
            "input_spec": {
                "input_exclusions": [
                    ("a", InputType.FILE),
                    ("b", InputType.DIRECTORY),
                    ("c", InputType.UNSPECIFIED),
                ]
            }
        },
        {
            "input_spec": {
                "input_exclusions": [
                    ("b", InputType.DIRECTORY),
                    ("c", InputType.UNSPECIFIED),
                    ("a", InputType.FILE),
                ]
            }
        },
    ),
]


def _build(fields):
    kwargs = dict(fields)
    spec = kwargs.pop("input_spec", None)
    if spec is not None:
        spec = dict(spec)
        if "input_exclusions" in spec:
            spec["input_exclusions"] = _exclusions(*spec["input_exclusions"])
        kwargs["input_spec"] = InputSpec(**spec)
    return Command(**kwargs)


@pytest.mark.parametrize("a,b", SAME_CASES)
def test_stable_id_same_commands(a, b):
    a_cmd = Command(**{k: v for k, v in a.items() if k != "input_spec"})
    if "input_spec" in a:
        a_cmd = _build(a)
    b_cmd = _build(b)
    assert a_cmd.stable_id() == b_cmd.stable_id()
    assert _ID_RE.fullmatch(a_cmd.stable_id())


DIFFERENT_CASES = [
    ({"args": ["a", "b"]}, {"args": ["b", "a"]}),
    ({"exec_root": "a"}, {"exec_root": "b"}),
    ({"working_dir": "a"}, {"working_dir": "b"}),
    ({"output_files": ["a", "b", "c"]}, {"output_files": ["c", "b", "c"]}),
    ({"output_dirs": ["a", "b", "c"]}, {"output_dirs": ["c", "b", "c"]}),
    (
        {"platform": {"a": "1", "b": "2", "c": "3"}},
        {"platform": {"c": "3", "b": "2", "a": "10"}},
    ),
    (
        {"input_spec": {"inputs": ["a", "b", "c"]}},
        {"input_spec": {"inputs": ["c", "b", "a1"]}},
    ),
    (
        {"input_spec": {"environment_variables": {"a": "1", "b": "2", "c": "3"}}},
        {"input_spec": {"environment_variables": {"c": "3", "b": "2", "a": "10"}}},
    ),
    (
        {
            "input_spec": {
                "input_exclusions": [
                    ("a", InputType.FILE),
                    ("b", InputType.DIRECTORY),
                    ("c", InputType.UNSPECIFIED),
                ]
            }
        },
        {
            "input_spec": {
                "input_exclusions": [
                    ("b", InputType.UNSPECIFIED),
                    ("c", InputType.UNSPECIFIED),
                    ("a", InputType.FILE),
                ]
            }
        },
    ),
    ({"timeout": timedelta(seconds=1)}, {"timeout": timedelta(seconds=2)}),
]


@pytest.mark.parametrize("a,b", DIFFERENT_CASES)
def test_stable_id_different_commands(a, b):
    a_cmd = _build(a)
    b_cmd = Command(**{k: v for k, v in b.items() if k != "input_spec"})
    if "input_spec" in b:
        b_cmd = _build(b)
    a_id, b_id = a_cmd.stable_id(), b_cmd.stable_id()
    assert _ID_RE.fullmatch(a_id)
    assert _ID_RE.fullmatch(b_id)
    assert a_id != b_id


def test_fill_default_field_values_empty():
    c = Command()
    c.fill_default_field_values()
    assert c.identifiers is not None
    assert c.identifiers.command_id == c.stable_id()
    assert c.identifiers.tool_name == "remote-client"
    assert len(c.identifiers.invocation_id) == 36
    assert len(c.identifiers.execution_id) == 36
    assert c.input_spec == InputSpec()


def test_fill_default_field_values_preserve_existing():
    ids = Identifiers(command_id="bla", tool_name="foo", invocation_id="bar")
    spec = InputSpec()
    c = Command(input_spec=spec, identifiers=ids)
    c.fill_default_field_values()
    assert c.identifiers is ids
    assert c.identifiers.command_id == "bla"
    assert c.identifiers.tool_name == "foo"
    assert c.identifiers.invocation_id == "bar"
    assert c.input_spec is spec


@pytest.mark.parametrize(
    "cmd,message",
    [
        (Command(identifiers=Identifiers(), exec_root="a", input_spec=InputSpec()), "arguments"),
        (Command(identifiers=Identifiers(), args=["a"], exec_root="a"), "input spec"),
        (Command(identifiers=Identifiers(), args=["a"], input_spec=InputSpec()), "exec root"),
        (Command(args=["a"], input_spec=InputSpec(), exec_root="a"), "identifiers"),
    ],
)
def test_validate_errors(cmd, message):
    with pytest.raises(ValueError, match=message):
        cmd.validate()


def test_validate_success():
    c = Command(identifiers=Identifiers(), args=["a"], exec_root="a", input_spec=InputSpec())
    assert c.validate() is None
    assert c.args == ["a"]


_ENV_WANT = [
    EnvironmentVariable("a", "2"),
    EnvironmentVariable("b", "3"),
    EnvironmentVariable("c", "1"),
]
_PLATFORM_WANT = Platform(
    properties=[PlatformProperty("a", "2"), PlatformProperty("b", "3"), PlatformProperty("c", "1")]
)


@pytest.mark.parametrize(
    "cmd,want",
    [
        (Command(args=["foo", "bar"]), RECommand(arguments=["foo", "bar"])),
        (Command(working_dir="a/b"), RECommand(working_directory="a/b")),
        (
            Command(output_files=["foo", "bar", "abc"]),
            RECommand(output_files=["abc", "bar", "foo"]),
        ),
        (
            Command(output_dirs=["foo", "bar", "abc"]),
            RECommand(output_directories=["abc", "bar", "foo"]),
        ),
        (
            Command(input_spec=InputSpec(environment_variables={"b": "3", "a": "2", "c": "1"})),
            RECommand(environment_variables=_ENV_WANT),
        ),
        (
            Command(platform={"b": "3", "a": "2", "c": "1"}),
            RECommand(platform=_PLATFORM_WANT),
        ),
    ],
)
def test_to_re_proto(cmd, want):
    cmd.fill_default_field_values()
    assert cmd.to_re_proto(False) == want


@pytest.mark.parametrize(
    "cmd,want",
    [
        (Command(args=["foo", "bar"]), RECommand(arguments=["foo", "bar"])),
        (Command(working_dir="a/b"), RECommand(working_directory="a/b")),
        (
            Command(output_files=["foo", "bar", "abc"]),
            RECommand(output_paths=["abc", "bar", "foo"]),
        ),
        (
            Command(output_dirs=["foo", "bar", "abc"]),
            RECommand(output_paths=["abc", "bar", "foo"]),
        ),
        (
            Command(input_spec=InputSpec(environment_variables={"b": "3", "a": "2", "c": "1"})),
            RECommand(environment_variables=_ENV_WANT),
        ),
        (
            Command(platform={"b": "3", "a": "2", "c": "1"}),
            RECommand(platform=_PLATFORM_WANT),
        ),
    ],
)
def test_to_re_proto_with_output_paths(cmd, want):
    cmd.fill_default_field_values()
    assert cmd.to_re_proto(True) == want


def test_to_re_proto_merges_files_and_dirs():
    cmd = Command(output_files=["z", "b"], output_dirs=["a"])
    cmd.fill_default_field_values()
    assert cmd.to_re_proto(True).output_paths == ["a", "b", "z"]


def test_to_from_proto():
    cmd = Command(
        identifiers=Identifiers(command_id="a", invocation_id="b", tool_name="c"),
        args=["a", "b", "c"],
        exec_root="/exec/root",
        input_spec=InputSpec(
            inputs=["foo.h", "bar.h"],
            virtual_inputs=[
                VirtualInput(path="empty_file", is_executable=True),
                VirtualInput(path="foo/empty_dir", is_empty_directory=True),
                VirtualInput(path="foo/bar", contents=b"bar-contents"),
            ],
            input_exclusions=[
                InputExclusion(regex="*.bla", type=InputType.DIRECTORY),
                InputExclusion(regex="*.blo", type=InputType.FILE),
            ],
            environment_variables={"k": "v", "k1": "v1"},
        ),
        output_files=["a/b/out"],
    )
    assert from_proto(to_proto(cmd)) == cmd


def test_to_proto_timeout_and_dropped_identifiers():
    cmd = Command(
        identifiers=Identifiers(command_id="a", tool_version="1.0", correlated_invocation_id="x"),
        timeout=timedelta(seconds=2, milliseconds=700),
        input_spec=InputSpec(input_exclusions=[InputExclusion("s", InputType.SYMLINK)]),
    )
    p = to_proto(cmd)
    assert p["execution_timeout"] == 2
    assert p["input"]["exclude_inputs"] == [{"regex": "s", "type": "UNSPECIFIED"}]
    back = from_proto(p)
    assert back.timeout == timedelta(seconds=2)
    assert back.identifiers.tool_version == ""
    assert back.identifiers.correlated_invocation_id == ""
    assert to_proto(None) is None


def test_result_to_from_proto():
    res = Result(status=ResultStatus.CACHE_HIT, exit_code=42, err=Exception("message"))
    got = result_from_proto(result_to_proto(res))
    assert got.status == ResultStatus.CACHE_HIT
    assert got.exit_code == 42
    assert str(got.err) == "message"


def test_result_proto_values():
    assert result_to_proto(new_timeout_result()) == {"status": "TIMEOUT", "exit_code": 142}
    assert result_to_proto(Result()) == {"status": "UNKNOWN", "exit_code": 0}
    assert result_from_proto({"status": "SUCCESS", "exit_code": 0}) == Result(
        exit_code=0, status=ResultStatus.SUCCESS
    )
    assert result_to_proto(None) is None
    assert result_from_proto(None) is None


def test_result_constructors():
    err = Exception("boom")
    local = new_local_error_result(err)
    assert (local.exit_code, local.status, local.err) == (35, ResultStatus.LOCAL_ERROR, err)
    remote = new_remote_error_result(err)
    assert (remote.exit_code, remote.status) == (45, ResultStatus.REMOTE_ERROR)
    assert new_result_from_exit_code(0).status == ResultStatus.SUCCESS
    failed = new_result_from_exit_code(3)
    assert (failed.exit_code, failed.status) == (3, ResultStatus.NON_ZERO_EXIT)
    assert not failed.is_ok()
    assert new_result_from_exit_code(0).is_ok()


def test_result_status_is_ok_and_str():
    assert ResultStatus.SUCCESS.is_ok()
    assert ResultStatus.CACHE_HIT.is_ok()
    assert not ResultStatus.TIMEOUT.is_ok()
    assert str(ResultStatus.CACHE_HIT) == "CacheHitResultStatus"
    assert str(ResultStatus.LOCAL_ERROR) == "LocalErrorResultStatus"


@pytest.mark.parametrize(
    "value,want",
    [
        (0, "UnspecifiedInputType"),
        (1, "DirectoryInputType"),
        (2, "FileInputType"),
        (3, "InvalidInputType(3)"),
    ],
)
def test_input_type_str(value, want):
    assert str(InputType(value)) == want


def test_default_execution_options():
    assert default_execution_options() == ExecutionOptions(
        accept_cached=True, do_not_cache=False, download_outputs=True, download_out_err=True
    )


def test_time_to_proto_values():
    t = datetime(1970, 1, 1, 0, 0, 1, 500, tzinfo=timezone.utc)
    assert time_to_proto(t) == {"seconds": 1, "nanos": 500000}
    assert time_to_proto(None) is None
    assert time_from_proto({"seconds": 1, "nanos": 500000}) == t
    assert time_from_proto(None) is None


def test_time_interval_to_from_proto():
    now = datetime.now(timezone.utc)
    for ti in (
        TimeInterval(start=now, end=now),
        TimeInterval(start=now),
        TimeInterval(end=now),
        TimeInterval(),
    ):
        assert time_interval_from_proto(time_interval_to_proto(ti)) == ti
    assert time_interval_from_proto(time_interval_to_proto(None)) is None