"""Command descriptions, execution options and results for remote execution."""

from __future__ import annotations

import enum
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from remoteexec.digest import Digest
from remoteexec.messages import EnvironmentVariable, Platform, PlatformProperty, RECommand

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


class InputType(enum.IntEnum):
    """Narrows down which kind of input an exclusion matches."""

    UNSPECIFIED = 0
    DIRECTORY = 1
    FILE = 2
    SYMLINK = 3

    def __str__(self) -> str:
        if self <= InputType.FILE:
            return _INPUT_TYPE_NAMES[self]
        return f"InvalidInputType({int(self)})"


_INPUT_TYPE_NAMES = {
    InputType.UNSPECIFIED: "UnspecifiedInputType",
    InputType.DIRECTORY: "DirectoryInputType",
    InputType.FILE: "FileInputType",
}

_INPUT_TYPE_TO_PROTO = {
    InputType.DIRECTORY: "DIRECTORY",
    InputType.FILE: "FILE",
}
_INPUT_TYPE_FROM_PROTO = {name: t for t, name in _INPUT_TYPE_TO_PROTO.items()}


@dataclass
class InputExclusion:
    """Inputs whose path matches the regular expression are left out."""

    regex: str
    type: InputType = InputType.UNSPECIFIED


@dataclass
class VirtualInput:
    """An input that is not on disk but is staged for the command.

    When is_empty_directory is set, contents and is_executable are ignored.
    """

    path: str
    contents: bytes = b""
    is_executable: bool = False
    is_empty_directory: bool = False


@dataclass
class InputSpec:
    """All the inputs a remote command needs."""

    inputs: list[str] = field(default_factory=list)
    virtual_inputs: list[VirtualInput] = field(default_factory=list)
    input_exclusions: list[InputExclusion] = field(default_factory=list)
    environment_variables: dict[str, str] = field(default_factory=dict)


@dataclass
class Identifiers:
    """Identifiers of a command, its invocation and the tool running it."""

    command_id: str = ""
    invocation_id: str = ""
    correlated_invocation_id: str = ""
    tool_name: str = ""
    tool_version: str = ""
    execution_id: str = ""


def _format_duration(ns: int) -> str:
    """Format nanoseconds the way durations are canonically printed, e.g. 1h2m3.5s."""
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    u = abs(ns)

    def frac(value: int, prec: int) -> tuple[int, str]:
        if prec == 0:
            return value, ""
        whole, rest = divmod(value, 10**prec)
        digits = f"{rest:0{prec}d}".rstrip("0")
        return whole, ("." + digits if digits else "")

    if u < 1_000_000_000:
        if u < 1_000:
            prec, unit = 0, "ns"
        elif u < 1_000_000:
            prec, unit = 3, "µs"
        else:
            prec, unit = 6, "ms"
        whole, fraction = frac(u, prec)
        return f"{sign}{whole}{fraction}{unit}"

    seconds, fraction = frac(u, 9)
    text = f"{seconds % 60}{fraction}s"
    minutes = seconds // 60
    if minutes:
        text = f"{minutes % 60}m{text}"
        hours = minutes // 60
        if hours:
            text = f"{hours}h{text}"
    return sign + text


def _sorted_map_bytes(m: dict[str, str]) -> bytes:
    return b"".join(k.encode() + m[k].encode() for k in sorted(m))


@dataclass
class Command:
    """Everything needed to execute a command remotely.

    Call fill_default_field_values on a new command before using it.
    """

    identifiers: Optional[Identifiers] = None
    args: list[str] = field(default_factory=list)
    exec_root: str = ""
    working_dir: str = ""
    input_spec: Optional[InputSpec] = None
    output_files: list[str] = field(default_factory=list)
    output_dirs: list[str] = field(default_factory=list)
    timeout: timedelta = field(default_factory=timedelta)
    platform: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ValueError if a required field is missing."""
        if not self.args:
            raise ValueError("missing command arguments")
        if not self.exec_root:
            raise ValueError("missing command exec root")
        if self.input_spec is None:
            raise ValueError("missing command input spec")
        if self.identifiers is None:
            raise ValueError("missing command identifiers")

    def stable_id(self) -> str:
        """Return a short id that depends only on the command's content."""
        parts = [a.encode() for a in self.args]
        parts.append(self.exec_root.encode())
        parts.append(self.working_dir.encode())
        parts.extend(p.encode() for p in sorted(self.output_files))
        parts.extend(p.encode() for p in sorted(self.output_dirs))
        parts.append(_format_duration((self.timeout // _MICROSECOND) * 1000).encode())
        parts.append(_sorted_map_bytes(self.platform))
        spec = self.input_spec
        if spec is not None:
            parts.append(_sorted_map_bytes(spec.environment_variables))
            parts.extend(p.encode() for p in sorted(spec.inputs))
            exclusions = sorted(
                spec.input_exclusions, key=lambda e: (e.regex, int(e.type)), reverse=True
            )
            for e in exclusions:
                parts.append(e.regex.encode())
                parts.append(str(InputType(e.type)).encode())
        return hashlib.sha256(b"".join(parts)).hexdigest()[:8]

    def fill_default_field_values(self) -> None:
        """Fill in identifiers and the input spec where they are unset."""
        if self.identifiers is None:
            self.identifiers = Identifiers()
        ids = self.identifiers
        if not ids.command_id:
            ids.command_id = self.stable_id()
        if not ids.tool_name:
            ids.tool_name = "remote-client"
        if not ids.invocation_id:
            ids.invocation_id = str(uuid.uuid4())
        if not ids.execution_id:
            ids.execution_id = str(uuid.uuid4())
        if self.input_spec is None:
            self.input_spec = InputSpec()

    def to_re_proto(self, use_output_paths_field: bool) -> RECommand:
        """Build the API command message.

        With use_output_paths_field, outputs go to the single output_paths field;
        otherwise to output_files and output_directories.
        """
        cmd = RECommand(arguments=list(self.args), working_directory=self.working_dir)
        if use_output_paths_field:
            cmd.output_paths = sorted(self.output_files + self.output_dirs)
        else:
            cmd.output_files = sorted(self.output_files)
            cmd.output_directories = sorted(self.output_dirs)
        env = self.input_spec.environment_variables if self.input_spec else {}
        cmd.environment_variables = [
            EnvironmentVariable(name=name, value=env[name]) for name in sorted(env)
        ]
        if self.platform:
            cmd.platform = Platform(
                properties=[
                    PlatformProperty(name=name, value=self.platform[name])
                    for name in sorted(self.platform)
                ]
            )
        return cmd


@dataclass
class ExecutionOptions:
    """How to execute a command."""

    accept_cached: bool = True
    do_not_cache: bool = False
    download_outputs: bool = True
    download_out_err: bool = True


def default_execution_options() -> ExecutionOptions:
    """Return the recommended execution options."""
    return ExecutionOptions(
        accept_cached=True, do_not_cache=False, download_outputs=True, download_out_err=True
    )


class ResultStatus(enum.IntEnum):
    """How a command execution finished."""

    UNSPECIFIED = 0
    SUCCESS = 1
    CACHE_HIT = 2
    NON_ZERO_EXIT = 3
    TIMEOUT = 4
    INTERRUPTED = 5
    REMOTE_ERROR = 6
    LOCAL_ERROR = 7

    def is_ok(self) -> bool:
        """Whether the status means the action succeeded."""
        return self in (ResultStatus.SUCCESS, ResultStatus.CACHE_HIT)

    def __str__(self) -> str:
        return _RESULT_STATUS_NAMES[self]


_RESULT_STATUS_NAMES = {
    ResultStatus.UNSPECIFIED: "UnspecifiedResultStatus",
    ResultStatus.SUCCESS: "SuccessResultStatus",
    ResultStatus.CACHE_HIT: "CacheHitResultStatus",
    ResultStatus.NON_ZERO_EXIT: "NonZeroExitResultStatus",
    ResultStatus.TIMEOUT: "TimeoutResultStatus",
    ResultStatus.INTERRUPTED: "InterruptedResultStatus",
    ResultStatus.REMOTE_ERROR: "RemoteErrorResultStatus",
    ResultStatus.LOCAL_ERROR: "LocalErrorResultStatus",
}

_STATUS_TO_PROTO = {
    ResultStatus.SUCCESS: "SUCCESS",
    ResultStatus.CACHE_HIT: "CACHE_HIT",
    ResultStatus.NON_ZERO_EXIT: "NON_ZERO_EXIT",
    ResultStatus.TIMEOUT: "TIMEOUT",
    ResultStatus.INTERRUPTED: "INTERRUPTED",
    ResultStatus.REMOTE_ERROR: "REMOTE_ERROR",
    ResultStatus.LOCAL_ERROR: "LOCAL_ERROR",
}
_STATUS_FROM_PROTO = {name: s for s, name in _STATUS_TO_PROTO.items()}

LOCAL_ERROR_EXIT_CODE = 35
TIMEOUT_EXIT_CODE = 128 + 14  # signal base plus SIGALRM
REMOTE_ERROR_EXIT_CODE = 45
INTERRUPTED_EXIT_CODE = 8


@dataclass
class Result:
    """The result of a finished command execution."""

    exit_code: int = 0
    status: ResultStatus = ResultStatus.UNSPECIFIED
    err: Optional[BaseException] = None

    def is_ok(self) -> bool:
        """Whether the result was successful."""
        return self.status.is_ok()


def new_local_error_result(err: BaseException) -> Result:
    """Build a result for an error that happened locally."""
    return Result(exit_code=LOCAL_ERROR_EXIT_CODE, status=ResultStatus.LOCAL_ERROR, err=err)


def new_remote_error_result(err: BaseException) -> Result:
    """Build a result for an error reported by the remote server."""
    return Result(exit_code=REMOTE_ERROR_EXIT_CODE, status=ResultStatus.REMOTE_ERROR, err=err)


def new_result_from_exit_code(exit_code: int) -> Result:
    """Build a result from a command's exit code."""
    status = ResultStatus.SUCCESS if exit_code == 0 else ResultStatus.NON_ZERO_EXIT
    return Result(exit_code=exit_code, status=status)


def new_timeout_result() -> Result:
    """Build a result for a command that exceeded its deadline."""
    return Result(exit_code=TIMEOUT_EXIT_CODE, status=ResultStatus.TIMEOUT)


@dataclass
class TimeInterval:
    """A time window for an event; None marks an unset end."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None


EVENT_SERVER_QUEUED = "ServerQueued"
EVENT_SERVER_WORKER = "ServerWorker"
EVENT_SERVER_WORKER_INPUT_FETCH = "ServerWorkerInputFetch"
EVENT_SERVER_WORKER_EXECUTION = "ServerWorkerExecution"
EVENT_SERVER_WORKER_OUTPUT_UPLOAD = "ServerWorkerOutputUpload"
EVENT_DOWNLOAD_RESULTS = "DownloadResults"
EVENT_COMPUTE_MERKLE_TREE = "ComputeMerkleTree"
EVENT_CHECK_ACTION_CACHE = "CheckActionCache"
EVENT_UPDATE_CACHED_RESULT = "UpdateCachedResult"
EVENT_UPLOAD_INPUTS = "UploadInputs"
EVENT_EXECUTE_REMOTELY = "ExecuteRemotely"


@dataclass
class Metadata:
    """General information gathered about a command execution."""

    command_digest: Optional[Digest] = None
    action_digest: Optional[Digest] = None
    input_files: int = 0
    input_directories: int = 0
    total_input_bytes: int = 0
    event_times: dict[str, TimeInterval] = field(default_factory=dict)
    output_files: int = 0
    output_directories: int = 0
    total_output_bytes: int = 0
    output_digests: dict[str, Digest] = field(default_factory=dict)
    missing_digests: list[Digest] = field(default_factory=list)
    logical_bytes_uploaded: int = 0
    real_bytes_uploaded: int = 0
    logical_bytes_downloaded: int = 0
    real_bytes_downloaded: int = 0


def _input_spec_from_proto(spec: dict[str, Any]) -> InputSpec:
    return InputSpec(
        inputs=list(spec.get("inputs", [])),
        virtual_inputs=[
            VirtualInput(
                path=vi.get("path", ""),
                contents=bytes(vi.get("contents", b"")),
                is_executable=bool(vi.get("is_executable", False)),
                is_empty_directory=bool(vi.get("is_empty_directory", False)),
            )
            for vi in spec.get("virtual_inputs", [])
        ],
        input_exclusions=[
            InputExclusion(
                regex=ex.get("regex", ""),
                type=_INPUT_TYPE_FROM_PROTO.get(ex.get("type", ""), InputType.UNSPECIFIED),
            )
            for ex in spec.get("exclude_inputs", [])
        ],
        environment_variables=dict(spec.get("environment_variables", {})),
    )


def _input_spec_to_proto(spec: InputSpec) -> dict[str, Any]:
    return {
        "inputs": list(spec.inputs),
        "virtual_inputs": [
            {
                "path": vi.path,
                "contents": bytes(vi.contents),
                "is_executable": vi.is_executable,
                "is_empty_directory": vi.is_empty_directory,
            }
            for vi in spec.virtual_inputs
        ],
        "exclude_inputs": [
            {"regex": ex.regex, "type": _INPUT_TYPE_TO_PROTO.get(ex.type, "UNSPECIFIED")}
            for ex in spec.input_exclusions
        ],
        "environment_variables": dict(spec.environment_variables),
    }


def from_proto(p: dict[str, Any]) -> Command:
    """Parse a command from its serializable dictionary form."""
    ids = p.get("identifiers") or {}
    output = p.get("output") or {}
    return Command(
        identifiers=Identifiers(
            command_id=ids.get("command_id", ""),
            invocation_id=ids.get("invocation_id", ""),
            correlated_invocation_id=ids.get("correlated_invocations_id", ""),
            tool_name=ids.get("tool_name", ""),
            tool_version=ids.get("tool_version", ""),
            execution_id=ids.get("execution_id", ""),
        ),
        exec_root=p.get("exec_root", ""),
        args=list(p.get("args", [])),
        working_dir=p.get("working_directory", ""),
        input_spec=_input_spec_from_proto(p.get("input") or {}),
        output_files=list(output.get("output_files", [])),
        output_dirs=list(output.get("output_directories", [])),
        timeout=timedelta(seconds=p.get("execution_timeout", 0)),
        platform=dict(p.get("platform", {})),
    )


def to_proto(cmd: Optional[Command]) -> Optional[dict[str, Any]]:
    """Serialize a command into its dictionary form; None stays None."""
    if cmd is None:
        return None
    result: dict[str, Any] = {
        "exec_root": cmd.exec_root,
        "input": _input_spec_to_proto(cmd.input_spec or InputSpec()),
        "output": {
            "output_files": list(cmd.output_files),
            "output_directories": list(cmd.output_dirs),
        },
        "args": list(cmd.args),
        "execution_timeout": int(cmd.timeout.total_seconds()),
        "working_directory": cmd.working_dir,
        "platform": dict(cmd.platform),
    }
    if cmd.identifiers is not None:
        result["identifiers"] = {
            "command_id": cmd.identifiers.command_id,
            "invocation_id": cmd.identifiers.invocation_id,
            "tool_name": cmd.identifiers.tool_name,
            "execution_id": cmd.identifiers.execution_id,
        }
    return result


def result_to_proto(res: Optional[Result]) -> Optional[dict[str, Any]]:
    """Serialize a result into its dictionary form; None stays None."""
    if res is None:
        return None
    out: dict[str, Any] = {
        "status": _STATUS_TO_PROTO.get(res.status, "UNKNOWN"),
        "exit_code": res.exit_code,
    }
    if res.err is not None:
        out["msg"] = str(res.err)
    return out


def result_from_proto(res: Optional[dict[str, Any]]) -> Optional[Result]:
    """Parse a result from its dictionary form; None stays None."""
    if res is None:
        return None
    msg = res.get("msg", "")
    return Result(
        status=_STATUS_FROM_PROTO.get(res.get("status", ""), ResultStatus.UNSPECIFIED),
        exit_code=int(res.get("exit_code", 0)),
        err=Exception(msg) if msg else None,
    )


def time_to_proto(t: Optional[datetime]) -> Optional[dict[str, int]]:
    """Convert a datetime to a timestamp of seconds and nanos; None stays None.

    A naive datetime is taken as local time.
    """
    if t is None:
        return None
    if t.tzinfo is None:
        t = t.astimezone()
    micros = (t - _EPOCH) // _MICROSECOND
    seconds, rest = divmod(micros, 1_000_000)
    return {"seconds": seconds, "nanos": rest * 1000}


def time_from_proto(ts: Optional[dict[str, int]]) -> Optional[datetime]:
    """Convert a timestamp to an aware UTC datetime; None stays None."""
    if ts is None:
        return None
    seconds = ts.get("seconds", 0)
    nanos = ts.get("nanos", 0)
    if not 0 <= nanos < 1_000_000_000:
        logger.error("Failed to parse timestamp %r: nanos out of range", ts)
    try:
        return _EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)
    except OverflowError:
        logger.error("Failed to parse timestamp %r: out of range", ts)
        return None


def time_interval_to_proto(t: Optional[TimeInterval]) -> Optional[dict[str, Any]]:
    """Serialize a time interval; None stays None."""
    if t is None:
        return None
    return {"from": time_to_proto(t.start), "to": time_to_proto(t.end)}


def time_interval_from_proto(t: Optional[dict[str, Any]]) -> Optional[TimeInterval]:
    """Parse a time interval; None stays None."""
    if t is None:
        return None
    return TimeInterval(start=time_from_proto(t.get("from")), end=time_from_proto(t.get("to")))