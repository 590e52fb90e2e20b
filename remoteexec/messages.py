"""Remote execution API messages with their protocol buffer wire encoding."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

_VARINT = 0
_FIXED64 = 1
_LEN = 2
_FIXED32 = 5
_MASK64 = (1 << 64) - 1


def _encode_varint(value: int) -> bytes:
    value &= _MASK64
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _tag(number: int, wire_type: int) -> bytes:
    return _encode_varint(number << 3 | wire_type)


def _int(number: int, value: int) -> bytes:
    if not value:
        return b""
    return _tag(number, _VARINT) + _encode_varint(value)


def _bool(number: int, value: bool) -> bytes:
    return _int(number, 1 if value else 0)


def _bytes(number: int, data: bytes, keep_empty: bool = False) -> bytes:
    if not data and not keep_empty:
        return b""
    return _tag(number, _LEN) + _encode_varint(len(data)) + data


def _str(number: int, text: str, keep_empty: bool = False) -> bytes:
    return _bytes(number, text.encode("utf-8"), keep_empty)


def _msg(number: int, message) -> bytes:
    if message is None:
        return b""
    return _bytes(number, message.to_bytes(), keep_empty=True)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _fields(data: bytes) -> Iterator[tuple[int, int, Union[int, bytes]]]:
    pos = 0
    end_of_data = len(data)
    while pos < end_of_data:
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
        elif wire_type == _LEN:
            length, pos = _read_varint(data, pos)
            end = pos + length
            if end > end_of_data:
                raise ValueError("length-delimited field runs past end of data")
            value = bytes(data[pos:end])
            pos = end
        elif wire_type in (_FIXED64, _FIXED32):
            width = 8 if wire_type == _FIXED64 else 4
            if pos + width > end_of_data:
                raise ValueError("truncated fixed-width field")
            value = int.from_bytes(data[pos:pos + width], "little")
            pos += width
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
        yield number, wire_type, value


def _as_len(wire_type: int, value) -> bytes:
    if wire_type != _LEN:
        raise ValueError(f"expected length-delimited field, got wire type {wire_type}")
    return value


def _as_varint(wire_type: int, value) -> int:
    if wire_type != _VARINT:
        raise ValueError(f"expected varint field, got wire type {wire_type}")
    return value


def _as_text(wire_type: int, value) -> str:
    return _as_len(wire_type, value).decode("utf-8")


def _int64(value: int) -> int:
    value &= _MASK64
    return value - (1 << 64) if value >= 1 << 63 else value


@dataclass
class DigestMessage:
    """A content digest as carried on the wire."""

    hash: str = ""
    size_bytes: int = 0

    def to_bytes(self) -> bytes:
        return _str(1, self.hash) + _int(2, self.size_bytes)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DigestMessage":
        msg = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                msg.hash = _as_text(wire_type, value)
            elif number == 2:
                msg.size_bytes = _int64(_as_varint(wire_type, value))
        return msg


@dataclass
class FileNode:
    """A file entry of a directory."""

    name: str = ""
    digest: Optional[DigestMessage] = None
    is_executable: bool = False

    def to_bytes(self) -> bytes:
        return _str(1, self.name) + _msg(2, self.digest) + _bool(4, self.is_executable)

    @classmethod
    def from_bytes(cls, data: bytes) -> "FileNode":
        node = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                node.name = _as_text(wire_type, value)
            elif number == 2:
                node.digest = DigestMessage.from_bytes(_as_len(wire_type, value))
            elif number == 4:
                node.is_executable = bool(_as_varint(wire_type, value))
        return node


@dataclass
class DirectoryNode:
    """A subdirectory entry of a directory."""

    name: str = ""
    digest: Optional[DigestMessage] = None

    def to_bytes(self) -> bytes:
        return _str(1, self.name) + _msg(2, self.digest)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirectoryNode":
        node = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                node.name = _as_text(wire_type, value)
            elif number == 2:
                node.digest = DigestMessage.from_bytes(_as_len(wire_type, value))
        return node


@dataclass
class SymlinkNode:
    """A symbolic link entry of a directory."""

    name: str = ""
    target: str = ""

    def to_bytes(self) -> bytes:
        return _str(1, self.name) + _str(2, self.target)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SymlinkNode":
        node = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                node.name = _as_text(wire_type, value)
            elif number == 2:
                node.target = _as_text(wire_type, value)
        return node


@dataclass
class Directory:
    """One level of a Merkle tree: files, subdirectories and symlinks."""

    files: list[FileNode] = field(default_factory=list)
    directories: list[DirectoryNode] = field(default_factory=list)
    symlinks: list[SymlinkNode] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return b"".join(
            [_msg(1, f) for f in self.files]
            + [_msg(2, d) for d in self.directories]
            + [_msg(3, s) for s in self.symlinks]
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Directory":
        directory = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                directory.files.append(FileNode.from_bytes(_as_len(wire_type, value)))
            elif number == 2:
                directory.directories.append(DirectoryNode.from_bytes(_as_len(wire_type, value)))
            elif number == 3:
                directory.symlinks.append(SymlinkNode.from_bytes(_as_len(wire_type, value)))
        return directory


@dataclass
class Tree:
    """A root directory together with all of its descendant directories."""

    root: Optional[Directory] = None
    children: list[Directory] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return _msg(1, self.root) + b"".join(_msg(2, c) for c in self.children)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Tree":
        tree = cls()
        for number, wire_type, value in _fields(data):
            if number == 1:
                tree.root = Directory.from_bytes(_as_len(wire_type, value))
            elif number == 2:
                tree.children.append(Directory.from_bytes(_as_len(wire_type, value)))
        return tree


@dataclass
class OutputFile:
    """An output file of an action result."""

    path: str = ""
    digest: Optional[DigestMessage] = None
    is_executable: bool = False

    def to_bytes(self) -> bytes:
        return _str(1, self.path) + _msg(2, self.digest) + _bool(4, self.is_executable)


@dataclass
class OutputDirectory:
    """An output directory of an action result, referring to a Tree blob."""

    path: str = ""
    tree_digest: Optional[DigestMessage] = None

    def to_bytes(self) -> bytes:
        return _str(1, self.path) + _msg(3, self.tree_digest)


@dataclass
class ActionResult:
    """The outcome of executing an action."""

    output_files: list[OutputFile] = field(default_factory=list)
    output_directories: list[OutputDirectory] = field(default_factory=list)
    exit_code: int = 0
    stdout_raw: bytes = b""
    stdout_digest: Optional[DigestMessage] = None
    stderr_raw: bytes = b""
    stderr_digest: Optional[DigestMessage] = None

    def to_bytes(self) -> bytes:
        return b"".join(
            [_msg(2, f) for f in self.output_files]
            + [_msg(3, d) for d in self.output_directories]
            + [
                _int(4, self.exit_code),
                _bytes(5, self.stdout_raw),
                _msg(6, self.stdout_digest),
                _bytes(7, self.stderr_raw),
                _msg(8, self.stderr_digest),
            ]
        )


@dataclass
class _Duration:
    value: datetime.timedelta

    def to_bytes(self) -> bytes:
        micros = (
            self.value.days * 86_400_000_000
            + self.value.seconds * 1_000_000
            + self.value.microseconds
        )
        sign = -1 if micros < 0 else 1
        seconds, rest = divmod(abs(micros), 1_000_000)
        return _int(1, sign * seconds) + _int(2, sign * rest * 1000)


@dataclass
class EnvironmentVariable:
    """A name/value pair of a command's environment."""

    name: str = ""
    value: str = ""

    def to_bytes(self) -> bytes:
        return _str(1, self.name) + _str(2, self.value)


@dataclass
class PlatformProperty:
    """A name/value pair describing the execution platform."""

    name: str = ""
    value: str = ""

    def to_bytes(self) -> bytes:
        return _str(1, self.name) + _str(2, self.value)


@dataclass
class Platform:
    """The set of properties that select an execution platform."""

    properties: list[PlatformProperty] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return b"".join(_msg(1, p) for p in self.properties)


@dataclass
class Action:
    """An action: a command digest plus the digest of its input root."""

    command_digest: Optional[DigestMessage] = None
    input_root_digest: Optional[DigestMessage] = None
    timeout: Optional[datetime.timedelta] = None
    do_not_cache: bool = False
    salt: bytes = b""
    platform: Optional[Platform] = None

    def to_bytes(self) -> bytes:
        timeout = None if self.timeout is None else _Duration(self.timeout)
        return b"".join(
            [
                _msg(1, self.command_digest),
                _msg(2, self.input_root_digest),
                _msg(6, timeout),
                _bool(7, self.do_not_cache),
                _bytes(9, self.salt),
                _msg(10, self.platform),
            ]
        )


@dataclass
class RECommand:
    """The command message of the remote execution API."""

    arguments: list[str] = field(default_factory=list)
    environment_variables: list[EnvironmentVariable] = field(default_factory=list)
    output_files: list[str] = field(default_factory=list)
    output_directories: list[str] = field(default_factory=list)
    platform: Optional[Platform] = None
    working_directory: str = ""
    output_paths: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return b"".join(
            [_str(1, a, keep_empty=True) for a in self.arguments]
            + [_msg(2, e) for e in self.environment_variables]
            + [_str(3, p, keep_empty=True) for p in self.output_files]
            + [_str(4, p, keep_empty=True) for p in self.output_directories]
            + [_msg(5, self.platform), _str(6, self.working_directory)]
            + [_str(7, p, keep_empty=True) for p in self.output_paths]
        )