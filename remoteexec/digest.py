"""Content digests: the SHA-256 hash and the size of a blob."""

from __future__ import annotations

import enum
import hashlib
import os
import re
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Optional, Protocol, Union

from remoteexec.messages import DigestMessage

_HASH_LENGTH = hashlib.sha256().digest_size * 2
_HEX_RE = re.compile(r"[a-f0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_COPY_BUFFER_SIZE = 32 * 1024
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class DigestError(ValueError):
    """Raised for an invalid digest or an unsupported digest function."""


class DigestFunction(enum.IntEnum):
    """Digest functions known to the remote execution API."""

    UNKNOWN = 0
    SHA256 = 1
    SHA1 = 2
    MD5 = 3
    VSO = 4
    SHA384 = 5
    SHA512 = 6
    MURMUR3 = 7


class _Message(Protocol):
    def to_bytes(self) -> bytes: ...


@dataclass(frozen=True)
class Digest:
    """The hash and size of a blob; usable as a dictionary key."""

    hash: str
    size: int

    def to_proto(self) -> DigestMessage:
        """Return the wire message for this digest, without validation."""
        return DigestMessage(hash=self.hash, size_bytes=self.size)

    def __str__(self) -> str:
        return f"{self.hash}/{self.size}"

    def is_empty(self) -> bool:
        """Whether this is the digest of the empty blob."""
        return self.size == 0 and self.hash == EMPTY.hash

    def validate(self) -> None:
        """Raise DigestError unless the hash and size look valid."""
        length = len(self.hash)
        if length != _HASH_LENGTH:
            raise DigestError(
                f"valid hash length is {_HASH_LENGTH}, got length {length} ({self.hash})"
            )
        if not _HEX_RE.fullmatch(self.hash):
            raise DigestError(f"hash is not a lowercase hex string ({self.hash})")
        if self.size < 0:
            raise DigestError(f"expected non-negative size, got {self.size}")


def get_digest_function() -> DigestFunction:
    """Return the digest function used by the client."""
    return DigestFunction.SHA256


def new(hash: str, size: int) -> Digest:
    """Create a validated digest from a hash and a size."""
    d = Digest(hash=hash, size=size)
    d.validate()
    return d


def new_from_blob(blob: bytes) -> Digest:
    """Compute the digest of a blob."""
    return Digest(hash=hashlib.sha256(blob).hexdigest(), size=len(blob))


def new_from_message(msg: _Message) -> Digest:
    """Compute the digest of a message's serialized form."""
    return new_from_blob(msg.to_bytes())


def new_from_proto_unvalidated(dg: DigestMessage) -> Digest:
    """Convert a wire digest to a Digest without validation."""
    return Digest(hash=dg.hash, size=dg.size_bytes)


def new_from_proto(dg: DigestMessage) -> Digest:
    """Convert a wire digest to a Digest, validating it."""
    d = new_from_proto_unvalidated(dg)
    d.validate()
    return d


def new_from_string(s: str) -> Digest:
    """Parse a digest from its canonical hash/size form."""
    pair = s.split("/")
    if len(pair) != 2:
        raise DigestError(f"expected digest in the form hash/size, got {s}")
    hash_part, size_part = pair
    if not _INT_RE.fullmatch(size_part):
        raise DigestError(f"invalid size in digest {s}: {size_part!r} is not an integer")
    size = int(size_part)
    if not _INT64_MIN <= size <= _INT64_MAX:
        raise DigestError(f"invalid size in digest {s}: value out of range")
    return new(hash_part, size)


def new_from_reader(reader: BinaryIO) -> Digest:
    """Compute the digest of everything a binary reader yields."""
    h = hashlib.sha256()
    size = 0
    while chunk := reader.read(_COPY_BUFFER_SIZE):
        h.update(chunk)
        size += len(chunk)
    return Digest(hash=h.hexdigest(), size=size)


def new_from_file(path: Union[str, os.PathLike]) -> Digest:
    """Compute the digest of a file's contents."""
    with open(path, "rb") as f:
        return new_from_reader(f)


def _function_name(value: int) -> str:
    try:
        return DigestFunction(value).name
    except ValueError:
        return str(value)


def check_capabilities(
    execution_digest_function: Optional[int],
    cache_digest_functions: Optional[Iterable[int]],
) -> None:
    """Raise DigestError if the server does not support the client's digest function.

    Either argument may be None when the server reports no such capabilities.
    """
    fn = get_digest_function()
    if execution_digest_function is not None and execution_digest_function != fn:
        raise DigestError(
            f"server requires {_function_name(execution_digest_function)}, "
            f"client uses {fn.name}"
        )
    if cache_digest_functions is not None:
        functions = list(cache_digest_functions)
        if fn not in functions:
            names = ", ".join(_function_name(f) for f in functions)
            raise DigestError(f"server requires one of [{names}], client uses {fn.name}")


def new_padded(hash: str, size: int) -> Digest:
    """Like new, but left-pads a short hash with zeros."""
    if len(hash) < _HASH_LENGTH:
        hash = "0" * (_HASH_LENGTH - len(hash)) + hash
    return new(hash, size)


def must_from_message(msg: _Message) -> Digest:
    """Compute a message digest; serialization errors propagate."""
    return new_from_message(msg)


EMPTY = new_from_blob(b"")