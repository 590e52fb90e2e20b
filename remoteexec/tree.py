"""Building Merkle trees of inputs and outputs for remote execution."""

from __future__ import annotations

import os
import re
import stat
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, Union

from remoteexec.command import InputExclusion, InputSpec, InputType
from remoteexec.digest import EMPTY, Digest, new_from_blob, new_from_file, new_from_message
from remoteexec.digest import new_from_proto_unvalidated
from remoteexec.messages import (
    ActionResult,
    Directory,
    DirectoryNode,
    FileNode,
    OutputDirectory,
    OutputFile,
    SymlinkNode,
    Tree,
)


class TreeError(Exception):
    """Raised when inputs or outputs cannot be packaged into a tree."""


class _Message(Protocol):
    def to_bytes(self) -> bytes: ...


@dataclass(frozen=True)
class UploadEntry:
    """A blob to upload: its digest and either its contents or a file path."""

    digest: Digest
    contents: Optional[bytes] = None
    path: Optional[str] = None

    @classmethod
    def from_blob(cls, blob: bytes) -> "UploadEntry":
        return cls(digest=new_from_blob(blob), contents=bytes(blob))

    @classmethod
    def from_file(cls, dg: Digest, path: Union[str, os.PathLike]) -> "UploadEntry":
        return cls(digest=dg, path=os.fspath(path))

    @classmethod
    def from_message(cls, msg: _Message) -> "UploadEntry":
        return cls.from_blob(msg.to_bytes())

    def read(self) -> bytes:
        """Return the full contents of the blob."""
        if self.contents is not None:
            return self.contents
        with open(self.path, "rb") as f:
            return f.read()


@dataclass
class SymlinkMetadata:
    """What a symbolic link points at and whether the target is missing."""

    target: str
    is_dangling: bool = False


@dataclass
class FileMetadata:
    """Metadata of a path; err holds the error met while reading it."""

    digest: Optional[Digest] = None
    is_directory: bool = False
    is_executable: bool = False
    symlink: Optional[SymlinkMetadata] = None
    err: Optional[Exception] = None


def stat_metadata(path: Union[str, os.PathLike]) -> FileMetadata:
    """Read the metadata of a path, following symlinks for file contents."""
    path = os.fspath(path)
    try:
        lst = os.lstat(path)
    except OSError as exc:
        return FileMetadata(err=exc)
    symlink = None
    if stat.S_ISLNK(lst.st_mode):
        target = os.readlink(path)
        try:
            st = os.stat(path)
        except OSError as exc:
            return FileMetadata(symlink=SymlinkMetadata(target, True), err=exc)
        symlink = SymlinkMetadata(target, False)
    else:
        st = lst
    if stat.S_ISDIR(st.st_mode):
        return FileMetadata(is_directory=True, symlink=symlink)
    try:
        dg = new_from_file(path)
    except OSError as exc:
        return FileMetadata(symlink=symlink, err=exc)
    return FileMetadata(digest=dg, is_executable=bool(st.st_mode & 0o100), symlink=symlink)


class MetadataCache(Protocol):
    def get(self, path: str) -> FileMetadata: ...


class _StatCache:
    def get(self, path: str) -> FileMetadata:
        return stat_metadata(path)


@dataclass
class TreeStats:
    """Counts over the whole input tree, duplicates included."""

    input_files: int = 0
    input_directories: int = 0
    input_symlinks: int = 0
    total_input_bytes: int = 0


@dataclass
class TreeSymlinkOpts:
    """How symlinks are handled: preserved as links, and whether targets are followed."""

    preserved: bool = False
    follows_target: bool = False


def default_tree_symlink_opts() -> TreeSymlinkOpts:
    """Symlinks are converted into their targets."""
    return TreeSymlinkOpts(preserved=False, follows_target=True)


@dataclass
class TreeOutput:
    """A leaf of a flattened tree: a file, a symlink or an empty directory."""

    path: str
    digest: Optional[Digest] = None
    is_executable: bool = False
    is_empty_directory: bool = False
    symlink_target: str = ""


@dataclass
class _FileEntry:
    entry: UploadEntry
    is_executable: bool


@dataclass
class _FsNode:
    file: Optional[_FileEntry] = None
    empty_dir: bool = False
    symlink: Optional[str] = None


@dataclass
class _TreeNode:
    files: dict[str, _FileEntry] = field(default_factory=dict)
    dirs: dict[str, "_TreeNode"] = field(default_factory=dict)
    symlinks: dict[str, str] = field(default_factory=dict)


def _join(base: str, path: str) -> str:
    return os.path.normpath(base + os.sep + path)


def _rel_path(base: str, path: str) -> str:
    rel = os.path.relpath(path, base)
    if rel.startswith(".."):
        raise TreeError(f"path {path} is not under {base}")
    return rel


def _should_ignore(path: str, kind: InputType, exclusions: Iterable[InputExclusion]) -> bool:
    return any(
        (e.type == InputType.UNSPECIFIED or e.type == kind) and re.search(e.regex, path)
        for e in exclusions
    )


def _target_rel_path(exec_root: str, path: str, sym: SymlinkMetadata) -> tuple[str, str]:
    symlink_dir = _join(exec_root, os.path.dirname(path))
    target = sym.target
    if not os.path.isabs(target):
        target = _join(symlink_dir, target)
    return _rel_path(exec_root, target), os.path.relpath(target, symlink_dir)


def _load_files(exec_root, exclusions, paths, fs, cache, opts) -> None:
    exclusions = exclusions or []
    queue = deque(paths)
    while queue:
        path = queue.popleft()
        if path == "":
            raise TreeError('empty Input, use "." for entire exec root')
        abs_path = _join(exec_root, path)
        meta = cache.get(abs_path)
        norm = _rel_path(exec_root, abs_path)
        sym = meta.symlink
        if sym is not None and sym.is_dangling and not opts.preserved:
            continue
        if sym is not None and opts.preserved:
            if _should_ignore(abs_path, InputType.SYMLINK, exclusions):
                continue
            rel_root, rel_sym = _target_rel_path(exec_root, norm, sym)
            fs[norm] = _FsNode(symlink=rel_sym)
            if not sym.is_dangling and opts.follows_target:
                queue.append(rel_root)
        elif meta.is_directory:
            if _should_ignore(abs_path, InputType.DIRECTORY, exclusions):
                continue
            if meta.err is not None:
                raise meta.err
            names = os.listdir(abs_path)
            if not names:
                fs[norm] = _FsNode(empty_dir=True)
                continue
            queue.extend(os.path.normpath(os.path.join(norm, n)) for n in names)
        else:
            if _should_ignore(abs_path, InputType.FILE, exclusions):
                continue
            if meta.err is not None:
                raise meta.err
            fs[norm] = _FsNode(
                file=_FileEntry(UploadEntry.from_file(meta.digest, abs_path), meta.is_executable)
            )


def _build_tree(files: dict[str, _FsNode]) -> _TreeNode:
    root = _TreeNode()
    for name, fn in files.items():
        *segs, base = name.split(os.sep)
        node = root
        for s in segs:
            node = node.dirs.setdefault(s, _TreeNode())
        if fn.empty_dir:
            node.dirs[base] = _TreeNode()
        elif fn.file is not None:
            node.files[base] = fn.file
        else:
            node.symlinks[base] = fn.symlink
    return root


def _package_tree(t: _TreeNode, stats: TreeStats) -> tuple[Digest, dict[Digest, UploadEntry]]:
    directory = Directory()
    blobs: dict[Digest, UploadEntry] = {}
    for name in sorted(t.dirs):
        dg, child_blobs = _package_tree(t.dirs[name], stats)
        directory.directories.append(DirectoryNode(name=name, digest=dg.to_proto()))
        blobs.update(child_blobs)
    for name in sorted(t.files):
        fn = t.files[name]
        dg = fn.entry.digest
        directory.files.append(FileNode(name=name, digest=dg.to_proto(), is_executable=fn.is_executable))
        blobs[dg] = fn.entry
        stats.input_files += 1
        stats.total_input_bytes += dg.size
    for name in sorted(t.symlinks):
        directory.symlinks.append(SymlinkNode(name=name, target=t.symlinks[name]))
        stats.input_symlinks += 1
    ue = UploadEntry.from_message(directory)
    blobs[ue.digest] = ue
    stats.total_input_bytes += ue.digest.size
    stats.input_directories += 1
    return ue.digest, blobs


def _package_directories(t: _TreeNode):
    root = Directory()
    children: dict[Digest, Directory] = {}
    files: dict[Digest, UploadEntry] = {}
    for name in sorted(t.dirs):
        ch_root, ch_dirs, ch_files = _package_directories(t.dirs[name])
        dg = UploadEntry.from_message(ch_root).digest
        root.directories.append(DirectoryNode(name=name, digest=dg.to_proto()))
        files.update(ch_files)
        children[dg] = ch_root
        children.update(ch_dirs)
    for name in sorted(t.files):
        fn = t.files[name]
        dg = fn.entry.digest
        root.files.append(FileNode(name=name, digest=dg.to_proto(), is_executable=fn.is_executable))
        files[dg] = fn.entry
    return root, children, files


class TreeBuilder:
    """Packages inputs and outputs into Merkle trees of directories."""

    def __init__(self, symlink_opts: Optional[TreeSymlinkOpts] = None) -> None:
        self.symlink_opts = symlink_opts

    def _opts(self) -> TreeSymlinkOpts:
        return self.symlink_opts or default_tree_symlink_opts()

    def compute_merkle_tree(self, exec_root, spec: InputSpec, cache: Optional[MetadataCache] = None):
        """Return the root digest, the entries to upload and the tree stats."""
        exec_root = os.fspath(exec_root)
        cache = cache or _StatCache()
        stats = TreeStats()
        fs: dict[str, _FsNode] = {}
        for vi in spec.virtual_inputs:
            if vi.path == "":
                raise TreeError("empty Path in VirtualInputs")
            norm = _rel_path(exec_root, _join(exec_root, vi.path))
            if vi.is_empty_directory:
                fs[norm] = _FsNode(empty_dir=True)
            else:
                fs[norm] = _FsNode(file=_FileEntry(UploadEntry.from_blob(vi.contents), vi.is_executable))
        _load_files(exec_root, spec.input_exclusions, spec.inputs, fs, cache, self._opts())
        root, blobs = _package_tree(_build_tree(fs), stats)
        return root, list(blobs.values()), stats

    def flatten_tree(self, tree: Tree, root_path: str) -> dict[str, TreeOutput]:
        """Map every file, symlink and empty directory of a tree to its path."""
        root = new_from_message(tree.root)
        dirs = {root: tree.root}
        for child in tree.children:
            dirs[new_from_message(child)] = child
        out: dict[str, TreeOutput] = {}
        queue = deque([(root, root_path)])
        while queue:
            dg, path = queue.popleft()
            d = dirs.get(dg)
            if d is None:
                raise TreeError(f"couldn't find directory {path} with digest {dg}")
            if not (d.files or d.directories or d.symlinks):
                out[path] = TreeOutput(path=path, digest=EMPTY, is_empty_directory=True)
                continue
            for f in d.files:
                p = os.path.normpath(os.path.join(path, f.name))
                out[p] = TreeOutput(path=p, digest=new_from_proto_unvalidated(f.digest),
                                    is_executable=f.is_executable)
            for s in d.symlinks:
                p = os.path.normpath(os.path.join(path, s.name))
                out[p] = TreeOutput(path=p, symlink_target=s.target)
            for sub in d.directories:
                queue.append((new_from_proto_unvalidated(sub.digest),
                              os.path.normpath(os.path.join(path, sub.name))))
        return out

    def compute_outputs_to_upload(self, exec_root, paths, cache: Optional[MetadataCache] = None):
        """Return the entries to upload and the action result describing the outputs."""
        exec_root = os.fspath(exec_root)
        cache = cache or _StatCache()
        outs: dict[Digest, UploadEntry] = {}
        result = ActionResult()
        for path in paths:
            abs_path = _join(exec_root, path)
            norm = _rel_path(exec_root, abs_path)
            meta = cache.get(abs_path)
            if meta.err is not None:
                if isinstance(meta.err, FileNotFoundError):
                    continue
                raise meta.err
            if not meta.is_directory:
                outs[meta.digest] = UploadEntry.from_file(meta.digest, abs_path)
                result.output_files.append(
                    OutputFile(path=norm, digest=meta.digest.to_proto(), is_executable=meta.is_executable)
                )
                continue
            fs: dict[str, _FsNode] = {}
            _load_files(abs_path, None, ["."], fs, cache, self._opts())
            root_dir, child_dirs, files = _package_directories(_build_tree(fs))
            root_ue = UploadEntry.from_message(root_dir)
            outs[root_ue.digest] = root_ue
            tree = Tree(root=root_dir, children=list(child_dirs.values()))
            tree_ue = UploadEntry.from_message(tree)
            outs[tree_ue.digest] = tree_ue
            for ue in files.values():
                outs[ue.digest] = ue
            result.output_directories.append(
                OutputDirectory(path=norm, tree_digest=tree_ue.digest.to_proto())
            )
            for child in tree.children:
                ue = UploadEntry.from_message(child)
                outs[ue.digest] = ue
        return outs, result