# remoteexec

This package holds the building blocks that a client of a remote build
execution service needs on its own side. It computes content digests,
describes commands and packs input and output files into Merkle trees of
directory messages. It has no third-party dependencies.

## Modules

### `remoteexec.digest`

A `Digest` is a frozen dataclass with a `hash` and a `size`, so it can be used
as a dictionary key. `str(digest)` gives the canonical `hash/size` form.
Digests are always SHA-256.

- `new(hash, size)` builds a digest and validates it. `new_padded(hash, size)`
  does the same, but first left-pads a short hash with zeros.
- `new_from_blob`, `new_from_file`, `new_from_reader` and `new_from_message`
  each compute a digest. `new_from_message` takes any object with a
  `to_bytes()` method.
- `new_from_string("hash/size")` parses the canonical form.
- `new_from_proto` converts a `DigestMessage` and validates the result.
  `new_from_proto_unvalidated` converts it without validation.
- `Digest.validate()` checks the hash length, that the hash is lowercase hex,
  and that the size is not negative. `Digest.is_empty()` and
  `Digest.to_proto()` are also available.
- `EMPTY` is the digest of the empty blob.
- `check_capabilities(execution_digest_function, cache_digest_functions)`
  raises an error if a server does not accept SHA-256.

Invalid digests raise `DigestError`, which is a subclass of `ValueError`.

### `remoteexec.messages`

These dataclasses model the API messages: `DigestMessage`, `FileNode`,
`DirectoryNode`, `SymlinkNode`, `Directory`, `Tree`, `OutputFile`,
`OutputDirectory`, `ActionResult`, `Action`, `EnvironmentVariable`,
`PlatformProperty`, `Platform` and `RECommand`.

- Each one has `to_bytes()`, which writes the protocol-buffer wire format.
  This means the digests of these messages match those computed by other
  clients.
- `DigestMessage`, the node types, `Directory` and `Tree` can also be read
  back with `from_bytes()`.

### `remoteexec.command`

`Command` describes an invocation: its arguments, exec root, working
directory, `InputSpec`, output files and directories, timeout and platform
properties.

- `validate()` raises `ValueError` if a required field is missing.
- `stable_id()` returns an 8-character ID that depends only on the content
  of the command. It does not depend on the order of outputs, inputs,
  environment variables, platform entries or exclusions.
- `fill_default_field_values()` fills in anything that is not set:
  - the command ID;
  - the tool name, which defaults to `remote-client`;
  - the invocation ID and the execution ID, each a random UUID;
  - an empty input spec.
- `to_re_proto(use_output_paths_field)` builds an `RECommand`, with its
  lists sorted.

An `InputSpec` holds:

- the input paths;
- `VirtualInput`s, which are contents or empty directories that do not
  exist on disk;
- `InputExclusion`s, each a regular expression plus an `InputType`;
- the environment variables.

The module also defines:

- `ExecutionOptions` and `default_execution_options()`.
- `Result` and `ResultStatus`, with `is_ok()`, plus the helpers
  `new_local_error_result`, `new_remote_error_result`,
  `new_result_from_exit_code` and `new_timeout_result`.
- `TimeInterval` and `Metadata`.
- `to_proto` and `from_proto`, `result_to_proto` and `result_from_proto`,
  `time_to_proto` and `time_from_proto`, and `time_interval_to_proto` and
  `time_interval_from_proto`. These convert to and from plain dictionaries,
  not wire bytes.

### `remoteexec.tree`

`TreeBuilder(symlink_opts=None)` has three methods:

- **`compute_merkle_tree(exec_root, spec, cache=None)`** reads the inputs
  and the virtual inputs, and applies the exclusions. It returns
  `(root_digest, upload_entries, stats)`. `stats` is a `TreeStats` with
  counts of files, directories and symlinks and the total number of bytes.
  When a path is given both as a file on disk and as a virtual input, the
  file on disk wins.
- **`flatten_tree(tree, root_path)`** maps every file, symlink and empty
  directory of a `Tree` to a `TreeOutput`, keyed by its path.
- **`compute_outputs_to_upload(exec_root, paths, cache=None)`** returns a
  dictionary of `UploadEntry` by digest, and an `ActionResult` that lists
  the output files and output directories. Each output directory is packed
  as a `Tree`. Missing outputs are skipped.

Symlink handling is set by `TreeSymlinkOpts(preserved, follows_target)`. By
default (`default_tree_symlink_opts()`), a symlink is replaced by the file it
points to, and a dangling symlink is dropped. A preserved symlink must point
inside the exec root. If it does not, `compute_merkle_tree` raises
`TreeError`.

The `cache` argument is any object with `get(path)` that returns a
`FileMetadata`. When it is `None`, `stat_metadata` is called for each path.

An `UploadEntry` holds a digest together with either the blob's contents or
a file path. `UploadEntry.read()` returns the bytes.

### `remoteexec.actioncache`

`ActionCache` is an in-memory, thread-safe store of `ActionResult`s keyed by
action digest. It counts reads and writes for each digest, which makes it
useful in tests.

- `get_action_result` raises `NotFoundError` when no result is stored.
- `get_action_result` and `update_action_result` both raise
  `InvalidArgumentError` for a bad digest. `update_action_result` also raises
  it when the result is missing.

## Example

```python
from remoteexec.command import InputSpec
from remoteexec.digest import new_from_blob
from remoteexec.tree import TreeBuilder, TreeSymlinkOpts

print(new_from_blob(b"foo"))  # "<sha256 hex>/3"

builder = TreeBuilder(TreeSymlinkOpts(preserved=True, follows_target=True))
root, entries, stats = builder.compute_merkle_tree(
    "/path/to/exec/root",
    InputSpec(inputs=["src", "include/foo.h"]),
)
print(root, stats.input_files, stats.total_input_bytes)
```

## What it does not do

This package does not talk to a server. It has no network client for a
content-addressable store, an action cache or an execution service. It does
not upload or download blobs, and it does not run commands. It also has no
command-line tool. It prepares digests, messages and upload entries that
some other transport has to send.

## Tests

```
pip install -e .[test]
pytest
```