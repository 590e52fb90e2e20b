"""An in-memory action cache that stores fixed results by action digest."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Optional

from remoteexec.digest import Digest, DigestError, must_from_message, new_from_proto
from remoteexec.messages import Action, ActionResult, DigestMessage


class CacheError(Exception):
    """Base class for action cache request errors."""


class InvalidArgumentError(CacheError):
    """The request carried an invalid digest or no result."""


class NotFoundError(CacheError):
    """No result is stored for the requested action."""


class ActionCache:
    """Stores action results and counts reads and writes per action digest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: dict[Digest, ActionResult] = {}
        self._reads: Counter[Digest] = Counter()
        self._writes: Counter[Digest] = Counter()

    def clear(self) -> None:
        """Remove all results and reset the counters."""
        with self._lock:
            self._results = {}
            self._reads = Counter()
            self._writes = Counter()

    def put_action(self, action: Action, result: ActionResult) -> Digest:
        """Store a result for an action and return the action's digest."""
        dg = must_from_message(action)
        self.put(dg, result)
        return dg

    def put(self, dg: Digest, result: ActionResult) -> None:
        """Store a result for an action digest."""
        with self._lock:
            self._results[dg] = result

    def get(self, dg: Digest) -> Optional[ActionResult]:
        """Return the stored result for an action digest, or None."""
        with self._lock:
            return self._results.get(dg)

    def reads(self, dg: Digest) -> int:
        """Number of get_action_result calls for a digest, found or not."""
        with self._lock:
            return self._reads[dg]

    def writes(self, dg: Digest) -> int:
        """Number of update_action_result calls for a digest."""
        with self._lock:
            return self._writes[dg]

    @staticmethod
    def _parse(action_digest: Optional[DigestMessage]) -> Digest:
        if action_digest is None:
            raise InvalidArgumentError("invalid digest received: None")
        try:
            return new_from_proto(action_digest)
        except DigestError as exc:
            raise InvalidArgumentError(f"invalid digest received: {action_digest}") from exc

    def get_action_result(self, action_digest: Optional[DigestMessage]) -> ActionResult:
        """Return the stored result, raising NotFoundError if there is none."""
        with self._lock:
            dg = self._parse(action_digest)
            self._reads[dg] += 1
            try:
                return self._results[dg]
            except KeyError:
                raise NotFoundError(f"no action result for {dg}") from None

    def update_action_result(
        self,
        action_digest: Optional[DigestMessage],
        action_result: Optional[ActionResult],
    ) -> ActionResult:
        """Store or replace the result for an action and return it."""
        with self._lock:
            dg = self._parse(action_digest)
            if action_result is None:
                raise InvalidArgumentError("no action result received")
            self._results[dg] = action_result
            self._writes[dg] += 1
            return action_result