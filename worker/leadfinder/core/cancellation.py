"""Cooperative cancellation tokens passed down a job's call chain."""

import threading
from typing import Dict, Optional


class JobCancelled(Exception):
    """Raised at a checkpoint once cancellation has been requested."""

    def __init__(self, job_id: str, reason: Optional[str] = None) -> None:
        super().__init__(f"Job {job_id} cancelled: {reason or 'requested'}")
        self.job_id = job_id
        self.reason = reason


class CancellationToken:
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.reason: Optional[str] = None
        self._event = threading.Event()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def checkpoint(self) -> None:
        """Raise JobCancelled if a cancel arrived since the last checkpoint."""
        if self._event.is_set():
            raise JobCancelled(self.job_id, self.reason)


class CancellationRegistry:
    """Tokens for jobs currently known to this worker process.

    A cancel that arrives before the job is dispatched is remembered so the
    worker observes it at its first checkpoint.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    def token_for(self, job_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(job_id)
            if token is None:
                token = CancellationToken(job_id)
                self._tokens[job_id] = token
            return token

    def cancel(self, job_id: str, reason: Optional[str] = None) -> CancellationToken:
        token = self.token_for(job_id)
        token.cancel(reason)
        return token

    def release(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
