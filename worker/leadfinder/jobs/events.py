"""In-process event bus that dispatches job events to background workers.

Background handlers run on a bounded ThreadPoolExecutor. A payload's
``jobId`` is the exclusivity key: while one run for a job is in flight, a
second ``job/created`` for the same id is dropped. Handlers that raise one of
``retry_on`` are retried with exponential backoff; once attempts are exhausted
(or on any other exception) the subscription's ``on_exhausted`` hook is told.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type

from leadfinder.core.errors import StorageError

logger = logging.getLogger(__name__)

JOB_CREATED = "job/created"
JOB_CANCEL = "job/cancel"

Payload = Dict[str, Any]
Handler = Callable[[Payload], None]
ExhaustedHook = Callable[[Payload, BaseException], None]


@dataclass
class Subscription:
    handler: Handler
    background: bool = True
    on_exhausted: Optional[ExhaustedHook] = None


class EventBus:
    def __init__(
        self,
        *,
        max_workers: int = 4,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        retry_on: Tuple[Type[BaseException], ...] = (StorageError,),
        executor: Optional[ThreadPoolExecutor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = max(0.0, retry_delay)
        self.retry_on = retry_on
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._sleep = sleep
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._in_flight: Set[str] = set()

    def subscribe(
        self,
        event: str,
        handler: Handler,
        *,
        background: bool = True,
        on_exhausted: Optional[ExhaustedHook] = None,
    ) -> None:
        with self._lock:
            self._subscriptions.setdefault(event, []).append(
                Subscription(handler=handler, background=background, on_exhausted=on_exhausted)
            )

    def in_flight(self) -> Set[str]:
        with self._lock:
            return set(self._in_flight)

    def emit(self, event: str, payload: Payload) -> List[Future]:
        """Deliver ``payload``; returns futures for the background runs that were started."""
        with self._lock:
            subscriptions = list(self._subscriptions.get(event, ()))
        if not subscriptions:
            logger.warning("No subscribers for %s; event dropped", event)
            return []

        futures: List[Future] = []
        for subscription in subscriptions:
            if not subscription.background:
                try:
                    subscription.handler(payload)
                except Exception:  # noqa: BLE001
                    logger.exception("Handler for %s failed", event)
                continue

            key = payload.get("jobId")
            if key is not None:
                with self._lock:
                    if key in self._in_flight:
                        logger.warning("%s for %s ignored; a run is already in flight", event, key)
                        continue
                    self._in_flight.add(key)
            futures.append(self._executor.submit(self._run, event, subscription, payload, key))
        return futures

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** (attempt - 1)) + random.uniform(0, self.retry_delay / 2 if self.retry_delay else 0)

    def _run(self, event: str, subscription: Subscription, payload: Payload, key: Optional[str]) -> None:
        try:
            attempt = 0
            while True:
                attempt += 1
                try:
                    subscription.handler(payload)
                    return
                except self.retry_on as exc:
                    if attempt >= self.max_attempts:
                        logger.error("%s for %s failed after %d attempt(s): %s", event, key, attempt, exc)
                        self._exhausted(subscription, payload, exc)
                        return
                    delay = self._backoff(attempt)
                    logger.warning(
                        "%s for %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        event,
                        key,
                        attempt,
                        self.max_attempts,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("%s for %s crashed", event, key)
                    self._exhausted(subscription, payload, exc)
                    return
        finally:
            if key is not None:
                with self._lock:
                    self._in_flight.discard(key)

    def _exhausted(self, subscription: Subscription, payload: Payload, exc: BaseException) -> None:
        if subscription.on_exhausted is None:
            return
        try:
            subscription.on_exhausted(payload, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Failure hook raised for %s", payload.get("jobId"))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
