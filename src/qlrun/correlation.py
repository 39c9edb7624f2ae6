"""Id issuance and outstanding-request bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Callable, Iterator

from qlrun.exceptions import QueryServerError
from qlrun.json_types import JSONValue, RequestId

logger = logging.getLogger(__name__)

ResponseCallback = Callable[[QueryServerError | None, JSONValue], None]


class IdSpace(Enum):
    SESSION = "session"
    PROGRESS = "progress"
    EVALUATION = "evaluation"


class IdCounter:
    """Monotonic issuer; the value is incremented before it is handed out."""

    def __init__(self, start: int = 0) -> None:
        self._last = start

    def next(self) -> int:
        self._last += 1
        return self._last

    @property
    def last(self) -> int:
        return self._last


class CorrelationRegistry:
    """Payload-level correlation tokens, one independent counter per space.

    Wire-level request ids belong to the transport's `PendingRequests`.
    """

    def __init__(self) -> None:
        self._counters = {space: IdCounter() for space in IdSpace}

    def next_id(self, space: IdSpace) -> int:
        return self._counters[space].next()

    def next_session_id(self) -> int:
        return self.next_id(IdSpace.SESSION)

    def next_progress_id(self) -> int:
        return self.next_id(IdSpace.PROGRESS)

    def next_evaluation_id(self) -> int:
        return self.next_id(IdSpace.EVALUATION)


@dataclass
class PendingRequest:
    request_id: RequestId
    method: str
    callback: ResponseCallback
    timer: object | None = None
    _fired: bool = field(default=False, repr=False)

    @property
    def done(self) -> bool:
        return self._fired

    def complete(self, error: QueryServerError | None, result: JSONValue = None) -> bool:
        """Fire the callback unless it already fired; returns whether it fired now."""
        if self._fired:
            return False
        self._fired = True
        cancel = getattr(self.timer, "cancel", None)
        if cancel is not None:
            cancel()
        self.callback(error, result)
        return True


class PendingRequests:
    def __init__(self) -> None:
        self._ids = IdCounter()
        self._pending: dict[RequestId, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(list(self._pending.values()))

    def next_request_id(self) -> int:
        return self._ids.next()

    def add(self, method: str, callback: ResponseCallback) -> PendingRequest:
        request = PendingRequest(self.next_request_id(), method, callback)
        self._pending[request.request_id] = request
        return request

    def resolve(
        self,
        request_id: RequestId,
        error: QueryServerError | None,
        result: JSONValue = None,
    ) -> bool:
        request = self._pending.pop(request_id, None)
        if request is None:
            logger.debug("Dropping response for unknown request id %r", request_id)
            return False
        return request.complete(error, result)

    def fail_all(self, error: QueryServerError) -> int:
        requests = list(self._pending.values())
        self._pending.clear()
        fired = 0
        for request in requests:
            try:
                if request.complete(error):
                    fired += 1
            except Exception:
                # One failing callback must not leave the rest unresolved.
                logger.exception("Callback for %s request %r raised", request.method, request.request_id)
                fired += 1
        return fired
