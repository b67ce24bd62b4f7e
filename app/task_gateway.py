"""Mutation gateways: the asynchronous create/update/delete capability the board depends on.

A gateway call never blocks the caller. It returns a `Mutation` handle and
reports the outcome later through `on_success` / `on_error` / `on_settled`
callbacks, always on the thread that drains the gateway (`flush()` or
`pump()`), so board state is only ever touched from one thread.
"""

from __future__ import annotations

import json
import os
import queue
import traceback
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Optional, Tuple
from urllib import error as urlerror
from urllib import request as urlrequest
from urllib.parse import quote

API_TIMEOUT_SECONDS = float(os.environ.get("TEAMBOARD_API_TIMEOUT_SECONDS", "15"))

Callback = Optional[Callable[..., Any]]


class MutationError(Exception):
    """A create/update/delete the backend refused or could not complete."""

    def __init__(self, code: str, message: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.status = status


class Mutation:
    """Handle for one in-flight gateway operation. Settles exactly once."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"

    def __init__(
        self,
        kind: str,
        task_id: Optional[int],
        payload: Optional[Dict[str, Any]] = None,
        on_success: Callback = None,
        on_error: Callback = None,
        on_settled: Callback = None,
    ):
        self.kind = kind
        self.task_id = task_id
        self.payload = dict(payload or {})
        self.state = Mutation.PENDING
        self.result: Any = None
        self.error: Optional[MutationError] = None
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled

    def __repr__(self) -> str:
        return f"Mutation(kind={self.kind!r}, task_id={self.task_id!r}, state={self.state!r})"

    @property
    def is_pending(self) -> bool:
        return self.state == Mutation.PENDING

    def resolve(self, result: Any = None) -> bool:
        if not self.is_pending:
            return False
        self.state = Mutation.SUCCESS
        self.result = result
        try:
            if self._on_success:
                self._on_success(result)
        finally:
            if self._on_settled:
                self._on_settled(result, None)
        return True

    def reject(self, error: MutationError) -> bool:
        if not self.is_pending:
            return False
        self.state = Mutation.ERROR
        self.error = error
        try:
            if self._on_error:
                self._on_error(error)
        finally:
            if self._on_settled:
                self._on_settled(None, error)
        return True


class MutationGateway:
    """Base contract. Subclasses decide how and when a submitted mutation settles."""

    def create(
        self,
        payload: Dict[str, Any],
        on_success: Callback = None,
        on_error: Callback = None,
        on_settled: Callback = None,
    ) -> Mutation:
        return self._submit(Mutation("create", None, payload, on_success, on_error, on_settled))

    def update(
        self,
        task_id: int,
        data: Dict[str, Any],
        on_success: Callback = None,
        on_error: Callback = None,
        on_settled: Callback = None,
    ) -> Mutation:
        return self._submit(Mutation("update", task_id, data, on_success, on_error, on_settled))

    def delete(
        self,
        task_id: int,
        on_success: Callback = None,
        on_error: Callback = None,
        on_settled: Callback = None,
    ) -> Mutation:
        return self._submit(Mutation("delete", task_id, None, on_success, on_error, on_settled))

    def _submit(self, mutation: Mutation) -> Mutation:
        raise NotImplementedError


class StoreMutationGateway(MutationGateway):
    """In-process gateway over the same service helpers the HTTP API uses.

    Submitted mutations queue up and run, in submission order, when the owner
    calls `settle_next()` or `flush()`.
    """

    def __init__(self, actor_user_id: int, connect: Optional[Callable[[], Any]] = None):
        self.actor_user_id = actor_user_id
        self._connect = connect
        self.queue: Deque[Mutation] = deque()

    @property
    def in_flight(self) -> int:
        return len(self.queue)

    def _submit(self, mutation: Mutation) -> Mutation:
        self.queue.append(mutation)
        return mutation

    def settle_next(self) -> Optional[Mutation]:
        if not self.queue:
            return None
        mutation = self.queue.popleft()
        try:
            result = self._execute(mutation)
        except MutationError as exc:
            mutation.reject(exc)
        except Exception as exc:
            traceback.print_exc()
            mutation.reject(MutationError("server_error", str(exc)))
        else:
            mutation.resolve(result)
        return mutation

    def flush(self) -> int:
        count = 0
        while self.queue:
            self.settle_next()
            count += 1
        return count

    def _execute(self, mutation: Mutation) -> Any:
        from app import server

        conn = self._connect() if self._connect else server.db_connect()
        try:
            if mutation.kind == "create":
                result, error = server.create_task_record(conn, self.actor_user_id, mutation.payload)
            elif mutation.kind == "update":
                result, error = server.update_task_record(conn, self.actor_user_id, mutation.task_id, mutation.payload)
            else:
                result, error = server.delete_task_record(conn, self.actor_user_id, mutation.task_id)
                result = None if error else result
            if error:
                conn.rollback()
                raise MutationError(error, server.ERROR_MESSAGES.get(error), server.error_status_code(error))
            conn.commit()
            return result
        finally:
            conn.close()


class HttpMutationGateway(MutationGateway):
    """Gateway over the JSON task API.

    Requests run on a small thread pool; finished futures are parked on a
    queue and only settled when the owning thread calls `pump()`.
    """

    def __init__(
        self,
        base_url: str,
        actor_token: Optional[str] = None,
        timeout: float = API_TIMEOUT_SECONDS,
        opener: Optional[Callable[..., Any]] = None,
        max_workers: int = 4,
    ):
        self.base_url = base_url.rstrip("/")
        self.actor_token = actor_token
        self.timeout = timeout
        self._opener = opener or urlrequest.urlopen
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="teamboard-gateway")
        self._settled: "queue.Queue[Tuple[Mutation, Future]]" = queue.Queue()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _submit(self, mutation: Mutation) -> Mutation:
        future = self._executor.submit(self._perform, mutation)
        self._in_flight += 1
        future.add_done_callback(lambda done, m=mutation: self._settled.put((m, done)))
        return mutation

    def pump(self, block: bool = False, timeout: Optional[float] = None) -> int:
        """Settle every finished request on the calling thread."""
        count = 0
        while True:
            try:
                if block and count == 0:
                    mutation, future = self._settled.get(timeout=timeout)
                else:
                    mutation, future = self._settled.get_nowait()
            except queue.Empty:
                return count
            self._in_flight -= 1
            count += 1
            exc = future.exception()
            if exc is None:
                mutation.resolve(future.result())
            elif isinstance(exc, MutationError):
                mutation.reject(exc)
            else:
                mutation.reject(MutationError("invalid_response", str(exc)))

    def wait(self, timeout: Optional[float] = None) -> None:
        while self._in_flight:
            if not self.pump(block=True, timeout=timeout):
                raise MutationError("timeout", "Gateway did not settle in time")

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _perform(self, mutation: Mutation) -> Any:
        if mutation.kind == "create":
            body = self._request("POST", "/api/tasks", mutation.payload)
            return body.get("task")
        if mutation.kind == "update":
            body = self._request("PUT", f"/api/tasks/{mutation.task_id}", mutation.payload)
            return body.get("task")
        self._request("DELETE", f"/api/tasks/{mutation.task_id}")
        return None

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        if self.actor_token:
            headers["Cookie"] = f"actor={quote(self.actor_token)}"
        req = urlrequest.Request(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with self._opener(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urlerror.HTTPError as exc:
            detail = _decode_body(exc.read())
            raise MutationError(
                str(detail.get("error") or "http_error"),
                str(detail.get("message") or f"HTTP {exc.code}"),
                exc.code,
            ) from exc
        except urlerror.URLError as exc:
            raise MutationError("network_error", str(exc.reason)) from exc
        return _decode_body(raw)


def _decode_body(raw: bytes) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}
