"""Signing orchestrator: request queue and per-request state machine.

Requests are created ``pending`` and queued per device in FIFO order. Each
device with queued work gets one dispatch worker task which, holding the
device's channel lock, takes the next request, marks it dispatched and
hands it to the transport. Workers for different devices run in parallel.

State machine per request::

    pending --> signed
            --> error      (user_rejected, transport_error, timeout,
                            device_disconnected, device_locked)
            --> cancelled  (cancelled_by_caller, device_disconnected)

Terminal states never change. When a device session ends, queued requests
become ``cancelled`` and the dispatched one becomes
``error(device_disconnected)``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque

from hwsigner.accounts.service import AccountDerivationService
from hwsigner.config import SigningConfig
from hwsigner.connection.channel import DeviceChannel
from hwsigner.connection.manager import ConnectionManager
from hwsigner.errors import (
    AlreadyDispatched,
    DeviceLocked,
    DeviceNotReady,
    HardwareSignerError,
    RequestNotPending,
    UnknownRequest,
)
from hwsigner.events.notifier import EventNotifier
from hwsigner.events.types import EventType
from hwsigner.models import (
    ErrorReason,
    RequestStatus,
    RequestType,
    SigningPayload,
    SigningRequest,
    utcnow,
)

logger = logging.getLogger(__name__)

_DEVICE_REASONS = {
    "user_rejected": ErrorReason.USER_REJECTED,
    "transport_error": ErrorReason.TRANSPORT_ERROR,
    "timeout": ErrorReason.TIMEOUT,
    "device_disconnected": ErrorReason.DEVICE_DISCONNECTED,
    "device_locked": ErrorReason.DEVICE_LOCKED,
}


class SigningOrchestrator:
    """Queues signing requests and dispatches them one at a time per device.

    Parameters
    ----------
    connections:
        Connection manager; supplies readiness checks and device channels and
        notifies the orchestrator when a session ends.
    accounts:
        Account service; a request's account must be cached for the
        device's live session.
    notifier:
        Receives ``signing.*`` events.
    config:
        Per-request timeouts.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        accounts: AccountDerivationService,
        notifier: EventNotifier,
        config: SigningConfig | None = None,
    ) -> None:
        self._connections = connections
        self._accounts = accounts
        self._notifier = notifier
        self._config = config or SigningConfig()
        self._ids = itertools.count(1)
        self._requests: dict[int, SigningRequest] = {}
        self._done: dict[int, asyncio.Event] = {}
        self._queues: dict[str, deque[int]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._inflight: dict[str, int] = {}
        connections.on_session_end(self._on_session_end)

    # ------------------------------------------------------------------
    # Submit / cancel
    # ------------------------------------------------------------------

    def submit(
        self,
        device_id: str,
        account_path: str,
        payload: SigningPayload,
        request_type: RequestType = RequestType.TRANSACTION,
    ) -> int:
        """Queue a signing request and return its id.

        Raises ``DeviceNotReady`` (and creates nothing) unless the device is
        connected and unlocked and *account_path* was loaded in the device's
        current session.
        """
        _, channel = self._connections.require_ready(device_id)
        account = self._accounts.get_account(device_id, account_path)
        if account is None:
            raise DeviceNotReady(
                f"Account {account_path} is not loaded in the current session of {device_id}",
                device_id=device_id,
            )

        request = SigningRequest(
            id=next(self._ids),
            request_type=request_type,
            payload=payload,
            device_id=device_id,
            account_path=account_path,
            account_address=account.address,
        )
        self._requests[request.id] = request
        self._done[request.id] = asyncio.Event()
        self._queues.setdefault(device_id, deque()).append(request.id)
        logger.info(
            "Queued %s request %d for %s (%s)",
            request_type.value, request.id, device_id, account_path,
        )
        self._ensure_worker(device_id, channel)
        return request.id

    def cancel(self, request_id: int) -> SigningRequest:
        """Cancel a request that has not been dispatched yet."""
        request = self._get(request_id)
        if request.dispatched:
            raise AlreadyDispatched(
                f"Request {request_id} was already sent to the device",
                device_id=request.device_id,
            )
        if request.status.is_terminal:
            raise RequestNotPending(
                f"Request {request_id} is already {request.status.value}",
                device_id=request.device_id,
            )
        queue = self._queues.get(request.device_id)
        if queue is not None and request_id in queue:
            queue.remove(request_id)
        return self._finish(
            request_id,
            RequestStatus.CANCELLED,
            reason=ErrorReason.CANCELLED_BY_CALLER,
            detail="Cancelled by caller",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, request_id: int) -> SigningRequest:
        return self._get(request_id).model_copy(deep=True)

    def list_requests(
        self, device_id: str | None = None, status: RequestStatus | None = None
    ) -> list[SigningRequest]:
        return [
            r.model_copy(deep=True)
            for _, r in sorted(self._requests.items())
            if (device_id is None or r.device_id == device_id)
            and (status is None or r.status is status)
        ]

    def queued(self, device_id: str) -> list[int]:
        """Ids of requests waiting for dispatch, in dispatch order."""
        return list(self._queues.get(device_id, ()))

    def in_flight(self, device_id: str) -> int | None:
        return self._inflight.get(device_id)

    async def wait_for(self, request_id: int, timeout: float | None = None) -> SigningRequest:
        """Wait until the request is terminal and return it.

        Raises ``asyncio.TimeoutError`` if *timeout* elapses first.
        """
        self._get(request_id)
        await asyncio.wait_for(self._done[request_id].wait(), timeout)
        return self.get_status(request_id)

    def trim_history(self, keep: int) -> int:
        """Forget the oldest terminal requests beyond the newest *keep*.

        Pending requests are never removed. Returns the number removed.
        """
        terminal = sorted(rid for rid, r in self._requests.items() if r.status.is_terminal)
        excess = terminal[: max(len(terminal) - keep, 0)]
        for rid in excess:
            del self._requests[rid]
            self._done.pop(rid, None)
        if excess:
            logger.debug("Trimmed %d signing requests from history", len(excess))
        return len(excess)

    def _get(self, request_id: int) -> SigningRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise UnknownRequest(f"No signing request with id {request_id}")
        return request

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _ensure_worker(self, device_id: str, channel: DeviceChannel) -> None:
        worker = self._workers.get(device_id)
        if worker is not None and not worker.done():
            return
        self._workers[device_id] = asyncio.create_task(
            self._run(device_id, channel, channel.session_id),
            name=f"hwsigner-dispatch-{device_id}",
        )

    async def _run(self, device_id: str, channel: DeviceChannel, session_id: int) -> None:
        queue = self._queues[device_id]
        try:
            while queue:
                async with channel.lock:
                    if not queue or not channel.connected or channel.session_id != session_id:
                        break
                    request_id = queue.popleft()
                    if not await self._dispatch(device_id, channel, request_id):
                        break
        finally:
            if self._workers.get(device_id) is asyncio.current_task():
                del self._workers[device_id]

    async def _dispatch(self, device_id: str, channel: DeviceChannel, request_id: int) -> bool:
        """Sign one request. Returns ``False`` when the worker should stop."""
        request = self._requests[request_id]
        request = request.model_copy(update={"dispatched_at": utcnow()})
        self._requests[request_id] = request
        self._inflight[device_id] = request_id
        timeout = self._timeout_for(device_id)
        logger.debug("Dispatching request %d to %s", request_id, device_id)

        try:
            signature = await asyncio.wait_for(
                channel.sign(request.account_path, request.request_type, request.payload.data),
                timeout,
            )
        except asyncio.TimeoutError:
            self._finish(
                request_id,
                RequestStatus.ERROR,
                reason=ErrorReason.TIMEOUT,
                detail=f"No response from device within {timeout:.0f}s",
            )
        except asyncio.CancelledError:
            self._finish(
                request_id,
                RequestStatus.ERROR,
                reason=ErrorReason.DEVICE_DISCONNECTED,
                detail="Device disconnected while signing",
            )
            raise
        except DeviceLocked as exc:
            self._finish(
                request_id, RequestStatus.ERROR, reason=ErrorReason.DEVICE_LOCKED, detail=exc.detail
            )
            self._connections.report_locked(device_id)
            return False
        except HardwareSignerError as exc:
            reason = _DEVICE_REASONS.get(exc.code, ErrorReason.TRANSPORT_ERROR)
            self._finish(request_id, RequestStatus.ERROR, reason=reason, detail=exc.detail)
        except Exception as exc:
            logger.exception("Transport raised unexpectedly signing request %d", request_id)
            self._finish(
                request_id,
                RequestStatus.ERROR,
                reason=ErrorReason.TRANSPORT_ERROR,
                detail=str(exc) or type(exc).__name__,
            )
        else:
            self._finish(request_id, RequestStatus.SIGNED, signature=signature)
        finally:
            self._inflight.pop(device_id, None)
        return True

    def _timeout_for(self, device_id: str) -> float:
        device = self._connections.registry.get_device(device_id)
        if device is None:
            return self._config.timeout_seconds
        return self._config.timeout_for(device.vendor)

    def _finish(
        self,
        request_id: int,
        status: RequestStatus,
        *,
        signature: bytes | None = None,
        reason: ErrorReason | None = None,
        detail: str | None = None,
    ) -> SigningRequest:
        request = self._requests[request_id]
        if request.status.is_terminal:
            return request.model_copy(deep=True)

        request = request.model_copy(
            update={
                "status": status,
                "completed_at": utcnow(),
                "signature": signature,
                "error_reason": reason,
                "error_detail": detail,
            }
        )
        self._requests[request_id] = request
        self._done[request_id].set()

        base = {"request_id": request_id, "device_id": request.device_id}
        if status is RequestStatus.SIGNED:
            logger.info("Request %d signed on %s", request_id, request.device_id)
            self._notifier.publish(
                EventType.SIGNING_COMPLETED,
                {**base, "account_path": request.account_path},
                source_id=request.device_id,
            )
        elif status is RequestStatus.ERROR:
            logger.info("Request %d failed on %s: %s", request_id, request.device_id, reason.value)
            self._notifier.publish(
                EventType.SIGNING_FAILED,
                {**base, "reason": reason.value, "detail": detail},
                source_id=request.device_id,
            )
        else:
            logger.info("Request %d cancelled (%s)", request_id, reason.value)
            self._notifier.publish(
                EventType.SIGNING_CANCELLED,
                {**base, "reason": reason.value},
                source_id=request.device_id,
            )
        return request.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Session teardown
    # ------------------------------------------------------------------

    async def _on_session_end(self, device_id: str, session_id: int) -> None:
        queue = self._queues.get(device_id)
        while queue:
            self._finish(
                queue.popleft(),
                RequestStatus.CANCELLED,
                reason=ErrorReason.DEVICE_DISCONNECTED,
                detail="Device disconnected before dispatch",
            )
        worker = self._workers.get(device_id)
        if worker is not None and not worker.done():
            worker.cancel()
            await asyncio.wait({worker})

    async def close(self) -> None:
        """Cancel any remaining dispatch workers."""
        workers = {w for w in self._workers.values() if not w.done()}
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.wait(workers)
