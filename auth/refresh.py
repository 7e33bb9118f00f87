from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Coroutine

from auth.models import AccessToken, PendingRequest, RefreshState, TokenSource
from auth.session import SessionExpiredNotifier
from auth.token_store import CredentialStore
from rentapi.errors import RefreshFailed

LOGGER = logging.getLogger("rentapi.auth")

RenewFn = Callable[[str], Awaitable[str]]
ReplayFn = Callable[[Any], Awaitable[Any]]


class RefreshCoordinator:
    """Single-flight renewal of the access token.

    However many callers hit an expired token at once, one renewal call is
    made. Every caller is parked as a PendingRequest and completed exactly
    once: with its replayed result on success, with RefreshFailed otherwise.

    The Idle -> Refreshing check-and-set in ``_wait`` runs without an await
    between the check and the set; on a single event loop that is the lock.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        renew_fn: RenewFn,
        notifier: SessionExpiredNotifier | None = None,
    ) -> None:
        self._credentials = credentials
        self._renew_fn = renew_fn
        self.notifier = notifier or SessionExpiredNotifier()

        self._state = RefreshState.IDLE
        self._queue: deque[PendingRequest] = deque()
        self._tasks: set[asyncio.Task] = set()
        self.renewals = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def enqueue(self, descriptor: Any, replay: ReplayFn) -> Any:
        """Wait for the renewal, then return ``replay(descriptor)``'s outcome."""
        future = asyncio.get_running_loop().create_future()
        return await self._wait(PendingRequest(future=future, descriptor=descriptor, replay=replay))

    async def refresh(self) -> AccessToken:
        """Join the in-flight renewal (or start one) and return the new token."""
        future = asyncio.get_running_loop().create_future()
        return await self._wait(PendingRequest(future=future))

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _wait(self, pending: PendingRequest) -> Any:
        self._queue.append(pending)
        if self._state is RefreshState.IDLE:
            self._state = RefreshState.REFRESHING
            self._spawn(self._refresh())
        return await pending.future

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _refresh(self) -> None:
        current = self._credentials.get()
        self.renewals += 1
        LOGGER.info("Refreshing access token (%s request(s) waiting)", len(self._queue))

        try:
            if current is None:
                raise RuntimeError("No token to refresh.")
            new_value = await self._renew_fn(current.value)
        except asyncio.CancelledError:
            self._abandon()
            raise
        except Exception as error:
            self._fail(error)
            return

        try:
            self._succeed(AccessToken(value=new_value, issued_via=TokenSource.REFRESH))
        except Exception as error:
            LOGGER.exception("Could not apply refreshed access token")
            self._fail(error)

    def _take_queue(self) -> deque[PendingRequest]:
        pending, self._queue = self._queue, deque()
        return pending

    def _succeed(self, token: AccessToken) -> None:
        self._credentials.set(token)
        pending = self._take_queue()
        LOGGER.info("Access token refreshed; replaying %s queued request(s)", len(pending))

        # FIFO: replays are started in enqueue order.
        for item in pending:
            if item.completed:
                continue
            if item.replay is None:
                item.future.set_result(token)
                continue
            task = self._spawn(self._replay(item))
            item.future.add_done_callback(
                lambda future, task=task: task.cancel() if future.cancelled() else None
            )

        self._state = RefreshState.IDLE

    def _fail(self, error: Exception) -> None:
        try:
            self._credentials.clear()
        except Exception:
            LOGGER.exception("Could not clear access token after failed refresh")
        pending = self._take_queue()
        LOGGER.warning(
            "Access token refresh failed; rejecting %s queued request(s): %s",
            len(pending),
            error,
        )

        for item in pending:
            if item.completed:
                continue
            failure = RefreshFailed(f"Session renewal failed: {error}")
            failure.__cause__ = error
            item.future.set_exception(failure)

        self.notifier.emit(error)
        self._state = RefreshState.IDLE

    def _abandon(self) -> None:
        pending = self._take_queue()
        for item in pending:
            if not item.completed:
                item.future.set_exception(RefreshFailed("Session renewal was cancelled."))
        self._state = RefreshState.IDLE

    async def _replay(self, item: PendingRequest) -> None:
        if item.completed:
            return
        try:
            result = await item.replay(item.descriptor)
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception as error:
            if not item.completed:
                item.future.set_exception(error)
            return
        if not item.completed:
            item.future.set_result(result)
