import asyncio

import pytest

from auth.models import AccessToken, RefreshState, TokenSource
from auth.refresh import RefreshCoordinator
from auth.session import SessionExpiredNotifier
from auth.token_store import CredentialStore, MemoryStorage
from rentapi.errors import RefreshFailed
from tests.backend_helpers import wait_until


class ExplodingStorage(MemoryStorage):
    def __init__(self, token: str) -> None:
        super().__init__()
        self._items["token"] = AccessToken(token).to_payload()

    def set_item(self, key: str, value: object) -> None:
        raise TypeError("unsupported value")

    def remove_item(self, key: str) -> None:
        raise TypeError("unsupported key")


class Renewer:
    def __init__(self, result: str = "T2", error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[str] = []
        self.gate = asyncio.Event()

    async def __call__(self, token: str) -> str:
        self.calls.append(token)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def _coordinator(renewer: Renewer, *, token: str | None = "T1", storage=None):
    if storage is None:
        storage = MemoryStorage()
        if token is not None:
            storage.set_item("token", AccessToken(token).to_payload())
    credentials = CredentialStore(storage)
    notifier = SessionExpiredNotifier()
    coordinator = RefreshCoordinator(credentials, renew_fn=renewer, notifier=notifier)
    return coordinator, credentials, notifier


def _replayer(credentials: CredentialStore, order: list):
    async def replay(descriptor: str) -> str:
        order.append(descriptor)
        return f"{descriptor}:{credentials.get().value}"

    return replay


@pytest.mark.asyncio
async def test_single_renewal_for_many_waiters() -> None:
    renewer = Renewer()
    coordinator, credentials, _ = _coordinator(renewer)
    order: list[str] = []
    replay = _replayer(credentials, order)

    tasks = [asyncio.create_task(coordinator.enqueue(name, replay)) for name in "ABCDE"]
    await wait_until(lambda: coordinator.queued == 5)
    assert coordinator.state is RefreshState.REFRESHING
    renewer.gate.set()
    results = await asyncio.gather(*tasks)

    assert renewer.calls == ["T1"]
    assert coordinator.renewals == 1
    assert results == ["A:T2", "B:T2", "C:T2", "D:T2", "E:T2"]
    assert order == ["A", "B", "C", "D", "E"]
    assert credentials.get() == AccessToken("T2", TokenSource.REFRESH)
    assert coordinator.state is RefreshState.IDLE
    assert coordinator.queued == 0


@pytest.mark.asyncio
async def test_failure_rejects_all_and_notifies_once() -> None:
    renewer = Renewer(error=RuntimeError("refresh rejected"))
    coordinator, credentials, notifier = _coordinator(renewer)
    replayed: list[str] = []

    tasks = [
        asyncio.create_task(coordinator.enqueue(name, _replayer(credentials, replayed)))
        for name in range(20)
    ]
    await wait_until(lambda: coordinator.queued == 20)
    renewer.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, RefreshFailed) for result in results)
    assert all(isinstance(result.__cause__, RuntimeError) for result in results)
    assert replayed == []
    assert notifier.emitted == 1
    assert credentials.get() is None
    assert coordinator.state is RefreshState.IDLE


@pytest.mark.asyncio
async def test_missing_token_fails_without_renewal_call() -> None:
    renewer = Renewer()
    renewer.gate.set()
    coordinator, _, notifier = _coordinator(renewer, token=None)

    with pytest.raises(RefreshFailed, match="No token to refresh"):
        await coordinator.refresh()

    assert renewer.calls == []
    assert notifier.emitted == 1


@pytest.mark.asyncio
async def test_refresh_joins_in_flight_renewal() -> None:
    renewer = Renewer()
    coordinator, credentials, _ = _coordinator(renewer)

    waiting = asyncio.create_task(coordinator.enqueue("A", _replayer(credentials, [])))
    await wait_until(lambda: coordinator.queued == 1)
    joined = asyncio.create_task(coordinator.refresh())
    await wait_until(lambda: coordinator.queued == 2)
    renewer.gate.set()

    assert await joined == AccessToken("T2", TokenSource.REFRESH)
    assert await waiting == "A:T2"
    assert len(renewer.calls) == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_affect_others() -> None:
    renewer = Renewer()
    coordinator, credentials, _ = _coordinator(renewer)
    order: list[str] = []
    replay = _replayer(credentials, order)

    tasks = {name: asyncio.create_task(coordinator.enqueue(name, replay)) for name in "ABC"}
    await wait_until(lambda: coordinator.queued == 3)
    tasks["B"].cancel()
    renewer.gate.set()

    assert await tasks["A"] == "A:T2"
    assert await tasks["C"] == "C:T2"
    with pytest.raises(asyncio.CancelledError):
        await tasks["B"]
    assert order == ["A", "C"]
    assert len(renewer.calls) == 1


@pytest.mark.asyncio
async def test_replay_error_goes_to_its_own_caller() -> None:
    renewer = Renewer()
    renewer.gate.set()
    coordinator, credentials, _ = _coordinator(renewer)

    async def replay(descriptor: str) -> str:
        if descriptor == "bad":
            raise ValueError("replay failed")
        return descriptor

    good = asyncio.create_task(coordinator.enqueue("good", replay))
    bad = asyncio.create_task(coordinator.enqueue("bad", replay))

    assert await good == "good"
    with pytest.raises(ValueError, match="replay failed"):
        await bad


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_notification() -> None:
    renewer = Renewer(error=RuntimeError("boom"))
    renewer.gate.set()
    coordinator, _, notifier = _coordinator(renewer)
    received: list = []

    def broken(reason) -> None:
        raise RuntimeError("listener bug")

    notifier.subscribe(broken)
    notifier.subscribe(received.append)

    with pytest.raises(RefreshFailed):
        await coordinator.refresh()

    assert len(received) == 1
    assert str(received[0]) == "boom"


@pytest.mark.asyncio
async def test_aclose_rejects_waiters_without_clearing_token() -> None:
    renewer = Renewer()
    coordinator, credentials, notifier = _coordinator(renewer)

    waiting = asyncio.create_task(coordinator.refresh())
    await wait_until(lambda: len(renewer.calls) == 1)
    await coordinator.aclose()

    with pytest.raises(RefreshFailed, match="cancelled"):
        await waiting
    assert credentials.get() == AccessToken("T1")
    assert notifier.emitted == 0
    assert coordinator.state is RefreshState.IDLE


@pytest.mark.asyncio
async def test_storage_error_on_success_still_completes_waiters() -> None:
    renewer = Renewer()
    coordinator, credentials, notifier = _coordinator(renewer, storage=ExplodingStorage("T1"))

    tasks = [
        asyncio.create_task(coordinator.enqueue(name, _replayer(credentials, [])))
        for name in "ABC"
    ]
    await wait_until(lambda: coordinator.queued == 3)
    renewer.gate.set()
    results = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 1)

    assert all(isinstance(result, RefreshFailed) for result in results)
    assert all(isinstance(result.__cause__, TypeError) for result in results)
    assert credentials.get() is None
    assert notifier.emitted == 1
    assert coordinator.state is RefreshState.IDLE
    assert coordinator.queued == 0


@pytest.mark.asyncio
async def test_storage_error_on_failure_still_completes_waiters() -> None:
    renewer = Renewer(error=RuntimeError("refresh rejected"))
    renewer.gate.set()
    coordinator, credentials, notifier = _coordinator(renewer, storage=ExplodingStorage("T1"))

    with pytest.raises(RefreshFailed, match="refresh rejected"):
        await asyncio.wait_for(coordinator.refresh(), 1)

    assert credentials.get() is None
    assert notifier.emitted == 1
    assert coordinator.state is RefreshState.IDLE

    with pytest.raises(RefreshFailed, match="No token to refresh"):
        await asyncio.wait_for(coordinator.refresh(), 1)
    assert coordinator.renewals == 2
