from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta

import httpx
import pytest

from app.services.session_sync.broadcaster import ChangeBroadcaster
from app.services.session_sync.errors import (
    FALLBACK_USED,
    NoUpstreamSession,
    TransportError,
    UpstreamRejected,
    UpstreamTimeout,
)
from app.services.session_sync.fallback import FallbackSessionPath, FallbackSessionRegistry
from app.services.session_sync.issuer import SessionIssuer
from app.services.session_sync.linker import AccountLinker
from app.services.session_sync.orchestrator import (
    SessionValidator,
    SyncOrchestrator,
    SyncRetryPolicy,
    SyncState,
)
from app.services.session_sync.resolver import UserResolver
from app.services.session_sync.transport import SecretKeyedTransport
from app.services.session_sync.validator import (
    InboundSyncRequest,
    SyncMode,
    UpstreamSessionValidator,
)


class _FakeValidator:
    """Replays queued results: an exception is raised, anything else returned."""

    def __init__(self, *results: object) -> None:
        self._results = list(results)
        self.calls = 0

    async def validate(self, request: InboundSyncRequest) -> dict[str, object]:
        self.calls += 1
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result  # type: ignore[return-value]


class _FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _FakePublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.messages: list[tuple[str, str]] = []
        self._error = error

    async def __call__(self, channel: str, message: str) -> None:
        if self._error is not None:
            raise self._error
        self.messages.append((channel, message))


def _build_orchestrator(
    store,
    validator: SessionValidator,
    *,
    sleep: _FakeSleep | None = None,
    registry: FallbackSessionRegistry | None = None,
    broadcaster: ChangeBroadcaster | None = None,
) -> SyncOrchestrator:
    issuer = SessionIssuer(
        store,
        expires_in=timedelta(days=30),
        cookie_name="local_auth_session",
        cookie_secure=False,
    )
    resolver = UserResolver(store, AccountLinker(store), provider="wordpress")
    if registry is None:
        registry = FallbackSessionRegistry(capacity=10)
    return SyncOrchestrator(
        validator,
        resolver,
        issuer,
        FallbackSessionPath(issuer, registry),
        broadcaster=broadcaster,
        retry_policy=SyncRetryPolicy(max_attempts=3, backoff_seconds=0.5),
        sleep=sleep or _FakeSleep(),
    )


def _request() -> InboundSyncRequest:
    return InboundSyncRequest(
        mode=SyncMode.BROWSER, client_ip="203.0.113.9", user_agent="pytest"
    )


@pytest.mark.asyncio
async def test_run_success_walks_every_state(store, make_record) -> None:
    orchestrator = _build_orchestrator(store, _FakeValidator(make_record(42)))

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.SUCCESS
    assert outcome.succeeded is True
    assert outcome.states == (
        SyncState.START,
        SyncState.VALIDATING,
        SyncState.RESOLVING,
        SyncState.ISSUING,
        SyncState.SUCCESS,
    )
    assert outcome.created is True
    assert outcome.attempts == 1
    assert outcome.issued is not None and outcome.issued.durable is True
    assert outcome.cookie is not None
    assert store.sessions[outcome.cookie.value].user_id == outcome.user.id
    assert store.sessions[outcome.cookie.value].ip_address == "203.0.113.9"


@pytest.mark.asyncio
async def test_run_scenario_external_id_42_links_once(store) -> None:
    record = {
        "externalId": 42,
        "email": "alice@example.com",
        "username": "alice",
        "roles": ["subscriber"],
    }
    orchestrator = _build_orchestrator(store, _FakeValidator(record))

    first = await orchestrator.run(_request())
    second = await orchestrator.run(_request())

    assert first.user is not None and second.user is not None
    assert first.user.id == second.user.id
    assert first.user.metadata["externalId"] == 42
    assert store.links == {("wordpress", "42"): first.user.id}
    assert first.cookie.value != second.cookie.value
    assert len(store.sessions) == 2


@pytest.mark.asyncio
async def test_run_retries_transport_errors_with_backoff(store, make_record) -> None:
    sleep = _FakeSleep()
    validator = _FakeValidator(
        TransportError("upstream_http_503"),
        TransportError("upstream_http_503"),
        make_record(42),
    )
    orchestrator = _build_orchestrator(store, validator, sleep=sleep)

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.SUCCESS
    assert outcome.attempts == 3
    assert validator.calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_run_gives_up_after_max_attempts(store) -> None:
    sleep = _FakeSleep()
    validator = _FakeValidator(TransportError("upstream_unreachable"))
    orchestrator = _build_orchestrator(store, validator, sleep=sleep)

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.FAILED
    assert outcome.error == "transport_error"
    assert validator.calls == 3
    assert sleep.delays == [0.5, 1.0]
    assert outcome.cookie is None
    assert store.users == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure, expected",
    [
        (NoUpstreamSession("no_active_wp_sessions"), "no_upstream_session"),
        (UpstreamRejected("upstream_unauthorized"), "upstream_rejected"),
        (UpstreamTimeout("upstream_timeout"), "transport_error"),
    ],
)
async def test_run_does_not_retry_final_failures(store, failure, expected) -> None:
    sleep = _FakeSleep()
    validator = _FakeValidator(failure)
    orchestrator = _build_orchestrator(store, validator, sleep=sleep)

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.FAILED
    assert outcome.error == expected
    assert validator.calls == 1
    assert sleep.delays == []
    assert outcome.states[-2:] == (SyncState.VALIDATING, SyncState.FAILED)


@pytest.mark.asyncio
async def test_run_malformed_record_fails_in_resolving(store, make_record) -> None:
    orchestrator = _build_orchestrator(store, _FakeValidator(make_record("not-a-number")))

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.FAILED
    assert outcome.error == "resolution_error"
    assert outcome.states[-2:] == (SyncState.RESOLVING, SyncState.FAILED)
    assert store.users == {}


@pytest.mark.asyncio
async def test_run_falls_back_when_session_write_fails(store, make_record) -> None:
    store.fail_session_writes = True
    registry = FallbackSessionRegistry(capacity=10)
    orchestrator = _build_orchestrator(store, _FakeValidator(make_record(42)), registry=registry)

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.FALLBACK
    assert outcome.succeeded is True
    assert outcome.warning == FALLBACK_USED
    assert outcome.issued is not None and outcome.issued.durable is False
    assert store.sessions == {}
    assert registry.lookup(outcome.cookie.value) is not None
    assert outcome.states[-2:] == (SyncState.ISSUING, SyncState.FALLBACK)


@pytest.mark.asyncio
async def test_run_fails_when_fallback_is_exhausted(store, make_record) -> None:
    store.fail_session_writes = True
    orchestrator = _build_orchestrator(
        store,
        _FakeValidator(make_record(42)),
        registry=FallbackSessionRegistry(capacity=0),
    )

    outcome = await orchestrator.run(_request())

    assert outcome.state is SyncState.FAILED
    assert outcome.error == "persistence_error"
    assert outcome.cookie is None
    # the user row is kept; only the session is missing
    assert len(store.users) == 1


@pytest.mark.asyncio
async def test_run_broadcasts_user_update(store, make_record) -> None:
    publisher = _FakePublisher()
    broadcaster = ChangeBroadcaster(publisher, "auth:sync")
    orchestrator = _build_orchestrator(
        store, _FakeValidator(make_record(42)), broadcaster=broadcaster
    )

    outcome = await orchestrator.run(_request())
    await broadcaster.drain()

    assert len(publisher.messages) == 1
    channel, message = publisher.messages[0]
    assert channel == f"auth:sync:{outcome.user.id}"
    payload = json.loads(message)
    assert payload["type"] == "user-update"
    assert payload["userId"] == outcome.user.id


@pytest.mark.asyncio
async def test_run_ignores_broadcast_failure(store, make_record) -> None:
    broadcaster = ChangeBroadcaster(_FakePublisher(ConnectionError("redis down")), "auth:sync")
    orchestrator = _build_orchestrator(
        store, _FakeValidator(make_record(42)), broadcaster=broadcaster
    )

    outcome = await orchestrator.run(_request())
    await broadcaster.drain()

    assert outcome.state is SyncState.SUCCESS


def test_retry_policy_only_retries_retryable_errors() -> None:
    policy = SyncRetryPolicy(max_attempts=2, backoff_seconds=0.25)

    assert policy.should_retry(TransportError("x"), 1) is True
    assert policy.should_retry(TransportError("x"), 2) is False
    assert policy.should_retry(UpstreamTimeout("x"), 1) is False
    assert policy.should_retry(NoUpstreamSession("x"), 1) is False
    assert policy.delay_for(2) == 0.5


@pytest.mark.asyncio
async def test_run_server_mode_bad_body_is_not_retried(store) -> None:
    sleep = _FakeSleep()
    validator = UpstreamSessionValidator(None, sessions_path="/sessions")
    orchestrator = _build_orchestrator(store, validator, sleep=sleep)

    outcome = await orchestrator.run(InboundSyncRequest(mode=SyncMode.SERVER, body=None))

    assert outcome.state is SyncState.FAILED
    assert outcome.error == "transport_error"
    assert outcome.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_run_slow_upstream_fails_within_one_timeout(store) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2.0)
        return httpx.Response(200, json={"success": True, "activeSessions": []})

    transport = SecretKeyedTransport(
        "https://idp.example.com",
        "s3cret",
        0.05,
        transport=httpx.MockTransport(handler),
    )
    validator = UpstreamSessionValidator(transport, sessions_path="/sessions")
    sleep = _FakeSleep()
    orchestrator = _build_orchestrator(store, validator, sleep=sleep)

    started = time.monotonic()
    outcome = await orchestrator.run(_request())
    elapsed = time.monotonic() - started

    assert outcome.state is SyncState.FAILED
    assert outcome.error == "transport_error"
    assert outcome.attempts == 1
    assert sleep.delays == []
    assert elapsed < 1.0
    assert store.users == {}


@pytest.mark.asyncio
async def test_concurrent_runs_share_one_local_user(store, make_record) -> None:
    orchestrator = _build_orchestrator(store, _FakeValidator(make_record(42)))

    outcomes = await asyncio.gather(*(orchestrator.run(_request()) for _ in range(5)))

    assert all(outcome.state is SyncState.SUCCESS for outcome in outcomes)
    assert len({outcome.user.id for outcome in outcomes}) == 1
    assert len(store.users) == 1
    assert len(store.sessions) == 5
