"""Tests for the provider sync service."""

import asyncio
import json

import httpx
import pytest

from calsync_hub.adapters import AdapterRegistry, GoogleAdapter
from calsync_hub.credentials import StaticCredentialProvider
from calsync_hub.errors import ReauthenticationRequired, TransientNetworkError
from calsync_hub.models import EventSource, OperationType, ServiceStatus, SyncConfig, SyncOperation
from calsync_hub.sync_queue import SyncQueue
from calsync_hub.sync_service import SyncService

from conftest import make_event

GOOGLE_URL = GoogleAdapter.default_endpoint


def google_item(i, **overrides):
    item = {
        'id': f'g{i}',
        'summary': f'Event {i}',
        'start': {'dateTime': '2024-01-01T10:00:00Z'},
        'end': {'dateTime': '2024-01-01T11:00:00Z'},
        'updated': '2024-01-01T09:00:00Z',
    }
    item.update(overrides)
    return item


def make_service(handler, config=None, adapter=None, **kwargs):
    config = config or SyncConfig(provider='google', access_token='stale')
    adapter = adapter or GoogleAdapter()
    queue = kwargs.pop('queue', None)
    if queue is None:
        queue = SyncQueue(config.provider, kwargs.get('db_manager'))
    return SyncService(
        config=config,
        adapter=adapter,
        queue=queue,
        transport=httpx.MockTransport(handler),
        **kwargs
    )


def update_op(seq, event_id='evt-1', **overrides):
    return SyncOperation(
        seq=seq, type=OperationType.UPDATE, event_id=event_id,
        event=make_event(event_id=event_id, **overrides),
    )


class TestFetch:

    @pytest.mark.asyncio
    async def test_fetch_remote_events(self):
        def handler(request):
            assert request.method == 'GET'
            assert request.headers['Authorization'] == 'Bearer stale'
            return httpx.Response(200, json={'items': [google_item(1), google_item(2)]})

        service = make_service(handler)
        events = await service.fetch_remote_events()
        assert [e.id for e in events] == ['g1', 'g2']
        await service.close()

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        service = make_service(lambda request: httpx.Response(200, text='<html>'))
        with pytest.raises(TransientNetworkError):
            await service.fetch_remote_events()
        await service.close()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        service = make_service(lambda request: httpx.Response(503))
        with pytest.raises(TransientNetworkError):
            await service.fetch_remote_events()
        assert await service.run_cycle() is None
        await service.close()

    @pytest.mark.asyncio
    async def test_unknown_provider_passthrough(self):
        config = SyncConfig(provider='fastmail', access_token='t', api_endpoint='https://cal.example.com/events')
        adapter = AdapterRegistry.default().get('fastmail', config.api_endpoint)
        event = make_event()

        def handler(request):
            assert str(request.url) == 'https://cal.example.com/events'
            return httpx.Response(200, json=[event.to_wire()])

        service = make_service(handler, config=config, adapter=adapter)
        assert await service.fetch_remote_events() == [event]
        await service.close()


class TestTokenRefresh:

    @pytest.mark.asyncio
    async def test_single_refresh_then_retry(self):
        calls = []

        def handler(request):
            calls.append(request.headers['Authorization'])
            if request.headers['Authorization'] != 'Bearer fresh':
                return httpx.Response(401)
            return httpx.Response(200, json={'items': [google_item(1)]})

        async def refresh(refresh_token):
            assert refresh_token == 'r-token'
            return 'fresh'

        credentials = StaticCredentialProvider('stale', 'r-token', refresh)
        service = make_service(handler, credentials=credentials)

        events = await service.fetch_remote_events()
        assert [e.id for e in events] == ['g1']
        assert calls == ['Bearer stale', 'Bearer fresh']
        assert credentials.refresh_count == 1
        assert service.config.access_token == 'fresh'
        await service.close()

    @pytest.mark.asyncio
    async def test_token_read_from_credential_provider(self):
        calls = []

        def handler(request):
            calls.append(request.headers['Authorization'])
            if request.headers['Authorization'] != 'Bearer current':
                return httpx.Response(401)
            return httpx.Response(200, json={'items': []})

        credentials = StaticCredentialProvider('current')
        service = make_service(
            handler,
            config=SyncConfig(provider='google', access_token=''),
            credentials=credentials,
        )

        assert await service.fetch_remote_events() == []
        assert calls == ['Bearer current']
        assert credentials.refresh_count == 0
        assert service.config.access_token == 'current'
        await service.close()

    @pytest.mark.asyncio
    async def test_second_401_requires_reauthentication(self):
        calls = []
        errors = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        async def refresh(refresh_token):
            return 'also-bad'

        credentials = StaticCredentialProvider('stale', 'r-token', refresh)
        service = make_service(handler, credentials=credentials, on_error=errors.append)
        service.start_polling(60)

        with pytest.raises(ReauthenticationRequired):
            await service.poll_once()

        assert len(calls) == 2
        assert credentials.refresh_count == 1
        assert service.status == ServiceStatus.REAUTH_REQUIRED
        assert len(errors) == 1
        assert errors[0].provider == 'google'

        await asyncio.sleep(0.01)
        assert not service.is_polling
        service.stop_sync()
        assert service.status == ServiceStatus.REAUTH_REQUIRED
        await service.close()

    @pytest.mark.asyncio
    async def test_refresh_failure_requires_reauthentication(self):
        service = make_service(
            lambda request: httpx.Response(401),
            credentials=StaticCredentialProvider('stale'),
        )
        with pytest.raises(ReauthenticationRequired):
            await service.fetch_remote_events()
        assert service.status == ServiceStatus.REAUTH_REQUIRED
        await service.close()


class TestPush:

    @pytest.mark.asyncio
    async def test_push_failure_requeues(self):
        service = make_service(lambda request: httpx.Response(500))
        event = make_event()

        assert await service.push_event(event) is False
        pending = service.queue.pending()
        assert len(pending) == 1
        assert pending[0].type == OperationType.UPDATE
        assert pending[0].event == event
        await service.close()

    @pytest.mark.asyncio
    async def test_created_remote_id_is_used_for_updates(self, db_manager):
        requests = []

        def handler(request):
            requests.append((request.method, str(request.url)))
            body = json.loads(request.content)
            assert body['extendedProperties']['private']['canonicalId'] == 'evt-1'
            return httpx.Response(200, json={'id': 'g-123'})

        service = make_service(handler, db_manager=db_manager)
        assert await service.push_event(make_event()) is True
        assert await service.push_event(make_event(title='Renamed')) is True

        assert requests == [('POST', GOOGLE_URL), ('PUT', f'{GOOGLE_URL}/g-123')]
        assert db_manager.get_remote_id('google', 'evt-1') == 'g-123'
        await service.close()

    @pytest.mark.asyncio
    async def test_foreign_remote_id_is_not_used(self):
        requests = []

        def handler(request):
            requests.append(request.method)
            return httpx.Response(200, json={'id': 'g-1'})

        service = make_service(handler)
        await service.push_event(make_event(source=EventSource.OUTLOOK, remote_id='AAMk1'))
        assert requests == ['POST']
        await service.close()

    @pytest.mark.asyncio
    async def test_drain_holds_back_later_ops_for_failed_id(self):
        pushed = []

        def handler(request):
            body = json.loads(request.content)
            canonical_id = body['extendedProperties']['private']['canonicalId']
            if canonical_id == 'evt-a':
                return httpx.Response(500)
            pushed.append(canonical_id)
            return httpx.Response(200, json={'id': f'remote-{canonical_id}'})

        service = make_service(handler)
        service.queue.enqueue(update_op(1, 'evt-a'))
        service.queue.enqueue(update_op(2, 'evt-a', title='second'))
        service.queue.enqueue(update_op(3, 'evt-b'))

        report = await service.drain_queue()

        assert pushed == ['evt-b']
        assert report.pushed == 1
        assert report.requeued == 1
        assert [op.seq for op in service.queue.pending()] == [1, 2]
        assert service.queue.get(1).attempts == 1
        assert service.queue.get(2).attempts == 0
        await service.close()

    @pytest.mark.asyncio
    async def test_client_error_counts_as_attempt(self):
        service = make_service(lambda request: httpx.Response(400, text='bad event'))
        service.queue.enqueue(update_op(1))
        report = await service.drain_queue()
        assert report.pushed == 0
        assert service.queue.get(1).attempts == 1
        assert 'HTTP 400' in service.queue.get(1).last_error
        await service.close()

    @pytest.mark.asyncio
    async def test_delete_of_missing_event_succeeds(self):
        requests = []

        def handler(request):
            requests.append((request.method, str(request.url)))
            return httpx.Response(404)

        service = make_service(handler)
        service.queue.enqueue(SyncOperation(seq=1, type=OperationType.DELETE, event_id='evt-1'))
        report = await service.drain_queue()

        assert requests == [('DELETE', f'{GOOGLE_URL}/evt-1')]
        assert report.pushed == 1
        assert service.queue.pending() == []
        await service.close()

    @pytest.mark.asyncio
    async def test_dead_letter_after_repeated_failures(self):
        service = make_service(
            lambda request: httpx.Response(500),
            queue=SyncQueue('google', max_attempts=2),
        )
        service.queue.enqueue(update_op(1))
        await service.drain_queue()
        report = await service.drain_queue()
        assert report.dead_lettered == 1
        assert [e.seq for e in service.queue.dead_letters()] == [1]
        await service.close()


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_poll_once_merges_and_records_session(self, db_manager):
        merged = []

        async def merge(events):
            merged.extend(events)
            return []

        def handler(request):
            if request.method == 'GET':
                return httpx.Response(200, json={'items': [google_item(1), {'id': 'broken'}]})
            return httpx.Response(200, json={'id': 'g-new'})

        service = make_service(handler, merge_callback=merge, db_manager=db_manager)
        service.queue.enqueue(update_op(1, 'local-1'))

        report = await service.poll_once()

        assert [e.id for e in merged] == ['g1']
        assert report.fetched == 1
        assert report.skipped == 1
        assert report.pushed == 1
        sessions = db_manager.get_recent_sync_sessions()
        assert len(sessions) == 1
        assert sessions[0].status == 'completed'
        assert sessions[0].fetched == 1
        await service.close()

    @pytest.mark.asyncio
    async def test_stop_discards_in_flight_results(self, db_manager):
        entered = asyncio.Event()
        release = asyncio.Event()
        merged = []

        async def handler(request):
            entered.set()
            await release.wait()
            return httpx.Response(200, json={'items': [google_item(1)]})

        async def merge(events):
            merged.extend(events)

        service = make_service(handler, merge_callback=merge, db_manager=db_manager)
        task = asyncio.create_task(service.poll_once())
        await entered.wait()

        service.stop_sync()
        release.set()
        report = await task

        assert merged == []
        assert report.fetched == 0
        assert service.status == ServiceStatus.STOPPED
        assert db_manager.get_recent_sync_sessions()[0].status == 'cancelled'
        await service.close()

    @pytest.mark.asyncio
    async def test_initialize_sync_starts_polling(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={'items': [google_item(1)]})

        config = SyncConfig(provider='google', access_token='t', poll_interval_seconds=0.01)
        service = make_service(handler, config=config)

        events = await service.initialize_sync()
        assert [e.id for e in events] == ['g1']
        assert service.is_polling
        assert service.status == ServiceStatus.RUNNING

        await asyncio.sleep(0.1)
        assert len(calls) >= 2

        await service.close()
        assert not service.is_polling
        assert service.status == ServiceStatus.STOPPED
