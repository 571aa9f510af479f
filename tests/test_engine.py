"""Tests for the sync engine composition root."""

import httpx
import pytest

from calsync_hub.engine import SyncEngine
from calsync_hub.errors import DeadLetterError, ReauthenticationRequired, UnknownProviderError
from calsync_hub.models import OperationType, ServiceStatus, SyncConfig, SyncOperation
from calsync_hub.sync_queue import REALTIME_QUEUE

from conftest import eventually, make_event, make_settings


def providers(*tags):
    return [SyncConfig(provider=tag, access_token=f'{tag}-token') for tag in tags]


def google_listing_item():
    return {
        'id': 'g1',
        'summary': 'From Google',
        'start': {'dateTime': '2024-02-01T10:00:00Z'},
        'end': {'dateTime': '2024-02-01T11:00:00Z'},
        'updated': '2024-02-01T09:00:00Z',
    }


def google_listing(request):
    if request.method == 'GET' and 'googleapis' in str(request.url):
        return httpx.Response(200, json={'items': [google_listing_item()]})
    if request.method == 'GET':
        return httpx.Response(200, json={'value': []})
    return httpx.Response(200, json={'id': 'created'})


def make_engine(tmp_path, handler=google_listing, **overrides):
    overrides.setdefault('push_on_submit', False)
    settings = make_settings(tmp_path, **overrides)
    return SyncEngine(settings, transport=httpx.MockTransport(handler))


def remote_op(seq, origin, timestamp, title):
    return SyncOperation(
        seq=seq, type=OperationType.UPDATE, event_id='shared', origin=origin,
        event=make_event(event_id='shared', timestamp=timestamp, title=title),
    )


class TestSyncEngine:

    def test_session_id_survives_restart(self, tmp_path):
        first = make_engine(tmp_path)
        second = make_engine(tmp_path)
        assert first.session_id
        assert first.session_id == second.session_id

    def test_unknown_provider_without_endpoint_is_reported(self, tmp_path):
        engine = make_engine(tmp_path, providers=providers('google', 'fastmail'))
        assert list(engine.services) == ['google']
        assert isinstance(engine.errors[0], UnknownProviderError)

    @pytest.mark.asyncio
    async def test_submit_mutation_queues_for_every_destination(self, tmp_path):
        engine = make_engine(tmp_path, providers=providers('google', 'outlook'))
        operation = await engine.submit_mutation('create', make_event(timestamp=1))

        assert operation.origin == engine.session_id
        assert operation.event.timestamp > 1
        assert engine.store.get('evt-1') == operation.event
        for name in ('google', 'outlook'):
            assert [op.seq for op in engine.queues[name].pending()] == [operation.seq]

        second = await engine.submit_mutation(OperationType.UPDATE, make_event(title='Moved'))
        assert second.seq > operation.seq

    @pytest.mark.asyncio
    async def test_delete_carries_last_known_event(self, tmp_path):
        engine = make_engine(tmp_path, providers=providers('google'))
        created = await engine.submit_mutation('create', make_event())
        deleted = await engine.submit_mutation('delete', event_id='evt-1')

        assert deleted.event == created.event
        assert 'evt-1' not in engine.store
        with pytest.raises(ValueError):
            await engine.submit_mutation('delete')

    @pytest.mark.asyncio
    async def test_remote_operations_applied_in_sequence_order(self, tmp_path):
        engine = make_engine(tmp_path)
        outcomes = await engine.apply_remote_operations([
            remote_op(2, 'other', 200, 'second'),
            remote_op(1, 'other', 100, 'first'),
            remote_op(3, engine.session_id, 999, 'echo'),
        ])

        assert [o.action for o in outcomes] == ['inserted', 'updated']
        assert engine.store.get('shared').title == 'second'

    @pytest.mark.asyncio
    async def test_remote_delete_goes_through_resolver(self, tmp_path):
        engine = make_engine(tmp_path)
        await engine.apply_remote_operations([remote_op(1, 'other', 500, 'kept')])
        stale_delete = SyncOperation(
            seq=2, type=OperationType.DELETE, event_id='shared', origin='other', timestamp=400
        )
        outcomes = await engine.apply_remote_operations([stale_delete])
        assert outcomes[0].action == 'kept_local'
        assert 'shared' in engine.store

    @pytest.mark.asyncio
    async def test_sync_once_merges_provider_events(self, tmp_path):
        engine = make_engine(tmp_path, providers=providers('google', 'outlook'))
        await engine.submit_mutation('create', make_event(event_id='local-1'))

        reports = await engine.sync_once()

        assert [r.provider for r in reports] == ['google', 'outlook']
        assert reports[0].inserted == 1
        assert all(r.pushed == 1 for r in reports)
        assert engine.store.get('g1').title == 'From Google'
        assert all(len(queue) == 0 for queue in engine.queues.values())
        assert len(engine.db_manager.get_recent_sync_sessions()) == 2

    @pytest.mark.asyncio
    async def test_pull_does_not_restore_locally_deleted_event(self, tmp_path):
        remote = {'g1': google_listing_item()}

        def handler(request):
            if request.method == 'GET':
                return httpx.Response(200, json={'items': list(remote.values())})
            if request.method == 'DELETE':
                remote.pop(request.url.path.rsplit('/', 1)[-1], None)
                return httpx.Response(204)
            return httpx.Response(200, json={'id': 'created'})

        engine = make_engine(tmp_path, handler=handler, providers=providers('google'))
        await engine.sync_once()
        assert 'g1' in engine.store

        await engine.submit_mutation('delete', event_id='g1')
        reports = await engine.sync_once()
        assert reports[0].inserted == 0
        assert reports[0].pushed == 1
        await engine.sync_once()

        assert 'g1' not in remote
        assert 'g1' not in engine.store
        assert len(engine.queues['google']) == 0

    @pytest.mark.asyncio
    async def test_dead_letters_surface_as_errors(self, tmp_path):
        surfaced = []
        engine = make_engine(
            tmp_path,
            handler=lambda request: httpx.Response(500),
            providers=providers('google'),
            max_retry_attempts=1,
        )
        engine.add_error_listener(surfaced.append)
        operation = await engine.submit_mutation('create', make_event())

        await engine.drain_all()

        assert len(surfaced) == 1
        assert isinstance(surfaced[0], DeadLetterError)
        assert surfaced[0].notice.seq == operation.seq
        assert [e.seq for e in engine.dead_letters()] == [operation.seq]

        assert engine.retry_dead_letter(operation.seq) == 1
        assert engine.dead_letters() == []
        assert engine.discard(operation.seq, queue='google') == 1
        with pytest.raises(KeyError):
            engine.discard(operation.seq, queue='nope')

    @pytest.mark.asyncio
    async def test_reauthentication_surfaces(self, tmp_path):
        engine = make_engine(
            tmp_path,
            handler=lambda request: httpx.Response(401),
            providers=providers('google'),
        )
        reports = await engine.sync_once()

        assert reports[0].errors
        assert isinstance(engine.errors[0], ReauthenticationRequired)
        assert engine.get_status()['services'] == {'google': ServiceStatus.REAUTH_REQUIRED.value}
        await engine.stop()

    @pytest.mark.asyncio
    async def test_push_on_submit(self, tmp_path):
        pushed = []

        def handler(request):
            if request.method != 'GET':
                pushed.append(request.method)
            return google_listing(request)

        engine = make_engine(tmp_path, handler=handler, providers=providers('google'), push_on_submit=True)
        await engine.submit_mutation('create', make_event())
        await engine.drain_all()

        assert pushed == ['POST']
        assert len(engine.queues['google']) == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        engine = make_engine(tmp_path, providers=providers('google'))
        async with engine:
            assert engine.services['google'].is_polling
            assert 'g1' in engine.store
            status = engine.get_status()
            assert status['events'] == 1
            assert status['channel'] is None
        assert not engine.services['google'].is_polling


class TestRealtimeIntegration:

    @pytest.mark.asyncio
    async def test_mutations_fan_out_and_remote_ops_merge(self, tmp_path, server):
        engine = make_engine(tmp_path, realtime_url=server.url, realtime_token='good')
        await engine.start(initial_sync=False, polling=False)
        assert await engine.channel.wait_connected(3)

        operation = await engine.submit_mutation('create', make_event())
        await eventually(lambda: server.operation_seqs(1) == [[operation.seq]])
        assert [op.seq for op in engine.queues[REALTIME_QUEUE].pending()] == [operation.seq]

        await server.sockets[0].send_json({'event': 'ack', 'data': {'seqs': [operation.seq]}})
        await eventually(lambda: len(engine.queues[REALTIME_QUEUE]) == 0)

        incoming = remote_op(7, 'other-session', 5000, 'From another tab')
        await server.sockets[0].send_json({'event': 'operations', 'data': [incoming.to_wire()]})
        await eventually(lambda: 'shared' in engine.store)
        assert engine.store.get('shared').title == 'From another tab'

        await engine.stop()
        assert engine.get_status()['channel'] == 'disconnected'
