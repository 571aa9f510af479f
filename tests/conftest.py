"""Shared fixtures."""

import asyncio
import json
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
import pytz
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer
from pydantic_settings import SettingsConfigDict

from calsync_hub.config import Settings
from calsync_hub.database import DatabaseManager
from calsync_hub.models import CanonicalEvent, EventSource
from calsync_hub.realtime import AUTH_REJECTED_CLOSE_CODE


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
    )
    values.update(overrides)
    return TestSettings(**values)


def make_event(event_id='evt-1', timestamp=100, source=EventSource.NATIVE, **overrides):
    start = datetime(2024, 1, 1, 10, 0, tzinfo=pytz.UTC)
    values = dict(
        id=event_id,
        title='Team sync',
        start_time=start,
        end_time=start + timedelta(hours=1),
        description='Weekly',
        source_calendar=source,
        timestamp=timestamp,
    )
    values.update(overrides)
    return CanonicalEvent(**values)


async def eventually(predicate, timeout=3.0):
    """Wait until ``predicate()`` holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeRealtimeServer:
    """Accepts one token and records every frame per connection."""

    def __init__(self, valid_token='good'):
        self.valid_token = valid_token
        self.reject_with_close = False
        self.revoke_after_auth = False
        self.reject_error = None
        self.url = None
        self.auth_attempts = 0
        self.connections = 0
        self.sockets = []
        self.frames = []

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        auth = await ws.receive_json()
        self.auth_attempts += 1
        if auth['data']['token'] != self.valid_token:
            if self.reject_with_close:
                await ws.close(code=AUTH_REJECTED_CLOSE_CODE)
            else:
                await ws.send_json({'event': 'authInvalid'})
                await ws.close()
            return ws

        self.connections += 1
        connection = self.connections
        self.sockets.append(ws)
        await ws.send_json({'event': 'authenticated'})
        if self.revoke_after_auth:
            await ws.send_json({'event': 'authInvalid'})

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                frame = json.loads(msg.data)
                self.frames.append((connection, frame))
                if self.reject_error and frame['event'] == 'operations':
                    seqs = [op['seq'] for op in frame['data']]
                    await ws.send_json({'event': 'reject', 'data': {'seqs': seqs, 'error': self.reject_error}})
        return ws

    def operation_seqs(self, connection):
        return [
            [op['seq'] for op in frame['data']]
            for conn, frame in self.frames
            if conn == connection and frame['event'] == 'operations'
        ]

    def frames_named(self, event):
        return [frame['data'] for _, frame in self.frames if frame['event'] == event]


@pytest_asyncio.fixture
async def server():
    fake = FakeRealtimeServer()
    app = web.Application()
    app.router.add_get('/ws', fake.handler)
    async with TestServer(app) as test_server:
        fake.url = str(test_server.make_url('/ws'))
        yield fake


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager
