from __future__ import annotations

import json

import httpx
import pytest

from guestlist_core.config import ClientSettings
from guestlist_core.gateway import RemoteGateway
from guestlist_core.retry_queue import DrainResult, DurableRetryQueue, QueueStore
from scripts import drain_offline_queue


async def _park(settings: ClientSettings, record_id: str) -> None:
    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network is down", request=request)

    async with RemoteGateway.for_checkin_api(settings, transport=httpx.MockTransport(down)) as gateway:
        queue = DurableRetryQueue(gateway, QueueStore(settings.data_dir), online=False)
        request = gateway.build_request("POST", "/gift", json={"recordId": record_id, "value": True})
        await queue.send(request)


@pytest.mark.asyncio
async def test_drain_delivers_parked_writes(tmp_path):
    settings = ClientSettings(api_url="http://checkin.test", data_dir=tmp_path)
    await _park(settings, "rec1")
    delivered = []

    def handler(request: httpx.Request) -> httpx.Response:
        delivered.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"id": "rec1"})

    result, remaining = await drain_offline_queue.drain(settings, transport=httpx.MockTransport(handler))

    assert len(result.delivered) == 1
    assert remaining == 0
    assert delivered == [("/gift", {"recordId": "rec1", "value": True})]


@pytest.mark.asyncio
async def test_drain_keeps_writes_the_server_refuses(tmp_path):
    settings = ClientSettings(api_url="http://checkin.test", data_dir=tmp_path, max_retries=2)
    await _park(settings, "rec1")
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    result, remaining = await drain_offline_queue.drain(settings, transport=transport)

    assert [item.retries for item in result.requeued] == [1]
    assert remaining == 1


def test_main_reports_leftovers(monkeypatch: pytest.MonkeyPatch, capsys, tmp_path):
    monkeypatch.setenv("GUESTLIST_DATA_DIR", str(tmp_path))

    async def fake_drain(settings, transport=None):
        assert settings.data_dir == tmp_path
        return DrainResult(), 2

    monkeypatch.setattr(drain_offline_queue, "drain", fake_drain)

    assert drain_offline_queue.main() == 1
    output = capsys.readouterr().out
    assert "Delivered: 0" in output
    assert "Remaining in queue: 2" in output


def test_main_fails_on_bad_configuration(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setenv("GUESTLIST_MAX_RETRIES", "many")

    assert drain_offline_queue.main() == 1
    assert "GUESTLIST_MAX_RETRIES must be an integer" in capsys.readouterr().err
