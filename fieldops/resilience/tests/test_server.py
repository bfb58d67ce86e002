"""Tests for the resilience HTTP endpoints."""
from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from fieldops.resilience.server import create_app

API = "/api/angola"


@pytest_asyncio.fixture
async def client(config, svc):
    app = create_app(config, service=svc)
    # Remove background tasks for testing
    app.on_startup.clear()
    app.on_cleanup.clear()
    async with TestClient(TestServer(app)) as c:
        yield c


async def _online(client, device_id: str) -> None:
    resp = await client.post(f"{API}/network/status", json={
        "deviceId": device_id,
        "networkStatus": {"isOnline": True, "connectionType": "4g", "signalStrength": 75, "bandwidthMbps": 8},
    })
    assert resp.status == 200


# --- failures ---

@pytest.mark.asyncio
async def test_network_failure_activates_fallback(client):
    resp = await client.post(f"{API}/network-failure", json={
        "deviceId": "d1", "duration": 45000, "affectedOperations": ["sync"],
    })
    assert resp.status == 200
    data = await resp.json()
    assert data["message"] == "Network failure recorded"
    assert data["fallbackActivated"] is True
    assert data["event"]["deviceId"] == "d1"
    assert data["event"]["recoveryTime"] == data["event"]["timestamp"] + 15000


@pytest.mark.asyncio
async def test_network_failure_requires_device(client):
    resp = await client.post(f"{API}/network-failure", json={"duration": 100})
    assert resp.status == 400
    data = await resp.json()
    assert data["message"] == "Failed to record network failure"
    assert "deviceId" in data["error"]


@pytest.mark.asyncio
async def test_power_failure_reports_shutdown(client):
    resp = await client.post(f"{API}/power-failure", json={
        "deviceId": "d1", "batteryLevel": 5, "criticalOperations": ["pod-capture"],
    })
    assert resp.status == 200
    data = await resp.json()
    assert data["autoShutdownTriggered"] is True
    assert data["event"]["criticalOperationsProtected"] == ["pod-capture"]


@pytest.mark.asyncio
async def test_invalid_json_body(client):
    resp = await client.post(f"{API}/power-failure", data="not json",
                             headers={"Content-Type": "application/json"})
    assert resp.status == 400
    assert (await resp.json())["message"] == "Failed to record power failure"


@pytest.mark.asyncio
async def test_non_utf8_body_is_400(client):
    resp = await client.post(f"{API}/sync/buffer", data=b'{"deviceId":"\xff"}',
                             headers={"Content-Type": "application/json"})
    assert resp.status == 400
    assert (await resp.json())["message"] == "Failed to add to local buffer"


@pytest.mark.asyncio
async def test_nan_priority_is_rejected(client, svc):
    for body in ('{"deviceId": "d1", "type": "normal", "payload": {}, "priority": 1}',
                 '{"deviceId": "d1", "type": "normal", "payload": {}, "priority": NaN}',
                 '{"deviceId": "d1", "type": "normal", "payload": {}, "priority": 5}'):
        await client.post(f"{API}/sync/buffer", data=body, headers={"Content-Type": "application/json"})
    assert [i.sync_priority for i in svc.buffer.pending("d1")] == [5, 1]

    resp = await client.post(f"{API}/sync/buffer", data='{"deviceId": "d1", "type": "normal", "priority": NaN}',
                             headers={"Content-Type": "application/json"})
    assert resp.status == 400


# --- buffer & sync ---

@pytest.mark.asyncio
async def test_buffer_then_status(client):
    for priority, kind in [(1, "normal"), (5, "critical"), (0, "low_priority")]:
        resp = await client.post(f"{API}/sync/buffer", json={
            "deviceId": "d1", "type": kind, "data": {"p": priority}, "priority": priority,
        })
        assert resp.status == 200
    data = await resp.json()
    assert data["queuePosition"] == 3
    assert data["bufferedItem"]["queuePosition"] == 3
    assert data["bufferedItem"]["retryCount"] == 0

    resp = await client.get(f"{API}/sync/status/d1")
    assert resp.status == 200
    status = (await resp.json())["status"]
    assert status["stats"]["totalPending"] == 3
    assert status["stats"]["criticalPending"] == 1
    assert status["stats"]["successRate"] == 100.0
    assert status["networkStatus"]["isOnline"] is False


@pytest.mark.asyncio
async def test_sync_status_does_not_create_network_record(client, svc):
    resp = await client.get(f"{API}/sync/status/ghost")
    assert resp.status == 200
    assert svc.store.get_network_status("ghost") is None


@pytest.mark.asyncio
async def test_buffer_rejects_unknown_type(client):
    resp = await client.post(f"{API}/sync/buffer", json={"deviceId": "d1", "type": "urgent", "payload": {}})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_sync_process_offline_is_503(client):
    resp = await client.post(f"{API}/sync/process", json={"deviceId": "d1"})
    assert resp.status == 503
    assert (await resp.json())["message"] == "Failed to process delayed sync"


@pytest.mark.asyncio
async def test_sync_process_drains_queue(client, target):
    await _online(client, "d1")
    await client.post(f"{API}/sync/buffer", json={"deviceId": "d1", "type": "normal", "payload": {"a": 1}})
    await client.post(f"{API}/sync/buffer", json={"deviceId": "d1", "type": "critical", "payload": {"b": 2},
                                                  "priority": 9})
    resp = await client.post(f"{API}/sync/process", json={"deviceId": "d1"})
    assert resp.status == 200
    data = await resp.json()
    assert data["result"]["itemsProcessed"] == 2
    assert data["result"]["successful"] == 2
    assert data["syncStats"]["totalPending"] == 0
    assert data["syncStats"]["lastSuccessfulSync"] is not None
    assert len(target.pushed) == 2


@pytest.mark.asyncio
async def test_sync_process_force_flag_must_be_bool(client):
    resp = await client.post(f"{API}/sync/process", json={"deviceId": "d1", "force": "yes"})
    assert resp.status == 400


# --- network status ---

@pytest.mark.asyncio
async def test_network_status_update_returns_recommendations(client):
    resp = await client.post(f"{API}/network/status", json={
        "deviceId": "d2", "isOnline": True, "connectionType": "2g", "signalStrength": 12,
    })
    assert resp.status == 200
    data = await resp.json()
    assert data["status"]["connectionType"] == "2g"
    assert data["status"]["recommendations"] == data["recommendations"]
    assert len(data["recommendations"]) == 3

    resp = await client.get(f"{API}/network/status/d2")
    assert (await resp.json())["networkStatus"]["signalStrength"] == 12


@pytest.mark.asyncio
async def test_network_status_rejects_out_of_range_signal(client):
    resp = await client.post(f"{API}/network/status", json={"deviceId": "d2", "signalStrength": 140})
    assert resp.status == 400


# --- resilience config ---

@pytest.mark.asyncio
async def test_resilience_config_round_trip(client):
    resp = await client.get(f"{API}/resilience/config/d3")
    assert (await resp.json())["config"]["criticalBatteryLevel"] == 15

    resp = await client.post(f"{API}/resilience/config", json={"deviceId": "d3", "config": {"smsCredits": 4}})
    assert resp.status == 200
    assert (await resp.json())["config"]["smsCredits"] == 4

    resp = await client.get(f"{API}/resilience/config/other")
    assert (await resp.json())["config"]["smsCredits"] == 1000


@pytest.mark.asyncio
async def test_resilience_config_unknown_key(client):
    resp = await client.post(f"{API}/resilience/config", json={"deviceId": "d3", "config": {"turbo": True}})
    assert resp.status == 400


# --- SMS / USSD ---

@pytest.mark.asyncio
async def test_sms_pod_before_configure_is_412(client):
    resp = await client.post(f"{API}/sms/pod", json={
        "deviceId": "d4", "trackingNumber": "AO-1", "deliveryStatus": "delivered", "recipientPhone": "+244900",
    })
    assert resp.status == 412


@pytest.mark.asyncio
async def test_sms_flow(client):
    resp = await client.post(f"{API}/sms/configure", json={
        "deviceId": "d4", "phoneNumber": "+244923000111", "provider": "unitel",
    })
    assert resp.status == 200
    assert "POD_CONFIRM" in (await resp.json())["availableCommands"]

    resp = await client.post(f"{API}/sms/pod", json={
        "deviceId": "d4", "trackingNumber": "AO-1", "deliveryStatus": "delivered", "recipientPhone": "+244900",
    })
    assert resp.status == 200
    data = await resp.json()
    assert data["creditsUsed"] == 1
    assert data["remainingCredits"] == 999
    assert data["result"]["success"] is True


@pytest.mark.asyncio
async def test_sms_pod_without_credits_is_402(client):
    await client.post(f"{API}/sms/configure", json={
        "deviceId": "d4", "phoneNumber": "+244923000111", "provider": "unitel",
    })
    await client.post(f"{API}/resilience/config", json={"deviceId": "d4", "config": {"smsCredits": 0}})
    resp = await client.post(f"{API}/sms/pod", json={
        "deviceId": "d4", "trackingNumber": "AO-1", "deliveryStatus": "delivered", "recipientPhone": "+244900",
    })
    assert resp.status == 402


@pytest.mark.asyncio
async def test_ussd_confirm(client):
    resp = await client.post(f"{API}/ussd/pod", json={
        "deviceId": "d5", "sessionId": "s1", "command": "1*1", "trackingNumber": "AO-9",
    })
    assert resp.status == 200
    data = await resp.json()
    assert data["nextMenu"] == ""
    assert data["response"]["nextMenu"] == ""
    assert "AO-9" in data["response"]["response"]


# --- maps & stats ---

@pytest.mark.asyncio
async def test_offline_maps_listing_and_download(client):
    resp = await client.get(f"{API}/offline-maps", params={"province": "Huambo"})
    data = await resp.json()
    assert data["totalPackages"] == 1
    assert data["totalSize"] == 350

    resp = await client.post(f"{API}/offline-maps/download", json={"deviceId": "d6", "mapId": "huambo"})
    assert resp.status == 200
    assert (await resp.json())["estimatedTime"] == pytest.approx(350 * 8 * 1000)


@pytest.mark.asyncio
async def test_offline_map_download_unknown_is_404(client):
    resp = await client.post(f"{API}/offline-maps/download", json={"deviceId": "d6", "mapId": "nowhere"})
    assert resp.status == 404
    assert (await resp.json())["message"] == "Failed to initiate map download"


@pytest.mark.asyncio
async def test_stats(client):
    await _online(client, "d1")
    await client.post(f"{API}/sync/buffer", json={"deviceId": "d1", "type": "normal", "payload": {}})
    await client.post(f"{API}/power-failure", json={"deviceId": "d1", "batteryLevel": 50})
    resp = await client.get(f"{API}/stats")
    stats = (await resp.json())["stats"]
    assert stats == {
        "totalDevices": 1,
        "totalNetworkFailures": 0,
        "totalPowerFailures": 1,
        "offlineMapPackages": 18,
        "pendingBufferItems": 1,
    }
