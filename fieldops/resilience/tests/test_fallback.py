"""Tests for the SMS/USSD fallback channel and the offline map catalog."""
from __future__ import annotations

import asyncio
import re

import pytest

from fieldops.resilience.errors import CreditsExhausted, NotConfigured, NotFound, ValidationError
from fieldops.resilience.fallback import (
    MAIN_MENU_TEXT,
    FallbackAdapter,
    SMSGateway,
    UssdState,
    ussd_keys,
    ussd_replay,
)
from fieldops.resilience.maps import ANGOLA_PROVINCES, slugify

DEVICE = "dev-sms"
TRACKING = "AO-778"


class RecordingGateway(SMSGateway):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number: str, text: str) -> str:
        self.sent.append((phone_number, text))
        return f"msg-{len(self.sent)}"


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def fallback(svc, gateway) -> FallbackAdapter:
    return FallbackAdapter(svc.store, svc.configs, gateway)


# --- SMS ---

def test_configure_sms_generates_command_codes(fallback, svc):
    cfg = fallback.configure_sms("+244923000111", "unitel", DEVICE)
    assert cfg.enabled is True
    assert set(cfg.commands) == {"POD_CONFIRM", "DELIVERY_STATUS", "LOCATION_UPDATE", "EMERGENCY"}
    assert re.fullmatch(r"\*POD\*[0-9A-F]{4}#", cfg.commands["POD_CONFIRM"])
    assert re.fullmatch(r"\*EMERG\*[0-9A-F]{4}#", cfg.commands["EMERGENCY"])
    assert svc.store.get_sms_config(DEVICE) == cfg


@pytest.mark.parametrize("phone,provider", [
    ("", "unitel"),
    ("+244923000111", "vodacom"),
    ("+244923000111", "other"),
])
def test_configure_sms_validation(fallback, phone, provider):
    with pytest.raises(ValidationError):
        fallback.configure_sms(phone, provider, DEVICE)


@pytest.mark.asyncio
async def test_sms_pod_requires_configuration(fallback, gateway):
    with pytest.raises(NotConfigured):
        await fallback.send_sms_pod(TRACKING, "delivered", DEVICE, "+244912345678")
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_sms_pod_sends_and_persists_credit_decrement(fallback, gateway, svc):
    fallback.configure_sms("+244923000111", "movicel", DEVICE)
    first = await fallback.send_sms_pod(TRACKING, "delivered", DEVICE, "+244912345678")
    second = await fallback.send_sms_pod(TRACKING, "delivered", DEVICE, "+244912345678")

    assert first == {"success": True, "messageId": "msg-1", "creditsUsed": 1, "remainingCredits": 999}
    assert second["remainingCredits"] == 998
    assert svc.configs.get(DEVICE).sms_credits == 998
    assert svc.configs.get("default").sms_credits == 1000
    phone, text = gateway.sent[0]
    assert phone == "+244912345678"
    assert TRACKING in text and "delivered" in text


@pytest.mark.asyncio
async def test_sms_pod_without_credits(fallback, gateway, svc):
    fallback.configure_sms("+244923000111", "africell", DEVICE)
    svc.configs.update(DEVICE, {"smsCredits": 0})
    with pytest.raises(CreditsExhausted):
        await fallback.send_sms_pod(TRACKING, "delivered", DEVICE, "+244912345678")
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_concurrent_sms_pods_never_overspend(fallback, gateway, svc):
    fallback.configure_sms("+244923000111", "unitel", DEVICE)
    svc.configs.update(DEVICE, {"smsCredits": 3})
    results = await asyncio.gather(
        *(fallback.send_sms_pod(TRACKING, "delivered", DEVICE, "+244912345678") for _ in range(5)),
        return_exceptions=True,
    )
    sent = [r for r in results if isinstance(r, dict)]
    refused = [r for r in results if isinstance(r, CreditsExhausted)]
    assert len(sent) == 3
    assert len(refused) == 2
    assert svc.configs.get(DEVICE).sms_credits == 0


# --- USSD ---

@pytest.mark.parametrize("command,expected", [
    ("", []),
    ("1", ["1"]),
    ("11", ["1", "1"]),
    ("1*1", ["1", "1"]),
    ("*2*1*", ["2", "1"]),
])
def test_ussd_keys(command, expected):
    assert ussd_keys(command) == expected


def test_ussd_empty_input_shows_main_menu():
    reply = ussd_replay("", TRACKING)
    assert reply.response == MAIN_MENU_TEXT
    assert reply.next_menu == "main_menu"


def test_ussd_confirm_prompt_then_confirmed():
    prompt = ussd_replay("1", TRACKING)
    assert prompt.state is UssdState.CONFIRM_DELIVERY
    assert TRACKING in prompt.response
    assert prompt.next_menu == "confirm_delivery"

    done = ussd_replay("1*1", TRACKING)
    assert done.state is UssdState.END
    assert done.next_menu == ""
    assert done.response == f"Delivery confirmed for {TRACKING}. Thank you!"
    assert ussd_replay("11", TRACKING) == done


def test_ussd_report_issue_branches():
    assert ussd_replay("2", TRACKING).next_menu == "report_issue"
    assert "not found" in ussd_replay("21", TRACKING).response
    assert "refused" in ussd_replay("22", TRACKING).response
    assert ussd_replay("22", TRACKING).state is UssdState.END


@pytest.mark.parametrize("command", ["10", "12", "20", "x", "9", "0"])
def test_ussd_back_and_unknown_keys_return_to_main_menu(command):
    reply = ussd_replay(command, TRACKING)
    assert reply.state is UssdState.MAIN_MENU
    assert reply.response == MAIN_MENU_TEXT


def test_ussd_input_after_end_is_ignored():
    assert ussd_replay("1199", TRACKING).state is UssdState.END


def test_process_ussd_tolerates_missing_command(fallback):
    assert fallback.process_ussd("sess-1", None, TRACKING, DEVICE).next_menu == "main_menu"


# --- offline maps ---

def test_catalog_covers_every_province(svc):
    maps = svc.maps.list()
    assert len(maps) == len(ANGOLA_PROVINCES) == len(svc.maps)
    assert {m.province for m in maps} == set(ANGOLA_PROVINCES)
    assert all(m.region == "Angola" for m in maps)


def test_catalog_filters_by_province_substring(svc):
    maps = svc.maps.list(province="lunda")
    assert {m.province for m in maps} == {"Lunda Norte", "Lunda Sul"}
    assert svc.maps.list(region="Mozambique") == []


def test_slug_ids_strip_accents():
    assert slugify("Huíla") == "huila"
    assert slugify("Cuando Cubango") == "cuando-cubango"


def test_download_estimate_uses_device_bandwidth(svc):
    svc.network.update_status(DEVICE, {"isOnline": True, "bandwidthMbps": 4})
    info = svc.maps.initiate_download("luanda", DEVICE)
    assert info["mapId"] == "luanda"
    assert info["packageSize"] == 540
    assert info["downloadUrl"].endswith("/luanda.zip")
    assert info["estimatedDownloadTime"] == pytest.approx(540 * 8 / 4 * 1000)


def test_download_estimate_defaults_without_status(svc):
    info = svc.maps.initiate_download("namibe", "unknown-device")
    assert info["estimatedDownloadTime"] == pytest.approx(170 * 8 * 1000)
    assert svc.store.get_network_status("unknown-device") is None


def test_download_unknown_map(svc):
    with pytest.raises(NotFound):
        svc.maps.initiate_download("atlantis", DEVICE)
