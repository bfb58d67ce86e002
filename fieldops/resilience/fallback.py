"""SMS/USSD fallback: low-bandwidth proof-of-delivery channel."""
from __future__ import annotations

import enum
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any

from .buffer import DeviceLocks
from .errors import CreditsExhausted, NotConfigured, ValidationError
from .models import Provider, SMSFallbackConfig
from .resilience_config import ResilienceConfigStore
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.fallback")

SMS_COST = 1
SMS_PROVIDERS = (Provider.UNITEL, Provider.MOVICEL, Provider.AFRICELL)

COMMAND_PREFIXES = {
    "POD_CONFIRM": "POD",
    "DELIVERY_STATUS": "STATUS",
    "LOCATION_UPDATE": "LOC",
    "EMERGENCY": "EMERG",
}


def command_code(prefix: str) -> str:
    return f"*{prefix}*{secrets.token_hex(2).upper()}#"


# ---------------------------------------------------------------------------
# SMS gateway
# ---------------------------------------------------------------------------

class SMSGateway:
    async def send(self, phone_number: str, text: str) -> str:
        """Send *text* and return the gateway message id."""
        raise NotImplementedError


class LoggingSMSGateway(SMSGateway):
    """Stands in for the operator gateway; records outbound messages in the log."""

    async def send(self, phone_number: str, text: str) -> str:
        message_id = str(uuid.uuid4())
        logger.info("SMS %s -> %s: %s", message_id, phone_number, text)
        return message_id


# ---------------------------------------------------------------------------
# USSD menu
# ---------------------------------------------------------------------------

class UssdState(enum.Enum):
    MAIN_MENU = "main_menu"
    CONFIRM_DELIVERY = "confirm_delivery"
    REPORT_ISSUE = "report_issue"
    END = ""


MAIN_MENU_TEXT = "SGST - Basic POD\n1-Confirm Delivery\n2-Report Problem"
CONFIRM_PROMPT = "Confirm delivery of {tracking}?\n1-Yes 2-No 0-Back"
CONFIRMED = "Delivery confirmed for {tracking}. Thank you!"
ISSUE_PROMPT = "Report a problem with {tracking}?\n1-Not found 2-Refused 0-Back"
ISSUE_NOT_FOUND = "Recipient not found reported for {tracking}."
ISSUE_REFUSED = "Delivery refused reported for {tracking}."

# (state, key) -> (response template, next state); unmatched keys fall back to the main menu
TRANSITIONS: dict[tuple[UssdState, str], tuple[str, UssdState]] = {
    (UssdState.MAIN_MENU, "1"): (CONFIRM_PROMPT, UssdState.CONFIRM_DELIVERY),
    (UssdState.MAIN_MENU, "2"): (ISSUE_PROMPT, UssdState.REPORT_ISSUE),
    (UssdState.CONFIRM_DELIVERY, "1"): (CONFIRMED, UssdState.END),
    (UssdState.CONFIRM_DELIVERY, "2"): (MAIN_MENU_TEXT, UssdState.MAIN_MENU),
    (UssdState.CONFIRM_DELIVERY, "0"): (MAIN_MENU_TEXT, UssdState.MAIN_MENU),
    (UssdState.REPORT_ISSUE, "1"): (ISSUE_NOT_FOUND, UssdState.END),
    (UssdState.REPORT_ISSUE, "2"): (ISSUE_REFUSED, UssdState.END),
    (UssdState.REPORT_ISSUE, "0"): (MAIN_MENU_TEXT, UssdState.MAIN_MENU),
}


@dataclass
class UssdReply:
    response: str
    state: UssdState

    @property
    def next_menu(self) -> str:
        return self.state.value


def ussd_keys(command: str) -> list[str]:
    """Split accumulated USSD input: ``"1*1"`` or ``"11"`` -> ``["1", "1"]``."""
    command = command.strip()
    if not command:
        return []
    if "*" in command:
        return [k for k in command.split("*") if k]
    return list(command)


def ussd_step(state: UssdState, key: str) -> tuple[str, UssdState]:
    return TRANSITIONS.get((state, key), (MAIN_MENU_TEXT, UssdState.MAIN_MENU))


def ussd_replay(command: str, tracking_number: str) -> UssdReply:
    state = UssdState.MAIN_MENU
    template = MAIN_MENU_TEXT
    for key in ussd_keys(command):
        if state is UssdState.END:
            break
        template, state = ussd_step(state, key)
    return UssdReply(response=template.format(tracking=tracking_number), state=state)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class FallbackAdapter:
    def __init__(
        self,
        store: ResilienceStore,
        configs: ResilienceConfigStore,
        gateway: SMSGateway | None = None,
    ) -> None:
        self._store = store
        self._configs = configs
        self._gateway = gateway or LoggingSMSGateway()
        self._locks = DeviceLocks()

    def configure_sms(self, phone_number: str, provider: str, device_id: str) -> SMSFallbackConfig:
        if not isinstance(phone_number, str) or not phone_number.strip():
            raise ValidationError("phoneNumber is required")
        try:
            sms_provider = Provider(provider)
        except ValueError:
            raise ValidationError(f"unknown provider: {provider!r}") from None
        if sms_provider not in SMS_PROVIDERS:
            raise ValidationError(f"SMS fallback is not available via {sms_provider.value}")

        cfg = SMSFallbackConfig(
            provider=sms_provider,
            phone_number=phone_number.strip(),
            commands={name: command_code(prefix) for name, prefix in COMMAND_PREFIXES.items()},
        )
        self._store.put_sms_config(device_id, cfg)
        logger.info("SMS fallback configured for %s: %s via %s", device_id, cfg.phone_number, sms_provider.value)
        return cfg

    async def send_sms_pod(
        self, tracking_number: str, delivery_status: str, device_id: str, recipient_phone: str,
    ) -> dict[str, Any]:
        sms = self._store.get_sms_config(device_id)
        if sms is None or not sms.enabled:
            raise NotConfigured(f"SMS not configured for device {device_id}")

        async with self._locks.get(device_id):
            credits = self._configs.get(device_id).sms_credits
            if credits < SMS_COST:
                raise CreditsExhausted(f"No SMS credits left for device {device_id}")
            text = (f"SGST POD {tracking_number}: {delivery_status}. "
                    f"Reply {sms.commands['POD_CONFIRM']} to confirm.")
            message_id = await self._gateway.send(recipient_phone, text)
            remaining = self._configs.consume_sms_credits(device_id, SMS_COST).sms_credits

        logger.info("SMS POD for %s sent from %s, %d credits left", tracking_number, device_id, remaining)
        return {
            "success": True,
            "messageId": message_id,
            "creditsUsed": SMS_COST,
            "remainingCredits": remaining,
        }

    def process_ussd(self, session_id: str, command: str, tracking_number: str, device_id: str) -> UssdReply:
        reply = ussd_replay(command or "", tracking_number)
        logger.info("USSD session %s on %s: input %r -> %s",
                    session_id, device_id, command, reply.state.name)
        return reply
