"""
Africa's Talking service module for Tuitora
-------------------------------------------
Formats USSD replies and sends SMS (single, bulk) with per-recipient
results. Provider errors never escape: they come back as
``SMSResult(success=False, error=...)``.

Usage:
    from tuitora.services.africastalking_service import get_sms_gateway, format_ussd_response
"""

import asyncio
import ssl
import logging
from typing import Iterable, List, Optional, Tuple, Union
import africastalking
import requests
from requests.adapters import HTTPAdapter
from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_exponential
from tuitora.config import settings
from tuitora.schemas import BulkRecipient, SMSResult, USSDResponse, USSDStatus
from tuitora.utils.formatting import truncate_text
from tuitora.utils.phone_utils import normalize_phone_number



# Logging setup
logger = logging.getLogger("tuitora.africastalking")

# Metrics
sms_sent = Counter("sms_sent_total", "Total SMS accepted by the provider")
sms_failed = Counter("sms_failed_total", "Total SMS that failed to send")

SMS_SEGMENT_LENGTH = 160
USSD_PREFIXES = ("CON ", "END ")
# Africa's Talking per-recipient codes: 100 Processed, 101 Sent, 102 Queued
SUCCESS_STATUS_CODES = {100, 101, 102}
# Sender id that routes a send through the WhatsApp channel
WHATSAPP_SENDER = "WhatsApp"



# TLS 1.2 enforcement for all HTTPS requests
class TLS12HttpAdapter(HTTPAdapter):
    """Force TLS v1.2 for requests used by africastalking SDK."""
    def init_poolmanager(self, *args, **kwargs):
        ctx = ssl.create_default_context()
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.maximum_version = ssl.TLSVersion.TLSv1_2
        kwargs["ssl_context"] = ctx
        return super().init_poolmanager(*args, **kwargs)


def enforce_tls12():
    """Route every requests.Session through a TLS 1.2-only adapter."""
    session = requests.Session()
    session.mount("https://", TLS12HttpAdapter())
    requests.sessions.Session.request = session.request
    logger.info("Enforced TLS 1.2 for Africa's Talking requests.")


if settings.AFRICASTALKING_FORCE_TLS12:
    enforce_tls12()


# Africa's Talking Initialization
USERNAME = settings.AFRICASTALKING_USERNAME
API_KEY = settings.AFRICASTALKING_API_KEY

try:
    africastalking.initialize(USERNAME, API_KEY)
    sms = africastalking.SMS
    logger.info(f"Africa's Talking initialized successfully for user '{USERNAME}'.")
except Exception as e:
    logger.error(f"Failed to initialize Africa's Talking: {e}")
    sms = None



# USSD formatting
def ussd_reply(message: str, end: bool = False) -> str:
    """
    Format USSD response text.
    Africa's Talking expects:
        - 'CON ' prefix for continuation
        - 'END ' prefix to end session
    """
    prefix = "END" if end else "CON"
    return f"{prefix} {message}"


def format_ussd_response(reply: USSDResponse, max_length: Optional[int] = None) -> str:
    """Wire text for a menu reply: exactly one prefix, chosen by status."""
    max_length = settings.USSD_MAX_LENGTH if max_length is None else max_length
    body = reply.text or ""
    while body.startswith(USSD_PREFIXES):
        body = body[len("CON "):]
    if max_length:
        body = truncate_text(body, max_length - len("CON "))
    return ussd_reply(body, end=reply.status == USSDStatus.COMPLETED)



# SMS helpers
def split_sms_segments(message: str, segment_length: int = SMS_SEGMENT_LENGTH) -> List[str]:
    """Display-only split; the provider does the real concatenation."""
    if not message:
        return []
    return [message[i:i + segment_length] for i in range(0, len(message), segment_length)]


def segment_count(message: str, segment_length: int = SMS_SEGMENT_LENGTH) -> int:
    return len(split_sms_segments(message, segment_length))


def personalize(message: str, name: str) -> str:
    return message.replace("{name}", name or "")


def parse_send_response(recipients: List[str], response: dict) -> List[SMSResult]:
    """Map an SMSMessageData payload onto one result per requested recipient."""
    data = (response or {}).get("SMSMessageData") or {}
    entries = {entry.get("number"): entry for entry in data.get("Recipients") or []}
    results = []
    for phone in recipients:
        entry = entries.get(phone)
        if entry is None:
            results.append(SMSResult(
                recipient=phone,
                success=False,
                error=data.get("Message") or "No delivery status returned",
            ))
            continue
        try:
            ok = int(entry.get("statusCode", 0)) in SUCCESS_STATUS_CODES
        except (TypeError, ValueError):
            ok = False
        results.append(SMSResult(
            recipient=phone,
            success=ok,
            error=None if ok else entry.get("status") or "Rejected by provider",
            message_id=entry.get("messageId") or None,
            status=entry.get("status"),
            cost=entry.get("cost"),
        ))
    return results



class SmsGateway:
    """Async facade over the (blocking) Africa's Talking SMS client."""

    def __init__(self, client=None, sender_id: Optional[str] = None, retry_attempts: Optional[int] = None):
        self.client = client if client is not None else sms
        self.sender_id = sender_id or settings.AFRICASTALKING_SENDER_ID
        self.retry_attempts = retry_attempts or settings.SMS_RETRY_ATTEMPTS

    def _send_sync(self, message: str, recipients: List[str], sender_id: Optional[str] = None) -> dict:
        if self.client is None:
            raise RuntimeError("SMS service unavailable")

        @retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=4, max=10),
            reraise=True,
        )
        def send():
            return self.client.send(message, recipients, sender_id or self.sender_id)

        return send()

    async def _dispatch(
        self, message: str, recipients: List[str], sender_id: Optional[str] = None
    ) -> List[SMSResult]:
        channel = sender_id or "SMS"
        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, self._send_sync, message, recipients, sender_id)
        except Exception as e:
            logger.error(f"{channel} sending failed for {len(recipients)} recipient(s): {e}")
            sms_failed.inc(len(recipients))
            return [SMSResult(recipient=phone, success=False, error=str(e)) for phone in recipients]

        results = parse_send_response(recipients, response)
        delivered = sum(1 for r in results if r.success)
        sms_sent.inc(delivered)
        if delivered < len(results):
            sms_failed.inc(len(results) - delivered)
        logger.info(f"{channel} dispatched: {delivered}/{len(results)} accepted")
        return results

    async def send_sms(self, recipients: Union[str, Iterable[str]], message: str) -> List[SMSResult]:
        """One provider call for all recipients."""
        if isinstance(recipients, str):
            recipients = [recipients]
        numbers = [normalize_phone_number(r) for r in recipients if r]
        if not numbers:
            return []
        return await self._dispatch(message, numbers)

    async def send_whatsapp(self, recipients: Union[str, Iterable[str]], message: str) -> List[SMSResult]:
        """Same provider call as ``send_sms``, routed through the WhatsApp sender."""
        if isinstance(recipients, str):
            recipients = [recipients]
        numbers = [normalize_phone_number(r) for r in recipients if r]
        if not numbers:
            return []
        return await self._dispatch(message, numbers, sender_id=WHATSAPP_SENDER)

    async def send_many(self, messages: Iterable[Tuple[str, str]]) -> List[SMSResult]:
        """
        Send a distinct message to each phone number.

        One provider call per (phone, message) pair, all in flight at once.
        Results keep input order.
        """
        async def send_one(phone: str, message: str) -> SMSResult:
            number = normalize_phone_number(phone)
            if not number:
                return SMSResult(recipient=phone or "", success=False, error="Missing phone number")
            results = await self._dispatch(message, [number])
            return results[0]

        return list(await asyncio.gather(*(send_one(p, m) for p, m in messages)))

    async def send_bulk_sms(self, recipients: Iterable[Union[BulkRecipient, dict]], message: str) -> List[SMSResult]:
        """Same message to every recipient, ``{name}`` filled in per recipient."""
        recipients = [r if isinstance(r, BulkRecipient) else BulkRecipient(**r) for r in recipients]
        return await self.send_many((r.phone, personalize(message, r.name)) for r in recipients)


gateway = SmsGateway()


def get_sms_gateway() -> SmsGateway:
    return gateway
