"""
Manual check that the configured Africa's Talking account can send SMS.

    python smoke_sms.py 0711000001 "Hello from Tuitora"
"""
import asyncio
import sys
from tuitora.config import settings
from tuitora.services.africastalking_service import SmsGateway, enforce_tls12, sms


async def main(recipient: str, message: str):
    if not settings.AFRICASTALKING_FORCE_TLS12:
        enforce_tls12()
    gateway = SmsGateway(client=sms, retry_attempts=1)
    print(f"Sending as '{settings.AFRICASTALKING_USERNAME}' to {recipient}...")
    for result in await gateway.send_sms([recipient], message):
        if result.success:
            print(f"Sent: {result.recipient} ({result.status}, {result.cost}, id={result.message_id})")
        else:
            print(f"Failed: {result.recipient}: {result.error}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        sys.exit("usage: python smoke_sms.py <phone> [message]")
    text = sys.argv[2] if len(sys.argv) > 2 else "Hello from Tuitora SMS test!"
    asyncio.run(main(sys.argv[1], text))
