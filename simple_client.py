import argparse
import asyncio
import logging

import httpx

from callflow.config.constants import DEFAULT_BUSINESS_ID
from callflow.services.call_stream_client import CallStreamClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("callflow_simple_client")

DEFAULT_SCRIPT = [
    "Hello, my name is Jordan Lee",
    "What services do you offer?",
    "Can I book a visit tomorrow at 10am",
    "Thanks, bye",
]


async def route_call(base_url: str, business_id: str, caller: str) -> str:
    """Ask the server to route a new inbound call and return its call id."""
    async with httpx.AsyncClient(base_url=base_url) as client:
        response = await client.post(
            "/api/calls",
            json={"from_number": caller, "to_number": "+15550100", "business_id": business_id},
        )
        response.raise_for_status()
    outcome = response.json()
    if outcome.get("call") is None:
        raise RuntimeError(f"Call was not routed to an agent: {outcome.get('action')}")
    logger.info(f"Call {outcome['call']['id']} routed via {outcome['action']}")
    return outcome["call"]["id"]


async def print_reply(reply):
    if reply.get("type") == "audio.reply":
        logger.info(f"Caller: {reply['transcript']}")
        logger.info(f"Agent ({reply['intent']}): {reply['replyText']}")
        if reply.get("shouldTransfer"):
            logger.info(f"Transfer requested: {reply.get('transferReason')}")
    else:
        logger.warning(f"Server replied: {reply}")


async def run_simple_client(host: str, port: int, business_id: str, caller: str, script):
    """
    A simple client that:
    1. Routes a call through the REST API
    2. Connects to the call-stream WebSocket
    3. Answers the call and speaks each scripted line
    4. Ends the call and prints the summary

    The development server uses the passthrough speech codec, so each line
    is sent as UTF-8 bytes in place of audio.
    """
    call_id = await route_call(f"http://{host}:{port}", business_id, caller)

    stream = CallStreamClient(f"ws://{host}:{port}/ws/calls", mime_type="text/plain")
    if not await stream.connect():
        return
    try:
        ended = await stream.run_script(call_id, [line.encode("utf-8") for line in script], print_reply)
        if ended and ended.get("type") == "call.ended":
            logger.info(f"Summary: {ended['summary']}")
        else:
            logger.warning(f"Call did not end cleanly: {ended}")
    finally:
        await stream.close()


def main():
    parser = argparse.ArgumentParser(description="Drive a scripted call against a callflow server")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--business-id", default=DEFAULT_BUSINESS_ID)
    parser.add_argument("--caller", default="+15551234567")
    parser.add_argument("lines", nargs="*", help="Caller utterances; a booking script by default")
    args = parser.parse_args()

    asyncio.run(
        run_simple_client(args.host, args.port, args.business_id, args.caller, args.lines or DEFAULT_SCRIPT)
    )


if __name__ == "__main__":
    main()
