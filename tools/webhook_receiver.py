#!/usr/bin/env python3
"""Minimal webhook receiver for manual testing of the simulator's events.

Usage:
    WEBHOOK_SECRET=s3cret python tools/webhook_receiver.py [--port 9000]

Prints every event it receives and whether the X-Webhook-Signature header
matches the shared secret. Point a webhook at http://127.0.0.1:9000/hook.
"""

import argparse
import json
import logging
import os

import uvicorn
from fastapi import FastAPI, Request

from prepaid_meter.notify.webhooks import SIGNATURE_HEADER, sign_body

logger = logging.getLogger("webhook_receiver")

app = FastAPI(title="Webhook Receiver")


@app.post("/hook")
async def receive(request: Request):
    body = await request.body()
    secret = os.environ.get("WEBHOOK_SECRET")
    signature = request.headers.get(SIGNATURE_HEADER)

    if secret and signature:
        verdict = "valid" if signature == sign_body(secret, body) else "INVALID"
    elif signature:
        verdict = "unchecked (no WEBHOOK_SECRET)"
    else:
        verdict = "unsigned"

    payload = json.loads(body)
    logger.info(
        "%s for %s [%s]: %s",
        payload.get("event"),
        payload.get("meterId"),
        verdict,
        json.dumps(payload.get("data"), ensure_ascii=False),
    )
    return {"received": True}


def main() -> None:
    parser = argparse.ArgumentParser(description="Webhook receiver")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=9000)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
