"""
aiohttp receiver for GitHub webhook deliveries.

Deliveries are acknowledged immediately and processed in the background, so a
slow forum search never makes GitHub time out and redeliver.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Optional, Set

from aiohttp import web

from .events import BridgeEvent

log = logging.getLogger("red.issue_bridge.webhook")

HEALTHCHECK_PATH = "/healthcheck"


def verify_signature(payload_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Check ``X-Hub-Signature-256`` against the shared secret."""
    if not secret:
        return True
    if not signature_header or "=" not in signature_header:
        return False

    hash_algorithm, github_signature = signature_header.split("=", 1)
    if hash_algorithm != "sha256":
        return False

    mac = hmac.new(str(secret).encode("utf-8"), msg=payload_body, digestmod=hashlib.sha256)
    return hmac.compare_digest(mac.hexdigest(), github_signature)


class WebhookServer:
    def __init__(self, dispatcher: Any, *, host: str = "0.0.0.0", port: int = 8080, path: str = "/github/webhooks", secret: Optional[str] = None) -> None:
        self.dispatcher = dispatcher
        self.host = host
        self.port = port
        self.path = path
        self.secret = secret
        self._runner: Optional[web.AppRunner] = None
        self._tasks: Set[asyncio.Task] = set()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.path, self.handle_delivery)
        app.router.add_get(HEALTHCHECK_PATH, self.handle_healthcheck)
        return app

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        self._runner = runner
        log.info("server.start host=%s port=%s path=%s", self.host, self.port, self.path)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            log.info("server.stop host=%s port=%s", self.host, self.port)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def handle_healthcheck(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "pending": len(self._tasks)})

    async def handle_delivery(self, request: web.Request) -> web.Response:
        body = await request.read()
        event_name = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery")

        if not verify_signature(body, request.headers.get("X-Hub-Signature-256"), self.secret):
            log.warning("github.webhook.signature.invalid event=%s delivery=%s", event_name, delivery_id)
            return web.json_response({"status": "error", "message": "Invalid signature"}, status=401)

        try:
            payload = json.loads(body)
        except ValueError:
            return web.json_response({"status": "error", "message": "Invalid JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"status": "error", "message": "Invalid JSON"}, status=400)

        if event_name == "ping":
            return web.json_response({"status": "pong"})

        event = BridgeEvent.from_webhook(event_name, payload, delivery_id)
        if event is None:
            log.debug("Ignoring webhook %s.%s", event_name, payload.get("action"))
            return web.json_response({"status": "ignored"}, status=202)

        log.info(
            "github.webhook.received event=%s repo=%s issue=%s installation=%s delivery=%s",
            event.kind.value, event.full_name, event.issue_number, event.installation_id, delivery_id,
        )
        if event.installation_id is None:
            log.warning("github.webhook.missing_installation event=%s repo=%s", event.kind.value, event.full_name)

        task = asyncio.create_task(self.dispatcher.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return web.json_response({"status": "accepted"}, status=202)
