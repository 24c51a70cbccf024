"""HTTP + SSE control surface for a running tether session.

Lets a remote party (web UI, chat bot) inject messages, abort or hand
the session back to the terminal, answer approval requests, and follow
progress as Server-Sent Events. Binds to localhost; there is no auth.

Usage:
    tether --port PORT
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import TYPE_CHECKING, Any

from aiohttp import web

from tether.adapters.event_bus import EventBus
from tether.adapters.events import event_to_dict
from tether.adapters.message_queue import MessageQueue
from tether.engine.processors.permission import PERMISSION_RESULTS

if TYPE_CHECKING:
    from tether.engine.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


class TetherServer:
    """Thin aiohttp adapter over one SessionOrchestrator.

    All session state lives in the orchestrator, the queue and the
    bus. This class only handles HTTP routing and SSE fan-out.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        queue: MessageQueue,
        bus: EventBus,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue = queue
        self._bus = bus
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._sse_clients = 0
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-tether-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/session", self._handle_session)
        r.add_post("/messages", self._handle_post_message)
        r.add_post("/abort", self._handle_abort)
        r.add_post("/switch", self._handle_switch)
        r.add_post("/permissions/{request_id}", self._handle_resolve_permission)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening and return the bound port."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("tether server started but no listening socket was reported.")
        self._port = actual_port
        logger.info("tether server listening on %s:%d", self._host, actual_port)
        return actual_port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("tether server stopped")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _read_json(self, request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return None, web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "JSON body must be an object"}, status=400)
        return body, None

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "sse_clients": self._sse_clients,
        })

    async def _handle_session(self, request: web.Request) -> web.Response:
        return web.json_response(self._orchestrator.snapshot())

    async def _handle_post_message(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            return web.json_response({"error": "text is required"}, status=400)
        mode = body.get("mode")
        if mode is not None and not isinstance(mode, dict):
            return web.json_response({"error": "mode must be an object"}, status=400)
        if self._queue.closed or self._orchestrator.should_exit:
            return web.json_response({"error": "Session is shutting down"}, status=409)
        message = self._queue.push(text, mode=mode, isolate=bool(body.get("isolate", False)))
        logger.info(
            "Queued remote message req=%s id=%s len=%d",
            request.get("req_id", "unknown"), message.message_id[:8], len(text),
        )
        return web.json_response(
            {"status": "queued", "message_id": message.message_id, "queue_size": self._queue.size()},
            status=202,
        )

    async def _handle_abort(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        reset_queue = bool(body.get("reset_queue", True))
        self._orchestrator.handle_abort(reset_queue=reset_queue)
        return web.json_response({"status": "aborted"})

    async def _handle_switch(self, request: web.Request) -> web.Response:
        self._orchestrator.handle_switch()
        return web.json_response({"status": "switching"})

    async def _handle_resolve_permission(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        request_id = request.match_info["request_id"]
        result = body.get("result", "deny")
        if result not in PERMISSION_RESULTS:
            return web.json_response(
                {"error": f"result must be one of: {', '.join(PERMISSION_RESULTS)}"},
                status=400,
            )
        logger.info("Resolve permission request_id=%s result=%s", request_id[:8], result)
        if not self._orchestrator.resolve_permission(request_id, result):
            return web.json_response({"error": "No pending request with that id"}, status=404)
        return web.json_response({"status": "resolved"})

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue = self._bus.subscribe()
        self._sse_clients += 1
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), self._sse_clients)

        try:
            await response.write(
                f"event: connected\ndata: {json.dumps(self._orchestrator.snapshot())}\n\n".encode()
            )
            while not self._bus.closed:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = event_to_dict(event)
                    await response.write(
                        f"event: {data.get('event', 'message')}\ndata: {json.dumps(data, default=str)}\n\n".encode()
                    )
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._bus.unsubscribe(queue)
            self._sse_clients -= 1
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), self._sse_clients)
        return response
