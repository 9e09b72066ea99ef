"""HTTP + SSE server for visual-agent.

Exposes the chat command surface as a small REST API and fans out
transport messages to connected clients over Server-Sent Events. A
front end (web page, editor panel) drives it; all chat state lives in
the ChatBridge.

Usage:
    visual-agent --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from visual_agent.adapters.bridge import ChatBridge
from visual_agent.adapters.event_bus import CHANNEL_EVENT, TransportMessage
from visual_agent.engine.errors import ProjectNotSelectedError, TurnInProgressError
from visual_agent.shared.services.attachments import image_to_data_url, path_exists

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


class AgentServer:
    """HTTP + SSE server wrapping one ChatBridge.

    Thin adapter: routing, JSON in/out and SSE fan-out only.
    """

    def __init__(
        self,
        bridge: ChatBridge,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._bridge = bridge
        self._host = host
        self._port = port
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._started_at = time.time()
        self._consumer_task: asyncio.Task | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        bridge.add_observer(self._on_transport_message)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def bridge(self) -> ChatBridge:
        return self._bridge

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
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
        r.add_get("/state", self._handle_state)
        # Turns
        r.add_post("/execute", self._handle_execute)
        r.add_post("/stop", self._handle_stop)
        # Sessions
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions/new", self._handle_new_session)
        r.add_post("/sessions/{id}/select", self._handle_select_session)
        r.add_delete("/sessions/{id}", self._handle_delete_session)
        # Settings + dialogs
        r.add_get("/settings/{key}", self._handle_get_setting)
        r.add_put("/settings/{key}", self._handle_put_setting)
        r.add_post("/dialog/select-folder", self._handle_select_folder)
        # Files
        r.add_get("/files/exists", self._handle_file_exists)
        r.add_get("/files/data-url", self._handle_file_data_url)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._consumer_task = asyncio.create_task(self._bridge.run())

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._bridge.shutdown()
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("visual-agent server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("visual-agent server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

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

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s event", event_type)

    def _on_transport_message(self, message: TransportMessage) -> None:
        self._broadcast_sse(message.channel, message.to_dict())
        # Full state only at turn boundaries; stream events carry their own delta
        if message.channel != CHANNEL_EVENT:
            self._broadcast_state()

    def _broadcast_state(self) -> None:
        if not self._sse_queues:
            return
        self._broadcast_sse("state", self._bridge.state())

    # ── HTTP handlers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any] | None:
        """Parsed JSON object body, {} when there is none, None when invalid."""
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    async def _handle_health(self, request: web.Request) -> web.Response:
        provider = self._bridge.orchestrator.provider
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cli": provider.command,
            "cli_available": provider.is_available(),
        })

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

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            await response.write(
                f"event: state\ndata: {json.dumps(self._bridge.state())}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    # Client went away
                    logger.debug("SSE write failed req=%s", request.get("req_id", "unknown"))
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self._bridge.state())

    async def _handle_execute(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)
        prompt = body.get("prompt", "")
        if not isinstance(prompt, str) or not prompt.strip():
            return web.json_response({"error": "No prompt provided"}, status=400)
        try:
            turn = await self._bridge.send_message(
                prompt,
                project_dir=body.get("cwd") or None,
                model=body.get("model") or None,
                conversation_token=body.get("resume_token") or None,
            )
        except ProjectNotSelectedError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except TurnInProgressError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        logger.info(
            "Execute requested session=%s turn=%d prompt_len=%d",
            turn.conversation_id[:8], turn.turn_id, len(prompt),
        )
        self._broadcast_state()
        return web.json_response(
            {
                "status": "started",
                "session_id": turn.conversation_id,
                "turn_id": turn.turn_id,
            },
            status=202,
        )

    async def _handle_stop(self, request: web.Request) -> web.Response:
        stopped = self._bridge.stop()
        self._broadcast_state()
        return web.json_response({"stopped": stopped})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response({
            "sessions": [s.to_dict() for s in self._bridge.sessions()],
            "active_session": self._bridge.active_session,
        })

    async def _handle_new_session(self, request: web.Request) -> web.Response:
        self._bridge.new_chat()
        self._broadcast_state()
        return web.json_response(self._bridge.state())

    async def _handle_select_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._bridge.select_session(session_id)
        self._broadcast_state()
        return web.json_response(self._bridge.state())

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        deleted = self._bridge.delete_session(session_id)
        self._broadcast_state()
        return web.json_response({"deleted": deleted, "session_id": session_id})

    async def _handle_get_setting(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        return web.json_response({"key": key, "value": self._bridge.settings.get(key)})

    async def _handle_put_setting(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        body = await self._json_body(request)
        if body is None or "value" not in body:
            return web.json_response({"error": "value is required"}, status=400)
        saved = self._bridge.settings.set(key, body["value"])
        return web.json_response({"key": key, "saved": saved})

    async def _handle_select_folder(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)
        requested = body.get("path")
        picker = (lambda: requested) if requested else None
        chosen = await self._bridge.select_folder(picker)
        if chosen:
            self._broadcast_state()
        return web.json_response({"path": chosen})

    async def _handle_file_exists(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        if not path:
            return web.json_response({"error": "path is required"}, status=400)
        return web.json_response({"path": path, "exists": path_exists(path)})

    async def _handle_file_data_url(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        if not path:
            return web.json_response({"error": "path is required"}, status=400)
        data_url = await asyncio.to_thread(image_to_data_url, Path(path))
        if data_url is None:
            return web.json_response({"error": f"Not a readable image: {path}"}, status=404)
        return web.json_response({"path": path, "data_url": data_url})
