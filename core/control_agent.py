"""
Control Agent

RCE server for a Python-hosted target. Serves the same protocol as the
JavaScript hook agent:

    GET  /info             process, surface and job snapshot
    POST /console          {data: base64, process: "main"|"renderer"} -> {jobId, status, process}
    GET  /result/{jobId}   one-time read of a job, 404 once consumed

Execution is scheduled after the job id has been returned, so slow code
never holds the HTTP request open. A CallHomeReporter heartbeats the
operator's registry while the agent runs.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import platform
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiohttp
from aiohttp import web

from core.code_executor import CodeExecutor, PrimaryContextExecutor, Surface, SurfaceContextExecutor
from core.job_store import Job, JobStore
from shared.constants import (
    AGENT_ROUTES,
    AGENT_TOOL_VERSION,
    CALL_HOME_INITIAL_DELAY_S,
    CALL_HOME_INTERVAL_MS,
    DEFAULT_CONTROL_PORT_BASE,
    DEFAULT_REGISTRY_PORT,
    JobStatus,
    TargetContext,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        response = web.json_response(
            {"error": "Not found", "availableRoutes": AGENT_ROUTES}, status=404
        )
    response.headers.update(CORS_HEADERS)
    return response


class CallHomeReporter:
    """Periodic heartbeat to the operator's registry"""

    def __init__(
        self,
        agent: "ControlAgent",
        registry_host: str = "127.0.0.1",
        registry_port: int = DEFAULT_REGISTRY_PORT,
        interval_ms: int = CALL_HOME_INTERVAL_MS,
        initial_delay_s: float = CALL_HOME_INITIAL_DELAY_S,
    ):
        self.agent = agent
        self.url = f"http://{registry_host}:{registry_port}/call-home"
        self.interval_ms = interval_ms
        self.initial_delay_s = initial_delay_s
        self._task: Optional[asyncio.Task] = None
        self._session: Optional[aiohttp.ClientSession] = None

    def payload(self) -> Dict[str, Any]:
        body = {
            "app_name": self.agent.app_name,
            "uuid": self.agent.app_uuid,
            "timestamp": int(time.time() * 1000),
            "active_jobs": len(self.agent.jobs),
            "port": self.agent.port,
            "ip": self.agent.host,
        }
        monitor = getattr(self.agent, "traffic_monitor", None)
        if monitor is not None and monitor.running:
            body["ipc_monitor_port"] = monitor.port
        return body

    async def send(self) -> bool:
        """Fire one heartbeat. Failures are logged, never raised."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5))
        try:
            async with self._session.post(self.url, json=self.payload()) as resp:
                ok = resp.status == 200
                if not ok:
                    logger.debug(f"[CallHome] Registry answered {resp.status}")
                return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[CallHome] Heartbeat failed: {e}")
            return False

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_s)
        while True:
            await self.send()
            await asyncio.sleep(self.interval_ms / 1000)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session is not None:
            await self._session.close()
            self._session = None


class ControlAgent:
    """
    In-target RCE server.

    Usage:
        agent = ControlAgent(app_uuid="...", port=10100, surfaces=[LocalSurface(1)])
        await agent.start()
        ...
        await agent.stop()
    """

    def __init__(
        self,
        app_uuid: str,
        app_name: Optional[str] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_CONTROL_PORT_BASE,
        jobs: Optional[JobStore] = None,
        surfaces: Optional[List[Surface]] = None,
        bus: Any = None,
        app_version: str = "0.0.0",
        user_data_path: Optional[str] = None,
    ):
        self.app_uuid = app_uuid
        self.app_name = app_name or Path(sys.argv[0] or "python").stem
        self.app_version = app_version
        self.user_data_path = user_data_path or str(Path.home())
        self.host = host
        self.port = port
        self.jobs = jobs if jobs is not None else JobStore()
        self.surfaces: List[Surface] = surfaces if surfaces is not None else []
        self.bus = bus
        self.traffic_monitor = None
        self.reporter: Optional[CallHomeReporter] = None

        self.executors: Dict[TargetContext, CodeExecutor] = {
            TargetContext.PRIMARY: PrimaryContextExecutor(agent=self, surfaces=self.surfaces, bus=bus),
            TargetContext.SURFACE: SurfaceContextExecutor(self.surfaces),
        }

        self.start_time = datetime.now().isoformat()
        self._started_monotonic = time.monotonic()
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._running = False

    # ==================== HTTP ====================

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/info", self._handle_info)
        app.router.add_post("/console", self._handle_console)
        app.router.add_get("/result/{job_id:[a-f0-9]+}", self._handle_result)
        return app

    def info(self) -> Dict[str, Any]:
        return {
            "app": {
                "name": self.app_name,
                "version": self.app_version,
                "isPackaged": getattr(sys, "frozen", False),
                "appPath": os.getcwd(),
                "userDataPath": self.user_data_path,
            },
            "system": {
                "platform": sys.platform,
                "arch": platform.machine(),
                "versions": {"python": platform.python_version(), "aiohttp": aiohttp.__version__},
                "pid": os.getpid(),
                "uptime": round(time.monotonic() - self._started_monotonic, 3),
            },
            "windows": [
                s.to_dict() if hasattr(s, "to_dict") else {"id": s.id, "focused": s.focused}
                for s in self.surfaces
            ],
            "debug": {
                "activeJobs": len(self.jobs),
                "toolVersion": AGENT_TOOL_VERSION,
                "startTime": self.start_time,
            },
        }

    async def _handle_info(self, request: web.Request) -> web.Response:
        return web.json_response(self.info())

    async def _handle_console(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        if not isinstance(payload, dict) or not payload.get("data") or not payload.get("process"):
            return web.json_response({"error": "Missing required fields: data, process"}, status=400)

        process = payload["process"]
        if process not in (TargetContext.PRIMARY.value, TargetContext.SURFACE.value):
            return web.json_response({"error": 'Process must be "main" or "renderer"'}, status=400)

        try:
            code = base64.b64decode(payload["data"], validate=True).decode("utf-8")
        except (binascii.Error, ValueError, TypeError) as e:
            return web.json_response({"error": f"Invalid base64 data: {e}"}, status=400)

        job = self.jobs.create(code, TargetContext(process))
        self.dispatch(job)
        return web.json_response({"jobId": job.id, "status": JobStatus.PENDING.value, "process": process})

    async def _handle_result(self, request: web.Request) -> web.Response:
        job = self.jobs.take(request.match_info["job_id"])
        if job is None:
            return web.json_response({"error": "Job not found or already retrieved"}, status=404)
        return web.json_response(job.to_dict())

    # ==================== Execution ====================

    def dispatch(self, job: Job) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_job(self, job: Job) -> None:
        logger.info(f"[RCE] Executing job {job.id} in {job.process.value}")
        try:
            outcome = await asyncio.wait_for(
                self.executors[job.process].execute(job.code), self.jobs.timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            self.jobs.expire(job.id)
            logger.debug(f"[RCE] Job {job.id} execution cancelled after timeout")
            return
        if outcome.status == JobStatus.COMPLETED:
            stored = self.jobs.complete(job.id, outcome.result, window_id=outcome.window_id)
        else:
            stored = self.jobs.fail(job.id, outcome.error or "Unknown error", outcome.stack)
        if not stored:
            logger.debug(f"[RCE] Job {job.id} already terminal or collected, outcome discarded")

    # ==================== Lifecycle ====================

    def enable_call_home(
        self,
        registry_host: str = "127.0.0.1",
        registry_port: int = DEFAULT_REGISTRY_PORT,
        interval_ms: int = CALL_HOME_INTERVAL_MS,
    ) -> CallHomeReporter:
        self.reporter = CallHomeReporter(self, registry_host, registry_port, interval_ms)
        return self.reporter

    async def start(self) -> bool:
        if self._running:
            logger.warning("Control agent already running")
            return True
        try:
            self._runner = web.AppRunner(self.build_app())
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, self.host, self.port)
            await self._site.start()
        except OSError as e:
            logger.error(f"Failed to start control agent on {self.host}:{self.port}: {e}")
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None
            return False

        self.jobs.start()
        if self.reporter is not None:
            self.reporter.start()
        self._running = True
        logger.info(f"[RCE] Control agent listening on {self.host}:{self.port} ({self.app_uuid})")
        return True

    async def stop(self) -> None:
        if self.reporter is not None:
            await self.reporter.stop()
        if self.traffic_monitor is not None:
            await self.traffic_monitor.stop()
            self.traffic_monitor = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.jobs.stop()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._running = False
        logger.info("[RCE] Control agent stopped")

    @property
    def running(self) -> bool:
        return self._running
