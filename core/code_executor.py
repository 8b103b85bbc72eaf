"""
Code Executors

Two execution contexts for submitted code in a Python-hosted target:

- PrimaryContextExecutor: runs the body as an `async def` inside the agent
  process with `agent`, `surfaces`, `bus`, `platform` and `versions` in scope.
- SurfaceContextExecutor: hands a wrapped body to a Surface, which evaluates
  it in its own namespace and returns a JSON-safe value or an error marker.

Submitted code is trusted operator input. Only exceptions are isolated;
nothing is sandboxed.
"""

import json
import logging
import platform as _platform
import sys
import textwrap
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from shared.constants import AGENT_TOOL_VERSION, JobStatus

logger = logging.getLogger(__name__)

PRIMARY_ENTRY = "__asarhook_job__"
SURFACE_ENTRY = "__asarhook_surface__"


def json_safe(value: Any) -> Any:
    """Round-trip through JSON, falling back to repr() for unknown types"""
    return json.loads(json.dumps(value, default=repr))


def _indent_body(code: str, spaces: int) -> str:
    body = textwrap.dedent(code).strip("\n") or "pass"
    return textwrap.indent(body + "\npass", " " * spaces)


@dataclass
class ExecutionResult:
    status: JobStatus
    result: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    window_id: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: BaseException, prefix: str = "") -> "ExecutionResult":
        return cls(
            status=JobStatus.ERRORED,
            error=f"{prefix}{exc}",
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )


class Surface(Protocol):
    """A visual surface able to evaluate source in its own environment"""

    id: int
    focused: bool

    async def evaluate(self, source: str) -> Any:
        ...


class CodeExecutor(ABC):
    @abstractmethod
    async def execute(self, code: str) -> ExecutionResult:
        """Run code and capture its outcome. Never raises."""


class PrimaryContextExecutor(CodeExecutor):
    def __init__(self, agent: Any = None, surfaces: Optional[List[Surface]] = None, bus: Any = None):
        self.agent = agent
        self.surfaces = surfaces if surfaces is not None else []
        self.bus = bus

    def scope(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "surfaces": self.surfaces,
            "bus": self.bus,
            "platform": sys.platform,
            "versions": {
                "python": _platform.python_version(),
                "implementation": _platform.python_implementation(),
                "agent": AGENT_TOOL_VERSION,
            },
        }

    def compile(self, code: str):
        scope = self.scope()
        source = f"async def {PRIMARY_ENTRY}({', '.join(scope)}):\n{_indent_body(code, 4)}\n"
        namespace: Dict[str, Any] = {"__name__": "__asarhook_primary__", "__builtins__": __builtins__}
        exec(compile(source, "<primary>", "exec"), namespace)
        return namespace[PRIMARY_ENTRY], scope

    async def execute(self, code: str) -> ExecutionResult:
        try:
            fn, scope = self.compile(code)
            result = await fn(**scope)
            return ExecutionResult(status=JobStatus.COMPLETED, result=json_safe(result))
        except Exception as e:
            logger.warning(f"[RCE] Primary execution failed: {e}")
            return ExecutionResult.from_exception(e)


SURFACE_WRAPPER = """async def {entry}():
    try:
        async def __body__():
{body}
        return await __body__()
    except Exception as __exc:
        import traceback as __tb
        return {{
            "__error": True,
            "message": str(__exc),
            "name": type(__exc).__name__,
            "stack": __tb.format_exc(),
        }}
"""


def wrap_for_surface(code: str) -> str:
    return SURFACE_WRAPPER.format(entry=SURFACE_ENTRY, body=_indent_body(code, 12))


class SurfaceContextExecutor(CodeExecutor):
    def __init__(self, surfaces: List[Surface]):
        self.surfaces = surfaces

    def pick_surface(self) -> Optional[Surface]:
        for surface in self.surfaces:
            if surface.focused:
                return surface
        return self.surfaces[0] if self.surfaces else None

    async def execute(self, code: str) -> ExecutionResult:
        surface = self.pick_surface()
        if surface is None:
            return ExecutionResult(status=JobStatus.ERRORED, error="No active surface available")
        try:
            result = await surface.evaluate(wrap_for_surface(code))
        except Exception as e:
            logger.warning(f"[RCE] Surface {surface.id} evaluation failed: {e}")
            return ExecutionResult.from_exception(e)

        if isinstance(result, dict) and result.get("__error"):
            return ExecutionResult(
                status=JobStatus.ERRORED,
                error=f"Renderer error: {result.get('message')}",
                stack=result.get("stack"),
                window_id=surface.id,
            )
        return ExecutionResult(status=JobStatus.COMPLETED, result=result, window_id=surface.id)


class LocalSurface:
    """In-process surface with its own persistent namespace"""

    def __init__(self, surface_id: int, title: str = "", url: str = "", focused: bool = False):
        self.id = surface_id
        self.title = title
        self.url = url
        self.focused = focused
        self.visible = True
        self.namespace: Dict[str, Any] = {"__name__": f"__surface_{surface_id}__", "__builtins__": __builtins__}

    async def evaluate(self, source: str) -> Any:
        exec(compile(source, f"<surface {self.id}>", "exec"), self.namespace)
        fn = self.namespace.pop(SURFACE_ENTRY)
        return json_safe(await fn())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "visible": self.visible,
            "focused": self.focused,
            "bounds": None,
        }
