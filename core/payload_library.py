"""
Payload Library

Reusable code snippets stored as plain files under category directories
of the operator's payloads directory. The top-level `passthrough.js` is the
agent used for first-time setup.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

from core.agent_templates import render_hook_agent
from core.exceptions import PayloadExistsError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

PASSTHROUGH_NAME = "passthrough.js"

DEFAULT_SNIPPETS: Dict[str, str] = {
    "info/app-info.js": """// Application metadata (main)
return {
  name: app.getName(),
  version: app.getVersion(),
  locale: app.getLocale(),
  isPackaged: app.isPackaged,
  paths: {
    app: app.getAppPath(),
    userData: app.getPath('userData'),
    exe: app.getPath('exe'),
    logs: app.getPath('logs')
  }
};
""",
    "info/process-info.js": """// Process details (main)
return {
  pid: process.pid,
  ppid: process.ppid,
  platform: platform,
  arch: process.arch,
  argv: process.argv,
  execPath: process.execPath,
  versions: versions,
  memory: process.memoryUsage()
};
""",
    "info/window-info.js": """// Open windows (main)
return windows.map(w => ({
  id: w.id,
  title: w.getTitle(),
  url: w.webContents.getURL(),
  bounds: w.getBounds(),
  devToolsOpened: w.webContents.isDevToolsOpened()
}));
""",
    "storage/local-storage.js": """// localStorage and sessionStorage (renderer)
const dump = store => Object.fromEntries(Object.keys(store).map(k => [k, store.getItem(k)]));
return { origin: location.origin, local: dump(localStorage), session: dump(sessionStorage) };
""",
    "security/csp.js": """// Content-Security-Policy declared by the page (renderer)
const metas = Array.from(document.querySelectorAll('meta[http-equiv="Content-Security-Policy"]'));
return metas.map(m => m.getAttribute('content'));
""",
    "devtools/open-devtools.js": """// Open DevTools on the focused window (main)
const win = windows.find(w => w.isFocused()) || windows[0];
if (!win) return { opened: false };
win.webContents.openDevTools({ mode: 'detach' });
return { opened: true, windowId: win.id };
""",
}


def render_passthrough() -> str:
    """Hook agent with call-home disabled, used when no target UUID exists yet"""
    return render_hook_agent("passthrough", {"ENABLE_CALL_HOME": False})


class PayloadLibrary:
    """Operator payload snippets on disk"""

    def __init__(self, payloads_dir: PathLike):
        self.payloads_dir = Path(payloads_dir)

    @property
    def passthrough_path(self) -> Path:
        return self.payloads_dir / PASSTHROUGH_NAME

    def initialize(self) -> int:
        """Seed default snippets, never overwriting existing files.

        Returns:
            Number of files written
        """
        self.payloads_dir.mkdir(parents=True, exist_ok=True)
        written = 0
        seeds = dict(DEFAULT_SNIPPETS)
        seeds[PASSTHROUGH_NAME] = render_passthrough()
        for rel, content in seeds.items():
            target = self.payloads_dir / rel
            if target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            written += 1
        if written:
            logger.info(f"Seeded {written} payloads into {self.payloads_dir}")
        return written

    def create(self, name: str, content: str, category: str = "custom") -> Path:
        """Write a new payload file.

        Raises:
            PayloadExistsError: a payload with that name already exists
            ValueError: name or category would leave the payloads directory
        """
        if not name.endswith(".js"):
            name = f"{name}.js"
        for part in (name, category):
            if not part or "/" in part or "\\" in part or part in (".", ".."):
                raise ValueError(f"Invalid payload name or category: {part!r}")

        target = self.payloads_dir / category / name
        if target.exists():
            raise PayloadExistsError("Payload already exists", path=str(target))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info(f"Payload created: {category}/{name}")
        return target

    def list(self) -> List[Dict[str, Any]]:
        if not self.payloads_dir.is_dir():
            return []
        entries = []
        for path in self.payloads_dir.rglob("*"):
            if not path.is_file():
                continue
            rel = path.relative_to(self.payloads_dir)
            st = path.stat()
            entries.append({
                "name": path.name,
                "path": str(path),
                "relativePath": rel.as_posix(),
                "category": rel.parts[0] if len(rel.parts) > 1 else "root",
                "size": st.st_size,
                "modified": datetime.fromtimestamp(st.st_mtime).isoformat(),
                "isJavaScript": path.suffix == ".js",
            })
        entries.sort(key=lambda e: (e["category"], e["name"]))
        return entries

    def read(self, relative_path: str) -> str:
        target = (self.payloads_dir / relative_path).resolve()
        if self.payloads_dir.resolve() not in target.parents:
            raise ValueError(f"Payload path escapes payloads directory: {relative_path}")
        return target.read_text(encoding="utf-8")
