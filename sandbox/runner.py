"""
Sandbox child process for FUNCTIONAL intent handlers.

Started by ``sandbox.executor`` as ``python -I runner.py`` with an empty
environment and a throwaway working directory. Standard library only: this
file must never import project modules.

Protocol (newline-delimited JSON):
- host -> child: one job line {"source", "params", "request", "limits"}
- child -> host: {"type": "emit", "text"} for each send_message() call
                 {"type": "fetch", "id", "request"} for each fetch() call
                 {"type": "result", "value"} or {"type": "error", ...} once
- host -> child: {"type": "fetch_result", "id", ...} in reply to a fetch
"""

import ast
import asyncio
import builtins
import itertools
import json as _json
import sys

_PROTOCOL_OUT = sys.stdout
_PROTOCOL_IN = sys.stdin
_HANDLER_NAME = "__intent_handler__"
_CAPABILITY_NAMES = {"ctx", "params", "request", "send_message", "fetch", "sleep", "json_loads", "json_dumps"}
_MAX_SLEEP_SECONDS = 3600.0

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "frozenset", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord",
    "pow", "print", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "RuntimeError", "StopAsyncIteration", "StopIteration",
    "TimeoutError", "TypeError", "ValueError", "ZeroDivisionError",
)

# Audit events that reach processes, files, sockets or native code. Checked
# after the job is read and the handler compiled, so nothing the runner itself
# needs is affected.
_DENIED_AUDIT_EVENTS = frozenset(
    {
        "open",
        "subprocess.Popen",
        "os.system",
        "os.kill",
        "os.killpg",
        "os.fork",
        "os.forkpty",
        "os.posix_spawn",
        "os.startfile",
        "os.listdir",
        "os.scandir",
        "os.chdir",
        "os.putenv",
        "os.unsetenv",
        "pty.spawn",
        "sys.settrace",
        "sys.setprofile",
    }
)
_DENIED_AUDIT_PREFIXES = ("os.exec", "os.spawn", "socket.", "ctypes.", "shutil.", "webbrowser.")


def _send(message):
    _PROTOCOL_OUT.write(_json.dumps(message, default=str) + "\n")
    _PROTOCOL_OUT.flush()


def _receive():
    line = _PROTOCOL_IN.readline()
    if not line:
        raise RuntimeError("sandbox host closed the channel")
    return _json.loads(line)


def _apply_limits(limits):
    try:
        import resource
    except ImportError:  # non-POSIX host: rely on the wall-clock kill only
        return

    def _limit(kind, value):
        try:
            resource.setrlimit(kind, (value, value))
        except (ValueError, OSError) as e:
            print(f"sandbox: could not apply limit {kind}: {e}", file=sys.stderr)

    memory_mb = int(limits.get("memory_mb") or 0)
    if memory_mb > 0:
        _limit(resource.RLIMIT_AS, memory_mb * 1024 * 1024)
    cpu_seconds = int(limits.get("cpu_seconds") or 0)
    if cpu_seconds > 0:
        _limit(resource.RLIMIT_CPU, cpu_seconds)
    _limit(resource.RLIMIT_CORE, 0)
    _limit(resource.RLIMIT_NOFILE, 32)
    if hasattr(resource, "RLIMIT_NPROC"):
        # No new processes or threads. Ignored for privileged users, which the audit hook covers.
        _limit(resource.RLIMIT_NPROC, 0)


def _audit(event, args):
    if event in _DENIED_AUDIT_EVENTS or event.startswith(_DENIED_AUDIT_PREFIXES):
        raise PermissionError(f"{event} is not allowed in the sandbox")


class Capabilities:
    """Read-only bundle handed to a procedure as ``ctx``."""

    __slots__ = ("params", "request", "send_message", "fetch", "sleep", "json_loads", "json_dumps")

    def __init__(self, **values):
        for name, value in values.items():
            object.__setattr__(self, name, value)

    def __setattr__(self, name, value):
        raise AttributeError("sandbox capabilities are read-only")

    __delattr__ = __setattr__


class FetchResponse:
    """What a procedure gets back from ``await fetch(...)``."""

    def __init__(self, status_code, headers, text, url):
        self.status_code = status_code
        self.headers = headers
        self.text = text
        self.url = url

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        return _json.loads(self.text)


def _build_capabilities(job):
    counter = itertools.count(1)

    def send_message(text):
        _send({"type": "emit", "text": "" if text is None else str(text)})

    async def fetch(url, method="GET", headers=None, json=None, data=None):
        request_id = next(counter)
        _send(
            {
                "type": "fetch",
                "id": request_id,
                "request": {
                    "url": str(url),
                    "method": str(method).upper(),
                    "headers": dict(headers or {}),
                    "json": json,
                    "data": data,
                },
            }
        )
        reply = _receive()
        if reply.get("type") != "fetch_result" or reply.get("id") != request_id:
            raise RuntimeError("unexpected reply from sandbox host")
        if reply.get("error"):
            raise RuntimeError(f"fetch failed: {reply['error']}")
        return FetchResponse(
            status_code=int(reply.get("status_code", 0)),
            headers=dict(reply.get("headers") or {}),
            text=str(reply.get("text", "")),
            url=str(reply.get("url", url)),
        )

    async def sleep(seconds):
        await asyncio.sleep(min(max(float(seconds), 0.0), _MAX_SLEEP_SECONDS))

    params = dict(job.get("params") or {})
    request = dict(job.get("request") or {})
    return Capabilities(
        params=params,
        request=request,
        send_message=send_message,
        fetch=fetch,
        sleep=sleep,
        json_loads=_json.loads,
        json_dumps=_json.dumps,
    )


def _compile_handler(source, capabilities):
    body = ast.parse(source, filename="<intent-handler>", mode="exec").body
    wrapper = ast.parse(f"async def {_HANDLER_NAME}():\n    pass\n", mode="exec")
    wrapper.body[0].body = body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    code = compile(wrapper, "<intent-handler>", "exec")

    scope = {"__builtins__": {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}}
    # Parameters are also exposed as bare names, without shadowing capabilities.
    for key, value in capabilities.params.items():
        if isinstance(key, str) and key.isidentifier() and not key.startswith("_") and key not in _CAPABILITY_NAMES:
            scope[key] = value
    scope.update(
        ctx=capabilities,
        params=capabilities.params,
        request=capabilities.request,
        send_message=capabilities.send_message,
        fetch=capabilities.fetch,
        sleep=capabilities.sleep,
        json_loads=capabilities.json_loads,
        json_dumps=capabilities.json_dumps,
    )
    exec(code, scope)
    return scope[_HANDLER_NAME]


def main():
    # Anything the procedure prints must not corrupt the protocol channel.
    sys.stdout = sys.stderr
    try:
        job = _receive()
    except (RuntimeError, ValueError) as e:
        _send({"type": "error", "error_type": type(e).__name__, "message": str(e)})
        return 2

    _apply_limits(job.get("limits") or {})
    loop = asyncio.new_event_loop()
    try:
        handler = _compile_handler(job.get("source", ""), _build_capabilities(job))
        sys.addaudithook(_audit)
        value = loop.run_until_complete(handler())
    except Exception as e:
        _send({"type": "error", "error_type": type(e).__name__, "message": str(e)})
        return 1
    finally:
        loop.close()
    _send({"type": "result", "value": value})
    return 0


if __name__ == "__main__":
    sys.exit(main())
