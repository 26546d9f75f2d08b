from __future__ import annotations

import asyncio
import base64
import json
import subprocess
import sys
import time

import httpx
import pytest

from sandbox.executor import RUNNER_PATH, SandboxExecutor, decode_procedure, sandbox_request_snapshot
from shared.errors import SandboxExecutionError
from shared.models import RequestContext, SandboxContext


def _encode(source: str) -> str:
    return base64.b64encode(source.encode("utf-8")).decode("ascii")


def _run(source: str, params: dict | None = None, request: dict | None = None, **executor_kwargs):
    executor = SandboxExecutor(**{"timeout_seconds": 10, **executor_kwargs})
    context = SandboxContext(params=params or {}, request=request or {})

    async def collect():
        return [event async for event in executor.execute(_encode(source), context)]

    return asyncio.run(collect())


def test_emits_messages_in_order_then_result():
    events = _run("send_message('one')\nsend_message('two')\nreturn 'done'")
    assert [(e.kind, e.text) for e in events[:2]] == [("message", "one"), ("message", "two")]
    assert events[-1].kind == "result"
    assert events[-1].value == "done"


def test_parameters_are_visible_as_names_and_mapping():
    events = _run(
        "send_message(f'Howdy from {cityName}!')\nreturn params['cityName'].upper()",
        params={"cityName": "Austin"},
    )
    assert events[0].text == "Howdy from Austin!"
    assert events[-1].value == "AUSTIN"


def test_structured_result_is_returned_unchanged():
    events = _run("return {'ip': '1.2.3.4', 'ok': True}")
    assert events[-1].value == {"ip": "1.2.3.4", "ok": True}


def test_print_does_not_corrupt_the_channel():
    events = _run("print('noise on stdout')\nreturn 'clean'")
    assert [e.kind for e in events] == ["result"]
    assert events[0].value == "clean"


def test_raising_procedure_surfaces_as_sandbox_error():
    with pytest.raises(SandboxExecutionError, match="ValueError: boom"):
        _run("send_message('before')\nraise ValueError('boom')")


def test_messages_before_failure_are_still_delivered():
    executor = SandboxExecutor(timeout_seconds=10)
    seen: list[str] = []

    async def collect():
        async for event in executor.execute(_encode("send_message('partial')\nraise RuntimeError('late')"), SandboxContext()):
            seen.append(event.text)

    with pytest.raises(SandboxExecutionError):
        asyncio.run(collect())
    assert seen == ["partial"]


def test_endless_procedure_is_killed_at_timeout():
    started = time.monotonic()
    with pytest.raises(SandboxExecutionError, match="timed out"):
        _run("while True:\n    pass", timeout_seconds=1)
    assert time.monotonic() - started < 8


def test_hung_await_is_killed_at_timeout():
    with pytest.raises(SandboxExecutionError, match="timed out"):
        _run("await sleep(30)\nreturn 'late'", timeout_seconds=1)


def test_rejected_procedure_never_runs():
    with pytest.raises(SandboxExecutionError, match="imports are not allowed"):
        _run("import os\nreturn os.environ.get('HOME')")


def test_unknown_builtin_is_a_name_error():
    with pytest.raises(SandboxExecutionError, match="NameError"):
        _run("return memoryview_like(1)")


def test_invalid_base64_is_rejected():
    with pytest.raises(SandboxExecutionError, match="base64"):
        decode_procedure("not base64!!")


def test_multiline_strings_survive_wrapping():
    events = _run("text = '''line one\n  line two'''\nreturn text")
    assert events[-1].value == "line one\n  line two"


def test_fetch_is_proxied_through_the_host(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ip": "203.0.113.7"})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        "sandbox.executor.httpx.AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    events = _run(
        "response = await fetch('https://api.ipify.org?format=json')\n"
        "send_message(f'status {response.status_code}')\n"
        "return response.json()['ip']"
    )

    assert events[0].text == "status 200"
    assert events[-1].value == "203.0.113.7"
    assert seen[0].url.host == "api.ipify.org"
    assert seen[0].url.params["format"] == "json"


def test_fetch_rejects_non_http_urls():
    with pytest.raises(SandboxExecutionError, match="unsupported url"):
        _run("await fetch('file:///etc/passwd')")


def test_fetch_body_is_capped(monkeypatch):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        "sandbox.executor.httpx.AsyncClient",
        lambda **kwargs: real_client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"x" * 4096)), **kwargs
        ),
    )
    with pytest.raises(SandboxExecutionError, match="exceeds 1024 bytes"):
        _run("await fetch('https://big.example.com/')", fetch_max_bytes=1024)


def test_request_snapshot_strips_credentials():
    snapshot = sandbox_request_snapshot(
        RequestContext(
            origin="https://shop.example.com",
            host="api.example.com",
            headers={"Authorization": "Bearer secret", "cookie": "sid=1", "x-api-key": "k", "accept": "text/plain"},
        )
    )
    assert snapshot["origin"] == "https://shop.example.com"
    assert snapshot["headers"] == {"accept": "text/plain"}



LOOP_ESCAPE = (
    "c = sleep(5)\n"
    "loop = c.send(None).get_loop()\n"
    "proc = await loop.subprocess_shell(\n"
    "    lambda: ctx,\n"
    "    \"tr '\\\\0' '\\\\n' < /proc/$PPID/environ | grep SANDBOX_TEST_SECRET; ls /\",\n"
    ")\n"
    "await sleep(1)\n"
    "return 'escaped'"
)


def _run_child_directly(source: str, tmp_path) -> list[dict]:
    """Feeds a job straight to the runner, skipping static validation."""
    job = {"source": source, "params": {}, "request": {}, "limits": {"memory_mb": 512, "cpu_seconds": 10}}
    completed = subprocess.run(
        [sys.executable, "-I", str(RUNNER_PATH)],
        input=json.dumps(job) + "\n",
        capture_output=True,
        text=True,
        timeout=30,
        cwd=tmp_path,
        env={"PYTHONIOENCODING": "utf-8"},
    )
    return [json.loads(line) for line in completed.stdout.splitlines() if line.strip()]


def test_event_loop_escape_is_rejected_before_running():
    with pytest.raises(SandboxExecutionError, match="rejected \\(line 2\\)"):
        _run(LOOP_ESCAPE)


def test_runner_blocks_processes_even_without_validation(tmp_path, monkeypatch):
    monkeypatch.setenv("SANDBOX_TEST_SECRET", "hunter2")
    messages = _run_child_directly(LOOP_ESCAPE, tmp_path)

    assert messages[-1]["type"] == "error"
    assert all(m["type"] != "emit" for m in messages)
    assert "hunter2" not in json.dumps(messages)
    assert "escaped" not in json.dumps(messages)


def test_runner_blocks_file_access_even_without_validation(tmp_path):
    source = "return fetch.__globals__['builtins'].open('/proc/self/environ').read()"
    messages = _run_child_directly(source, tmp_path)
    assert messages[-1]["type"] == "error"
    assert messages[-1]["error_type"] == "PermissionError"


def test_capabilities_are_read_only(tmp_path):
    messages = _run_child_directly("ctx.fetch = None\nreturn 'patched'", tmp_path)
    assert messages[-1] == {
        "type": "error",
        "error_type": "AttributeError",
        "message": "sandbox capabilities are read-only",
    }


@pytest.mark.parametrize(
    "source",
    [
        "return json_dumps(request)",
        "return json_dumps(params)",
        "return repr(ctx)",
        "return json_dumps([str(x) for x in (params, request)])",
        LOOP_ESCAPE,
        "return open('/proc/self/environ').read()",
        "return (await fetch('file:///proc/self/environ')).text",
        "import os\nreturn dict(os.environ)",
    ],
)
def test_procedures_never_see_host_environment(monkeypatch, source):
    monkeypatch.setenv("SANDBOX_TEST_SECRET", "hunter2")
    request = sandbox_request_snapshot(RequestContext(origin="https://shop.example.com", headers={"accept": "*/*"}))

    try:
        observed = [f"{e.text} {e.value!r}" for e in _run(source, params={"cityName": "Austin"}, request=request)]
    except SandboxExecutionError as e:
        observed = [str(e)]

    assert observed
    assert not any("hunter2" in item for item in observed)
