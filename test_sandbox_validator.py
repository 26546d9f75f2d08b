from __future__ import annotations

import pytest

from sandbox.validator import validate_procedure
from shared.errors import SandboxExecutionError


@pytest.mark.parametrize(
    "source",
    [
        "return 'ok'",
        "send_message(f'Hello from {cityName}')\nreturn None",
        "response = await fetch('https://api.ipify.org?format=json')\nreturn response.json()['ip']",
        "total = sum(x * 2 for x in range(3))\nif total > 4:\n    return str(total)",
        "async def helper(value):\n    await sleep(0)\n    return value\nreturn await helper(params.get('n'))",
        "text = '''multi\nline'''\nreturn text",
        "try:\n    value = json_loads('{}')\nexcept ValueError as e:\n    value = str(e)\nreturn value",
    ],
)
def test_accepts_plain_procedures(source):
    validate_procedure(source)


@pytest.mark.parametrize(
    "source, reason",
    [
        ("import os\nreturn os.environ", "imports"),
        ("from os import environ", "imports"),
        ("global x\nx = 1", "global"),
        ("return ().__class__.__bases__", "attribute '__bases__'"),
        ("return params._secret", "attribute '_secret'"),
        ("_hidden = 1", "name '_hidden'"),
        ("return eval('1+1')", "'eval'"),
        ("return open('/etc/passwd').read()", "'open'"),
        ("return getattr(params, 'get')", "'getattr'"),
        ("return '{0.__class__}'.format(params)", "attribute 'format'"),
        ("class Escape:\n    pass", "class definitions"),
        ("def _private():\n    pass", "function name"),
        ("def helper(_x):\n    return _x", "argument '_x'"),
        ("yield 1", "yield"),
        ("c = sleep(5)\nfuture = c.send(None)", "attribute 'send'"),
        ("await loop.subprocess_shell(None, 'ls')", "attribute 'subprocess_shell'"),
        ("task = fetch('https://x.test')\nreturn task.cr_await", "attribute 'cr_await'"),
        ("ctx.fetch = None", "modifying attribute 'fetch'"),
        ("del params.get", "modifying attribute 'get'"),
    ],
)
def test_rejects_escape_hatches(source, reason):
    with pytest.raises(SandboxExecutionError, match="rejected") as excinfo:
        validate_procedure(source)
    assert reason in str(excinfo.value)


def test_syntax_error_is_reported_with_line():
    with pytest.raises(SandboxExecutionError, match="invalid syntax \\(line 2\\)"):
        validate_procedure("x = 1\nreturn (")
