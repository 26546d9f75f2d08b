"""Static validation of intent handler procedures before they reach the sandbox.

A procedure is the body of an async function. Only a constrained Python subset
is accepted: no imports, no scope escapes, no underscore names or attributes
and no reflection builtins. Attributes can be read but never assigned, and
the coroutine and event loop surface is off limits.
"""

from __future__ import annotations

import ast

from shared.errors import SandboxExecutionError

_DENIED_NAMES = frozenset(
    {
        "breakpoint",
        "compile",
        "delattr",
        "dir",
        "eval",
        "exec",
        "exit",
        "getattr",
        "globals",
        "hasattr",
        "help",
        "input",
        "locals",
        "memoryview",
        "object",
        "open",
        "quit",
        "setattr",
        "super",
        "type",
        "vars",
    }
)

# str.format can reach attributes through replacement fields at runtime.
_DENIED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})

# Driving a coroutine or generator by hand hands out the event loop's futures.
_DENIED_ATTRIBUTES |= frozenset(
    {
        "send",
        "throw",
        "close",
        "asend",
        "athrow",
        "aclose",
        "get_loop",
        "cr_await",
        "cr_code",
        "cr_frame",
        "cr_origin",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "ag_await",
        "ag_code",
        "ag_frame",
        "f_back",
        "f_builtins",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
        "with_traceback",
    }
)

# Event loop entry points that reach processes, sockets or threads.
_DENIED_ATTRIBUTES |= frozenset(
    {
        "subprocess_exec",
        "subprocess_shell",
        "run_in_executor",
        "create_connection",
        "create_server",
        "create_unix_connection",
        "create_unix_server",
        "create_datagram_endpoint",
        "connect_read_pipe",
        "connect_write_pipe",
        "add_reader",
        "add_writer",
        "add_signal_handler",
        "getaddrinfo",
        "sock_connect",
        "call_soon_threadsafe",
    }
)


class _ProcedureValidator(ast.NodeVisitor):
    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            self._reject(node, "imports are not allowed")
        if isinstance(node, (ast.Global, ast.Nonlocal)):
            self._reject(node, "global/nonlocal statements are not allowed")
        if isinstance(node, ast.ClassDef):
            self._reject(node, "class definitions are not allowed")
        if isinstance(node, (ast.Yield, ast.YieldFrom)):
            self._reject(node, "yield is not allowed in a handler procedure")
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            self._reject(node, f"name '{node.id}' is not allowed")
        if node.id in _DENIED_NAMES:
            self._reject(node, f"'{node.id}' is not available in the sandbox")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in _DENIED_ATTRIBUTES:
            self._reject(node, f"attribute '{node.attr}' is not allowed")
        if not isinstance(node.ctx, ast.Load):
            self._reject(node, f"modifying attribute '{node.attr}' is not allowed")
        self.visit(node.value)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_definition_name(node)
        self.generic_visit(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._check_definition_name(node)
        self.generic_visit(node)

    def visit_arg(self, node: ast.arg) -> None:
        if node.arg.startswith("_"):
            self._reject(node, f"argument '{node.arg}' is not allowed")
        self.generic_visit(node)

    def _check_definition_name(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        if node.name.startswith("_"):
            self._reject(node, f"function name '{node.name}' is not allowed")

    def _reject(self, node: ast.AST, reason: str) -> None:
        line = getattr(node, "lineno", "?")
        raise SandboxExecutionError(f"Handler procedure rejected (line {line}): {reason}")


def validate_procedure(source: str) -> ast.Module:
    """Parse and validate a procedure body; returns the parsed module on success."""
    try:
        # Top-level await/return are legal here; the body is spliced into an async function later.
        tree = ast.parse(source, filename="<intent-handler>", mode="exec")
    except SyntaxError as e:
        raise SandboxExecutionError(f"Handler procedure has invalid syntax (line {e.lineno}): {e.msg}") from e
    _ProcedureValidator().visit(tree)
    return tree
