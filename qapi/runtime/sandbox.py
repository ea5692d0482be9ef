# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Sandboxed execution of indexer function bodies.

Indexer code runs in a subprocess as the body of a function receiving
``block`` (read-only) and ``context``. The context object is the only
capability user code holds; every call on it is sent to the host as a
JSON line on stdout and answered on stdin::

    context.insert("posts", {"id": block["height"], "text": "hello"})

The host decides what a call does (record a mutation, apply it, read
rows, log). A watchdog timer kills the subprocess when the time budget is
exhausted, so user code cannot block the host loop.

Security Note:
    User code executes with a restricted global namespace that excludes
    dangerous builtins (no ``__import__``, ``open``, ``eval``, ``exec``).
    Before the worker starts, code that reaches for underscore attributes,
    dunder names or frame attributes is rejected, so no object graph walk
    leads back to the interpreter's globals.
"""

from __future__ import annotations

import ast
import base64
import json
import logging
import subprocess
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Context operations user code may call
CONTEXT_CALLS = ("insert", "upsert", "update", "delete", "select", "log")

# Names of builtins allowed in sandboxed execution
_SAFE_BUILTIN_NAMES: list[str] = [
    # Types
    "bool", "int", "float", "str", "list", "dict", "tuple",
    "set", "frozenset", "bytes", "bytearray",
    # Functions
    "len", "range", "enumerate", "zip", "map", "filter",
    "sorted", "reversed", "min", "max", "sum", "abs", "round",
    "all", "any", "isinstance", "divmod", "pow", "chr", "ord",
    "hex", "iter", "next", "repr", "print",
    # Constants
    "None", "True", "False",
    # Exceptions (for catching)
    "Exception", "ValueError", "TypeError", "ArithmeticError",
    "ZeroDivisionError", "KeyError", "IndexError", "AttributeError",
    "LookupError", "RuntimeError", "StopIteration",
]

# Frame, code and traceback attributes that lead back to interpreter globals
_FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await",
    "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
    "tb_frame", "tb_next",
    "mro",
})


def _function_source(code: str) -> str:
    """Wrap *code* as the body of ``_indexer(block, context)`` so a bare ``return`` works."""
    body = "".join("    " + line + "\n" for line in code.splitlines())
    return "def _indexer(block, context):\n" + body + "    pass\n"


def find_forbidden_access(code: str) -> str | None:
    """Describe the first forbidden name or attribute access in *code*.

    Attribute names starting with an underscore, dunder names and the
    frame/traceback attributes in ``_FORBIDDEN_ATTRIBUTES`` are rejected:
    they are the routes from an ordinary object to the interpreter's
    globals and ``__import__``.

    Returns:
        An error message, or None if the code is acceptable (or does not
        parse; the worker reports syntax errors)
    """
    try:
        tree = ast.parse(_function_source(code), "<indexer>")
    except (SyntaxError, ValueError):
        return None
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES:
                return f"Access to attribute '{node.attr}' is not allowed (line {node.lineno - 1})"
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            return f"Access to name '{node.id}' is not allowed (line {node.lineno - 1})"
    return None


class ContextCallError(Exception):
    """A context call was rejected; re-raised inside user code as ``ContextError``."""

    pass


@dataclass
class SandboxResult:
    """Result of one sandboxed execution."""

    success: bool
    error: str | None = None
    timed_out: bool = False
    return_value: Any = None
    calls: int = 0
    stderr: str = ""


# Handler for context calls: (operation, arguments) -> JSON-serializable result
CallHandler = Callable[[str, dict[str, Any]], Any]


def _build_worker_script(code: str) -> str:
    """Build the Python source for the subprocess worker.

    The worker reads the block as the first stdin line, defines the user
    code as ``_indexer(block, context)`` (see :func:`_function_source`), runs it
    with safe builtins and finally writes a ``done`` line. User ``print()``
    is routed to ``context.log`` so it cannot corrupt the protocol.

    Args:
        code: User function body

    Returns:
        Python source string suitable for ``python -c``
    """
    source_b64 = base64.b64encode(_function_source(code).encode()).decode()
    lines = [
        "import builtins as _b, base64 as _base64, json as _json, sys as _sys",
        "import traceback as _traceback, types as _types",
        f"_names = {_SAFE_BUILTIN_NAMES!r}",
        "_safe = {n: getattr(_b, n) for n in _names}",
        "_in, _out = _sys.stdin, _sys.stdout",
        "class ContextError(Exception):",
        "    pass",
        "def _plain(o):",
        "    if isinstance(o, _types.MappingProxyType):",
        "        return dict(o)",
        "    if isinstance(o, (set, frozenset)):",
        "        return list(o)",
        "    return str(o)",
        "def _send(msg):",
        "    _out.write(_json.dumps(msg, default=_plain) + '\\n')",
        "    _out.flush()",
        "def _call(op, **args):",
        "    _send({'call': op, 'args': args})",
        "    line = _in.readline()",
        "    if not line:",
        "        raise SystemExit(3)",
        "    reply = _json.loads(line)",
        "    if not reply.get('ok'):",
        "        raise ContextError(reply.get('error', 'context call failed'))",
        "    return reply.get('result')",
        "def _rows(rows):",
        "    return [rows] if isinstance(rows, (dict, _types.MappingProxyType)) else list(rows)",
        "class _Context:",
        "    __slots__ = ()",
        "    def insert(self, table, rows):",
        "        return _call('insert', table=table, rows=_rows(rows))",
        "    def upsert(self, table, rows, conflict_columns, update_columns=None):",
        "        return _call('upsert', table=table, rows=_rows(rows),",
        "                     conflict_columns=list(conflict_columns), update_columns=list(update_columns or []))",
        "    def update(self, table, where, values):",
        "        return _call('update', table=table, where=where, values=values)",
        "    def delete(self, table, where):",
        "        return _call('delete', table=table, where=where)",
        "    def select(self, table, where=None, limit=None):",
        "        return _call('select', table=table, where=where or {}, limit=limit)",
        "    def log(self, *args):",
        "        _call('log', message=' '.join(str(a) for a in args))",
        "def _freeze(v):",
        "    if isinstance(v, dict):",
        "        return _types.MappingProxyType({k: _freeze(x) for k, x in v.items()})",
        "    if isinstance(v, list):",
        "        return tuple(_freeze(x) for x in v)",
        "    return v",
        "_ctx = _Context()",
        "_safe['print'] = lambda *a, **kw: _ctx.log(*a)",
        "_block = _freeze(_json.loads(_in.readline())['block'])",
        f"_source = _base64.b64decode({source_b64!r}).decode()",
        "_sandbox = {'__builtins__': _safe, 'ContextError': ContextError}",
        "try:",
        "    exec(compile(_source, '<indexer>', 'exec'), _sandbox)",
        "    _value = _sandbox['_indexer'](_block, _ctx)",
        "    _send({'done': True, 'success': True, 'result': _value})",
        "except SyntaxError as _e:",
        "    _line = max((_e.lineno or 1) - 1, 1)",
        "    _send({'done': True, 'success': False, 'error': f'Syntax error in indexer code: {_e.msg} (line {_line})'})",
        "except Exception as _e:",
        "    _frames = [f for f in _traceback.extract_tb(_e.__traceback__) if f.filename == '<indexer>']",
        "    _where = f' (line {_frames[-1].lineno - 1})' if _frames else ''",
        "    _send({'done': True, 'success': False, 'error': f'{type(_e).__name__}: {_e}{_where}'})",
    ]
    return "\n".join(lines) + "\n"


@dataclass
class _Watchdog:
    """Kills the worker when the time budget runs out."""

    proc: subprocess.Popen
    timeout: float
    fired: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self._timer = threading.Timer(self.timeout, self._kill)
        self._timer.daemon = True

    def _kill(self) -> None:
        self.fired.set()
        try:
            self.proc.kill()
        except OSError:
            pass

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()


class Sandbox:
    """Executes indexer code in a sandboxed subprocess.

    User code has access to:
    - ``block``: the block payload (read-only mappings and tuples)
    - ``context``: ``insert``, ``upsert``, ``update``, ``delete``,
      ``select`` and ``log``
    - ``ContextError``: raised when the host rejects a context call
    - Safe builtins (no __import__, exec, eval, open, etc.)

    Attributes:
        timeout: Execution budget in seconds (enforced by a watchdog)
    """

    def __init__(self, timeout: float = 5.0, python: str | None = None):
        """Initialize the sandbox.

        Args:
            timeout: Maximum execution time in seconds
            python: Interpreter for the worker (default: the current one)
        """
        self.timeout = timeout
        self._python = python or sys.executable

    def execute(
        self,
        code: str,
        block: dict[str, Any],
        handler: CallHandler,
    ) -> SandboxResult:
        """Run *code* against *block*, routing context calls to *handler*.

        The handler raises :class:`ContextCallError` to reject a call; the
        error is raised inside user code as ``ContextError``. Any other
        exception from the handler aborts the run and propagates.

        Returns:
            SandboxResult describing how the code finished
        """
        try:
            block_json = json.dumps({"block": block})
        except (TypeError, ValueError) as e:
            return SandboxResult(success=False, error=f"block not serializable: {e}")

        forbidden = find_forbidden_access(code)
        if forbidden is not None:
            logger.warning("Rejected indexer code: %s", forbidden)
            return SandboxResult(success=False, error=forbidden)

        proc = subprocess.Popen(
            [self._python, "-c", _build_worker_script(code)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        watchdog = _Watchdog(proc, self.timeout)
        watchdog.start()
        calls = 0
        done: dict[str, Any] | None = None
        try:
            self._write(proc, block_json)
            for line in proc.stdout:
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-protocol output from indexer: %r", line)
                    continue
                if message.get("done"):
                    done = message
                    break
                op = message.get("call")
                calls += 1
                try:
                    if op not in CONTEXT_CALLS:
                        raise ContextCallError(f"unknown context operation '{op}'")
                    result = handler(op, message.get("args") or {})
                    reply = {"ok": True, "result": result}
                except ContextCallError as e:
                    reply = {"ok": False, "error": str(e)}
                self._write(proc, json.dumps(reply, default=str))
        except BaseException:
            proc.kill()
            raise
        finally:
            watchdog.cancel()
            stderr = self._finish(proc)

        if watchdog.fired.is_set() and done is None:
            return SandboxResult(
                success=False,
                error=f"Indexer code timed out after {self.timeout}s",
                timed_out=True,
                calls=calls,
                stderr=stderr,
            )
        if done is None:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output from indexer subprocess"
            return SandboxResult(success=False, error=f"Indexer process failed: {detail}", calls=calls, stderr=stderr)
        if done.get("success"):
            return SandboxResult(success=True, return_value=done.get("result"), calls=calls, stderr=stderr)
        return SandboxResult(success=False, error=done.get("error", "Unknown error"), calls=calls, stderr=stderr)

    @staticmethod
    def _write(proc: subprocess.Popen, line: str) -> None:
        try:
            proc.stdin.write(line + "\n")
            proc.stdin.flush()
        except (BrokenPipeError, OSError):
            # Worker already exited (timeout kill or crash); stdout EOF ends the loop.
            pass

    @staticmethod
    def _finish(proc: subprocess.Popen) -> str:
        for stream in (proc.stdin, proc.stdout):
            try:
                stream.close()
            except OSError:
                pass
        if proc.poll() is None:
            proc.kill()
        try:
            stderr = proc.stderr.read()
        finally:
            proc.stderr.close()
            proc.wait()
        return stderr or ""
