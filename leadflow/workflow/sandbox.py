"""Sandboxed execution of user-authored workflow scripts.

Scripts are plain Python compiled with RestrictedPython and run in a separate,
freshly spawned interpreter with guarded builtins. The script sees the record
as a deep-frozen copy (``record``/``lead``), a variable store
(``set_variable``/``get_variable``) and a ``logger``; whatever it assigns to
``result`` is returned after sanitizing.

Scripts are rejected before anything runs when they contain escape hatches or
fail the restricted compiler. At run time attribute, item and write access go
through RestrictedPython's guards, and the child process is killed once the
wall-clock limit expires.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import json
import logging
import multiprocessing
import operator
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from RestrictedPython import compile_restricted_exec
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)

from leadflow.workflow.errors import ScriptError, ScriptTimeoutError, ScriptValidationError


LOGGER = logging.getLogger(__name__)

SCRIPT_FILENAME = "<workflow-script>"
MAX_SCRIPT_BYTES = 50_000
DEFAULT_TIMEOUT_MS = 5000
STARTUP_TIMEOUT_SECONDS = 30.0
MAX_ARRAY_ITEMS = 1000
MAX_OBJECT_KEYS = 100
VARIABLE_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FORBIDDEN_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\brequire\s*\("), "dynamic module loading is not allowed"),
    (re.compile(r"\bimport\b"), "imports are not allowed"),
    (re.compile(r"__import__"), "dynamic module loading is not allowed"),
    (re.compile(r"\beval\s*\("), "dynamic code evaluation is not allowed"),
    (re.compile(r"\bexec\s*\("), "dynamic code evaluation is not allowed"),
    (re.compile(r"\bcompile\s*\("), "dynamic code evaluation is not allowed"),
    (re.compile(r"\bFunction\s*\("), "dynamic code evaluation is not allowed"),
    (re.compile(r"\bopen\s*\("), "filesystem access is not allowed"),
    (re.compile(r"\b(?:os|sys|subprocess|shutil|socket|pathlib|ctypes|importlib|builtins|fs)\s*\."),
     "filesystem and process access is not allowed"),
    (re.compile(r"\bprocess\s*\."), "filesystem and process access is not allowed"),
    (re.compile(r"\bchild_process\b"), "filesystem and process access is not allowed"),
    (re.compile(r"\b(?:globals|locals|vars|getattr|setattr|delattr|breakpoint|input)\s*\("),
     "reflection is not allowed"),
    (re.compile(r"\b(?:Reflect|global)\s*\."), "reflection is not allowed"),
    (re.compile(r"\bProxy\s*\("), "reflection is not allowed"),
    (re.compile(r"\b(?:prototype|constructor)\b"), "prototype tampering is not allowed"),
    (re.compile(r"__\w+"), "dunder names are not allowed"),
    (re.compile(r"\.\./"), "path traversal is not allowed"),
)

# Frame, code and traceback attributes that lead back to the host interpreter.
INTROSPECTION_ATTRIBUTES = frozenset(
    {
        "ag_code",
        "ag_frame",
        "co_code",
        "cr_await",
        "cr_code",
        "cr_frame",
        "cr_origin",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "f_trace",
        "func_code",
        "func_globals",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "tb_frame",
        "tb_next",
    }
)

EXTRA_BUILTIN_NAMES = (
    "all",
    "any",
    "dict",
    "enumerate",
    "filter",
    "list",
    "map",
    "max",
    "min",
    "reversed",
    "set",
    "sum",
)

SCRIPT_BUILTINS: dict[str, Any] = {
    name: value for name, value in safe_builtins.items() if name not in ("setattr", "delattr")
}
SCRIPT_BUILTINS.update({name: getattr(builtins, name) for name in EXTRA_BUILTIN_NAMES})

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
}

@dataclass(slots=True)
class ScriptResult:
    success: bool
    result: object = None
    variables: dict[str, Any] = field(default_factory=dict)
    logs: list[dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0


def validate_script(script: str) -> None:
    """Reject a script before it runs; raises ``ScriptValidationError``."""
    if not isinstance(script, str) or not script.strip():
        raise ScriptValidationError("Script is empty.")

    size = len(script.encode("utf-8"))
    if size > MAX_SCRIPT_BYTES:
        raise ScriptValidationError(f"Script exceeds maximum size of {MAX_SCRIPT_BYTES} bytes ({size} bytes).")

    for pattern, reason in FORBIDDEN_PATTERNS:
        match = pattern.search(script)
        if match:
            raise ScriptValidationError(f"Script contains forbidden construct '{match.group(0)}': {reason}.")

    try:
        tree = ast.parse(script, mode="exec")
    except SyntaxError as exc:
        raise ScriptValidationError(f"Script has a syntax error on line {exc.lineno}: {exc.msg}") from exc

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ScriptValidationError("Script imports are not allowed.")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ScriptValidationError(f"Access to private attribute '{node.attr}' is not allowed.")
        if isinstance(node, ast.Attribute) and node.attr in INTROSPECTION_ATTRIBUTES:
            raise ScriptValidationError(f"Access to interpreter internals '{node.attr}' is not allowed.")
        if isinstance(node, (ast.Global, ast.Nonlocal)):
            raise ScriptValidationError("global and nonlocal declarations are not allowed.")

    compiled = compile_restricted_exec(script, filename=SCRIPT_FILENAME)
    if compiled.errors:
        raise ScriptValidationError(f"Script rejected by the restricted compiler: {'; '.join(compiled.errors)}")


def sanitize_result(value: object, _depth: int = 0) -> object:
    """Clamp a script result to a JSON-safe shape.

    Lists keep at most 1,000 items and mappings at most 100 keys; keys that
    start with ``__`` or mention ``prototype``/``constructor`` are dropped.
    """
    if _depth > 32:
        return None
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, Mapping):
        cleaned: dict[str, object] = {}
        for key, item in value.items():
            text_key = str(key)
            if text_key.startswith("__") or "prototype" in text_key or "constructor" in text_key:
                continue
            if len(cleaned) >= MAX_OBJECT_KEYS:
                break
            cleaned[text_key] = sanitize_result(item, _depth + 1)
        return cleaned
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)[:MAX_ARRAY_ITEMS]
        return [sanitize_result(item, _depth + 1) for item in items]
    return str(value)


def deep_freeze(value: object) -> object:
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): deep_freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(deep_freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(deep_freeze(item) for item in value)
    return value


class _ScriptLogger:
    def __init__(self, sink: list[dict[str, str]]) -> None:
        self._sink = sink

    def _log(self, level: str, *parts: object) -> None:
        self._sink.append({"level": level, "message": " ".join(str(part) for part in parts)})

    def debug(self, *parts: object) -> None:
        self._log("debug", *parts)

    def info(self, *parts: object) -> None:
        self._log("info", *parts)

    def warning(self, *parts: object) -> None:
        self._log("warning", *parts)

    warn = warning

    def error(self, *parts: object) -> None:
        self._log("error", *parts)


class _ScriptPrinter:
    """Target of RestrictedPython's ``print`` rewrite; lines go to the script log."""

    def __init__(self, script_logger: _ScriptLogger) -> None:
        self._logger = script_logger
        self._lines: list[str] = []

    def _call_print(self, *objects: object, **kwargs: object) -> None:
        self._lines.append(" ".join(str(item) for item in objects))
        self._logger.info(*objects)

    def __call__(self) -> str:
        return "\n".join(self._lines)


def _inplace_var(op: str, target: object, value: object) -> object:
    handler = _INPLACE_OPERATORS.get(op)
    if handler is None:
        raise TypeError(f"Unsupported in-place operator {op}")
    return handler(target, value)


def _apply(func: Any, *args: object, **kwargs: object) -> object:
    return func(*args, **kwargs)


def _restricted_globals(script_logger: _ScriptLogger) -> dict[str, Any]:
    return {
        "__builtins__": SCRIPT_BUILTINS,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplace_var,
        "_apply_": _apply,
        "_print_": lambda _getattr=None: _ScriptPrinter(script_logger),
    }


def _execute(code: Any, env: dict[str, Any]) -> None:
    exec(code, env)  # noqa: S102


def _script_worker(conn: Any, script: str, record: dict[str, Any], variables: dict[str, Any]) -> None:
    conn.send({"ready": True})
    logs: list[dict[str, str]] = []
    store: dict[str, Any] = dict(variables)

    def set_variable(key: str, value: object) -> None:
        if not isinstance(key, str) or not VARIABLE_KEY_RE.match(key):
            raise ValueError(f"Invalid variable name: {key!r}")
        store[key] = sanitize_result(value)

    def get_variable(key: str, default: object = None) -> object:
        return store.get(key, default)

    script_logger = _ScriptLogger(logs)
    frozen_record = deep_freeze(record)
    env = _restricted_globals(script_logger)
    env.update(
        {
            "record": frozen_record,
            "lead": frozen_record,
            "variables": MappingProxyType(dict(store)),
            "set_variable": set_variable,
            "get_variable": get_variable,
            "setVariable": set_variable,
            "getVariable": get_variable,
            "logger": script_logger,
            "result": None,
        }
    )

    try:
        compiled = compile_restricted_exec(script, filename=SCRIPT_FILENAME)
        if compiled.errors:
            raise ScriptValidationError("; ".join(compiled.errors))
        _execute(compiled.code, env)
        payload = {
            "ok": True,
            "result": sanitize_result(env.get("result")),
            "variables": sanitize_result(store),
            "logs": logs,
        }
    except Exception as exc:  # noqa: BLE001
        payload = {"ok": False, "error": f"{exc.__class__.__name__}: {exc}", "logs": logs}

    conn.send(payload)
    conn.close()


class ScriptRunner:
    """Runs validated scripts in a killable child process."""

    def __init__(self, *, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self._default_timeout_ms = max(1, int(default_timeout_ms))
        self._context = multiprocessing.get_context("spawn")

    def validate(self, script: str) -> None:
        validate_script(script)

    def run(
        self,
        script: str,
        record: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> ScriptResult:
        validate_script(script)
        timeout_seconds = max(1, int(timeout_ms or self._default_timeout_ms)) / 1000.0

        # Round-trip through JSON so the child gets a detached, picklable copy.
        record_copy = json.loads(json.dumps(dict(record), default=str))
        variables_copy = json.loads(json.dumps(dict(variables or {}), default=str))

        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_script_worker,
            args=(sender, script, record_copy, variables_copy),
            daemon=True,
        )
        started = time.monotonic()
        process.start()
        sender.close()

        try:
            if not receiver.poll(STARTUP_TIMEOUT_SECONDS):
                raise ScriptError("Script sandbox did not start.")
            receiver.recv()
            started = time.monotonic()
            if not receiver.poll(timeout_seconds):
                LOGGER.warning("Script exceeded %.0fms; terminating sandbox process", timeout_seconds * 1000)
                raise ScriptTimeoutError(f"Script execution timed out after {int(timeout_seconds * 1000)}ms")
            payload = receiver.recv()
        except EOFError as exc:
            raise ScriptError("Script sandbox exited without a result.") from exc
        finally:
            if process.is_alive():
                process.kill()
            process.join(timeout=1.0)
            receiver.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        logs = list(payload.get("logs") or [])
        if not payload.get("ok"):
            raise ScriptError(f"Script execution failed: {payload.get('error')}")

        return ScriptResult(
            success=True,
            result=payload.get("result"),
            variables=dict(payload.get("variables") or {}),
            logs=logs,
            duration_ms=duration_ms,
        )

    async def arun(
        self,
        script: str,
        record: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> ScriptResult:
        return await asyncio.to_thread(
            self.run,
            script,
            record,
            timeout_ms=timeout_ms,
            variables=variables,
        )
