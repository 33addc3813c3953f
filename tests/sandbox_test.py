from __future__ import annotations

import unittest

from leadflow.workflow import ScriptError, ScriptTimeoutError, ScriptValidationError
from leadflow.workflow.sandbox import MAX_SCRIPT_BYTES, ScriptRunner, deep_freeze, sanitize_result, validate_script


class ScriptValidationTests(unittest.TestCase):
    def test_rejects_module_loading(self) -> None:
        for script in (
            "x = require('fs')",
            "import os",
            "from os import path",
            "m = __import__('os')",
        ):
            with self.subTest(script=script):
                with self.assertRaises(ScriptValidationError):
                    validate_script(script)

    def test_rejects_evaluation_and_reflection(self) -> None:
        for script in (
            "eval('1+1')",
            "exec('x=1')",
            "open('/etc/passwd')",
            "getattr(record, 'items')",
            "x = record.__class__",
            "x = record._private",
            "x = '../secrets'",
            "x = obj.constructor",
        ):
            with self.subTest(script=script):
                with self.assertRaises(ScriptValidationError):
                    validate_script(script)

    def test_rejects_empty_oversized_and_broken_scripts(self) -> None:
        with self.assertRaises(ScriptValidationError):
            validate_script("   ")
        with self.assertRaises(ScriptValidationError):
            validate_script("x = 1\n" * (MAX_SCRIPT_BYTES // 6 + 1))
        with self.assertRaises(ScriptValidationError) as ctx:
            validate_script("result = (")
        self.assertIn("syntax error", str(ctx.exception))

    def test_rejects_frame_walk_to_host_builtins(self) -> None:
        script = "\n".join(
            [
                "def walk():",
                "    frame = gen.gi_frame.f_back.f_back",
                "    yield frame.f_locals",
                "gen = walk()",
                "for scope in gen:",
                "    host = scope['builtins']",
                "    reader = host.open",
                "    result = reader('/etc/hostname').read()",
            ]
        )
        with self.assertRaises(ScriptValidationError) as ctx:
            validate_script(script)
        self.assertIn("interpreter internals", str(ctx.exception))

    def test_rejects_other_interpreter_internals(self) -> None:
        for script in (
            "def f():\n    return 1\nresult = f.func_globals",
            "try:\n    1 / 0\nexcept ZeroDivisionError as exc:\n    result = exc.tb_frame",
            "async def f():\n    return 1\nresult = f().cr_frame",
        ):
            with self.subTest(script=script):
                with self.assertRaises(ScriptValidationError):
                    validate_script(script)

    def test_accepts_plain_scripts(self) -> None:
        validate_script("score = record.get('score', 0)\nresult = {'double': score * 2}")

    def test_sanitize_result_clamps_shapes(self) -> None:
        cleaned = sanitize_result(
            {
                "__proto__": 1,
                "constructorName": 2,
                "items": list(range(1500)),
                "ratio": float("nan"),
                "nested": ({"a": (1, 2)},),
            }
        )
        self.assertNotIn("__proto__", cleaned)
        self.assertNotIn("constructorName", cleaned)
        self.assertEqual(len(cleaned["items"]), 1000)
        self.assertIsNone(cleaned["ratio"])
        self.assertEqual(cleaned["nested"], [{"a": [1, 2]}])
        self.assertEqual(len(sanitize_result({f"k{i}": i for i in range(150)})), 100)

    def test_deep_freeze_blocks_mutation(self) -> None:
        frozen = deep_freeze({"tags": ["a"], "profile": {"x": 1}})
        with self.assertRaises(TypeError):
            frozen["profile"]["x"] = 2  # type: ignore[index]
        self.assertEqual(frozen["tags"], ("a",))


class ScriptRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = ScriptRunner(default_timeout_ms=5000)

    def test_runs_script_with_record_variables_and_logs(self) -> None:
        script = "\n".join(
            [
                "score = record.get('score', 0)",
                "set_variable('tier', 'gold' if score > 40 else 'bronze')",
                "logger.info('scored', score)",
                "result = {'double': score * 2, 'seen': get_variable('seen')}",
            ]
        )
        outcome = self.runner.run(script, {"score": 50}, variables={"seen": True})
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.result, {"double": 100, "seen": True})
        self.assertEqual(outcome.variables, {"seen": True, "tier": "gold"})
        self.assertEqual(outcome.logs, [{"level": "info", "message": "scored 50"}])

    def test_guarded_iteration_and_inplace_updates(self) -> None:
        script = "\n".join(
            [
                "total = 0",
                "for key, value in record.items():",
                "    total += value",
                "result = {'total': total, 'keys': sorted(record.keys())}",
            ]
        )
        outcome = self.runner.run(script, {"a": 2, "b": 3})
        self.assertEqual(outcome.result, {"total": 5, "keys": ["a", "b"]})

    def test_frame_walk_never_reaches_the_child(self) -> None:
        script = "def walk():\n    yield gen.gi_frame.f_back\ngen = walk()\nresult = list(gen)"
        with self.assertRaises(ScriptValidationError):
            self.runner.run(script, {})

    def test_record_is_read_only_inside_the_script(self) -> None:
        with self.assertRaises(ScriptError) as ctx:
            self.runner.run("record['score'] = 1", {"score": 50})
        self.assertIn("TypeError", str(ctx.exception))

    def test_runtime_errors_surface_as_script_errors(self) -> None:
        with self.assertRaises(ScriptError) as ctx:
            self.runner.run("result = 1 / 0", {})
        self.assertIn("ZeroDivisionError", str(ctx.exception))

    def test_unsafe_builtins_are_missing(self) -> None:
        with self.assertRaises(ScriptError) as ctx:
            self.runner.run("result = type(record)", {})
        self.assertIn("NameError", str(ctx.exception))

    def test_infinite_loop_is_killed_at_timeout(self) -> None:
        with self.assertRaises(ScriptTimeoutError):
            self.runner.run("while True:\n    pass", {}, timeout_ms=300)


if __name__ == "__main__":
    unittest.main()
