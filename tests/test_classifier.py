"""Unit tests for the log classifier."""

from datetime import datetime

import pytest

from procguard.classifier import (
    RULES,
    ClassificationContext,
    ErrorCategory,
    LogLine,
    Severity,
    block_keeps_terminator,
    classify,
    classify_block,
    detect_framework,
    is_block_start,
    max_severity,
)

NOW = datetime(2024, 1, 1, 12, 0, 0)


def line(text, stream="stderr"):
    return LogLine(process_id="web", stream=stream, timestamp=NOW, text=text)


def patterns(errors):
    return [e.matched_pattern for e in errors]


# One sample per rule: (text or block lines, framework)
RULE_SAMPLES = {
    "port-in-use": ("Error: listen EADDRINUSE: address already in use :::3000", None),
    "node-module-missing": ("Error: Cannot find module 'express'", None),
    "python-module-missing": ("ModuleNotFoundError: No module named 'fastapi'", None),
    "command-not-found": ("sh: 1: vite: command not found", None),
    "npm-error": ("npm ERR! code ELIFECYCLE", None),
    "syntax-error": ("SyntaxError: Unexpected token '}'", None),
    "out-of-memory": ("FATAL ERROR: Reached heap limit - JavaScript heap out of memory", None),
    "unhandled-exception": ("[UnhandledPromiseRejection: This error originated ...]", None),
    "timeout": ("request to https://registry.npmjs.org failed, reason: ETIMEDOUT", None),
    "connection-refused": ("connect ECONNREFUSED 127.0.0.1:5432", None),
    "generic-error": ("Error: something went wrong", None),
    "generic-warning": ("npm WARN deprecated request@2.88.2", None),
    "deprecation": ("(node:1234) [DEP0040] DeprecationWarning: The `punycode` module is deprecated.", None),
    "vite-internal-error": ("[vite] Internal server error: Transform failed with 1 error", "vite"),
    "vite-plugin-error": ("[plugin:vite:react-babel] /src/App.jsx: Unexpected token (4:2)", "vite"),
    "vite-unresolved-import": ('Failed to resolve import "./Missing" from "src/App.jsx".', "vite"),
    "vite-port-fallback": ("Port 5173 is in use, trying another one...", "vite"),
    "failed-to-compile": ("Failed to compile.", "webpack"),
    "webpack-unresolved-module": ("Module not found: Error: Can't resolve 'lodash' in '/app/src'", "webpack"),
    "webpack-error-in": ("ERROR in ./src/index.js 3:0", "webpack"),
    "next-missing-build": ("Error: Could not find a production build in the '.next' directory.", "next"),
    "typescript-error": ("src/main.ts(3,7): error TS2322: Type 'string' is not assignable", "typescript"),
    "uvicorn-startup-failed": ("ERROR:    Application startup failed. Exiting.", "uvicorn"),
    "django-improperly-configured": (
        "django.core.exceptions.ImproperlyConfigured: SECRET_KEY must not be empty",
        "django",
    ),
    "python-traceback": (
        [
            "Traceback (most recent call last):",
            '  File "app.py", line 3, in <module>',
            "    main()",
            "ValueError: boom",
        ],
        None,
    ),
    "js-stack-trace": (
        [
            "TypeError: Cannot read properties of undefined (reading 'map')",
            "    at App (/app/src/App.js:5:18)",
            "    at renderWithHooks (/app/node_modules/react-dom/cjs/react-dom.development.js:14985:18)",
        ],
        "node",
    ),
}


class TestRuleTable:
    """Each rule in the table matches its own sample."""

    def test_every_rule_has_a_sample(self):
        assert {rule.id for rule in RULES} == set(RULE_SAMPLES)

    def test_rule_ids_are_unique(self):
        ids = [rule.id for rule in RULES]
        assert len(ids) == len(set(ids))

    @pytest.mark.parametrize("rule_id", sorted(RULE_SAMPLES))
    def test_rule_matches_sample(self, rule_id):
        sample, framework = RULE_SAMPLES[rule_id]
        context = ClassificationContext(framework=framework)
        if isinstance(sample, list):
            errors = classify_block([line(text) for text in sample], context)
        else:
            errors = classify(line(sample), context)
        assert rule_id in patterns(errors)


class TestClassify:
    """Test single-line classification."""

    @pytest.mark.parametrize(
        "text",
        [
            "  VITE v5.0.0  ready in 312 ms",
            "  ➜  Local:   http://localhost:5173/",
            "INFO:     Uvicorn running on http://127.0.0.1:8000 (Press CTRL+C to quit)",
            "compiled successfully in 1200 ms",
            "error handling middleware registered",
            "GET /api/health 200 3ms",
            "",
        ],
    )
    def test_unmatched_lines_produce_nothing(self, text):
        assert classify(line(text), ClassificationContext(framework="vite")) == []

    def test_deterministic(self):
        sample = line("Error: listen EADDRINUSE: address already in use :::3000")
        context = ClassificationContext(framework="node")
        assert classify(sample, context) == classify(sample, context)

    def test_port_conflict_is_critical(self):
        errors = classify(line("Error: EADDRINUSE :3000"))

        assert patterns(errors) == ["generic-error", "port-in-use"]
        assert errors[-1].category == ErrorCategory.PORT_CONFLICT
        assert errors[-1].severity == Severity.CRITICAL
        assert max_severity(errors) == Severity.CRITICAL

    def test_matches_ordered_least_to_most_severe(self):
        errors = classify(line("Module not found: Error: Can't resolve 'lodash'"), {"framework": "webpack"})

        ranks = [e.severity.rank for e in errors]
        assert ranks == sorted(ranks)
        assert errors[-1].category == ErrorCategory.DEPENDENCY_MISSING

    def test_framework_scoped_rule_needs_matching_context(self):
        text = "[vite] Internal server error: Transform failed"

        assert classify(line(text)) == []
        assert classify(line(text), ClassificationContext(framework="webpack")) == []

        errors = classify(line(text), ClassificationContext(framework="vite"))
        assert patterns(errors) == ["vite-internal-error"]
        assert errors[0].source_framework == "vite"
        assert errors[0].category == ErrorCategory.BUILD_FAILURE

    def test_vite_port_fallback_is_informational(self):
        errors = classify(line("Port 5173 is in use, trying another one..."), {"framework": "vite"})

        assert len(errors) == 1
        assert errors[0].category == ErrorCategory.PORT_CONFLICT
        assert errors[0].severity == Severity.INFO

    def test_error_fields_come_from_line(self):
        errors = classify(line("npm ERR! missing script: dev"))

        assert errors[0].process_id == "web"
        assert errors[0].timestamp == NOW
        assert errors[0].raw_line == "npm ERR! missing script: dev"
        assert errors[0].source_framework is None

    @pytest.mark.parametrize("text", ["TypeError: x is not a function", "ReferenceError: foo is not defined"])
    def test_named_errors_are_generic_errors(self, text):
        errors = classify(line(text))

        assert patterns(errors) == ["generic-error"]
        assert errors[0].severity == Severity.WARNING

    def test_generic_error_is_case_sensitive(self):
        assert classify(line("no error: all good")) == []

    def test_multiline_rules_not_applied_to_single_lines(self):
        assert classify(line("Traceback (most recent call last):")) == []


class TestBlocks:
    """Test multi-line block helpers."""

    def test_block_starts(self):
        assert is_block_start("Traceback (most recent call last):")
        assert is_block_start("TypeError: x is not a function")
        assert not is_block_start("    at main (index.js:1:1)")
        assert not is_block_start("server started")

    def test_block_terminator(self):
        assert block_keeps_terminator("Traceback (most recent call last):") is True
        assert block_keeps_terminator("Error: boom") is False

    def test_block_text_is_joined(self):
        lines = [
            line("Traceback (most recent call last):"),
            line('  File "app.py", line 1, in <module>'),
            line("KeyError: 'PORT'"),
        ]
        errors = classify_block(lines)

        assert patterns(errors) == ["python-traceback"]
        assert errors[0].raw_line.splitlines() == [entry.text for entry in lines]

    def test_js_stack_trace_scoped_to_node_frameworks(self):
        lines = [line("Error: boom"), line("    at main (index.js:1:1)")]

        assert classify_block(lines) == []
        assert patterns(classify_block(lines, {"framework": "vite"})) == ["js-stack-trace"]

    def test_empty_block(self):
        assert classify_block([]) == []


class TestMaxSeverity:
    def test_empty(self):
        assert max_severity([]) is None

    def test_highest_wins(self):
        errors = classify(line("Error: connect ECONNREFUSED 127.0.0.1:5432"))
        assert max_severity(errors) == Severity.WARNING


class TestDetectFramework:
    @pytest.mark.parametrize(
        "command,expected",
        [
            ("npx vite --port 3000", "vite"),
            ("./node_modules/.bin/vite", "vite"),
            ("next dev -p 3000", "next"),
            ("npx webpack serve", "webpack"),
            ("react-scripts start", "webpack"),
            ("tsc --watch", "typescript"),
            ("uvicorn app.main:app --reload", "uvicorn"),
            ("python manage.py runserver 0.0.0.0:8000", "django"),
            ("node server.js", "node"),
            ("python3 app.py", "python"),
            ("npm run dev", None),
            ("./run.sh", None),
        ],
    )
    def test_detect(self, command, expected):
        assert detect_framework(command) == expected

    def test_unbalanced_quotes(self):
        assert detect_framework("vite --base 'oops") == "vite"
