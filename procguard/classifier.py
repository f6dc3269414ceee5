"""
Log classification for supervised processes.

Maps a line of process output to zero or more classified errors using a
declarative rule table. Rules are either generic or scoped to a framework
tag (vite, webpack, next, ...), and scoped rules only run when the process
was launched with that framework. Classification is stateless; multi-line
constructs such as tracebacks are buffered by the supervisor and handed to
classify_block() as a whole.
"""

import re
import shlex
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional, Sequence, Union


class ErrorCategory(Enum):
    BUILD_FAILURE = "BuildFailure"
    RUNTIME_EXCEPTION = "RuntimeException"
    PORT_CONFLICT = "PortConflict"
    DEPENDENCY_MISSING = "DependencyMissing"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class Severity(Enum):
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


@dataclass
class LogLine:
    """A single line of process output."""

    process_id: str
    stream: str  # stdout, stderr
    timestamp: datetime
    text: str

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8"))

    def to_dict(self) -> dict:
        return {
            "process_id": self.process_id,
            "stream": self.stream,
            "timestamp": self.timestamp.isoformat(),
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LogLine":
        return cls(
            process_id=data["process_id"],
            stream=data.get("stream", "stdout"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            text=data.get("text", ""),
        )


@dataclass(frozen=True)
class ClassifiedError:
    """An error condition recognised in process output."""

    process_id: str
    timestamp: datetime
    category: ErrorCategory
    severity: Severity
    raw_line: str
    matched_pattern: str
    source_framework: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.raw_line.encode("utf-8"))

    def to_dict(self) -> dict:
        return {
            "process_id": self.process_id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "severity": self.severity.value,
            "source_framework": self.source_framework,
            "raw_line": self.raw_line,
            "matched_pattern": self.matched_pattern,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClassifiedError":
        return cls(
            process_id=data["process_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            category=ErrorCategory(data["category"]),
            severity=Severity(data["severity"]),
            raw_line=data.get("raw_line", ""),
            matched_pattern=data.get("matched_pattern", ""),
            source_framework=data.get("source_framework"),
        )


@dataclass(frozen=True)
class ClassificationRule:
    """A pattern plus the category/severity it assigns."""

    id: str
    pattern: str
    category: ErrorCategory
    severity: Severity
    frameworks: Optional[tuple[str, ...]] = None  # None = any framework
    multiline: bool = False
    flags: int = re.IGNORECASE

    def applies_to(self, framework: Optional[str]) -> bool:
        if self.frameworks is None:
            return True
        return framework is not None and framework in self.frameworks


@dataclass(frozen=True)
class ClassificationContext:
    framework: Optional[str] = None


C = ErrorCategory
S = Severity

_NODE = ("vite", "webpack", "next", "node", "typescript")
_PYTHON = ("python", "uvicorn", "django", "flask")

RULES: tuple[ClassificationRule, ...] = (
    # Generic rules
    ClassificationRule("port-in-use", r"EADDRINUSE|address already in use", C.PORT_CONFLICT, S.CRITICAL),
    ClassificationRule("node-module-missing", r"Error: Cannot find module", C.DEPENDENCY_MISSING, S.CRITICAL),
    ClassificationRule(
        "python-module-missing", r"ModuleNotFoundError:|ImportError:", C.DEPENDENCY_MISSING, S.CRITICAL
    ),
    ClassificationRule(
        "command-not-found",
        r"command not found|No such file or directory|ENOENT",
        C.DEPENDENCY_MISSING,
        S.CRITICAL,
    ),
    ClassificationRule("npm-error", r"npm ERR!|npm error", C.BUILD_FAILURE, S.CRITICAL),
    ClassificationRule("syntax-error", r"SyntaxError:", C.BUILD_FAILURE, S.CRITICAL),
    ClassificationRule(
        "out-of-memory",
        r"JavaScript heap out of memory|MemoryError|Cannot allocate memory|ENOMEM",
        C.RUNTIME_EXCEPTION,
        S.CRITICAL,
    ),
    ClassificationRule(
        "unhandled-exception",
        r"UnhandledPromiseRejection|uncaughtException|Unhandled Runtime Error",
        C.RUNTIME_EXCEPTION,
        S.CRITICAL,
    ),
    ClassificationRule("timeout", r"ETIMEDOUT|TimeoutError|timed out", C.TIMEOUT, S.WARNING),
    ClassificationRule(
        "connection-refused", r"ECONNREFUSED|Connection refused", C.RUNTIME_EXCEPTION, S.WARNING
    ),
    ClassificationRule(
        "generic-error", r"\w*Error:|^\s*\[?ERROR\]?[:\s]", C.RUNTIME_EXCEPTION, S.WARNING, flags=0
    ),
    ClassificationRule(
        "generic-warning", r"^\s*\[?WARN(ING)?\]?[:\s]|^npm WARN|\bWarning:", C.UNKNOWN, S.WARNING, flags=0
    ),
    ClassificationRule("deprecation", r"DeprecationWarning|\[DEP\d+\]", C.UNKNOWN, S.INFO),
    # vite
    ClassificationRule(
        "vite-internal-error", r"\[vite\] Internal server error", C.BUILD_FAILURE, S.CRITICAL, ("vite",)
    ),
    ClassificationRule("vite-plugin-error", r"\[plugin:vite:[\w-]+\]", C.BUILD_FAILURE, S.CRITICAL, ("vite",)),
    ClassificationRule(
        "vite-unresolved-import", r"Failed to resolve import", C.DEPENDENCY_MISSING, S.CRITICAL, ("vite",)
    ),
    # vite moves to the next free port by itself
    ClassificationRule(
        "vite-port-fallback", r"Port \d+ is in use, trying another one", C.PORT_CONFLICT, S.INFO, ("vite",)
    ),
    # webpack / next
    ClassificationRule("failed-to-compile", r"Failed to compile", C.BUILD_FAILURE, S.CRITICAL, ("webpack", "next")),
    ClassificationRule(
        "webpack-unresolved-module",
        r"Module not found: (Error: )?Can't resolve",
        C.DEPENDENCY_MISSING,
        S.CRITICAL,
        ("webpack", "next"),
    ),
    ClassificationRule("webpack-error-in", r"^ERROR in ", C.BUILD_FAILURE, S.CRITICAL, ("webpack",), flags=0),
    ClassificationRule(
        "next-missing-build",
        r"Could not find a production build",
        C.BUILD_FAILURE,
        S.CRITICAL,
        ("next",),
    ),
    # typescript
    ClassificationRule(
        "typescript-error", r"error TS\d+:", C.BUILD_FAILURE, S.CRITICAL, ("typescript", "vite", "next"), flags=0
    ),
    # python servers
    ClassificationRule(
        "uvicorn-startup-failed", r"Application startup failed", C.RUNTIME_EXCEPTION, S.CRITICAL, ("uvicorn",)
    ),
    ClassificationRule(
        "django-improperly-configured", r"ImproperlyConfigured", C.BUILD_FAILURE, S.CRITICAL, ("django",)
    ),
    # Multi-line blocks
    ClassificationRule(
        "python-traceback",
        r"^Traceback \(most recent call last\):",
        C.RUNTIME_EXCEPTION,
        S.CRITICAL,
        multiline=True,
        flags=re.MULTILINE,
    ),
    ClassificationRule(
        "js-stack-trace",
        r"^\w*Error: .*\n\s+at ",
        C.RUNTIME_EXCEPTION,
        S.CRITICAL,
        _NODE,
        multiline=True,
        flags=re.MULTILINE,
    ),
)

_COMPILED = tuple((rule, re.compile(rule.pattern, rule.flags)) for rule in RULES)

# (pattern, whether the first unindented line after the header belongs to the block)
BLOCK_START_PATTERNS = [
    (re.compile(r"^Traceback \(most recent call last\):"), True),
    (re.compile(r"^\w*Error: "), False),
]

# Launch command token -> framework tag, first match wins
FRAMEWORK_COMMAND_HINTS = [
    ("vite", "vite"),
    ("next", "next"),
    ("webpack", "webpack"),
    ("webpack-dev-server", "webpack"),
    ("react-scripts", "webpack"),
    ("tsc", "typescript"),
    ("uvicorn", "uvicorn"),
    ("manage.py", "django"),
    ("flask", "flask"),
    ("node", "node"),
    ("python", "python"),
    ("python3", "python"),
]


def _context_framework(context) -> Optional[str]:
    if context is None:
        return None
    if isinstance(context, Mapping):
        return context.get("framework")
    return context.framework


def _match(
    process_id: str,
    timestamp: datetime,
    text: str,
    framework: Optional[str],
    multiline: bool,
) -> list[ClassifiedError]:
    matches = []
    for rule, regex in _COMPILED:
        if rule.multiline != multiline or not rule.applies_to(framework):
            continue
        if regex.search(text):
            matches.append(
                ClassifiedError(
                    process_id=process_id,
                    timestamp=timestamp,
                    category=rule.category,
                    severity=rule.severity,
                    raw_line=text,
                    matched_pattern=rule.id,
                    source_framework=framework if rule.frameworks else None,
                )
            )
    # Least to most severe; the last match carries the line's effective severity
    matches.sort(key=lambda e: e.severity.rank)
    return matches


def classify(
    line: LogLine,
    context: Union[ClassificationContext, Mapping, None] = None,
) -> list[ClassifiedError]:
    """Classify a single line of output.

    Returns every matching rule as a ClassifiedError, ordered from least to
    most severe (table order among equals). Unmatched lines return [].
    """
    return _match(line.process_id, line.timestamp, line.text, _context_framework(context), False)


def classify_block(
    lines: Sequence[LogLine],
    context: Union[ClassificationContext, Mapping, None] = None,
) -> list[ClassifiedError]:
    """Classify a buffered multi-line block (traceback, stack trace).

    Only rules flagged as multiline are evaluated, against the joined text.
    """
    if not lines:
        return []
    text = "\n".join(line.text for line in lines)
    return _match(lines[0].process_id, lines[0].timestamp, text, _context_framework(context), True)


def is_block_start(text: str) -> bool:
    """Check whether a line opens a multi-line error block."""
    return any(p.search(text) for p, _ in BLOCK_START_PATTERNS)


def block_keeps_terminator(start_text: str) -> bool:
    """Whether the unindented line closing a block is part of it.

    True for Python tracebacks, whose final unindented line names the
    exception. JavaScript stack traces end at the first unindented line,
    which belongs to whatever comes next.
    """
    for pattern, keeps in BLOCK_START_PATTERNS:
        if pattern.search(start_text):
            return keeps
    return False


def max_severity(errors: Sequence[ClassifiedError]) -> Optional[Severity]:
    """Effective severity of a set of matches: the highest one."""
    if not errors:
        return None
    return max((e.severity for e in errors), key=lambda s: s.rank)


def detect_framework(command: str) -> Optional[str]:
    """Guess the framework tag from a launch command."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()

    names = set()
    for token in tokens:
        name = token.rsplit("/", 1)[-1]
        names.add(name)
        if name.endswith(".js") or name.endswith(".cjs") or name.endswith(".mjs"):
            names.add("node")

    for hint, framework in FRAMEWORK_COMMAND_HINTS:
        if hint in names:
            return framework
    return None
