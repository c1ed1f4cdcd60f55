from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from autoloop.gitops import GitOps

Severity = Literal["critical", "high", "medium"]

CRITICAL_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?<![\w.])eval\s*\("), "Use of eval() detected - code execution risk"),
    (re.compile(r"(?<![\w.])exec\s*\("), "Use of exec() detected - code execution risk"),
    (re.compile(r"\bos\.(system|popen)\s*\("), "Use of os.system/os.popen - shell execution risk"),
    (re.compile(r"\bshutil\.rmtree\s*\("), "Recursive directory deletion detected"),
    (re.compile(r"\brm\s+-rf\b"), "Use of rm -rf detected - destructive operation"),
]

HIGH_RISK_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^\s*while\s+(True|1)\s*:"), "Infinite loop detected (while True)"),
    (re.compile(r"except\b.*:\s*(sys\.exit|raise SystemExit)\(\s*0?\s*\)"),
     "Exit with success in error handler"),
    (re.compile(r"shell\s*=\s*True.*\bf[\"']|\bf[\"'].*shell\s*=\s*True"),
     "Shell command built from interpolated string - injection risk"),
]

MEDIUM_RISK_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bos\.environ\s*\[[^\]]+\]\s*=(?!=)"), "Modifying os.environ - unexpected behavior"),
    (re.compile(r"\bos\.putenv\s*\("), "Modifying os.environ - unexpected behavior"),
    (re.compile(r"\.\./\.\./\.\./"), "Excessive path traversal detected"),
]

SUCCESS_EXIT = re.compile(r"(sys\.exit|raise SystemExit)\(\s*0?\s*\)")
EXCEPT_LINE = re.compile(r"^(\s*)except\b.*:\s*(#.*)?$")
LOOP_LINE = re.compile(r"^(\s*)(async\s+)?(for|while)\b.*:\s*(#.*)?$")


@dataclass(slots=True)
class SecurityViolation:
    pattern: str
    line: int
    severity: Severity
    message: str


@dataclass(slots=True)
class SecurityScanResult:
    safe: bool
    violations: list[SecurityViolation] = field(default_factory=list)

    def by_severity(self, severity: Severity) -> list[SecurityViolation]:
        return [item for item in self.violations if item.severity == severity]


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _structural_violations(lines: list[str]) -> list[SecurityViolation]:
    """Findings that need block context: exits inside except, deep loop nesting."""
    violations: list[SecurityViolation] = []
    except_indent: int | None = None
    loop_indents: list[int] = []
    for index, line in enumerate(lines, 1):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        indent = _indent(line)

        if except_indent is not None and indent <= except_indent:
            except_indent = None
        match = EXCEPT_LINE.match(line)
        if match:
            except_indent = indent
        elif except_indent is not None and SUCCESS_EXIT.search(line):
            violations.append(
                SecurityViolation(
                    SUCCESS_EXIT.pattern,
                    index,
                    "high",
                    f"Exit with success in error handler at line {index}",
                )
            )

        while loop_indents and indent <= loop_indents[-1]:
            loop_indents.pop()
        if LOOP_LINE.match(line):
            loop_indents.append(indent)
            if len(loop_indents) == 3:
                violations.append(
                    SecurityViolation(
                        LOOP_LINE.pattern,
                        index,
                        "medium",
                        f"Triple nested loop - performance concern at line {index}",
                    )
                )
    return violations


def scan(code: str, file_path: str = "") -> SecurityScanResult:
    """Scan source text line by line for dangerous constructs."""
    lines = code.split("\n")
    violations: list[SecurityViolation] = []
    tiers: list[tuple[Severity, list[tuple[re.Pattern[str], str]]]] = [
        ("critical", CRITICAL_PATTERNS),
        ("high", HIGH_RISK_PATTERNS),
        ("medium", MEDIUM_RISK_PATTERNS),
    ]
    for severity, patterns in tiers:
        for regex, message in patterns:
            for index, line in enumerate(lines, 1):
                if regex.search(line):
                    violations.append(
                        SecurityViolation(
                            regex.pattern, index, severity, f"{message} at line {index}"
                        )
                    )
    seen = {(item.line, item.message) for item in violations}
    for item in _structural_violations(lines):
        if (item.line, item.message) not in seen:
            violations.append(item)

    safe = not any(item.severity in {"critical", "high"} for item in violations)
    return SecurityScanResult(safe=safe, violations=violations)


def format_violations(result: SecurityScanResult, file_path: str) -> str:
    if result.safe and not result.violations:
        return "No security violations detected"

    lines = [f"Security Scan: {file_path}", ""]
    headings: list[tuple[Severity, str]] = [
        ("critical", "CRITICAL VIOLATIONS (blocking):"),
        ("high", "HIGH RISK (blocking):"),
        ("medium", "MEDIUM RISK (warning):"),
    ]
    for severity, heading in headings:
        found = result.by_severity(severity)
        if not found:
            continue
        lines.append(heading)
        lines.extend(f"   Line {item.line}: {item.message}" for item in found)
        lines.append("")
    if not result.safe:
        lines.append("Security check FAILED - changes blocked")
    return "\n".join(lines)


def requires_security_scan(file_path: str, critical_files: Iterable[str]) -> bool:
    normalized = file_path.replace("\\", "/")
    return any(normalized.endswith(critical) for critical in critical_files)


def scan_file(path: Path) -> SecurityScanResult:
    try:
        code = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return SecurityScanResult(
            safe=False,
            violations=[
                SecurityViolation("", 0, "critical", f"Error reading file: {exc}")
            ],
        )
    return scan(code, str(path))


def run_security_check(
    repo_root: Path,
    critical_files: Iterable[str],
    echo: Callable[[str], None] = print,
) -> int:
    """Scan changed security-critical files; return a process exit code."""
    critical = list(critical_files)
    git = GitOps(repo_root)
    changed = sorted(set(git.diff_names("HEAD")) | set(git.changed_files()))
    if not changed:
        echo("No changed files to scan")
        return 0

    to_scan = [
        name
        for name in changed
        if requires_security_scan(name, critical) and (repo_root / name).is_file()
    ]
    if not to_scan:
        echo(f"Scanned {len(changed)} file(s) - none are security-critical")
        return 0

    all_safe = True
    for name in to_scan:
        result = scan_file(repo_root / name)
        if result.violations:
            echo(format_violations(result, name))
        if not result.safe:
            all_safe = False

    if not all_safe:
        echo("Security scan failed")
        return 1
    echo(f"Security scan passed ({len(to_scan)} file(s))")
    return 0
