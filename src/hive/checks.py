from __future__ import annotations

import json
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
FRONTEND_PACKAGES = ("react", "vue", "svelte", "next", "nuxt", "@angular/core", "solid-js")
FRONTEND_SUFFIXES = (".tsx", ".jsx", ".vue", ".svelte")
SKIPPED_DIRS = {".git", ".hive", "node_modules", "dist", "build", ".venv", "target"}


def run_command(command: str, cwd: Path, timeout_seconds: float | None = None) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "type": "command",
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        return {
            "type": "command",
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
            "used_shell": used_shell,
        }
    except subprocess.TimeoutExpired:
        return {
            "type": "command",
            "command": command,
            "exit_code": 124,
            "stdout_tail": "",
            "stderr_tail": f"Command timed out after {timeout_seconds}s.",
            "used_shell": used_shell,
        }
    return {
        "type": "command",
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-1000:],
        "stderr_tail": proc.stderr.strip()[-1000:],
        "used_shell": used_shell,
    }


def _package_json(repo_root: Path) -> dict[str, Any]:
    path = repo_root / "package.json"
    if not path.is_file():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def detect_build_command(repo_root: Path) -> str:
    package = _package_json(repo_root)
    scripts = package.get("scripts", {}) if isinstance(package.get("scripts"), dict) else {}
    if "build" in scripts:
        return "npm run build"
    if "typecheck" in scripts:
        return "npm run typecheck"
    if (repo_root / "Cargo.toml").is_file():
        return "cargo check"
    if (repo_root / "go.mod").is_file():
        return "go build ./..."
    return ""


def _walk_files(repo_root: Path, limit: int = 5000):
    seen = 0
    stack = [repo_root]
    while stack and seen < limit:
        directory = stack.pop()
        try:
            entries = sorted(directory.iterdir())
        except OSError:
            continue
        for entry in entries:
            if entry.is_dir():
                if entry.name not in SKIPPED_DIRS:
                    stack.append(entry)
                continue
            seen += 1
            yield entry


def has_frontend(repo_root: Path) -> bool:
    package = _package_json(repo_root)
    dependencies: dict[str, Any] = {}
    for key in ("dependencies", "devDependencies"):
        if isinstance(package.get(key), dict):
            dependencies.update(package[key])
    if any(name in dependencies for name in FRONTEND_PACKAGES):
        return True
    return any(path.suffix in FRONTEND_SUFFIXES for path in _walk_files(repo_root))


def has_tests(repo_root: Path) -> bool:
    for name in ("tests", "test", "__tests__", "spec"):
        if (repo_root / name).is_dir():
            return True
    package = _package_json(repo_root)
    scripts = package.get("scripts", {}) if isinstance(package.get("scripts"), dict) else {}
    if "test" in scripts:
        return True
    return any(
        path.name.startswith("test_") or ".test." in path.name or ".spec." in path.name
        for path in _walk_files(repo_root)
    )


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


def changed_files(cwd: Path) -> list[str]:
    proc = subprocess.run(
        ["git", "--no-pager", "status", "--porcelain", "--untracked-files=all"],
        cwd=cwd,
        text=True,
        capture_output=True,
    )
    if proc.returncode != 0:
        return []
    paths = []
    for line in proc.stdout.splitlines():
        if not line.strip():
            continue
        path = _status_line_path(line)
        if path.startswith(".hive/"):
            continue
        paths.append(path)
    return sorted(set(paths))


def find_debug_markers(cwd: Path, paths: list[str], markers: list[str]) -> list[str]:
    hits: list[str] = []
    for relative in paths:
        path = cwd / relative
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue
        for marker in markers:
            if marker in content:
                hits.append(f"{relative}: {marker}")
    return hits
