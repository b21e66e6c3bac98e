"""Builtin workspace tools served by a local capability server."""

from __future__ import annotations

import asyncio
import inspect
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from winlock.capability.local import LocalCapabilityServer, ToolFailure

MAX_GREP_MATCHES = 50
DEFAULT_BASH_TIMEOUT_SECONDS = 120.0


class ReadFileInput(BaseModel):
    """Read a file with optional offset and limit."""

    path: str = Field(..., description="Path to the file, relative to the workspace")
    offset: int = Field(default=0, description="Line offset (0-based)")
    limit: int | None = Field(default=None, description="Maximum number of lines to read")


class WriteFileInput(BaseModel):
    """Write content to a file."""

    path: str = Field(..., description="Path to the file, relative to the workspace")
    content: str = Field(..., description="File contents")


class EditFileInput(BaseModel):
    """Replace text in a file."""

    path: str = Field(..., description="Path to the file, relative to the workspace")
    old: str = Field(..., description="Text to replace")
    new: str = Field(..., description="Replacement text")
    all: bool = Field(default=False, description="Replace all occurrences")


class GlobInput(BaseModel):
    """Find files matching a glob pattern."""

    path: str = Field(default=".", description="Base path")
    pattern: str = Field(..., description="Glob pattern")


class GrepInput(BaseModel):
    """Search for a regex pattern in files."""

    pattern: str = Field(..., description="Regex pattern")
    path: str = Field(default=".", description="Base path")


class BashInput(BaseModel):
    """Run a shell command."""

    cmd: str = Field(..., description="Shell command to run")
    cwd: str | None = Field(default=None, description="Working directory")
    timeout: float = Field(default=DEFAULT_BASH_TIMEOUT_SECONDS, gt=0, description="Timeout in seconds")


def build_workspace_server(workspace: Path, *, name: str = "workspace") -> LocalCapabilityServer:
    """Local server exposing file and shell tools rooted at ``workspace``."""
    tools = WorkspaceTools(workspace)
    server = LocalCapabilityServer(name, concurrent=True)
    _register(server, "read_file", ReadFileInput, tools.read_file)
    _register(server, "write_file", WriteFileInput, tools.write_file)
    _register(server, "edit_file", EditFileInput, tools.edit_file)
    _register(server, "glob", GlobInput, tools.glob)
    _register(server, "grep", GrepInput, tools.grep)
    _register(server, "bash", BashInput, tools.bash)
    return server


def _register(server: LocalCapabilityServer, name: str, model: type[BaseModel], handler: Callable[[Any], Any]) -> None:
    def _parse(arguments: dict[str, Any]) -> BaseModel:
        try:
            return model.model_validate(arguments)
        except ValidationError as exc:
            raise ToolFailure(f"invalid arguments: {exc.errors(include_url=False)}") from exc

    if inspect.iscoroutinefunction(handler):

        async def run(arguments: dict[str, Any]) -> Any:
            return await handler(_parse(arguments))

    else:

        def run(arguments: dict[str, Any]) -> Any:
            return handler(_parse(arguments))

    server.register(
        name,
        run,
        description=(model.__doc__ or "").strip(),
        input_schema=model.model_json_schema(),
    )


class WorkspaceTools:
    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace.resolve()

    def resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if path.is_absolute():
            return path
        return self.workspace / path

    def read_file(self, params: ReadFileInput) -> str:
        file_path = self.resolve(params.path)
        try:
            lines = file_path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeError) as exc:
            raise ToolFailure(str(exc)) from exc

        offset = max(params.offset, 0)
        limit = len(lines) if params.limit is None else max(params.limit, 0)
        return "\n".join(lines[offset : offset + limit])

    def write_file(self, params: WriteFileInput) -> str:
        file_path = self.resolve(params.path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(params.content, encoding="utf-8")
        except OSError as exc:
            raise ToolFailure(str(exc)) from exc
        return "ok"

    def edit_file(self, params: EditFileInput) -> str:
        file_path = self.resolve(params.path)
        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            raise ToolFailure(str(exc)) from exc

        count = content.count(params.old)
        if count == 0:
            raise ToolFailure("old text not found")
        if count > 1 and not params.all:
            raise ToolFailure(f"old text appears {count} times, must be unique (use all=true)")

        updated = content.replace(params.old, params.new) if params.all else content.replace(params.old, params.new, 1)
        try:
            file_path.write_text(updated, encoding="utf-8")
        except OSError as exc:
            raise ToolFailure(str(exc)) from exc
        return "ok"

    def glob(self, params: GlobInput) -> str:
        base = self.resolve(params.path)
        try:
            matches = sorted(base.glob(params.pattern))
        except (OSError, ValueError) as exc:
            raise ToolFailure(str(exc)) from exc
        if not matches:
            return "none"
        return "\n".join(self._display(path) for path in matches)

    def grep(self, params: GrepInput) -> str:
        base = self.resolve(params.path)
        try:
            regex = re.compile(params.pattern)
        except re.error as exc:
            raise ToolFailure(str(exc)) from exc

        candidates = [base] if base.is_file() else sorted(base.rglob("*"))
        matches: list[str] = []
        for file_path in candidates:
            if not file_path.is_file():
                continue
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeError):
                continue
            for idx, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{self._display(file_path)}:{idx}:{line}")
                    if len(matches) >= MAX_GREP_MATCHES:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "none"

    async def bash(self, params: BashInput) -> str:
        working_dir = self.resolve(params.cwd) if params.cwd else self.workspace
        bash_executable = shutil.which("bash") or "bash"
        try:
            process = await asyncio.create_subprocess_exec(
                bash_executable,
                "-lc",
                params.cmd,
                cwd=str(working_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ToolFailure(str(exc)) from exc

        try:
            async with asyncio.timeout(params.timeout):
                stdout, _ = await process.communicate()
        except TimeoutError:
            process.kill()
            await process.wait()
            raise ToolFailure(f"command timed out after {params.timeout}s") from None

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise ToolFailure(f"exit={process.returncode}\n{output or '(empty)'}")
        return output or "(empty)"

    def _display(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.workspace))
        except ValueError:
            return str(path)
