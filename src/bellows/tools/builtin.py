import logging
import shutil
from pathlib import Path

from pydantic import BaseModel, Field

from bellows.files import FileManager
from bellows.shell import ShellRunner
from bellows.tools.registry import ToolRegistry
from bellows.tools.tool import ToolContext, ToolResult, define_tool

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 2000
MAX_LINE_LENGTH = 2000


class ReadParams(BaseModel):
    file_path: str = Field(description="Path of the file to read, relative to the project root")
    offset: int = Field(default=0, ge=0, description="Line number to start reading from (0-based)")
    limit: int = Field(default=DEFAULT_READ_LIMIT, gt=0, description="Number of lines to read")


class WriteParams(BaseModel):
    file_path: str = Field(description="Path of the file to write")
    content: str = Field(description="Full content of the file")


class EditParams(BaseModel):
    file_path: str = Field(description="Path of the file to modify")
    old_string: str = Field(description="Exact text to replace")
    new_string: str = Field(description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence")


class GlobParams(BaseModel):
    pattern: str = Field(description="Glob pattern such as '*.py' or 'src/**/*.ts'")
    path: str | None = Field(default=None, description="Directory to search in")


class GrepParams(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(default=".", description="Directory or file to search in")
    include: str | None = Field(default=None, description="File glob to include, e.g. '*.py'")


class BashParams(BaseModel):
    command: str = Field(description="Shell command to execute")
    timeout: float | None = Field(default=None, gt=0, description="Timeout in seconds")
    description: str = Field(default="", description="Short description of what the command does")


def register_builtin_tools(registry: ToolRegistry, root_path: str | Path) -> ToolRegistry:
    files = FileManager(root_path)
    shell = ShellRunner(root_path)

    def read(params: ReadParams, ctx: ToolContext) -> ToolResult:
        content = files.read_file(params.file_path)
        lines = content.splitlines()
        window = lines[params.offset : params.offset + params.limit]
        numbered = []
        for number, line in enumerate(window, start=params.offset + 1):
            if len(line) > MAX_LINE_LENGTH:
                line = line[:MAX_LINE_LENGTH] + "..."
            numbered.append(f"{number:05d}| {line}")
        output = "<file>\n" + "\n".join(numbered)
        remaining = len(lines) - (params.offset + len(window))
        if remaining > 0:
            output += (
                f"\n\n(File has more lines. Use 'offset' to read beyond line "
                f"{params.offset + len(window)})"
            )
        else:
            output += f"\n\n(End of file - total {len(lines)} lines)"
        output += "\n</file>"
        return ToolResult(
            output=output,
            title=params.file_path,
            metadata={"lines": len(window), "has_more": remaining > 0},
        )

    def write(params: WriteParams, ctx: ToolContext) -> ToolResult:
        target = files.resolve(params.file_path)
        existed = target.exists()
        ctx.ask("write", [files.relative(target)], {"exists": existed})
        files.write_file(params.file_path, params.content)
        verb = "Updated" if existed else "Created"
        return ToolResult(
            output=f"{verb} {params.file_path}",
            title=params.file_path,
            metadata={"exists": existed},
        )

    def edit(params: EditParams, ctx: ToolContext) -> ToolResult:
        ctx.ask("edit", [files.relative(files.resolve(params.file_path))])
        count = files.apply_edit(
            params.file_path, params.old_string, params.new_string, params.replace_all
        )
        return ToolResult(
            output=f"Applied {count} replacement(s) to {params.file_path}",
            title=params.file_path,
            metadata={"replacements": count},
        )

    def glob(params: GlobParams, ctx: ToolContext) -> ToolResult:
        found = files.list_files(params.pattern, params.path)
        output = "\n".join(found) if found else "No files found"
        return ToolResult(output=output, title=params.pattern, metadata={"count": len(found)})

    def grep(params: GrepParams, ctx: ToolContext) -> ToolResult:
        base_path = str(files.resolve(params.path))
        if shutil.which("rg") is not None:
            cmd = ["rg", "-n", "--no-heading"]
            if params.include:
                cmd.extend(["--glob", params.include])
        else:
            cmd = ["grep", "-R", "-n", "-E"]
            if params.include:
                cmd.extend(["--include", params.include])
        cmd.extend(["--", params.pattern, base_path])

        result = shell.run_command(cmd, cancel=ctx.cancel)
        ctx.cancel.raise_if_cancelled()
        if result.get("error"):
            raise RuntimeError(result["error"])
        if result["exit_code"] == 0:
            output = result["stdout"]
        elif result["exit_code"] == 1:
            output = "No matches"
        else:
            raise RuntimeError(result["stderr"].strip() or "Search failed")
        return ToolResult(output=output, title=params.pattern)

    def bash(params: BashParams, ctx: ToolContext) -> ToolResult:
        ctx.ask("bash", [params.command])
        ctx.metadata(title=params.description or params.command)
        result = shell.run_command(params.command, timeout=params.timeout, cancel=ctx.cancel)
        if result.get("error"):
            raise RuntimeError(f"{result['error']}\n{result['stdout']}{result['stderr']}".rstrip())
        output = result["stdout"]
        if result["stderr"]:
            output += result["stderr"]
        return ToolResult(
            output=f"Exit code: {result['exit_code']}\n\n{output}",
            title=params.description or params.command,
            metadata={"exit_code": result["exit_code"]},
        )

    registry.register(
        define_tool(
            "read",
            "Read a text file from the project. Output lines are prefixed with line numbers.",
            ReadParams,
            read,
        )
    )
    registry.register(
        define_tool("write", "Create or overwrite a file with the given content.", WriteParams, write)
    )
    registry.register(
        define_tool(
            "edit",
            "Replace text in a file. old_string must match the file content exactly once "
            "unless replace_all is set.",
            EditParams,
            edit,
        )
    )
    registry.register(
        define_tool("glob", "List project files matching a glob pattern.", GlobParams, glob)
    )
    registry.register(
        define_tool(
            "grep",
            "Search file contents with a regular expression. Returns path:line:text matches.",
            GrepParams,
            grep,
        )
    )
    registry.register(
        define_tool(
            "bash",
            "Run a shell command in the project root and return its output.",
            BashParams,
            bash,
        )
    )
    logger.debug(f"Registered built-in tools: {', '.join(registry.names())}")
    return registry
