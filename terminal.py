"""
A small stateless shell over a project's files.

Directories do not exist as rows: a directory is any path prefix shared by
stored files. The current directory lives on the client, which sends it with
every command and receives the (possibly changed) directory back. Virtual
paths are absolute ('/src/app.js'); stored paths are relative ('src/app.js'),
matching what the file tools write.
"""
import logging
import shlex
from typing import Callable

from data_models import TerminalRequest, TerminalResult
from datastore import PROJECT_FILES, Datastore
from exceptions import DatastoreError
from tracer import trace
from utils import now_iso

USER_NAME = "robin"
HEAD_TAIL_LINES = 10
EXIT_UNKNOWN_COMMAND = 127

HELP_TEXT = (
    "Available commands:\n"
    "ls, cat <path>, echo <text>, head <path>, tail <path>, cd <path>, pwd, "
    "mkdir <path>, touch <path>, rm <path>, whoami, help"
)


def normalize_path(path: str) -> str:
    """Collapses '.', '..' and duplicate slashes into an absolute virtual path."""
    stack = []
    for part in (path or "").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if stack:
                stack.pop()
        else:
            stack.append(part)
    return "/" + "/".join(stack)


def resolve_path(cwd: str, path: str) -> str:
    if not path or path == ".":
        return normalize_path(cwd)
    if path.startswith("/"):
        return normalize_path(path)
    return normalize_path(f"{cwd}/{path}")


def stored_path(virtual_path: str) -> str:
    return virtual_path.lstrip("/")


class Terminal:
    """Executes one command line against a project's file table."""

    def __init__(self, datastore: Datastore, project_id: str):
        self.datastore = datastore
        self.project_id = project_id
        self.commands: dict[str, Callable[[list[str], str], tuple[str, int, str]]] = {
            "ls": self._ls,
            "cat": self._cat,
            "echo": self._echo,
            "head": self._head,
            "tail": self._tail,
            "cd": self._cd,
            "pwd": self._pwd,
            "mkdir": self._mkdir,
            "touch": self._touch,
            "rm": self._rm,
            "whoami": self._whoami,
            "help": self._help,
        }

    @trace
    def run(self, request: TerminalRequest) -> TerminalResult:
        cwd = normalize_path(request.current_directory or "/")
        try:
            words = shlex.split(request.command or "")
        except ValueError:
            words = (request.command or "").split()
        if not words:
            return TerminalResult(output="", exit_code=0, cwd=cwd)

        name, args = words[0], words[1:]
        handler = self.commands.get(name)
        if handler is None:
            return TerminalResult(output=f"{name}: command not found\n{HELP_TEXT}", exit_code=EXIT_UNKNOWN_COMMAND, cwd=cwd)
        output, exit_code, next_cwd = handler(args, cwd)
        logging.info(f"Terminal command '{name}' in project {self.project_id} exited with {exit_code}.")
        return TerminalResult(output=output, exit_code=exit_code, cwd=next_cwd)

    # --- File table access ---
    def _paths_under(self, directory: str) -> list[str]:
        prefix = stored_path(directory)
        like = {"path": f"{prefix}/%"} if prefix else None
        rows = self.datastore.select(PROJECT_FILES, "path", filters={"project_id": self.project_id}, like=like, order_by="path")
        return [row["path"] for row in rows]

    def _read(self, args: list[str], cwd: str, command: str) -> tuple[str, int]:
        if not args:
            return f"{command}: missing file operand", 1
        full = resolve_path(cwd, args[0])
        row = self.datastore.select_one(PROJECT_FILES, "content", filters={"project_id": self.project_id, "path": stored_path(full)})
        if row is None:
            return f"{command}: {full}: No such file", 1
        return str(row.get("content") or ""), 0

    # --- Commands ---
    def _ls(self, args, cwd):
        directory = resolve_path(cwd, args[0]) if args else cwd
        prefix = stored_path(directory)
        children = set()
        for path in self._paths_under(directory):
            rest = path[len(prefix) + 1:] if prefix else path
            first = rest.split("/")[0]
            if first:
                children.add(first)
        return "\n".join(sorted(children)), 0, cwd

    def _cat(self, args, cwd):
        output, code = self._read(args, cwd, "cat")
        return output, code, cwd

    def _echo(self, args, cwd):
        return " ".join(args), 0, cwd

    def _head(self, args, cwd):
        content, code = self._read(args, cwd, "head")
        if code:
            return content, code, cwd
        return "\n".join(content.split("\n")[:HEAD_TAIL_LINES]), 0, cwd

    def _tail(self, args, cwd):
        content, code = self._read(args, cwd, "tail")
        if code:
            return content, code, cwd
        return "\n".join(content.split("\n")[-HEAD_TAIL_LINES:]), 0, cwd

    def _cd(self, args, cwd):
        return "", 0, resolve_path(cwd, args[0]) if args else "/"

    def _pwd(self, args, cwd):
        return cwd, 0, cwd

    def _mkdir(self, args, cwd):
        # Directories are implicit prefixes; only the path is validated.
        full = resolve_path(cwd, args[0]) if args else "/"
        if full == "/":
            return "mkdir: invalid path", 1, cwd
        return "", 0, cwd

    def _touch(self, args, cwd):
        if not args:
            return "touch: missing file operand", 1, cwd
        path = stored_path(resolve_path(cwd, args[0]))
        if not path:
            return "touch: invalid path", 1, cwd
        filters = {"project_id": self.project_id, "path": path}
        if self.datastore.select_one(PROJECT_FILES, "id", filters=filters):
            self.datastore.update(PROJECT_FILES, {"last_modified": now_iso()}, filters)
        else:
            self.datastore.insert(PROJECT_FILES, {"project_id": self.project_id, "path": path, "content": ""})
        return "", 0, cwd

    def _rm(self, args, cwd):
        if not args:
            return "rm: missing operand", 1, cwd
        full = resolve_path(cwd, args[0])
        try:
            deleted = self.datastore.delete(PROJECT_FILES, {"project_id": self.project_id, "path": stored_path(full)})
        except DatastoreError as e:
            return f"rm: cannot remove {full}: {e.message}", 1, cwd
        if not deleted:
            return f"rm: cannot remove {full}: No such file", 1, cwd
        return "", 0, cwd

    def _whoami(self, args, cwd):
        return USER_NAME, 0, cwd

    def _help(self, args, cwd):
        return HELP_TEXT, 0, cwd
