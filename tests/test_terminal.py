import pytest

from data_models import TerminalRequest
from datastore import PROJECT_FILES
from terminal import EXIT_UNKNOWN_COMMAND, HELP_TEXT, Terminal, normalize_path, resolve_path


@pytest.fixture
def terminal(datastore):
    for path, content in [
        ("README.md", "# Shop"),
        ("src/app.js", "\n".join(f"line {n}" for n in range(1, 16))),
        ("src/components/Button.tsx", "export {}"),
    ]:
        datastore.insert(PROJECT_FILES, {"project_id": "proj-1", "path": path, "content": content})
    datastore.insert(PROJECT_FILES, {"project_id": "other", "path": "secret.txt", "content": "no"})
    return Terminal(datastore, "proj-1")


def run(terminal, command, cwd="/"):
    return terminal.run(TerminalRequest(command=command, current_directory=cwd))


@pytest.mark.parametrize("cwd, path, expected", [
    ("/", "src", "/src"),
    ("/src", "../README.md", "/README.md"),
    ("/src", "/lib//x.js", "/lib/x.js"),
    ("/src/components", "..", "/src"),
    ("/", "../..", "/"),
    ("/src", ".", "/src"),
])
def test_path_resolution(cwd, path, expected):
    assert resolve_path(cwd, path) == expected


def test_normalize_path_is_always_absolute():
    assert normalize_path("") == "/"
    assert normalize_path("a/./b/") == "/a/b"


def test_ls_lists_immediate_children_of_the_project_only(terminal):
    assert run(terminal, "ls").output == "README.md\nsrc"
    assert run(terminal, "ls", cwd="/src").output == "app.js\ncomponents"
    assert run(terminal, "ls components", cwd="/src").output == "Button.tsx"


def test_cat_head_and_tail(terminal):
    assert run(terminal, "cat README.md").output == "# Shop"
    head = run(terminal, "head src/app.js").output.split("\n")
    tail = run(terminal, "tail /src/app.js", cwd="/src").output.split("\n")
    assert head[0] == "line 1" and len(head) == 10
    assert tail[-1] == "line 15" and len(tail) == 10


def test_missing_file_reports_an_error(terminal):
    result = run(terminal, "cat nope.txt", cwd="/src")
    assert result.output == "cat: /src/nope.txt: No such file"
    assert result.exit_code == 1


def test_cd_and_pwd_round_trip_through_the_client(terminal):
    moved = run(terminal, "cd src/components")
    assert moved.cwd == "/src/components"
    assert run(terminal, "pwd", cwd=moved.cwd).output == "/src/components"
    assert run(terminal, "cd", cwd=moved.cwd).cwd == "/"


def test_touch_creates_then_refreshes(terminal, datastore):
    assert run(terminal, "touch notes.txt", cwd="/src").exit_code == 0
    [row] = [r for r in datastore.rows(PROJECT_FILES) if r["path"] == "src/notes.txt"]
    assert row["content"] == ""

    run(terminal, "touch /README.md")
    readme = [r for r in datastore.rows(PROJECT_FILES) if r["path"] == "README.md"][0]
    assert readme["content"] == "# Shop"
    assert "last_modified" in readme


def test_rm_deletes_a_file(terminal, datastore):
    assert run(terminal, "rm README.md").exit_code == 0
    assert "README.md" not in [r["path"] for r in datastore.rows(PROJECT_FILES)]
    again = run(terminal, "rm README.md")
    assert again.exit_code == 1
    assert again.output == "rm: cannot remove /README.md: No such file"


def test_mkdir_only_validates(terminal, datastore):
    before = len(datastore.rows(PROJECT_FILES))
    assert run(terminal, "mkdir lib").exit_code == 0
    assert run(terminal, "mkdir /").exit_code == 1
    assert len(datastore.rows(PROJECT_FILES)) == before


def test_echo_respects_quoting(terminal):
    assert run(terminal, 'echo "hello   world" again').output == "hello   world again"


def test_unknown_command(terminal):
    result = run(terminal, "vim app.js", cwd="/src")
    assert result.exit_code == EXIT_UNKNOWN_COMMAND
    assert result.output == f"vim: command not found\n{HELP_TEXT}"
    assert result.cwd == "/src"


def test_blank_command_is_a_no_op(terminal):
    result = run(terminal, "   ", cwd="/src")
    assert (result.output, result.exit_code, result.cwd) == ("", 0, "/src")


def test_whoami_and_help(terminal):
    assert run(terminal, "whoami").output == "robin"
    assert run(terminal, "help").output == HELP_TEXT


def test_result_serializes_with_client_keys(terminal):
    body = run(terminal, "pwd").model_dump(by_alias=True)
    assert body == {"output": "/", "exitCode": 0, "cwd": "/"}
