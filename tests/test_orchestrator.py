import pytest

import orchestrator
from config import DEFAULT_MODEL
from data_models import Attachment, FileEdit, Mode, ModelTurn, ToolCall, TurnRequest
from datastore import CANVAS_FILES, PLAYGROUND_ARTIFACTS, PLAYGROUND_CHAT_MESSAGES, PROJECT_FILES
from exceptions import ModelCallError, RequestCancelled, RoundLimitExceeded
from orchestrator import BufferSink, changes_summary, execute_turn, seed_contents


def call(name, **args):
    return ModelTurn(function_calls=[ToolCall(name=name, args=args)])


def assert_calls_are_paired(contents):
    """Every function call turn is immediately followed by its function response turn."""
    for index, content in enumerate(contents):
        calls = [p.function_call for p in content.parts if p.function_call]
        if not calls:
            continue
        assert content.role == "model"
        follower = contents[index + 1]
        assert follower.role == "user"
        responses = [p.function_response for p in follower.parts if p.function_response]
        assert [r.name for r in responses] == [c.name for c in calls]


@pytest.fixture
def project(datastore):
    datastore.insert(PROJECT_FILES, {"project_id": "proj-1", "path": "src/app.js", "content": "let x = ;"})
    return datastore


def test_build_scenario_reads_updates_and_summarizes(project, make_context, model_client):
    """
    Scenario A: the model reads a file, rewrites it, then answers.
    """
    # 1. ARRANGE
    model_client.turns = [
        call("read_file", path="src/app.js"),
        call("update_file_content", path="src/app.js", new_content="let x = 1;"),
        ModelTurn(text="I fixed the syntax error."),
    ]
    context = make_context(Mode.BUILD)

    # 2. ACT
    result = execute_turn(TurnRequest(prompt="Fix app.js"), context, BufferSink())

    # 3. ASSERT
    assert result.text == "I fixed the syntax error.\n\nChanges applied:\n- update src/app.js"
    assert [edit.operation for edit in result.file_edits] == ["read", "update"]
    assert project.rows(PROJECT_FILES)[0]["content"] == "let x = 1;"
    assert [event.id for event in result.tool_events] == [1, 2]
    assert all(c.model == DEFAULT_MODEL for c in model_client.calls)

    final_contents = model_client.calls[-1].contents
    assert final_contents[0].parts[0].text == "Fix app.js"
    assert len(final_contents) == 1 + 2 * 2
    assert_calls_are_paired(final_contents)

    body = result.to_response(Mode.BUILD)
    assert body["fileEdits"][1] == {"operation": "update", "path": "src/app.js", "old_content": "let x = ;", "new_content": "let x = 1;"}


def test_playground_scenario_creates_chat_persists_and_links_artifacts(make_context, datastore, model_client):
    """
    Scenario B: a new playground chat, a canvas file and a todo list.
    """
    model_client.turns = [
        call("canvas_create_file", path="index.html", content="<h1>Timer</h1>"),
        call("todo_list_create", title="Timer", tasks=[{"id": "t1", "title": "Start button"}]),
        ModelTurn(text="Your timer is ready."),
    ]
    context = make_context(Mode.PLAYGROUND, chat_id=None)

    result = execute_turn(TurnRequest(prompt="Build a timer"), context, BufferSink())

    assert result.chat_id
    assert len(datastore.rows(CANVAS_FILES)) == 1
    user_row, ai_row = datastore.rows(PLAYGROUND_CHAT_MESSAGES)
    assert (user_row["sender"], user_row["content"]) == ("user", "Build a timer")
    assert (ai_row["sender"], ai_row["content"]) == ("ai", "Your timer is ready.")
    assert [e["name"] for e in ai_row["tool_results"]["events"]] == ["canvas_create_file", "todo_list_create"]
    assert result.message_id == ai_row["id"]
    [artifact] = datastore.rows(PLAYGROUND_ARTIFACTS)
    assert artifact["message_id"] == ai_row["id"]

    body = result.to_response(Mode.PLAYGROUND)
    assert body["chatId"] == result.chat_id
    assert body["artifactIds"] == [artifact["id"]]
    assert body["messageId"] == ai_row["id"]
    assert "Changes applied" not in body["text"]


def test_plain_answer_needs_one_model_call(make_context, model_client):
    model_client.turns = [ModelTurn(text="It sums two numbers.")]

    result = execute_turn(TurnRequest(prompt="What does this function do?"), make_context(Mode.ASK), BufferSink())

    assert result.to_response(Mode.ASK) == {"text": "It sums two numbers.", "fileEdits": []}
    assert len(model_client.calls) == 1
    assert result.tool_events == []


def test_one_read_round_reports_the_read(make_context, datastore, model_client):
    datastore.insert(PROJECT_FILES, {"project_id": "proj-1", "path": "main.ts", "content": "console.log(1)"})
    model_client.turns = [call("read_file", path="main.ts"), ModelTurn(text="It logs 1.")]

    result = execute_turn(TurnRequest(prompt="Explain main.ts"), make_context(Mode.ASK), BufferSink())

    assert result.to_response(Mode.ASK) == {
        "text": "It logs 1.",
        "fileEdits": [{"operation": "read", "path": "main.ts", "old_content": "console.log(1)", "new_content": "console.log(1)"}],
    }
    assert len(model_client.calls) == 2
    assert len(model_client.calls[1].contents) == 3


def test_system_instruction_is_rebuilt_every_iteration(make_context, model_client):
    model_client.turns = [call("todo_list_create", title="Plan"), ModelTurn(text="ok")]
    execute_turn(TurnRequest(prompt="plan it"), make_context(Mode.PLAYGROUND), BufferSink())
    first, second = (c.system_instruction for c in model_client.calls)
    assert "Available artifacts" not in first
    assert "Plan [todo_list]" in second


def test_failed_preferred_model_retries_once_on_the_default(make_context, model_client, audit_to_tmp):
    model_client.failing_models = {"gemini-experimental"}
    model_client.turns = [ModelTurn(text="from default")]

    result = execute_turn(TurnRequest(prompt="hi", model="gemini-experimental"), make_context(Mode.ASK), BufferSink())

    assert result.text == "from default"
    assert result.model == DEFAULT_MODEL
    assert [c.model for c in model_client.calls] == ["gemini-experimental", DEFAULT_MODEL]
    assert "Model Fallback" in audit_to_tmp.read_text(encoding="utf-8")


def test_retry_starts_with_a_clean_edit_record(project, make_context, model_client):
    model_client.turns = [
        call("read_file", path="src/app.js"),
        ModelCallError("stream broke"),
        ModelTurn(text="recovered"),
    ]
    context = make_context(Mode.BUILD)

    result = execute_turn(TurnRequest(prompt="look", model="gemini-experimental"), context, BufferSink())

    assert result.text == "recovered"
    assert result.file_edits == []
    assert result.tool_events == []


def test_fallback_failure_surfaces_after_one_retry(make_context, model_client):
    model_client.failing_models = {"gemini-experimental", DEFAULT_MODEL}

    with pytest.raises(ModelCallError, match=DEFAULT_MODEL):
        execute_turn(TurnRequest(prompt="hi", model="gemini-experimental"), make_context(Mode.ASK), BufferSink())

    assert [c.model for c in model_client.calls] == ["gemini-experimental", DEFAULT_MODEL]


def test_default_model_failure_is_not_retried(make_context, model_client):
    model_client.failing_models = {DEFAULT_MODEL}
    with pytest.raises(ModelCallError):
        execute_turn(TurnRequest(prompt="hi"), make_context(Mode.ASK), BufferSink())
    assert len(model_client.calls) == 1


def test_round_limit_stops_the_loop_without_fallback(make_context, model_client, mocker):
    mocker.patch("orchestrator.MAX_TOOL_ROUNDS", 2)
    model_client.turns = [call("lint_check", content="x")] * 5

    with pytest.raises(RoundLimitExceeded):
        execute_turn(TurnRequest(prompt="loop", model="gemini-experimental"), make_context(Mode.ASK), BufferSink())

    assert [c.model for c in model_client.calls] == ["gemini-experimental"] * 3


def test_cancelled_sink_stops_before_the_next_model_call(make_context, model_client):
    sink = BufferSink()
    sink.cancelled = True
    with pytest.raises(RequestCancelled):
        execute_turn(TurnRequest(prompt="hi", model="gemini-experimental"), make_context(Mode.ASK), sink)
    assert model_client.calls == []


def test_unknown_tool_is_fed_back_and_the_loop_continues(make_context, model_client):
    model_client.turns = [call("rm_rf"), ModelTurn(text="Sorry, that tool does not exist.")]
    result = execute_turn(TurnRequest(prompt="x"), make_context(Mode.ASK), BufferSink())
    assert result.tool_events[0].result == {"status": "error", "message": "Unknown tool: rm_rf"}
    response = model_client.calls[-1].contents[-1].parts[0].function_response
    assert response.response == {"result": {"status": "error", "message": "Unknown tool: rm_rf"}}


def test_thoughts_are_collected_only_when_requested(make_context, model_client):
    model_client.turns = [ModelTurn(text="a", thoughts="hmm"), ModelTurn(text="b", thoughts="hmm")]
    hidden = execute_turn(TurnRequest(prompt="x"), make_context(Mode.ASK), BufferSink())
    shown = execute_turn(TurnRequest(prompt="x"), make_context(Mode.ASK), BufferSink(include_thoughts=True))
    assert hidden.thoughts == ""
    assert shown.thoughts == "hmm"


def test_seed_contents_appends_the_attachment_manifest():
    attachment = Attachment(mime_type="application/pdf", file_name="a.pdf", url="https://cdn.example/a.pdf")
    contents = seed_contents([], "read this", [attachment])
    assert [c.role for c in contents] == ["user", "user"]
    assert contents[1].parts[0].text.startswith("Attached files (1):")
    assert len(seed_contents([], "no files", [])) == 1


def test_changes_summary_skips_reads():
    edits = [
        FileEdit(operation="read", path="a.js"),
        FileEdit(operation="create", path="b.js"),
        FileEdit(operation="delete", path="c.js"),
    ]
    assert changes_summary(edits) == "\n\nChanges applied:\n- create b.js\n- delete c.js"
    assert changes_summary(edits[:1]) == ""


def test_run_with_fallback_passes_through_loop_control_errors():
    attempts = []

    def attempt(model):
        attempts.append(model)
        raise RequestCancelled("gone")

    with pytest.raises(RequestCancelled):
        orchestrator.run_with_fallback("gemini-experimental", attempt)
    assert attempts == ["gemini-experimental"]
