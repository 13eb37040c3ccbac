from context_builder import MODE_RULES, PERSONA, URL_RULE, artifact_manifest, attachment_manifest, build_system_instruction, list_artifacts
from data_models import Artifact, Attachment, Mode
from datastore import CANVAS_FILES, PLAYGROUND_ARTIFACTS, PLAYGROUND_CHATS, PROJECT_FILES, PROJECTS
from tool_declarations import toolset_for


def test_project_instruction_lists_metadata_files_and_tools(make_context, datastore):
    datastore.insert(PROJECTS, {"id": "proj-1", "name": "Shop", "description": "A store", "stack": ["React", "Supabase"]})
    datastore.insert(PROJECT_FILES, {"project_id": "proj-1", "path": "src/b.js", "content": ""})
    datastore.insert(PROJECT_FILES, {"project_id": "proj-1", "path": "src/a.js", "content": ""})
    context = make_context(Mode.BUILD)

    instruction = build_system_instruction(context, toolset_for(Mode.BUILD))

    assert instruction.startswith(PERSONA)
    assert MODE_RULES[Mode.BUILD] in instruction
    assert "Current project: Shop." in instruction
    assert "- React" in instruction
    assert "Project files (2):\n- src/a.js\n- src/b.js" in instruction
    assert "Available tools: create_file, update_file_content" in instruction


def test_ask_mode_forbids_modifications_in_the_prompt(make_context):
    instruction = build_system_instruction(make_context(Mode.ASK), toolset_for(Mode.ASK))
    assert "must NOT modify files" in instruction


def test_playground_instruction_includes_chat_canvas_and_artifacts(make_context, datastore):
    datastore.insert(PLAYGROUND_CHATS, {"id": "chat-1", "title": "Timer app"})
    datastore.insert(CANVAS_FILES, {"chat_id": "chat-1", "path": "index.html", "content": ""})
    datastore.insert(PLAYGROUND_ARTIFACTS, {"id": "art-1", "chat_id": "chat-1", "artifact_type": "todo_list",
                                            "data": {"title": "Plan"}, "last_modified": "2026-01-01T00:00:00"})
    context = make_context(Mode.PLAYGROUND)

    instruction = build_system_instruction(context, toolset_for(Mode.PLAYGROUND))

    assert "Current chat: Timer app." in instruction
    assert "Canvas file: index.html" in instruction
    assert "- art-1: Plan [todo_list]" in instruction


def test_attachment_manifest_carries_the_verbatim_url_rule(make_context):
    attachment = Attachment(mime_type="application/pdf", file_name="brief.pdf", url="https://cdn.example/brief.pdf")
    context = make_context(Mode.PLAYGROUND, attachments=[attachment])
    instruction = build_system_instruction(context, toolset_for(Mode.PLAYGROUND))
    assert "- brief.pdf (application/pdf) -> https://cdn.example/brief.pdf" in instruction
    assert URL_RULE in instruction


def test_ide_attachments_are_listed_by_path_and_line_count():
    manifest = attachment_manifest([Attachment(mime_type="text/plain", file_name="app.js", path="src/app.js", line_count=42)])
    assert manifest == "Attached files (1):\n- src/app.js (42 lines)"


def test_artifact_manifest_format():
    artifacts = [Artifact(id="a1", artifact_type="project_card_preview", data={"name": "Pomodoro"})]
    assert artifact_manifest(artifacts) == "Available artifacts (id: title [type]):\n- a1: Pomodoro [project_card_preview]"
    assert artifact_manifest([]) == ""


def test_artifacts_are_newest_first_and_limited(datastore):
    for day in range(1, 26):
        datastore.insert(PLAYGROUND_ARTIFACTS, {"chat_id": "chat-1", "artifact_type": "todo_list",
                                                "data": {"title": f"day {day}"}, "last_modified": f"2026-01-{day:02d}"})
    artifacts = list_artifacts(datastore, "chat-1")
    assert len(artifacts) == 20
    assert artifacts[0].title == "day 25"


def test_artifacts_created_mid_loop_appear_in_the_next_instruction(make_context, datastore):
    context = make_context(Mode.PLAYGROUND)
    toolset = toolset_for(Mode.PLAYGROUND)
    assert "Available artifacts" not in build_system_instruction(context, toolset)
    datastore.insert(PLAYGROUND_ARTIFACTS, {"id": "art-9", "chat_id": "chat-1", "artifact_type": "todo_list", "data": {"title": "New"}})
    assert "- art-9: New [todo_list]" in build_system_instruction(context, toolset)


def test_failed_lookups_do_not_fail_the_instruction(make_context, datastore):
    datastore.fail(PROJECTS, "select")
    instruction = build_system_instruction(make_context(Mode.BUILD), toolset_for(Mode.BUILD))
    assert "Current project: Project." in instruction
    assert "Available tools:" in instruction
