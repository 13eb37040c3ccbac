import logging

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import BadRequest

from audit_logger import audit_log
from config import DEBUGPY_ENABLED, DEBUGPY_PORT, LOG_LEVEL, SERVER_PORT, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL
from data_models import Mode, TerminalRequest, TurnRequest
from datastore import Datastore, bearer_token, create_supabase_client
from exceptions import RobinError
from facts import FALLBACK_FACTS, clamp_count, generate_facts
from model_client import create_model_client
from orchestrator import BufferSink, execute_turn
from storage import ObjectStorage
from streaming import NDJSON_HEADERS, StreamSink, stream_events, wants_stream
from terminal import Terminal
from tool_agent import ToolContext

# --- Setup Logging ---
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format='%(asctime)s - %(levelname)s - %(message)s')

app = Flask(__name__)
CORS(
    app,
    methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-stream"],
)


def _error(message: str, status: int = 500):
    return jsonify({"error": message}), status


def _json_body() -> dict:
    """
    Raises:
        BadRequest: If the body is not a JSON object.
    """
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object.")
    return body


# --- Request Context ---
def build_tool_context(mode: Mode, turn: TurnRequest) -> ToolContext:
    """
    Wires the per-request collaborators: a datastore and storage acting as the
    caller, optional service-role storage for the elevated download stage, and
    a model client keyed for the endpoint.

    Raises:
        ConfigError: If Supabase or Gemini credentials are missing.
    """
    token = bearer_token(request.headers.get("Authorization"))
    client = create_supabase_client(token)
    service_storage = None
    if SUPABASE_SERVICE_ROLE_KEY:
        service_storage = ObjectStorage(create_supabase_client(service_role=True), SUPABASE_URL)
    return ToolContext(
        mode=mode,
        datastore=Datastore(client, token),
        storage=ObjectStorage(client, SUPABASE_URL),
        service_storage=service_storage,
        model_client=create_model_client(mode.value),
        access_token=token,
        project_id=turn.project_id,
        chat_id=turn.chat_id,
    )


def handle_turn(mode: Mode):
    """
    Shared body of the three agent endpoints: a JSON answer by default, an
    NDJSON event stream when the client asks for one.
    """
    try:
        turn = TurnRequest.model_validate(_json_body())
        if not turn.prompt.strip():
            return _error("prompt is required", 400)
        context = build_tool_context(mode, turn)
    except (BadRequest, ValidationError, RobinError) as e:
        logging.error(f"Rejected {mode.value} request: {e}")
        return _error(str(e))

    if wants_stream(request.headers):
        sink = StreamSink(include_thoughts=turn.include_thoughts)
        events = stream_events(lambda s: execute_turn(turn, context, s), sink)
        return Response(events, headers=NDJSON_HEADERS)

    try:
        result = execute_turn(turn, context, BufferSink(include_thoughts=turn.include_thoughts))
    except Exception as e:
        logging.error(f"{mode.value} request failed: {e}", exc_info=True)
        return _error(str(e))
    return jsonify(result.to_response(mode))


# --- SERVER ROUTES ---
@app.route('/agent-handler', methods=['POST'])
def agent_handler():
    return handle_turn(Mode.BUILD)


@app.route('/agent-chat-handler', methods=['POST'])
def agent_chat_handler():
    return handle_turn(Mode.ASK)


@app.route('/playground-handler', methods=['POST'])
def playground_handler():
    return handle_turn(Mode.PLAYGROUND)


@app.route('/terminal-handler', methods=['POST'])
def terminal_handler():
    try:
        command = TerminalRequest.model_validate(_json_body())
        if not command.project_id:
            return _error("projectId is required", 400)
        token = bearer_token(request.headers.get("Authorization"))
        terminal = Terminal(Datastore(create_supabase_client(token), token), command.project_id)
        result = terminal.run(command)
    except Exception as e:
        logging.error(f"Terminal command failed: {e}", exc_info=True)
        return jsonify({"output": str(e), "exitCode": 1, "cwd": "/"}), 500
    return jsonify(result.model_dump(by_alias=True))


@app.route('/fact-generator', methods=['GET', 'POST'])
def fact_generator():
    count = clamp_count(request.args.get("count", 8))
    try:
        return jsonify(generate_facts(count))
    except Exception as e:
        logging.error(f"Fact generator failed: {e}", exc_info=True)
        # Always a 200 with the built-in list.
        return jsonify({"facts": FALLBACK_FACTS[:count], "source": "error-fallback", "error": str(e)})


if __name__ == '__main__':
    import eventlet
    eventlet.monkey_patch()
    from eventlet import wsgi

    if DEBUGPY_ENABLED:
        import debugpy
        debugpy.listen(("0.0.0.0", DEBUGPY_PORT))
        logging.info(f"Debugpy server listening on port {DEBUGPY_PORT}. Waiting for debugger to attach...")
        debugpy.wait_for_client()
        logging.info("Debugger attached.")

    logging.info(f"Starting Robin backend on http://0.0.0.0:{SERVER_PORT}")
    audit_log.log_event("Server Started", source="System", destination="System")
    wsgi.server(eventlet.listen(("0.0.0.0", SERVER_PORT)), app)
