from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable

from .approval import ApprovalOutcome, ApprovalRegistry, ApprovalRegistryError, ApprovalRequest, ApprovalResult
from .approval_policy import build_details, is_auto_approved
from .ids import new_id
from .tool_summary import describe_tool

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"

RequestCallback = Callable[[ApprovalRequest], None]
ResolvedCallback = Callable[[ApprovalRequest, ApprovalResult], None]


class BadRequest(ValueError):
    pass


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    length_raw = handler.headers.get("content-length")
    try:
        length = int(length_raw) if length_raw else 0
    except ValueError:
        length = 0
    body = handler.rfile.read(max(0, length)) if length > 0 else b""
    try:
        data = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as e:
        raise BadRequest(f"Body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise BadRequest("Body must be a JSON object.")
    return data


def _json_response(handler: BaseHTTPRequestHandler, status: int, payload: dict[str, Any]) -> None:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("content-type", "application/json; charset=utf-8")
    handler.send_header("content-length", str(len(data)))
    handler.end_headers()
    handler.wfile.write(data)


def parse_respond_payload(payload: dict[str, Any]) -> tuple[str, bool]:
    approval_id = payload.get("id")
    if approval_id is None:
        approval_id = payload.get("approval_id")
    if not isinstance(approval_id, str) or not approval_id:
        raise BadRequest("Missing or invalid 'id'.")
    approved = payload.get("approved")
    if not isinstance(approved, bool):
        raise BadRequest("Missing or invalid 'approved' (expected boolean).")
    return approval_id, approved


class _ApprovalHandler(BaseHTTPRequestHandler):
    server_version = "CoworkApproval/0.1"
    server: "_ApprovalHTTPServer"

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
        LOGGER.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:  # noqa: N802
        if self.path.rstrip("/") == "/health":
            _json_response(self, 200, {"ok": True})
            return
        _json_response(self, 404, {"ok": False, "error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        route = self.path.rstrip("/")
        if route not in {"/respond", "/approval"}:
            _json_response(self, 404, {"ok": False, "error": "not found"})
            return
        try:
            payload = _read_json_body(self)
            if route == "/respond":
                status, body = self.server.owner.handle_respond(payload)
            else:
                status, body = self.server.owner.handle_approval(payload)
        except BadRequest as e:
            LOGGER.warning("Rejected %s request: %s", route, e)
            _json_response(self, 400, {"ok": False, "error": str(e)})
            return
        _json_response(self, status, body)


class _ApprovalHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], owner: "ApprovalServer") -> None:
        super().__init__(address, _ApprovalHandler)
        self.owner = owner


class ApprovalServer:
    """
    Loopback HTTP listener bridging the agent's hook script and the approval registry.

    Routes:
    - POST /respond   {id, approved} -> {ok}; unknown or already-resolved ids are acknowledged no-ops.
    - POST /approval  hook rendezvous; blocks until the request is decided or times out.
    - GET  /health
    """

    def __init__(
        self,
        registry: ApprovalRegistry,
        *,
        timeout_s: float,
        active_turn: Callable[[], str | None],
        on_request: RequestCallback | None = None,
        on_resolved: ResolvedCallback | None = None,
        host: str = DEFAULT_HOST,
    ) -> None:
        self._registry = registry
        self._timeout_s = float(timeout_s)
        self._active_turn = active_turn
        self._on_request = on_request
        self._on_resolved = on_resolved
        self._host = host
        self._httpd: _ApprovalHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int | None:
        httpd = self._httpd
        return int(httpd.server_address[1]) if httpd is not None else None

    @property
    def url(self) -> str | None:
        port = self.port
        return f"http://{self._host}:{port}" if port is not None else None

    @property
    def running(self) -> bool:
        return self._httpd is not None

    def start(self) -> int:
        with self._lock:
            if self._httpd is not None:
                return int(self._httpd.server_address[1])
            # Port 0: a fresh ephemeral port on every start, never reused across restarts.
            httpd = _ApprovalHTTPServer((self._host, 0), self)
            self._httpd = httpd
            self._thread = threading.Thread(
                target=httpd.serve_forever,
                kwargs={"poll_interval": 0.2},
                name="cowork-approval-server",
                daemon=True,
            )
            self._thread.start()
            port = int(httpd.server_address[1])
        LOGGER.info("Approval server listening on %s:%d", self._host, port)
        return port

    def close(self) -> None:
        with self._lock:
            httpd = self._httpd
            thread = self._thread
            self._httpd = None
            self._thread = None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if thread is not None:
            thread.join(timeout=2.0)
        LOGGER.info("Approval server stopped")

    def handle_respond(self, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        approval_id, approved = parse_respond_payload(payload)
        applied = self._registry.resolve(approval_id, approved)
        if not applied:
            LOGGER.info("No pending approval for id %s; acknowledged without change", approval_id)
        return 200, {"ok": True}

    def handle_approval(self, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        tool_name = payload.get("tool_name")
        if not isinstance(tool_name, str) or not tool_name:
            raise BadRequest("Missing or invalid 'tool_name'.")
        tool_input_raw = payload.get("tool_input")
        tool_input = tool_input_raw if isinstance(tool_input_raw, dict) else {}

        if is_auto_approved(tool_name, tool_input):
            return 200, {"approved": True}

        turn_id = self._active_turn()
        if turn_id is None:
            LOGGER.warning("Approval request for %s outside an active turn; denying", tool_name)
            return 200, {"approved": False}

        request = self._build_request(tool_name, tool_input, payload.get("tool_use_id"), turn_id=turn_id)
        try:
            waiter = self._registry.register(request.approval_id, turn_id=turn_id)
        except ApprovalRegistryError:
            request = replace(request, approval_id=new_id("appr"))
            waiter = self._registry.register(request.approval_id, turn_id=turn_id)

        # The turn may have ended between the check above and registration; its
        # force-deny pass could not see this entry yet.
        if self._active_turn() != turn_id:
            self._registry.cancel(request.approval_id)
            LOGGER.info("Turn %s ended before approval %s opened; denied", turn_id, request.approval_id)
            return 200, {"approved": False, "id": request.approval_id}

        if self._on_request is not None:
            try:
                self._on_request(request)
            except Exception:
                LOGGER.exception("Approval request callback failed for %s", request.approval_id)

        LOGGER.info("Waiting for approval: %s (%s)", tool_name, request.approval_id)
        result = self._registry.wait(waiter, self._timeout_s)
        if self._on_resolved is not None:
            try:
                self._on_resolved(request, result)
            except Exception:
                LOGGER.exception("Approval resolved callback failed for %s", request.approval_id)
        if result.outcome is ApprovalOutcome.TIMED_OUT:
            LOGGER.warning("Approval timeout for %s; denied", request.approval_id)
        return 200, {"approved": result.approved, "id": request.approval_id}

    def _build_request(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_use_id: Any,
        *,
        turn_id: str | None,
    ) -> ApprovalRequest:
        approval_id = tool_use_id if isinstance(tool_use_id, str) and tool_use_id else None
        if approval_id is None or self._registry.is_known(approval_id):
            approval_id = new_id("appr")
        described = describe_tool(tool_name, tool_input)
        return ApprovalRequest(
            approval_id=approval_id,
            tool_name=tool_name,
            description=described.description,
            raw_input=described.raw,
            details=build_details(tool_name, tool_input),
            tool_input=dict(tool_input),
            turn_id=turn_id,
        )

