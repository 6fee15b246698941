import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from guardian_gateway.config import GuardConfig
from guardian_gateway.evaluator import (
    Decision,
    HeuristicClassifier,
    HttpClassifier,
    build_classifier,
)


def test_destructive_command_blocks_before_scoring():
    result = HeuristicClassifier().evaluate("exec", {"command": "rm -rf /"})
    assert result.decision == Decision.BLOCK
    assert "root filesystem" in result.reason
    assert result.score is None


def test_score_at_threshold_escalates():
    result = HeuristicClassifier(threshold=36).evaluate("exec", {"command": "shutdown -h now"})
    assert result.decision == Decision.ESCALATE
    assert result.score == 36
    assert result.reason.startswith("Action: exec | Risk score: 36 (clarity=4, stakes=9)")


def test_score_below_threshold_allows():
    result = HeuristicClassifier(threshold=37).evaluate("exec", {"command": "shutdown -h now"})
    assert result.decision == Decision.ALLOW
    assert result.reason == ""
    assert (result.clarity, result.stakes) == (4, 9)


def test_unknown_tool_with_no_signals_is_allowed():
    result = HeuristicClassifier().evaluate("weather_lookup", {"city": "Lisbon"})
    assert result.decision == Decision.ALLOW
    assert result.score == 1


def test_result_to_dict():
    d = HeuristicClassifier().evaluate("exec", {"command": "ls"}).to_dict()
    assert d == {"decision": "allow", "reason": "", "clarity": 4, "stakes": 4, "score": 16}


class _ClassifierHandler(BaseHTTPRequestHandler):
    response = {"decision": "allow"}
    status = 200
    last_body = None

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        _ClassifierHandler.last_body = self.rfile.read(length) if length else b""
        payload = _ClassifierHandler.response
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

        self.send_response(_ClassifierHandler.status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def classifier_server():
    _ClassifierHandler.response = {"decision": "allow"}
    _ClassifierHandler.status = 200
    _ClassifierHandler.last_body = None

    httpd = HTTPServer(("127.0.0.1", 0), _ClassifierHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}/v1/data/guardian/decision"
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


def test_http_classifier_sends_opa_input(classifier_server):
    _ClassifierHandler.response = {"result": {"decision": "escalate", "reason": "remote says ask", "clarity": 5, "stakes": 8}}

    result = HttpClassifier(url=classifier_server, timeout_seconds=2).evaluate("cron", {"action": "add"})

    assert result.decision == Decision.ESCALATE
    assert result.reason == "remote says ask"
    assert result.score == 40
    assert json.loads(_ClassifierHandler.last_body) == {"input": {"toolName": "cron", "params": {"action": "add"}}}


def test_http_classifier_accepts_direct_decision_object(classifier_server):
    _ClassifierHandler.response = {"decision": "ALLOW"}
    result = HttpClassifier(url=classifier_server, timeout_seconds=2).evaluate("exec", {"command": "ls"})
    assert result.decision == Decision.ALLOW


def test_http_classifier_cannot_override_intrinsic_block(classifier_server):
    _ClassifierHandler.response = {"decision": "allow"}
    result = HttpClassifier(url=classifier_server, timeout_seconds=2).evaluate("exec", {"command": "rm -rf /"})
    assert result.decision == Decision.BLOCK
    # The remote detector is never consulted.
    assert _ClassifierHandler.last_body is None


@pytest.mark.parametrize(
    "status,response,prefix",
    [
        (500, {"decision": "allow"}, "CLASSIFIER_HTTP_ERROR"),
        (200, b"not json", "CLASSIFIER_HTTP_ERROR"),
        (200, ["allow"], "CLASSIFIER_INVALID_RESPONSE"),
        (200, {"decision": "maybe"}, "CLASSIFIER_INVALID_RESPONSE"),
        (200, {"decision": "block", "reason": 42}, "CLASSIFIER_INVALID_RESPONSE"),
    ],
)
def test_http_classifier_fails_closed_to_escalate(classifier_server, status, response, prefix):
    _ClassifierHandler.status = status
    _ClassifierHandler.response = response
    result = HttpClassifier(url=classifier_server, timeout_seconds=2).evaluate("exec", {"command": "ls"})
    assert result.decision == Decision.ESCALATE
    assert result.reason.startswith(prefix)


def test_http_classifier_unreachable_escalates():
    result = HttpClassifier(url="http://127.0.0.1:9/", timeout_seconds=0.5).evaluate("exec", {"command": "ls"})
    assert result.decision == Decision.ESCALATE
    assert result.reason.startswith("CLASSIFIER_HTTP_ERROR")


def test_build_classifier_from_config():
    assert isinstance(build_classifier(GuardConfig()), HeuristicClassifier)
    assert build_classifier(GuardConfig(escalation_threshold=50)).threshold == 50

    remote = build_classifier(GuardConfig(classifier="http", classifier_url="http://detector:8181/"))
    assert isinstance(remote, HttpClassifier)
    assert remote.url == "http://detector:8181/"

    # No URL: every evaluation escalates.
    broken = build_classifier(GuardConfig(classifier="http"))
    assert broken.evaluate("exec", {"command": "ls"}).decision == Decision.ESCALATE
