import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

USER = "admin"
PASSWORD = "secret"


def fresh_state():
    return {
        "token": "TKN-1",
        "reject_all": False,
        "calls": {"login": 0, "logout": 0, "version": 0, "task_list": 0, "task_detail": 0},
        "filters": [],
        "blueprints": ["bp-1", "bp-2"],
        # tasks[bp][task_id] = list of statuses; each list poll advances one step
        "tasks": {},
        "task_details": {},
        "tags": {"tag-1": {"id": "tag-1", "label": "leaf", "description": "leaf switches"}},
        "async_task": {"task_id": "t-sz", "api_response": {"id": "sz-1"}},
    }


class _Apstra(BaseHTTPRequestHandler):
    state = fresh_state()

    protocol_version = "HTTP/1.1"

    def _send_json(self, status: int, obj) -> None:
        raw = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _send_text(self, status: int, text: str) -> None:
        raw = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _body(self):
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b""
        return json.loads(raw.decode("utf-8")) if raw else None

    def _auth_ok(self) -> bool:
        st = _Apstra.state
        return not st["reject_all"] and self.headers.get("AuthToken") == st["token"]

    def _parsed(self):
        parsed = urlparse(self.path)
        return parsed.path, parse_qs(parsed.query)

    # ---- handlers ----

    def do_POST(self):  # noqa: N802
        st = _Apstra.state
        path, query = self._parsed()
        body = self._body()

        if path == "/api/aaa/login":
            st["calls"]["login"] += 1
            if body == {"username": USER, "password": PASSWORD}:
                self._send_json(201, {"token": st["token"], "id": "user-1"})
            else:
                self._send_json(401, {"errors": "invalid credentials"})
            return

        if not self._auth_ok():
            self._send_json(401, {"errors": "unauthorized"})
            return

        if path == "/api/aaa/logout":
            st["calls"]["logout"] += 1
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path == "/api/design/tags":
            tag_id = f"tag-{len(st['tags']) + 1}"
            st["tags"][tag_id] = {"id": tag_id, **body}
            self._send_json(201, {"id": tag_id})
        elif re.fullmatch(r"/api/blueprints/[^/]+/security-zones", path):
            bp_id = path.split("/")[3]
            if query.get("async") == ["full"]:
                tid = st["async_task"]["task_id"]
                st["tasks"].setdefault(bp_id, {}).setdefault(tid, ["in_progress", "succeeded"])
                self._send_json(202, {"task_id": tid})
            else:
                self._send_json(201, {"id": "sz-sync"})
        else:
            self._send_json(404, {"errors": "not found"})

    def do_GET(self):  # noqa: N802
        st = _Apstra.state
        path, query = self._parsed()

        if path == "/notjson":
            self._send_text(200, "definitely not json")
            return
        if not self._auth_ok():
            self._send_json(401, {"errors": "unauthorized"})
            return

        if path == "/api/versions/api":
            st["calls"]["version"] += 1
            self._send_json(200, {"version": "4.2.0"})
        elif path == "/api/blueprints":
            self._send_json(200, {"items": [{"id": b, "label": b.upper()} for b in st["blueprints"]]})
        elif path == "/broken":
            self._send_json(500, {"errors": "boom"})
        elif path == "/api/design/tags":
            self._send_json(200, {"items": list(st["tags"].values())})
        elif path.startswith("/api/design/tags/"):
            tag = st["tags"].get(path.rsplit("/", 1)[1])
            self._send_json(200 if tag else 404, tag or {"errors": "not found"})
        elif re.fullmatch(r"/api/blueprints/[^/]+/tasks/", path):
            st["calls"]["task_list"] += 1
            bp_id = path.split("/")[3]
            flt = query.get("filter", [""])[0]
            st["filters"].append(flt)
            wanted = re.findall(r"'([^']*)'", flt)
            items = []
            for tid in wanted:
                seq = st["tasks"].get(bp_id, {}).get(tid)
                if not seq:
                    continue
                items.append({"id": tid, "status": seq[0]})
                if len(seq) > 1:
                    seq.pop(0)
            self._send_json(200, {"items": items})
        elif re.fullmatch(r"/api/blueprints/[^/]+/tasks/[^/]+", path):
            st["calls"]["task_detail"] += 1
            _, _, _, bp_id, _, tid = path.split("/")
            seq = st["tasks"].get(bp_id, {}).get(tid)
            if not seq:
                self._send_json(404, {"errors": "no such task"})
                return
            detail = st["task_details"].get(tid) or {
                "api_response": st["async_task"]["api_response"],
                "config_blueprint_version": 3,
                "errors": None,
                "error_code": 0,
            }
            self._send_json(200, {"id": tid, "status": seq[0], "type": "blueprint", "detailed_status": detail})
        elif path.startswith("/api/blueprints/"):
            bp_id = path.split("/")[3]
            if bp_id in st["blueprints"]:
                self._send_json(200, {"id": bp_id, "label": bp_id.upper()})
            else:
                self._send_json(404, {"errors": "not found"})
        else:
            self._send_json(404, {"errors": "not found"})

    def do_PUT(self):  # noqa: N802
        st = _Apstra.state
        path, _ = self._parsed()
        body = self._body()
        if not self._auth_ok():
            self._send_json(401, {"errors": "unauthorized"})
            return
        tag_id = path.rsplit("/", 1)[1]
        if path.startswith("/api/design/tags/") and tag_id in st["tags"]:
            st["tags"][tag_id].update(body)
            self.send_response(204)
            self.send_header("Content-Length", "0")
            self.end_headers()
        else:
            self._send_json(404, {"errors": "not found"})

    def do_DELETE(self):  # noqa: N802
        st = _Apstra.state
        path, _ = self._parsed()
        if not self._auth_ok():
            self._send_json(401, {"errors": "unauthorized"})
            return
        item_id = path.rsplit("/", 1)[1]
        if path.startswith("/api/design/tags/") and st["tags"].pop(item_id, None):
            self.send_response(204)
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path.startswith("/api/blueprints/") and item_id in st["blueprints"]:
            st["blueprints"].remove(item_id)
            self._send_json(202, {})
        else:
            self._send_json(404, {"errors": "not found"})

    def log_message(self, fmt, *args):  # silence server logs during tests
        return


@pytest.fixture()
def apstra_server():
    """Yield (base_url, state) for an in-process fake Apstra server."""
    _Apstra.state = fresh_state()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Apstra)
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://{host}:{port}", _Apstra.state
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)
