"""Minimal line-delimited JSON-RPC capability server used by transport tests.

Run as ``python fake_server.py``.  Tools:

- ``echo``:    returns its arguments
- ``env``:     returns the value of environment variable ``arguments.key``
- ``garbage``: writes a malformed line before replying
- ``notify``:  emits a notification before replying
- ``big``:     writes a line of ``arguments.size`` bytes before replying
- ``hang``:    never replies
- ``exit``:    exits immediately with ``arguments.code`` (no reply)
"""

import json
import os
import sys

MANIFEST = {
    "tools": [
        {"name": "echo", "description": "Return the arguments", "inputSchema": {"type": "object"}},
        {"name": "env", "description": "Read an environment variable"},
        {"name": "garbage", "description": "Emit a malformed line"},
        {"name": "notify", "description": "Emit a notification"},
        {"name": "big", "description": "Emit an oversized line"},
        {"name": "hang", "description": "Never reply"},
        {"name": "exit", "description": "Exit with a code"},
    ],
    "resources": [{"uri": "mem://greeting", "name": "greeting", "mimeType": "text/plain"}],
    "prompts": [],
}


def write(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def handle(message):
    method = message.get("method")
    request_id = message.get("id")
    params = message.get("params") or {}

    if request_id is None:
        return

    if method == "initialize":
        write({"jsonrpc": "2.0", "id": request_id, "result": MANIFEST})
        return

    if method == "resources/read":
        write({"jsonrpc": "2.0", "id": request_id, "result": {"contents": [{"uri": params.get("uri"), "text": "hello"}]}})
        return

    if method != "tools/call":
        write({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method not found: {method}"}})
        return

    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "exit":
        sys.exit(int(arguments.get("code", 0)))
    if name == "hang":
        return
    if name == "garbage":
        sys.stdout.write("this is not json\n")
        sys.stdout.flush()
    if name == "big":
        sys.stdout.write("x" * int(arguments.get("size", 0)) + "\n")
        sys.stdout.flush()
    if name == "notify":
        write({"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}})
    if name == "env":
        write({"jsonrpc": "2.0", "id": request_id, "result": {"value": os.environ.get(arguments.get("key", ""))}})
        return
    write({"jsonrpc": "2.0", "id": request_id, "result": {"echo": arguments}})


def main():
    sys.stderr.write("fake server ready\n")
    sys.stderr.flush()
    for line in sys.stdin:
        line = line.strip()
        if line:
            handle(json.loads(line))


if __name__ == "__main__":
    main()
