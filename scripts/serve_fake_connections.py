import json
import random
import time
import uuid
from http.server import BaseHTTPRequestHandler, HTTPServer

HOSTS = ["v22.lscache6.googlevideo.com", "api.github.com", "", "cdn.steamcontent.com"]


class State:
    def __init__(self):
        self.conns = {}

    def tick(self):
        # Close a few, open a few, grow the counters of the rest.
        for cid in list(self.conns):
            if random.random() < 0.05:
                del self.conns[cid]
        for _ in range(random.randint(0, 3)):
            cid = str(uuid.uuid4())
            self.conns[cid] = {
                "id": cid,
                "metadata": {
                    "network": "tcp",
                    "sourceIP": "192.168.1.10",
                    "host": random.choice(HOSTS),
                    "remoteDestination": "203.0.113.7:443",
                },
                "upload": 0,
                "download": 0,
                "start": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "chains": ["proxy-hk", "DIRECT"],
                "rule": "Match",
                "rulePayload": "",
            }
        for c in self.conns.values():
            c["upload"] += random.randint(0, 2000)
            c["download"] += random.randint(0, 20000)
        return {"connections": list(self.conns.values())}


STATE = State()


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = json.dumps(STATE.tick()).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def main():
    host = "127.0.0.1"
    port = 9090
    print(f"fake controller on http://{host}:{port}/connections")
    HTTPServer((host, port), Handler).serve_forever()


if __name__ == "__main__":
    main()
