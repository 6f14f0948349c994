from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path

import pytest

BASE_TOTAL_SUPPLY = 2_050_000_000_000_000_000_000_000_000_000_000

BASE_CONFIG = {
    "genesis_file": "genesis.json",
    "rpc": {
        "addr": "0.0.0.0:3030",
        "limits_config": {"json_payload_max_size": 10485760},
    },
    "network": {"addr": "0.0.0.0:24567", "boot_nodes": ""},
    "store": {"path": "data", "max_open_files": 10000},
    "tracked_shards": [0],
}

BASE_GENESIS = {
    "chain_id": "test-chain-fake",
    "epoch_length": 60,
    "total_supply": str(BASE_TOTAL_SUPPLY),
    "validators": [
        {
            "account_id": "test.near",
            "public_key": "ed25519:9BmAFNRTa5mRRXpSAm6MxSEeqRASDGNh2FuuwZ4gyxTw",
            "amount": "50000000000000000000000000000000",
        }
    ],
    "records": [
        {
            "Account": {
                "account_id": "test.near",
                "account": {
                    "amount": "2000000000000000000000000000000000",
                    "locked": "50000000000000000000000000000000",
                    "code_hash": "11111111111111111111111111111111",
                    "storage_usage": 0,
                },
            }
        }
    ],
}


def write_base_home(home: Path) -> Path:
    """Lay out config.json and genesis.json the way `init` leaves them."""
    home.mkdir(parents=True, exist_ok=True)
    (home / "config.json").write_text(json.dumps(BASE_CONFIG))
    (home / "genesis.json").write_text(json.dumps(BASE_GENESIS))
    return home


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def run_records(state_dir: Path, kind: str = "run") -> list[dict]:
    return [json.loads(p.read_text()) for p in sorted(state_dir.glob(f"{kind}-*.json"))]


_FAKE_NODE_SCRIPT = """
import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

BASE_CONFIG = {base_config}
BASE_GENESIS = {base_genesis}
STATE_DIR = os.environ.get("FAKE_NODE_STATE_DIR")


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def flag(args, name):
    if name not in args or args.index(name) + 1 >= len(args):
        die(f"missing {{name}}")
    return args[args.index(name) + 1]


def record(kind, payload):
    if not STATE_DIR:
        return
    os.makedirs(STATE_DIR, exist_ok=True)
    path = os.path.join(STATE_DIR, f"{{kind}}-{{os.getpid()}}.json")
    with open(path, "w") as f:
        json.dump(payload, f)


def handle_init(home):
    if os.environ.get("FAKE_NODE_INIT_FAIL"):
        die("init: refusing to initialise " + home, code=4)
    if os.environ.get("FAKE_NODE_INIT_HANG"):
        record("init", {{"pid": os.getpid(), "home": home}})
        while True:
            time.sleep(60)
    os.makedirs(home, exist_ok=True)
    with open(os.path.join(home, "config.json"), "w") as f:
        json.dump(BASE_CONFIG, f)
    with open(os.path.join(home, "genesis.json"), "w") as f:
        json.dump(BASE_GENESIS, f)
    print("initialised " + home)
    return 0


def handle_run(home, args):
    rpc_addr = flag(args, "--rpc-addr")
    net_addr = flag(args, "--network-addr")
    record(
        "run",
        {{
            "pid": os.getpid(),
            "home": home,
            "rpc_addr": rpc_addr,
            "net_addr": net_addr,
            "rust_log": os.environ.get("RUST_LOG"),
            "rust_log_style": os.environ.get("RUST_LOG_STYLE"),
        }},
    )

    mode = os.environ.get("FAKE_NODE_MODE", "serve")
    if mode == "hang":
        while True:
            time.sleep(60)
    if mode == "crash":
        die("node crashed", code=3)

    with open(os.path.join(home, "genesis.json")) as f:
        chain_id = json.load(f).get("chain_id")

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/status":
                self.send_response(404)
                self.end_headers()
                return
            body = json.dumps({{"chain_id": chain_id, "version": {{"version": "fake"}}}}).encode()
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    host, port = rpc_addr.rsplit(":", 1)
    HTTPServer((host, int(port)), Handler).serve_forever()
    return 0


def main():
    argv = sys.argv[1:]
    if len(argv) < 3 or argv[0] != "--home":
        die("usage: --home <dir> <init|run> ...")
    home, cmd, rest = argv[1], argv[2], argv[3:]
    if cmd == "init":
        return handle_init(home)
    if cmd == "run":
        return handle_run(home, rest)
    die(f"unsupported command: {{cmd}}")


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def fake_node(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    binary = bin_dir / "near-sandbox"
    script = _FAKE_NODE_SCRIPT.format(
        base_config=repr(BASE_CONFIG), base_genesis=repr(BASE_GENESIS)
    )
    binary.write_text(f"#!{sys.executable}\n" + script)
    binary.chmod(0o755)

    state_dir = tmp_path / "state"
    state_dir.mkdir()
    lock_dir = tmp_path / "locks"
    lock_dir.mkdir()
    scratch = tmp_path / "scratch"
    scratch.mkdir()

    monkeypatch.setenv("FAKE_NODE_STATE_DIR", str(state_dir))
    monkeypatch.delenv("FAKE_NODE_MODE", raising=False)
    monkeypatch.delenv("FAKE_NODE_INIT_FAIL", raising=False)
    monkeypatch.delenv("FAKE_NODE_INIT_HANG", raising=False)
    # Sandbox home directories land here so leftovers are easy to spot.
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))

    return {
        "tmp_path": tmp_path,
        "binary": binary,
        "state_dir": state_dir,
        "lock_dir": lock_dir,
        "scratch": scratch,
    }


@pytest.fixture
def settings(fake_node):
    import near_sandbox as ns

    return ns.SandboxSettings(
        binary_path=str(fake_node["binary"]),
        rpc_timeout=10.0,
        poll_interval=0.05,
        lock_dir=str(fake_node["lock_dir"]),
    )
