#!/usr/bin/env python3
"""Ephemeral NEAR sandbox nodes for integration tests, plus an MCP server to drive them."""

import asyncio
import contextlib
import fcntl
import json
import logging
import os
import re
import secrets
import shutil
import socket
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Any, Mapping, Optional

import base58
import httpx
import json_merge_patch
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from mcp.server.fastmcp import FastMCP

log = logging.getLogger("near-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

DEFAULT_NEAR_SANDBOX_VERSION = "2.6.5"
DEFAULT_BINARY_NAME = "near-sandbox"

# Must be an IP address: the node expects a socket address for --network-addr.
DEFAULT_RPC_HOST = "127.0.0.1"

DEFAULT_MAX_PAYLOAD_SIZE = 1024 * 1024 * 1024  # 1 GiB
DEFAULT_MAX_OPEN_FILES = 3000
DEFAULT_RPC_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.5

# Upper bound on re-picks when an OS-assigned port is locked by someone else
MAX_PORT_ATTEMPTS = 32
PORT_LOCK_PREFIX = "near-sandbox-port"

# Seconds to wait for a killed node to be reaped
STOP_TIMEOUT = 5.0

# nearcore ignores a bare default level, so the noisy targets are listed.
SUPPRESSED_LOG_FILTER = "near=error,stats=error,network=error"

CONFIG_FILE = "config.json"
GENESIS_FILE = "genesis.json"

DEFAULT_GENESIS_ACCOUNT = "sandbox"
DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY = (
    "ed25519:3tgdk2wPraJzT4nsTuf86UX41xgPNk3MHnq8epARMdBNs29AFEztAuaQ7iHddDfXG9F2RzV1XNQYgJyAyoW51UBB"
)
DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY = "ed25519:5BGSaf6YjVm7565VzWQHNxoyEjwr3jUpRJSGjREvU9dB"
DEFAULT_GENESIS_ACCOUNT_BALANCE = 10_000 * 10**24

# Code hash of an account without a deployed contract
EMPTY_CODE_HASH = "11111111111111111111111111111111"
GENESIS_STORAGE_USAGE = 182

U128_MAX = 2**128 - 1

_ACCOUNT_ID_RE = re.compile(r"^(([a-z\d]+[\-_])*[a-z\d]+\.)*([a-z\d]+[\-_])*[a-z\d]+$")
_SANDBOX_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


# ── Errors ───────────────────────────────────────────────────────────────


class SandboxError(Exception):
    pass


class SandboxConfigError(SandboxError):
    pass


class ConfigFileError(SandboxConfigError):
    def __init__(self, path: str, error: OSError):
        super().__init__(f"Error while performing r/w on {path}: {error}")
        self.path = path
        self.error = error


class ConfigParseError(SandboxConfigError):
    def __init__(self, path: str, error: Exception):
        super().__init__(f"Error while handling JSON in {path}: {error}")
        self.path = path
        self.error = error


class EnvParseError(SandboxConfigError):
    def __init__(self, name: str, value: str):
        super().__init__(
            f"Invalid environment variable {name}={value!r}: expected a non-negative integer"
        )
        self.name = name
        self.value = value


class GenesisFormatError(SandboxConfigError):
    """genesis.json was not produced by a compatible `init`."""


class DuplicateAccountError(SandboxConfigError):
    def __init__(self, account_id: str):
        super().__init__(f"Genesis account '{account_id}' is listed more than once")
        self.account_id = account_id


class TcpError(SandboxError):
    def __init__(self, message: str, port: int, error: Optional[OSError] = None):
        super().__init__(message)
        self.port = port
        self.error = error


class PortBindError(TcpError):
    def __init__(self, port: int, error: OSError):
        super().__init__(
            f"Error while binding listener to port {port}: {error}", port, error
        )


class LocalAddrError(TcpError):
    def __init__(self, port: int, error: OSError):
        super().__init__(f"Error while getting local address: {error}", port, error)


class PortLockError(TcpError):
    def __init__(self, port: int, error: OSError):
        super().__init__(f"Error while locking port {port}: {error}", port, error)


class PortExhaustedError(TcpError):
    def __init__(self, attempts: int):
        super().__init__(f"No lockable port found after {attempts} attempts", 0)
        self.attempts = attempts


class ProcessError(SandboxError):
    pass


class BinaryNotFoundError(ProcessError):
    pass


class SpawnError(ProcessError):
    def __init__(self, executable: str, error: OSError):
        super().__init__(f"Could not start {executable}: {error}")
        self.executable = executable
        self.error = error


class InitError(ProcessError):
    def __init__(self, returncode: int, stdout: str, stderr: str):
        super().__init__(
            f"sandbox init exited with code {returncode}: {stderr.strip() or stdout.strip()}"
        )
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SandboxTimeoutError(SandboxError):
    def __init__(self, rpc_addr: str, timeout: float):
        super().__init__(f"Sandbox RPC at {rpc_addr} not ready after {timeout}s")
        self.rpc_addr = rpc_addr
        self.timeout = timeout


# ── Genesis accounts ─────────────────────────────────────────────────────


def random_account_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    num = 10_000_000_000_000 + secrets.randbelow(90_000_000_000_000)
    return f"sandbox-genesis-dev-acc-{stamp}-{num}"


def random_key_pair() -> tuple[str, str]:
    """Return a fresh `(private_key, public_key)` pair in NEAR's ed25519 string form.

    The private key encodes the 64-byte seed + public key, matching what
    near-cli and nearcore write to key files.
    """
    signing_key = Ed25519PrivateKey.generate()
    seed = signing_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public = signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    private_key = "ed25519:" + base58.b58encode(seed + public).decode()
    public_key = "ed25519:" + base58.b58encode(public).decode()
    return private_key, public_key


def _valid_account_id(account_id: str) -> bool:
    return 2 <= len(account_id) <= 64 and bool(_ACCOUNT_ID_RE.match(account_id))


@dataclass(frozen=True)
class GenesisAccount:
    """A funded account injected into genesis.json and written as a key file."""

    account_id: str
    public_key: str
    private_key: str
    balance: int = DEFAULT_GENESIS_ACCOUNT_BALANCE

    def __post_init__(self):
        # The id doubles as a key file name inside the home directory.
        if not isinstance(self.account_id, str) or not _valid_account_id(self.account_id):
            raise ValueError(f"Invalid account id: {self.account_id!r}")
        if (
            isinstance(self.balance, bool)
            or not isinstance(self.balance, int)
            or not 0 <= self.balance <= U128_MAX
        ):
            raise ValueError(f"Balance must be an unsigned 128-bit integer: {self.balance!r}")

    @classmethod
    def default(cls) -> "GenesisAccount":
        return cls(
            account_id=DEFAULT_GENESIS_ACCOUNT,
            public_key=DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY,
            private_key=DEFAULT_GENESIS_ACCOUNT_PRIVATE_KEY,
            balance=DEFAULT_GENESIS_ACCOUNT_BALANCE,
        )

    @classmethod
    def generate_random(cls, balance: int = DEFAULT_GENESIS_ACCOUNT_BALANCE) -> "GenesisAccount":
        private_key, public_key = random_key_pair()
        return cls(
            account_id=random_account_id(),
            public_key=public_key,
            private_key=private_key,
            balance=balance,
        )

    def to_key_file(self) -> dict:
        return {
            "account_id": self.account_id,
            "public_key": self.public_key,
            "private_key": self.private_key,
        }


@dataclass
class SandboxConfig:
    """Caller overrides for one sandbox. Unset fields fall back to computed defaults."""

    rpc_port: Optional[int] = None
    net_port: Optional[int] = None
    # Maximum payload size for JSON RPC requests in bytes
    max_payload_size: Optional[int] = None
    max_open_files: Optional[int] = None
    # Merged on top of config.json
    additional_config: Optional[dict] = None
    # Merged on top of genesis.json, after the accounts are injected
    additional_genesis: Optional[dict] = None
    additional_accounts: list[GenesisAccount] = field(default_factory=list)


# ── Settings ─────────────────────────────────────────────────────────────


def _parse_env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = env.get(name)
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        raise EnvParseError(name, raw) from None
    if value < 0:
        raise EnvParseError(name, raw)
    return value


@dataclass(frozen=True)
class SandboxSettings:
    """Process-level knobs, resolved once from the environment by `from_env`."""

    binary_path: Optional[str] = None
    max_payload_size: Optional[int] = None
    max_open_files: Optional[int] = None
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    # Forwarded to the node as RUST_LOG / RUST_LOG_STYLE
    log_filter: Optional[str] = SUPPRESSED_LOG_FILTER
    log_style: Optional[str] = None
    # Where port lock files live; None means the system temp directory
    lock_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SandboxSettings":
        """Read every environment variable the sandbox honours.

        Node logs are off unless NEAR_ENABLE_SANDBOX_LOG is set to something
        other than "0"; then NEAR_SANDBOX_LOG is passed through as RUST_LOG so
        it does not collide with the caller's own RUST_LOG targets.
        """
        env = os.environ if environ is None else environ

        enable_log = env.get("NEAR_ENABLE_SANDBOX_LOG")
        if enable_log is not None and enable_log != "0":
            log_filter = env.get("NEAR_SANDBOX_LOG")
        else:
            log_filter = SUPPRESSED_LOG_FILTER

        timeout = _parse_env_int(env, "NEAR_RPC_TIMEOUT_SECS")
        return cls(
            binary_path=env.get("NEAR_SANDBOX_BIN_PATH") or None,
            max_payload_size=_parse_env_int(env, "NEAR_SANDBOX_MAX_PAYLOAD_SIZE"),
            max_open_files=_parse_env_int(env, "NEAR_SANDBOX_MAX_FILES"),
            rpc_timeout=float(timeout) if timeout is not None else DEFAULT_RPC_TIMEOUT,
            log_filter=log_filter,
            log_style=env.get("NEAR_SANDBOX_LOG_STYLE"),
        )


# ── Port reservation ─────────────────────────────────────────────────────


def local_addr(port: int) -> str:
    return f"{DEFAULT_RPC_HOST}:{port}"


def lock_path_for(port: int, lock_dir: Optional[str] = None) -> str:
    return os.path.join(lock_dir or tempfile.gettempdir(), f"{PORT_LOCK_PREFIX}{port}.lock")


class PortLock:
    """An exclusive advisory lock on a port number's lock file.

    Held from reservation until the node owning the port is torn down.
    """

    def __init__(self, port: int, handle: IO[str], path: str):
        self.port = port
        self.path = path
        self._handle: Optional[IO[str]] = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> "PortLock":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "held" if self.held else "released"
        return f"PortLock(port={self.port}, {state})"


def _bind_loopback(port: int) -> int:
    """Bind `port` on loopback just long enough to learn its number."""
    # Loopback, never 0.0.0.0: a wildcard bind pops firewall prompts on macOS.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # TIME_WAIT leftovers from a killed node must not block a restart;
        # a live listener still fails the bind.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((DEFAULT_RPC_HOST, port))
        except OSError as e:
            raise PortBindError(port, e) from e
        try:
            return sock.getsockname()[1]
        except OSError as e:
            raise LocalAddrError(port, e) from e


def pick_unused_port() -> int:
    """Ask the OS for an unused loopback port."""
    return _bind_loopback(0)


def _try_lock(port: int, lock_dir: Optional[str]) -> Optional[PortLock]:
    """Lock the port's file without blocking. None means someone else holds it."""
    path = lock_path_for(port, lock_dir)
    try:
        handle = open(path, "w")
    except OSError as e:
        raise PortLockError(port, e) from e
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    except OSError as e:
        handle.close()
        raise PortLockError(port, e) from e
    return PortLock(port, handle, path)


def acquire_unused_port(lock_dir: Optional[str] = None) -> PortLock:
    """Pick an OS-assigned port and lock it, re-picking while the lock is contended."""
    for attempt in range(1, MAX_PORT_ATTEMPTS + 1):
        port = pick_unused_port()
        lock = _try_lock(port, lock_dir)
        if lock is not None:
            log.debug(f"Locked port {port} (attempt {attempt})")
            return lock
        log.debug(f"Port {port} is locked by another sandbox, picking again")
    raise PortExhaustedError(MAX_PORT_ATTEMPTS)


def try_acquire_specific_port(port: int, lock_dir: Optional[str] = None) -> PortLock:
    """Claim a caller-chosen port. Any failure is final."""
    port = _bind_loopback(port)
    lock = _try_lock(port, lock_dir)
    if lock is None:
        held = BlockingIOError(f"{lock_path_for(port, lock_dir)} is held by another process")
        raise PortLockError(port, held)
    return lock


def acquire_or_lock_port(requested: Optional[int], lock_dir: Optional[str] = None) -> PortLock:
    if requested is None:
        return acquire_unused_port(lock_dir)
    return try_acquire_specific_port(requested, lock_dir)


# ── Config patching ──────────────────────────────────────────────────────
# nearcore's config and genesis schemas change between releases, so the
# files are patched as plain JSON instead of being modelled field by field.
# ─────────────────────────────────────────────────────────────────────────


def merge_patch(target: Any, patch: Any) -> Any:
    """Merge `patch` into `target` with JSON merge-patch semantics.

    Objects merge key by key, a None value removes the key, and anything
    else (scalars, arrays) replaces the target value. Use the returned
    value; `target` may or may not be modified.
    """
    return json_merge_patch.merge(target, patch)


def _read_json(path: str) -> Any:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigParseError(path, e) from e
    except OSError as e:
        raise ConfigFileError(path, e) from e


def _write_json_atomic(path: str, value: Any) -> None:
    """Replace `path` with `value` as JSON (tempfile + fsync + os.replace)."""
    directory = os.path.dirname(path) or "."
    try:
        fd = tempfile.NamedTemporaryFile("w", dir=directory, delete=False, suffix=".tmp")
        try:
            json.dump(value, fd)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            if os.path.exists(path):
                shutil.copymode(path, fd.name)
            os.replace(fd.name, path)
        except BaseException:
            fd.close()
            try:
                os.unlink(fd.name)
            except OSError:
                pass
            raise
    except (TypeError, ValueError) as e:
        raise ConfigParseError(path, e) from e
    except OSError as e:
        raise ConfigFileError(path, e) from e


def _first_set(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None:
            return value
    return None


def overwrite_config(home_dir: str, patch: dict) -> None:
    """Merge `patch` into $home_dir/config.json and write it back."""
    path = os.path.join(home_dir, CONFIG_FILE)
    config = _read_json(path)
    _write_json_atomic(path, merge_patch(config, patch))


def apply_runtime_config(
    home_dir: str,
    config: SandboxConfig,
    settings: Optional[SandboxSettings] = None,
) -> None:
    """Set RPC payload and open-file limits, then the caller's extra config."""
    if settings is None:
        settings = SandboxSettings.from_env()

    max_payload_size = _first_set(
        config.max_payload_size, settings.max_payload_size, DEFAULT_MAX_PAYLOAD_SIZE
    )
    max_open_files = _first_set(
        config.max_open_files, settings.max_open_files, DEFAULT_MAX_OPEN_FILES
    )

    patch: dict = {
        "rpc": {
            "limits_config": {
                "json_payload_max_size": max_payload_size,
            },
        },
        "store": {
            "max_open_files": max_open_files,
        },
    }
    if config.additional_config is not None:
        patch = merge_patch(patch, config.additional_config)

    overwrite_config(home_dir, patch)


def _genesis_accounts(config: SandboxConfig) -> list[GenesisAccount]:
    accounts = [GenesisAccount.default(), *config.additional_accounts]
    seen: set[str] = set()
    for account in accounts:
        if account.account_id in seen:
            raise DuplicateAccountError(account.account_id)
        seen.add(account.account_id)
    return accounts


def _parse_total_supply(genesis: Any) -> int:
    if not isinstance(genesis, dict):
        raise GenesisFormatError("genesis.json is not a JSON object")
    if "total_supply" not in genesis:
        raise GenesisFormatError("genesis.json has no total_supply")
    raw = genesis["total_supply"]
    # Stored as a string: u128 balances overflow JSON numbers.
    if isinstance(raw, str) and raw.isascii() and raw.isdigit():
        return int(raw)
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
        return raw
    raise GenesisFormatError(f"total_supply is not a base-10 integer: {raw!r}")


def _account_records(account: GenesisAccount) -> list[dict]:
    return [
        {
            "Account": {
                "account_id": account.account_id,
                "account": {
                    "amount": str(account.balance),
                    "locked": "0",
                    "code_hash": EMPTY_CODE_HASH,
                    "storage_usage": GENESIS_STORAGE_USAGE,
                },
            }
        },
        {
            "AccessKey": {
                "account_id": account.account_id,
                "public_key": account.public_key,
                "access_key": {
                    "nonce": 0,
                    "permission": "FullAccess",
                },
            }
        },
    ]


def overwrite_genesis(
    home_dir: str, config: SandboxConfig, accounts: list[GenesisAccount]
) -> None:
    path = os.path.join(home_dir, GENESIS_FILE)
    genesis = _read_json(path)
    total_supply = _parse_total_supply(genesis)

    records = genesis.get("records")
    if not isinstance(records, list):
        raise GenesisFormatError("genesis.json has no records array")

    for account in accounts:
        total_supply += account.balance
        records.extend(_account_records(account))

    if total_supply > U128_MAX:
        raise GenesisFormatError(f"total_supply overflows u128: {total_supply}")

    genesis["total_supply"] = str(total_supply)
    genesis["records"] = records

    if config.additional_genesis is not None:
        genesis = merge_patch(genesis, config.additional_genesis)

    _write_json_atomic(path, genesis)


def save_account_keys(home_dir: str, accounts: list[GenesisAccount]) -> None:
    """Write $home_dir/<account_id>.json for every account."""
    for account in accounts:
        path = os.path.join(home_dir, f"{account.account_id}.json")
        try:
            with open(path, "w") as f:
                json.dump(account.to_key_file(), f)
                f.flush()
        except OSError as e:
            raise ConfigFileError(path, e) from e


def apply_genesis(home_dir: str, config: Optional[SandboxConfig] = None) -> list[GenesisAccount]:
    """Inject the default and extra accounts into genesis.json and write their key files.

    Returns the injected accounts, default account first.
    """
    if config is None:
        config = SandboxConfig()
    accounts = _genesis_accounts(config)
    overwrite_genesis(home_dir, config, accounts)
    save_account_keys(home_dir, accounts)
    return accounts


def set_sandbox_genesis(home_dir: str) -> list[GenesisAccount]:
    return apply_genesis(home_dir, SandboxConfig())


# ── Process launcher ─────────────────────────────────────────────────────


def ensure_sandbox_bin(
    settings: SandboxSettings, version: str = DEFAULT_NEAR_SANDBOX_VERSION
) -> str:
    """Locate the node binary. Downloading it is left to the installer."""
    if settings.binary_path:
        return settings.binary_path
    found = shutil.which(DEFAULT_BINARY_NAME)
    if found:
        return found
    raise BinaryNotFoundError(
        f"{DEFAULT_BINARY_NAME} {version} not found: "
        f"set NEAR_SANDBOX_BIN_PATH or put {DEFAULT_BINARY_NAME} on PATH"
    )


def log_vars(settings: SandboxSettings) -> dict[str, str]:
    env = {}
    if settings.log_filter:
        env["RUST_LOG"] = settings.log_filter
    if settings.log_style:
        env["RUST_LOG_STYLE"] = settings.log_style
    return env


class NodeProcess:
    """A spawned node binary."""

    def __init__(self, proc: asyncio.subprocess.Process, args: list[str]):
        self._proc = proc
        self.args = args

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def is_alive(self) -> bool:
        return self._proc.returncode is None

    def kill(self) -> None:
        """SIGKILL the node. A process that is already gone is not an error."""
        try:
            self._proc.kill()
        except OSError as e:
            log.debug(f"Kill of pid={self.pid} failed: {e}")

    async def wait(self) -> int:
        return await self._proc.wait()

    async def wait_with_output(self) -> tuple[int, str, str]:
        stdout, stderr = await self._proc.communicate()
        return (
            self._proc.returncode,
            (stdout or b"").decode(errors="replace"),
            (stderr or b"").decode(errors="replace"),
        )

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        self.kill()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(f"Node pid={self.pid} still running {timeout}s after SIGKILL")


async def spawn(
    executable: str,
    args: list[str],
    env_overrides: Optional[Mapping[str, str]] = None,
    capture_output: bool = False,
) -> NodeProcess:
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)
    # stdout is never inherited: under the MCP server it carries the protocol.
    out = asyncio.subprocess.PIPE if capture_output else asyncio.subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=out,
            stderr=asyncio.subprocess.PIPE if capture_output else None,
            env=env,
        )
    except OSError as e:
        raise SpawnError(executable, e) from e
    return NodeProcess(proc, [executable, *args])


async def init_home(
    home_dir: str,
    version: str = DEFAULT_NEAR_SANDBOX_VERSION,
    settings: Optional[SandboxSettings] = None,
) -> tuple[str, str]:
    """Run `init` into `home_dir` and return its (stdout, stderr)."""
    if settings is None:
        settings = SandboxSettings.from_env()
    binary = ensure_sandbox_bin(settings, version)
    node = await spawn(binary, ["--home", home_dir, "init"], log_vars(settings), capture_output=True)
    try:
        code, stdout, stderr = await node.wait_with_output()
    except BaseException:
        await node.stop()
        raise
    log.info(f"sandbox init: code={code} stdout={stdout.strip()!r} stderr={stderr.strip()!r}")
    if code != 0:
        raise InitError(code, stdout, stderr)
    return stdout, stderr


async def run_node(
    home_dir: str,
    rpc_port: int,
    net_port: int,
    version: str = DEFAULT_NEAR_SANDBOX_VERSION,
    settings: Optional[SandboxSettings] = None,
) -> NodeProcess:
    if settings is None:
        settings = SandboxSettings.from_env()
    binary = ensure_sandbox_bin(settings, version)
    args = [
        "--home",
        home_dir,
        "run",
        "--rpc-addr",
        local_addr(rpc_port),
        "--network-addr",
        local_addr(net_port),
    ]
    return await spawn(binary, args, log_vars(settings))


async def wait_until_ready(
    rpc_addr: str,
    timeout: float = DEFAULT_RPC_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Poll GET {rpc_addr}/status until anything answers or `timeout` runs out."""
    url = f"{rpc_addr}/status"
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    # trust_env=False: an HTTP(S)_PROXY must not intercept loopback probes.
    async with httpx.AsyncClient(timeout=max(interval, 1.0), trust_env=False) as client:
        while True:
            try:
                await client.get(url)
                return
            except httpx.TransportError as e:
                log.debug(f"{url} not ready: {e!r}")
            if loop.time() + interval > deadline:
                break
            await asyncio.sleep(interval)
    raise SandboxTimeoutError(rpc_addr, timeout)


# ── Sandbox ──────────────────────────────────────────────────────────────


class Sandbox:
    """A running sandbox node and everything it holds.

    Owns the temporary home directory, the RPC and network port locks and
    the node process. `stop()` releases all of them (`close()` does the
    same without awaiting the reap); `async with` and `running_sandbox()`
    make that automatic.
    """

    def __init__(
        self,
        home_dir: tempfile.TemporaryDirectory,
        rpc_addr: str,
        rpc_port_lock: PortLock,
        net_port_lock: PortLock,
        process: NodeProcess,
    ):
        self.home_dir = home_dir
        # In the form http://127.0.0.1:{port}
        self.rpc_addr = rpc_addr
        self.rpc_port_lock = rpc_port_lock
        self.net_port_lock = net_port_lock
        self.process = process
        self._closed = False

    @classmethod
    async def start(
        cls,
        config: Optional[SandboxConfig] = None,
        version: str = DEFAULT_NEAR_SANDBOX_VERSION,
        settings: Optional[SandboxSettings] = None,
    ) -> "Sandbox":
        """Boot a sandbox and return once its RPC answers.

        Anything acquired along the way is released again if a later step
        fails or the task is cancelled.
        """
        if config is None:
            config = SandboxConfig()
        if settings is None:
            settings = SandboxSettings.from_env()

        async with contextlib.AsyncExitStack() as stack:
            try:
                home_dir = tempfile.TemporaryDirectory(
                    prefix="near-sandbox-", ignore_cleanup_errors=True
                )
            except OSError as e:
                raise ConfigFileError(tempfile.gettempdir(), e) from e
            stack.callback(home_dir.cleanup)
            home = home_dir.name

            await init_home(home, version, settings)

            rpc_port_lock = stack.enter_context(
                acquire_or_lock_port(config.rpc_port, settings.lock_dir)
            )
            net_port_lock = stack.enter_context(
                acquire_or_lock_port(config.net_port, settings.lock_dir)
            )

            apply_runtime_config(home, config, settings)
            apply_genesis(home, config)

            process = await run_node(
                home, rpc_port_lock.port, net_port_lock.port, version, settings
            )
            stack.push_async_callback(process.stop)
            log.info(
                f"Started up sandbox at localhost:{rpc_port_lock.port} with pid={process.pid}"
            )

            rpc_addr = f"http://{local_addr(rpc_port_lock.port)}"
            await wait_until_ready(rpc_addr, settings.rpc_timeout, settings.poll_interval)

            sandbox = cls(home_dir, rpc_addr, rpc_port_lock, net_port_lock, process)
            stack.pop_all()
        return sandbox

    @property
    def home(self) -> str:
        return self.home_dir.name

    @property
    def rpc_port(self) -> int:
        return self.rpc_port_lock.port

    @property
    def net_port(self) -> int:
        return self.net_port_lock.port

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    async def stop(self) -> None:
        """Kill and reap the node, then release the ports and delete the home."""
        if self._closed:
            return
        self._closed = True
        log.info(f"Cleaning up sandbox: pid={self.process.pid}")
        try:
            await self.process.stop()
        finally:
            self._release()

    def close(self) -> None:
        """Like `stop()`, but the reap is left to the event loop."""
        if self._closed:
            return
        self._closed = True
        log.info(f"Cleaning up sandbox: pid={self.process.pid}")
        self.process.kill()
        self._release()

    def _release(self) -> None:
        for lock in (self.rpc_port_lock, self.net_port_lock):
            try:
                lock.release()
            except OSError as e:
                log.warning(f"Could not release lock for port {lock.port}: {e}")
        self.home_dir.cleanup()

    async def __aenter__(self) -> "Sandbox":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    def __del__(self):
        if getattr(self, "_closed", True):
            return
        try:
            self.close()
        except Exception:
            pass

    def __repr__(self) -> str:
        return f"Sandbox(rpc_addr={self.rpc_addr!r}, pid={self.process.pid}, closed={self._closed})"


@contextlib.asynccontextmanager
async def running_sandbox(
    config: Optional[SandboxConfig] = None,
    version: str = DEFAULT_NEAR_SANDBOX_VERSION,
    settings: Optional[SandboxSettings] = None,
):
    sb = await Sandbox.start(config, version, settings)
    try:
        yield sb
    finally:
        await sb.stop()


# ── Sandbox manager ──────────────────────────────────────────────────────


class SandboxManager:
    """Named sandboxes behind the MCP tools."""

    def __init__(self, settings: Optional[SandboxSettings] = None):
        self._settings = settings
        self._sandboxes: dict[str, Sandbox] = {}
        self._versions: dict[str, str] = {}
        self._start_locks: dict[str, asyncio.Lock] = {}

    async def start(
        self,
        name: str = "default",
        config: Optional[SandboxConfig] = None,
        version: str = DEFAULT_NEAR_SANDBOX_VERSION,
    ) -> Sandbox:
        if not _SANDBOX_NAME_RE.match(name):
            raise ValueError(f"Invalid sandbox name: {name!r}")

        if name not in self._start_locks:
            self._start_locks[name] = asyncio.Lock()

        async with self._start_locks[name]:
            if name in self._sandboxes:
                raise ValueError(f"Sandbox '{name}' is already running")
            settings = self._settings or SandboxSettings.from_env()
            sb = await Sandbox.start(config, version, settings)
            self._sandboxes[name] = sb
            self._versions[name] = version

        log.info(f"Sandbox '{name}' ready at {sb.rpc_addr} (pid={sb.pid})")
        return sb

    def get(self, name: str = "default") -> Sandbox:
        if name not in self._sandboxes:
            raise KeyError(f"Unknown sandbox: {name}")
        return self._sandboxes[name]

    async def stop(self, name: str) -> str:
        sb = self.get(name)
        del self._sandboxes[name]
        self._versions.pop(name, None)
        await sb.stop()
        log.info(f"Stopped sandbox '{name}' (pid={sb.pid})")
        return f"Stopped sandbox '{name}'"

    def status(self) -> dict:
        info = {}
        for name, sb in self._sandboxes.items():
            info[name] = {
                "rpc_addr": sb.rpc_addr,
                "home": sb.home,
                "pid": sb.pid,
                "alive": sb.process.is_alive(),
                "rpc_port": sb.rpc_port,
                "net_port": sb.net_port,
                "version": self._versions.get(name, DEFAULT_NEAR_SANDBOX_VERSION),
            }
        return info

    async def shutdown(self):
        for name, sb in list(self._sandboxes.items()):
            try:
                await sb.stop()
            except Exception as e:
                log.warning(f"Could not stop sandbox '{name}': {e}")
        self._sandboxes.clear()
        self._versions.clear()
        log.info("All sandboxes stopped")


# ── MCP Server ───────────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def _lifespan(server: FastMCP):
    try:
        yield {}
    finally:
        await manager.shutdown()


mcp_server = FastMCP(
    "near-sandbox",
    instructions=(
        "You can start local NEAR sandbox nodes for testing. "
        "Use start_sandbox to boot one (optionally with extra genesis accounts or config), "
        "sandbox_info for its RPC address and the default account's keys, "
        "list_sandboxes to see what is running, and stop_sandbox to tear one down. "
        "Use generate_account to create a random funded account to pass to start_sandbox."
    ),
    lifespan=_lifespan,
)

manager = SandboxManager()


def _parse_json_arg(label: str, text: str) -> Any:
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"{label} is not valid JSON: {e}") from e


def _config_from_tool_args(
    rpc_port: int,
    net_port: int,
    additional_accounts: str,
    additional_genesis: str,
    additional_config: str,
) -> SandboxConfig:
    accounts = []
    raw_accounts = _parse_json_arg("additional_accounts", additional_accounts) or []
    if not isinstance(raw_accounts, list):
        raise ValueError("additional_accounts must be a JSON array")
    for entry in raw_accounts:
        if not isinstance(entry, dict):
            raise ValueError(f"Account entry must be an object: {entry!r}")
        accounts.append(
            GenesisAccount(
                account_id=entry.get("account_id", ""),
                public_key=entry.get("public_key", ""),
                private_key=entry.get("private_key", ""),
                balance=int(entry.get("balance", DEFAULT_GENESIS_ACCOUNT_BALANCE)),
            )
        )

    genesis = _parse_json_arg("additional_genesis", additional_genesis)
    config = _parse_json_arg("additional_config", additional_config)
    for label, value in (("additional_genesis", genesis), ("additional_config", config)):
        if value is not None and not isinstance(value, dict):
            raise ValueError(f"{label} must be a JSON object")

    return SandboxConfig(
        rpc_port=rpc_port or None,
        net_port=net_port or None,
        additional_config=config,
        additional_genesis=genesis,
        additional_accounts=accounts,
    )


@mcp_server.tool()
async def start_sandbox(
    name: str = "default",
    rpc_port: int = 0,
    net_port: int = 0,
    additional_accounts: str = "",
    additional_genesis: str = "",
    additional_config: str = "",
    version: str = DEFAULT_NEAR_SANDBOX_VERSION,
) -> str:
    """
    Start a local NEAR sandbox node.

    Args:
        name: Name to refer to this sandbox by (default "default")
        rpc_port: RPC port to bind; 0 picks a free one
        net_port: Network port to bind; 0 picks a free one
        additional_accounts: JSON array of {account_id, public_key, private_key, balance}
        additional_genesis: JSON object merged into genesis.json
        additional_config: JSON object merged into config.json
        version: Node version to launch

    Returns:
        RPC address and pid, or an error.
    """
    try:
        config = _config_from_tool_args(
            rpc_port, net_port, additional_accounts, additional_genesis, additional_config
        )
        sb = await manager.start(name, config, version)
    except (SandboxError, ValueError, TypeError) as e:
        return f"Error: {e}"
    return f"Sandbox '{name}' ready at {sb.rpc_addr} (pid={sb.pid}, home={sb.home})"


@mcp_server.tool()
async def stop_sandbox(name: str = "default") -> str:
    """
    Stop a sandbox: kill the node, free its ports and delete its home directory.

    Args:
        name: Sandbox to stop.

    Returns:
        Confirmation or error.
    """
    try:
        return await manager.stop(name)
    except KeyError:
        return f"Error: no running sandbox '{name}'"


@mcp_server.tool()
async def list_sandboxes() -> str:
    """
    List running sandboxes.

    Returns:
        One line per sandbox with RPC address, pid and liveness.
    """
    status = manager.status()
    if not status:
        return "No running sandboxes. Use start_sandbox to boot one."
    lines = []
    for name, info in status.items():
        state = "alive" if info["alive"] else "exited"
        lines.append(
            f"{name:12s}  {info['rpc_addr']:24s}  pid:{info['pid']}  {state}  v{info['version']}"
        )
    return "\n".join(lines)


@mcp_server.tool()
async def sandbox_info(name: str = "default") -> str:
    """
    Connection details for a sandbox.

    Args:
        name: Sandbox to describe.

    Returns:
        JSON with the RPC address, home directory, pid and default account credentials.
    """
    try:
        sb = manager.get(name)
    except KeyError:
        return f"Error: no running sandbox '{name}'"
    info = {
        "name": name,
        "rpc_addr": sb.rpc_addr,
        "home": sb.home,
        "pid": sb.pid,
        "alive": sb.process.is_alive(),
        "genesis_account": GenesisAccount.default().to_key_file(),
        "key_file": os.path.join(sb.home, f"{DEFAULT_GENESIS_ACCOUNT}.json"),
    }
    return json.dumps(info, indent=2)


@mcp_server.tool()
async def generate_account(balance: str = "") -> str:
    """
    Generate a random genesis account with a fresh ed25519 key pair.

    Args:
        balance: Balance in yoctoNEAR as a decimal string (default 10,000 NEAR)

    Returns:
        JSON account usable in start_sandbox's additional_accounts.
    """
    try:
        amount = int(balance) if balance.strip() else DEFAULT_GENESIS_ACCOUNT_BALANCE
        account = GenesisAccount.generate_random(balance=amount)
    except ValueError as e:
        return f"Error: {e}"
    data = account.to_key_file()
    data["balance"] = str(account.balance)
    return json.dumps(data)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    # stderr only: stdout is the MCP protocol
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
