"""Integration tests against a real near-sandbox binary.

Requires the node binary via NEAR_SANDBOX_BIN_PATH or `near-sandbox` on PATH.
Skipped automatically when unavailable.

Run: uv run pytest tests/test_integration.py -v
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import shutil

import httpx
import pytest

import near_sandbox as ns

_skip_reason = ""
_bin = os.environ.get("NEAR_SANDBOX_BIN_PATH") or shutil.which("near-sandbox")
if not _bin:
    _skip_reason = "near-sandbox binary not found"
elif not os.access(_bin, os.X_OK):
    _skip_reason = f"{_bin} is not executable"

pytestmark = pytest.mark.skipif(bool(_skip_reason), reason=_skip_reason)


def _run(coro):
    return asyncio.run(coro)


def _settings(**overrides) -> ns.SandboxSettings:
    settings = ns.SandboxSettings.from_env()
    # A cold node can take a while to produce its first block
    overrides.setdefault("rpc_timeout", max(settings.rpc_timeout, 60.0))
    return dataclasses.replace(settings, **overrides)


async def _query(rpc_addr: str, params: dict) -> dict:
    payload = {
        "jsonrpc": "2.0",
        "id": "dontcare",
        "method": "query",
        "params": {"finality": "optimistic", **params},
    }
    async with httpx.AsyncClient(trust_env=False, timeout=10.0) as client:
        resp = await client.post(rpc_addr, json=payload)
    resp.raise_for_status()
    body = resp.json()
    assert "error" not in body, body
    return body["result"]


async def _view_account(rpc_addr: str, account_id: str) -> dict:
    return await _query(rpc_addr, {"request_type": "view_account", "account_id": account_id})


async def _access_keys(rpc_addr: str, account_id: str) -> list[str]:
    result = await _query(
        rpc_addr, {"request_type": "view_access_key_list", "account_id": account_id}
    )
    return [k["public_key"] for k in result["keys"]]


# ── Boot ─────────────────────────────────────────────────────────────────


class TestBoot:
    def test_default_account(self):
        async def scenario():
            async with ns.running_sandbox(settings=_settings()) as sb:
                account = await _view_account(sb.rpc_addr, "sandbox")
                assert int(account["amount"]) == ns.DEFAULT_GENESIS_ACCOUNT_BALANCE
                keys = await _access_keys(sb.rpc_addr, "sandbox")
                assert ns.DEFAULT_GENESIS_ACCOUNT_PUBLIC_KEY in keys

        _run(scenario())

    def test_additional_account(self):
        carol = ns.GenesisAccount.generate_random(balance=5 * 10**24)

        async def scenario():
            config = ns.SandboxConfig(additional_accounts=[carol])
            async with ns.running_sandbox(config, settings=_settings()) as sb:
                account = await _view_account(sb.rpc_addr, carol.account_id)
                assert int(account["amount"]) == 5 * 10**24
                keys = await _access_keys(sb.rpc_addr, carol.account_id)
                assert keys == [carol.public_key]

        _run(scenario())

    def test_two_sandboxes_side_by_side(self):
        async def scenario():
            settings = _settings()
            async with ns.running_sandbox(settings=settings) as a:
                async with ns.running_sandbox(settings=settings) as b:
                    assert a.rpc_port != b.rpc_port
                    await _view_account(a.rpc_addr, "sandbox")
                    await _view_account(b.rpc_addr, "sandbox")

        _run(scenario())

    def test_stop_frees_resources(self):
        async def scenario():
            sb = await ns.Sandbox.start(settings=_settings())
            home = sb.home
            await sb.stop()
            assert not os.path.exists(home)
            with pytest.raises(httpx.TransportError):
                async with httpx.AsyncClient(trust_env=False, timeout=2.0) as client:
                    await client.get(f"{sb.rpc_addr}/status")

        _run(scenario())
