"""
REST / HTTP API server for the StakeVault program.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                  Liveness and program status
GET  /global                  Global registry
GET  /vault/{user}            Vault of a user (plus pending reward)
GET  /token/{address}         Token account balance
POST /yield/{user}            Commit an accrual checkpoint, return reward owed
POST /tx                      Submit a signed instruction

Errors
------
Program errors are returned as ``{"error", "code", "message"}`` with

  - 403 for ``Unauthorized``
  - 404 for ``AccountNotInitialized``
  - 409 for ``AlreadyInitialized``, ``AlreadySet``, ``InstructionReplayed``
  - 400 for everything else

Persistence
-----------
With a ``ProgramStore`` attached, every successful POST is followed by a
snapshot, so a crash loses no committed operation or applied
instruction id.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(program, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import sqlite3
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from stakevault_core.accrual import elapsed_seconds, compute_pending_reward
from stakevault_core.errors import (
    AccountNotInitialized,
    AlreadyInitialized,
    AlreadySet,
    InstructionReplayed,
    StakingError,
    Unauthorized,
)
from stakevault_core.instructions import Instruction

if TYPE_CHECKING:
    from stakevault_core.config import APIConfig
    from stakevault_core.program import StakingProgram
    from stakevault_core.storage import ProgramStore

logger = logging.getLogger("stakevault_api")

_STATUS_BY_ERROR: dict[type[StakingError], int] = {
    Unauthorized: 403,
    AccountNotInitialized: 404,
    AlreadyInitialized: 409,
    AlreadySet: 409,
    InstructionReplayed: 409,
}


def error_status(exc: StakingError) -> int:
    for cls, status in _STATUS_BY_ERROR.items():
        if isinstance(exc, cls):
            return status
    return 400


def _error_response(exc: StakingError) -> web.Response:
    return web.json_response(exc.to_dict(), status=error_status(exc))


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST.

    Only reads the key from the ``X-API-Key`` header, never from query
    params.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for explicitly listed origins.

    The ``*`` wildcard is discarded.
    """

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around a StakingProgram."""

    def __init__(
        self,
        program: StakingProgram,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        store: ProgramStore | None = None,
    ):
        self.program = program
        self.store = store
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self.started_at = time.time()

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes

            # Rate limiting runs first so rejected callers never reach auth.
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    def _persist(self) -> None:
        """Write the program to storage after a committed change."""
        if self.store is None:
            return
        try:
            self.store.snapshot_program(self.program)
        except sqlite3.Error as exc:
            logger.error(f"Snapshot after commit failed: {exc}")

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/global", self._global)
        app.router.add_get("/vault/{user}", self._vault)
        app.router.add_get("/token/{address}", self._token_account)
        app.router.add_post("/yield/{user}", self._yield)
        app.router.add_post("/tx", self._submit_instruction)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        summary = self.program.summary()
        return web.json_response({
            "ok": True,
            "initialized": summary["initialized"],
            "program_id": self.program.program_id,
            "vaults": summary.get("vault_count", 0),
            "uptime": int(time.time() - self.started_at),
        })

    async def _global(self, _request: web.Request) -> web.Response:
        try:
            glob = self.program.get_global()
        except StakingError as exc:
            return _error_response(exc)
        info = glob.to_dict()
        info["reward_authority"] = self.program.reward_authority_address
        return web.json_response(info, dumps=_json_dumps)

    async def _vault(self, request: web.Request) -> web.Response:
        """GET /vault/{user} — stored record plus the reward pending since its checkpoint."""
        user = request.match_info["user"]
        try:
            vault = self.program.get_vault(user)
            glob = self.program.get_global()
            stake_mint = self.program.tokens.get_mint(glob.stake_mint)
            reward_mint = self.program.tokens.get_mint(glob.reward_mint)
            pending = compute_pending_reward(
                vault.staked_amount,
                glob.reward_rate,
                elapsed_seconds(vault.last_accrual_timestamp, self.program.clock.now()),
                stake_mint.decimals,
                reward_mint.decimals,
            )
        except StakingError as exc:
            return _error_response(exc)
        info = vault.to_dict()
        info["pending_reward"] = pending
        info["claimable"] = vault.reward_debt + pending
        return web.json_response(info, dumps=_json_dumps)

    async def _token_account(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        try:
            acc = self.program.tokens.get_account(address)
        except StakingError as exc:
            return _error_response(exc)
        return web.json_response(acc.to_dict(), dumps=_json_dumps)

    async def _yield(self, request: web.Request) -> web.Response:
        """POST /yield/{user} — any caller may checkpoint a vault."""
        user = request.match_info["user"]
        try:
            receipt = self.program.execute("get_yield", user)
        except StakingError as exc:
            return _error_response(exc)
        self._persist()
        return web.json_response({"user": user, "reward_debt": receipt.value}, dumps=_json_dumps)

    async def _submit_instruction(self, request: web.Request) -> web.Response:
        """
        POST /tx
        Body: a signed instruction as produced by ``Instruction.to_dict``.

        Returns the operation receipt.
        """
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc

        try:
            ix = Instruction.from_dict(body)
            receipt = self.program.process_instruction(ix)
        except StakingError as exc:
            return _error_response(exc)
        self._persist()
        logger.info(
            f"Applied {ix.name} from {ix.signer} ({receipt.instruction_id[:16]})",
            extra={"operation": ix.name, "user": ix.signer,
                   "instruction_id": receipt.instruction_id},
        )
        return web.json_response(receipt.to_dict(), dumps=_json_dumps)


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
