"""Relay HTTP endpoints.

- Prepare a pending redirect (/auth/prepare)
- OAuth callback landing (/auth/callback)

Failures are uniform: the caller only ever sees a bare 400
(prepare) or a 400 pointing at the fallback URL (callback). The specific
reason goes to the log.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from config import RelayConfig
from relay.exchange import NonceExchange

logger = logging.getLogger(__name__)

# Router for relay endpoints
router = APIRouter(tags=["relay"])

# These will be set by init_relay_routes()
_config: RelayConfig = None
_exchange: NonceExchange = None


def init_relay_routes(config: RelayConfig, exchange: NonceExchange):
    """Initialize relay routes with the policy config and nonce exchange.

    Must be called before including the router in the app.
    """
    global _config, _exchange
    _config = config
    _exchange = exchange


def callback_failure() -> Response:
    """400 pointing the user-agent at the fixed fallback location."""
    return Response(status_code=400, headers={"Location": _config.fallback_url})


@router.post("/auth/prepare")
async def prepare(request: Request):
    """Register where an authorization code must be delivered."""
    user_agent = request.headers.get("User-Agent", "")

    try:
        body = await request.json()
    except ValueError:
        body = None

    try:
        outcome = await _exchange.prepare(user_agent, body)
    except Exception:
        logger.exception("[PREPARE] Store error while saving binding")
        return JSONResponse({}, status_code=400)

    if not outcome.ok:
        logger.warning(f"[PREPARE] Rejected: {outcome.reason}")
        return JSONResponse({}, status_code=400)

    return JSONResponse({"nonce": outcome.value})


@router.get("/auth/callback")
async def callback(request: Request, code: str = "", state: str = ""):
    """OAuth callback landing - forwards the code to the prepared destination."""
    user_agent = request.headers.get("User-Agent", "")

    try:
        outcome = await _exchange.redeem(user_agent, code, state)
    except Exception:
        logger.exception("[CALLBACK] Store error while loading binding")
        return callback_failure()

    if not outcome.ok:
        logger.warning(f"[CALLBACK] Rejected: {outcome.reason}")
        return callback_failure()

    return RedirectResponse(url=outcome.value, status_code=302)
