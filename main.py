"""Auth Relay - OAuth redirect relay for media-server plugins.

Plugins running behind NAT cannot receive OAuth redirects themselves.
This service:
- Registers a pending redirect for a plugin (/auth/prepare)
- Receives the upstream OAuth callback and forwards the code to the
  plugin's local callback URL (/auth/callback)

All pending state lives in the configured key-value store with a short TTL.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import RedirectResponse
from supabase import create_client, Client

from config import RelayConfig, load_config
from relay import __version__

# Load environment: .env (local override) or .env.public (bundled defaults)
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)
else:
    _public_env = Path(__file__).parent / ".env.public"
    if _public_env.exists():
        load_dotenv(_public_env)

# Environment variables
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

RELAY_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.getenv("RELAY_PORT", "8787"))

# Initialize Supabase client (remote logs and/or binding store)
supabase: Client = None
if SUPABASE_URL and SUPABASE_ANON_KEY:
    supabase = create_client(SUPABASE_URL, SUPABASE_ANON_KEY)

from logging_config import setup_logging
setup_logging(supabase_client=supabase)
logger = logging.getLogger(__name__)


def create_app(config: RelayConfig = None, store=None) -> FastAPI:
    """Build the relay app.

    Args:
        config: Relay policy; loaded from file/environment when omitted.
        store: Binding store; built from ``config.store`` when omitted.
    """
    from relay.endpoints import router as relay_router, init_relay_routes
    from relay.exchange import NonceExchange
    from relay.stores import create_store

    if config is None:
        config = load_config()
    if store is None:
        store = create_store(config, supabase_client=supabase)

    logger.info(
        f"[STARTUP] Store: {store.name}, ttl: {config.binding_ttl}s, "
        f"accepted paths: {sorted(config.accepted_paths)}, single-use nonces: {config.single_use_nonces}"
    )

    app = FastAPI(
        title="Auth Relay",
        description="Nonce-bound OAuth redirect relay for media-server plugins",
        version=__version__,
    )

    init_relay_routes(config, NonceExchange(config, store))
    app.include_router(relay_router)

    # ============== Server Info Endpoints ==============

    @app.get("/")
    async def root():
        """Convenience redirect to the project homepage."""
        return RedirectResponse(url=config.homepage_url, status_code=302)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for platform probes."""
        return {"status": "healthy", "service": "auth-relay", "store": store.name}

    return app


app = create_app()


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting auth relay on {RELAY_HOST}:{RELAY_PORT}")
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT)
