"""Nonce-bound redirect exchange.

A client first *prepares* a redirect: it tells the relay where the
authorization code must end up and gets back an opaque nonce. The nonce
travels through the upstream OAuth flow inside the ``state`` parameter and
comes back to ``/auth/callback``, where the relay *redeems* it and forwards
the code to the registered destination.

Every step returns an ``Outcome`` instead of raising, so the HTTP layer can
log the precise reason while answering with one generic failure.
"""

import base64
import binascii
import json
import logging
import uuid
from typing import Any, Optional
from urllib.parse import quote, urlsplit

from config import RelayConfig
from relay.stores import BindingStore

logger = logging.getLogger(__name__)


class Outcome:
    """Tagged result of a validation step: either a value or a reason."""

    __slots__ = ("value", "reason")

    def __init__(self, value: Any = None, reason: Optional[str] = None):
        self.value = value
        self.reason = reason

    @classmethod
    def accept(cls, value: Any = None) -> "Outcome":
        return cls(value=value)

    @classmethod
    def reject(cls, reason: str) -> "Outcome":
        return cls(reason=reason)

    @property
    def ok(self) -> bool:
        return self.reason is None

    def __repr__(self) -> str:
        if self.ok:
            return f"Outcome.accept({self.value!r})"
        return f"Outcome.reject({self.reason!r})"


def _non_empty_str(data: dict, key: str) -> bool:
    value = data.get(key)
    return isinstance(value, str) and bool(value)


def short(nonce: str) -> str:
    """Log-safe prefix of a nonce."""
    return f"{nonce[:8]}..." if nonce else "<none>"


class Binding:
    """Destination URL and caller identity stored under a nonce."""

    __slots__ = ("url", "ua")

    def __init__(self, url: str, ua: str):
        self.url = url
        self.ua = ua

    def to_json(self) -> str:
        return json.dumps({"url": self.url, "ua": self.ua}, separators=(",", ":"))

    @classmethod
    def from_json(cls, blob: Optional[str]) -> Outcome:
        """Parse a stored blob; the store content is not trusted blindly."""
        if blob is None:
            return Outcome.reject("No stored state found")
        try:
            data = json.loads(blob)
        except (TypeError, ValueError):
            return Outcome.reject("Stored state is not valid JSON")
        if not isinstance(data, dict) or not _non_empty_str(data, "url") or not _non_empty_str(data, "ua"):
            return Outcome.reject("Stored state is malformed")
        return Outcome.accept(cls(data["url"], data["ua"]))

    def __eq__(self, other):
        return isinstance(other, Binding) and (self.url, self.ua) == (other.url, other.ua)

    def __repr__(self) -> str:
        return f"Binding(url={self.url!r}, ua={self.ua!r})"


# ============== Prepare checks ==============

def check_caller(config: RelayConfig, user_agent: Optional[str]) -> Outcome:
    if not user_agent or not config.user_agent_pattern.match(user_agent):
        return Outcome.reject("Invalid caller UA string")
    return Outcome.accept(user_agent)


def check_prepare_body(body: Any) -> Outcome:
    if not isinstance(body, dict) or not _non_empty_str(body, "url") or not _non_empty_str(body, "ua"):
        return Outcome.reject("Invalid Body")
    return Outcome.accept(Binding(body["url"], body["ua"]))


def check_destination(config: RelayConfig, url: str) -> Outcome:
    """Apply the redirect allow-list policy to a destination URL.

    Only plain-HTTP URLs with an explicit unprivileged port, a known plugin
    callback path and no query or fragment are accepted. The URL must also
    be free of whitespace and control characters, so the string stored is
    exactly the one ``urlsplit`` saw.
    """
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7f for c in url):
        return Outcome.reject("Invalid redirect URI: whitespace or control characters")

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return Outcome.reject("Invalid redirect URI: unparseable")

    if parts.scheme != "http" or not parts.hostname:
        return Outcome.reject("Invalid redirect URI: scheme must be http with a host")
    if port is None or port < config.min_port:
        return Outcome.reject("Invalid redirect URI: explicit port required above the privileged range")
    if parts.path not in config.accepted_paths:
        return Outcome.reject("Invalid redirect URI: path not accepted")
    # an empty '?' or '#' still counts
    if parts.query or parts.fragment or "?" in url or "#" in url:
        return Outcome.reject("Invalid redirect URI: query and fragment not allowed")
    return Outcome.accept(url)


# ============== Callback state ==============

def encode_state(nonce: str) -> str:
    """Build the ``state`` blob a client embeds in the upstream request."""
    return base64.b64encode(json.dumps({"nonce": nonce}).encode()).decode()


def decode_state(state: Optional[str]) -> Outcome:
    """Recover the nonce from a base64 JSON ``state`` parameter."""
    if not state:
        return Outcome.reject("Missing state")

    blob = state.strip().replace("-", "+").replace("_", "/")
    blob += "=" * (-len(blob) % 4)
    try:
        raw = base64.b64decode(blob, validate=True)
        data = json.loads(raw)
    except (binascii.Error, ValueError):
        return Outcome.reject("Invalid state - not base64 JSON")
    except RecursionError:
        return Outcome.reject("Invalid state - JSON nested too deeply")

    if not isinstance(data, dict) or not _non_empty_str(data, "nonce"):
        return Outcome.reject("Invalid state - missing nonce")
    return Outcome.accept(data["nonce"])


# ============== Exchange ==============

class NonceExchange:
    """Prepare and redeem nonce bindings against a key-value store."""

    def __init__(self, config: RelayConfig, store: BindingStore):
        self.config = config
        self.store = store

    async def prepare(self, user_agent: Optional[str], body: Any) -> Outcome:
        """Validate a prepare request and persist its binding.

        Returns an accepted Outcome carrying the new nonce.
        """
        caller = check_caller(self.config, user_agent)
        if not caller.ok:
            return caller

        parsed = check_prepare_body(body)
        if not parsed.ok:
            return parsed
        binding = parsed.value

        destination = check_destination(self.config, binding.url)
        if not destination.ok:
            return destination

        nonce = str(uuid.uuid4())
        await self.store.put(nonce, binding.to_json(), self.config.binding_ttl)
        logger.info(f"[PREPARE] Binding stored for nonce {short(nonce)} (ttl={self.config.binding_ttl}s)")
        return Outcome.accept(nonce)

    async def redeem(self, user_agent: Optional[str], code: Optional[str], state: Optional[str]) -> Outcome:
        """Resolve a callback into the final redirect URL."""
        if not code:
            return Outcome.reject("Missing code")
        if not state:
            return Outcome.reject("Missing state")

        decoded = decode_state(state)
        if not decoded.ok:
            return decoded
        nonce = decoded.value

        if self.config.single_use_nonces:
            blob = await self.store.take(nonce)
        else:
            blob = await self.store.get(nonce)

        stored = Binding.from_json(blob)
        if not stored.ok:
            return stored
        binding = stored.value

        if binding.ua != user_agent:
            return Outcome.reject("Stored state does not match caller")

        logger.info(f"[CALLBACK] Nonce {short(nonce)} redeemed")
        return Outcome.accept(f"{binding.url}?code={quote(code, safe='')}")
