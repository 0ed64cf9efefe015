"""HTTP service that hands out Espresso nonces and forwards signed transactions."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Protocol

from aiohttp import web

from espressoreader.espresso_client import EspressoClient
from espressoreader.espresso_reader import Extractor, _extract_transaction
from espressoreader.models import hex_to_address

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "00" * 20

_RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "Access-Control-Allow-Headers, Origin,Accept, X-Requested-With, Content-Type, "
        "Access-Control-Request-Method, Access-Control-Request-Headers"
    ),
}


class NonceRepository(Protocol):
    async def get_espresso_nonce(self, sender_address: str, app_address: str) -> int: ...


class TransactionSubmitter(Protocol):
    async def submit_transaction(self, namespace: int, payload: bytes) -> Any: ...


def _to_address(value: Any) -> str:
    """Normalise an address, falling back to the zero address for unusable input."""
    if not isinstance(value, str) or not value:
        return hex_to_address(ZERO_ADDRESS)
    try:
        return hex_to_address(value)
    except (ValueError, TypeError):
        return hex_to_address(ZERO_ADDRESS)


def _json_response(body: dict[str, Any] | None) -> web.Response:
    text = "" if body is None else json.dumps(body, separators=(",", ":")) + "\n"
    return web.Response(body=text.encode(), headers=_RESPONSE_HEADERS)


class NonceService:
    """Serves ``/nonce`` and ``/submit`` for clients sending inputs through Espresso.

    Nonces are cached per application and sender; a cached value of 0 is
    treated as unknown and looked up in the repository again.
    """

    def __init__(
        self,
        repository: NonceRepository,
        espresso_base_url: str,
        namespace: int,
        *,
        client: TransactionSubmitter | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        self.repository = repository
        self.espresso_base_url = espresso_base_url
        self.namespace = namespace
        self.client: TransactionSubmitter = client or EspressoClient(espresso_base_url)
        self.extractor: Extractor = extractor or _extract_transaction
        # app address -> sender address -> next nonce
        self.nonce_cache: dict[str, dict[str, int]] = {}

    def __str__(self) -> str:
        return "espressoreader"

    async def _query_nonce(self, sender: str, app: str) -> int:
        try:
            return int(await self.repository.get_espresso_nonce(sender, app))
        except Exception as exc:
            logger.error("failed to get espresso nonce error=%s", exc)
            return 0

    async def request_nonce(self, request: web.Request) -> web.Response:
        """Answer a POSTed ``{"app_contract", "msg_sender"}`` with ``{"nonce": n}``."""
        if request.method != "POST":
            return _json_response(None)
        body = await request.read()
        fields: dict[str, Any] = {}
        try:
            decoded = json.loads(body)
            if isinstance(decoded, dict):
                fields = decoded
            else:
                logger.error("nonce request is not a JSON object")
        except ValueError as exc:
            logger.error("could not decode nonce request err=%s", exc)

        sender = _to_address(fields.get("msg_sender"))
        app = _to_address(fields.get("app_contract"))

        senders = self.nonce_cache.setdefault(app, {})
        nonce = senders.get(sender, 0)
        if nonce == 0:
            nonce = await self._query_nonce(sender, app)
            senders[sender] = nonce

        logger.debug("got nonce request senderAddress=%s applicationAddress=%s", sender, app)
        return _json_response({"nonce": nonce})

    async def submit(self, request: web.Request) -> web.Response:
        """Forward a signed transaction to Espresso and answer with its id."""
        if request.method != "POST":
            return _json_response(None)
        body = await request.read()
        logger.debug("got submit request request body=%s", body.decode(errors="replace"))

        payload = base64.b64encode(body)
        try:
            await self.client.submit_transaction(self.namespace, payload)
        except Exception as exc:
            logger.error("espresso tx submit error err=%s", exc)
            return _json_response(None)

        try:
            sender, message, sig_hash = self.extractor(payload.decode())
        except Exception as exc:
            logger.error("transaction not correctly formatted error=%s", exc)
            return _json_response(None)

        response = _json_response({"id": sig_hash} if sig_hash else {})
        await self._advance_nonce(_to_address(sender), message)
        return response

    async def _advance_nonce(self, sender: str, message: dict[str, Any]) -> None:
        try:
            app = _to_address(str(message["app"]))
            nonce_in_request = int(message["nonce"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("transaction message is malformed error=%s", exc)
            return
        senders = self.nonce_cache.get(app)
        if senders is None:
            logger.error("Should query nonce before submit")
            return
        if senders.get(sender, 0) == 0:
            nonce_in_db = await self._query_nonce(sender, app)
            if nonce_in_request != nonce_in_db:
                logger.error("Nonce in request is incorrect")
                return
            senders[sender] = nonce_in_db + 1
        else:
            senders[sender] += 1

    def create_app(self) -> web.Application:
        """The aiohttp application serving both endpoints for every HTTP method."""
        app = web.Application()
        app.router.add_route("*", "/nonce", self.request_nonce)
        app.router.add_route("*", "/submit", self.submit)
        return app

    async def serve(self, host: str = "localhost", port: int = 8080) -> None:
        """Listen on ``host:port`` until cancelled."""
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        try:
            site = web.TCPSite(runner, host, port)
            await site.start()
            logger.info("nonce service listening host=%s port=%d", host, port)
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()