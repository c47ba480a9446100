"""MCP client over streamable HTTP that settles x402 payment challenges.

Flow for one request:

1. POST the JSON-RPC message.
2. On HTTP 402 (or a JSON-RPC error whose data is an x402 challenge), pick
   the payment requirement, refuse anything above the ceiling or the listed
   price, and refuse if the wallet is on another network.
3. Mint a fresh authorization, have the wallet sign it, and retry once with
   the ``X-PAYMENT`` header.
4. Return the upstream result verbatim or raise ``UpstreamError``.

This client never switches networks and never retries a failed payment.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from mcpay.authorization import (
    PaymentAuthorization,
    check_amount,
    decode_settlement,
    encode_payment_header,
    is_challenge,
    mark_presented,
    parse_challenge,
    select_payment_requirements,
)
from mcpay.config import McpayConfig
from mcpay.constants import (
    CLIENT_NAME,
    CLIENT_VERSION,
    MCP_PROTOCOL_VERSION,
    MCP_SESSION_HEADER,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
)
from mcpay.errors import (
    ConnectionReplaced,
    NetworkMismatch,
    PaymentAuthorizationFailed,
    PaymentCeilingExceeded,
    PaymentInProgress,
    ProviderRpcError,
    UpstreamError,
    UserRejected,
)
from mcpay.networks import get_network
from mcpay.wallet import WalletConnection, WalletConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class _Reply:
    status_code: int
    body: Any
    headers: httpx.Headers


@dataclass
class PaidCallResult:
    """Upstream result, plus the authorization presented to obtain it (if any)."""

    result: Any
    authorization: PaymentAuthorization | None = None
    settlement: dict[str, Any] | None = None

    @property
    def paid(self) -> bool:
        return self.authorization is not None


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return fallback


class PaymentTransportClient:
    """MCP JSON-RPC client bound to one tool endpoint and one wallet manager.

    Constructor accepts explicit params; no env-var loading.
    """

    def __init__(
        self,
        url: str,
        manager: WalletConnectionManager,
        config: McpayConfig | None = None,
        *,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._manager = manager
        self._config = config or manager.config
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._paying: set[int] = set()  # connection ids
        self.server_info: dict[str, Any] | None = None
        self._client = httpx.AsyncClient(
            headers={
                "Accept": "application/json, text/event-stream",
                "Content-Type": "application/json",
                **(headers or {}),
            },
            timeout=self._config.http_timeout,
            transport=transport,
        )

    @property
    def session_id(self) -> str | None:
        return self._session_id

    # -- internal request dispatcher -----------------------------------------

    async def _post(self, message: dict[str, Any], extra_headers: dict[str, str] | None = None) -> _Reply:
        """POST one JSON-RPC message; map transport failures to ``UpstreamError``."""
        headers = dict(extra_headers or {})
        if self._session_id:
            headers[MCP_SESSION_HEADER] = self._session_id
        try:
            async with self._client.stream("POST", self._url, json=message, headers=headers) as response:
                session = response.headers.get(MCP_SESSION_HEADER)
                if session:
                    self._session_id = session
                content_type = response.headers.get("content-type", "")
                if response.status_code < 400 and "text/event-stream" in content_type:
                    body = await self._read_event_stream(response, message.get("id"))
                else:
                    body = self._decode(await response.aread(), response.status_code)
                reply = _Reply(response.status_code, body, response.headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Request failed: {exc}") from exc

        if reply.status_code >= 400 and reply.status_code != 402:
            raise UpstreamError(
                _error_message(reply.body, f"HTTP {reply.status_code}"),
                status_code=reply.status_code,
            )
        return reply

    @staticmethod
    def _decode(raw: bytes, status_code: int) -> Any:
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError:
            if status_code >= 400:
                return raw.decode("utf-8", errors="replace")
            raise UpstreamError("Endpoint returned a non-JSON body", status_code=status_code) from None

    @staticmethod
    async def _read_event_stream(response: httpx.Response, request_id: Any) -> Any:
        """Consume SSE events until the response to ``request_id`` arrives."""
        data: list[str] = []
        last: Any = None

        def dispatch() -> Any:
            payload = "\n".join(data)
            data.clear()
            if not payload:
                return None
            try:
                return json.loads(payload)
            except ValueError:
                logger.debug("Ignoring non-JSON event data: %.80s", payload)
                return None

        async for line in response.aiter_lines():
            if line == "":
                event = dispatch()
            elif line.startswith("data:"):
                data.append(line[5:].removeprefix(" "))
                continue
            else:
                continue  # id:, event:, retry:, comments
            if not isinstance(event, dict):
                continue
            last = event
            if event.get("id") == request_id and ("result" in event or "error" in event):
                return event
        event = dispatch()
        return event if isinstance(event, dict) else last

    def _message(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            message["params"] = params
        return message

    @staticmethod
    def _challenge(reply: _Reply) -> Any:
        body = reply.body
        if reply.status_code == 402:
            return body
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            data = body["error"].get("data")
            if is_challenge(data):
                return data
        return None

    @staticmethod
    def _unwrap(reply: _Reply) -> Any:
        body = reply.body
        if isinstance(body, dict) and body.get("error") is not None:
            raise UpstreamError(_error_message(body, "Tool endpoint returned an error"), status_code=reply.status_code)
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body

    # -- payment --------------------------------------------------------------

    async def send(self, message: dict[str, Any], listed_price: int | None = None) -> PaidCallResult:
        """Send ``message``, paying at most once if the endpoint asks for it.

        ``listed_price`` is the tool's advertised price in base units of the
        payment asset; a challenge above it, or above the configured ceiling,
        fails before the wallet is asked to sign anything. The paid retry is
        bound to the signing connection: if it is replaced or dropped first,
        ``ConnectionReplaced`` is raised and the authorization is not reported
        as a paid call.
        """
        reply = await self._post(message)
        challenge = self._challenge(reply)
        if challenge is None:
            return PaidCallResult(result=self._unwrap(reply))

        connection, auth = await self._authorize(challenge, listed_price)
        if self._manager.connection is not connection:
            raise ConnectionReplaced("Wallet connection changed before the payment was presented.")
        header = encode_payment_header(auth)
        mark_presented(auth)
        retry = await self._manager.run_bound(self._post(message, {PAYMENT_HEADER: header}))
        if self._challenge(retry) is not None:
            raise PaymentAuthorizationFailed(
                _error_message(retry.body, "Payment was not accepted by the endpoint")
            )
        return PaidCallResult(
            result=self._unwrap(retry),
            authorization=auth,
            settlement=decode_settlement(retry.headers.get(PAYMENT_RESPONSE_HEADER)),
        )

    async def _authorize(
        self, challenge: Any, listed_price: int | None
    ) -> tuple[WalletConnection, PaymentAuthorization]:
        accepts = parse_challenge(challenge, self._config.payment_timeout_secs)
        connection = self._manager.require_connection()
        wallet_network = connection.network
        requirement = select_payment_requirements(
            accepts, wallet_network.id if wallet_network else None
        )
        try:
            check_amount(requirement.amount, self._config.max_payment_value, listed_price)
        except PaymentCeilingExceeded as e:
            logger.error("Refusing payment on %s: %s", requirement.network, e)
            raise

        if wallet_network is None or wallet_network.id != requirement.network:
            raise NetworkMismatch(
                get_network(requirement.network).name,
                wallet_network.name if wallet_network else None,
            )

        if connection.id in self._paying:
            raise PaymentInProgress()
        self._paying.add(connection.id)
        try:
            auth = PaymentAuthorization.build(
                requirement,
                connection.address,
                ceiling=self._config.max_payment_value,
                listed_price=listed_price,
            )
            signature = await self._sign(connection, auth)
        finally:
            self._paying.discard(connection.id)

        logger.info(
            "Payment authorized: %d base units of %s on %s to %s.",
            auth.amount, auth.asset, auth.network, auth.payee,
        )
        return connection, auth.with_signature(signature)

    async def _sign(self, connection: WalletConnection, auth: PaymentAuthorization) -> str:
        try:
            signature = await self._manager.run_bound(
                connection.provider.request(
                    "eth_signTypedData_v4", [connection.address, json.dumps(auth.typed_data())]
                )
            )
        except ProviderRpcError as e:
            if e.is_user_rejection:
                raise UserRejected(e.message, code=e.code) from e
            raise PaymentAuthorizationFailed(e.message, code=e.code) from e
        if not isinstance(signature, str) or not signature:
            raise PaymentAuthorizationFailed("Wallet returned no signature")
        return signature

    # -- MCP methods ------------------------------------------------------------

    async def initialize(self) -> dict[str, Any]:
        """MCP handshake; stores the endpoint's session id if it issues one."""
        result = await self.send(self._message("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        }))
        self.server_info = result.result if isinstance(result.result, dict) else {}
        await self._post({"jsonrpc": "2.0", "method": "notifications/initialized"})
        logger.info("MCP session initialized with %s (session %s).", self._url, self._session_id)
        return self.server_info

    async def list_tools(self) -> list[dict[str, Any]]:
        """All tools the endpoint lists, following pagination cursors."""
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else None
            page = (await self.send(self._message("tools/list", params))).result or {}
            tools.extend(page.get("tools", []))
            cursor = page.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        listed_price: int | None = None,
    ) -> PaidCallResult:
        return await self.send(
            self._message("tools/call", {"name": name, "arguments": arguments or {}}),
            listed_price=listed_price,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PaymentTransportClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
