"""
mempool.space / Esplora REST blockchain backend.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from hdengine.backends.base import UTXO, AddressTransaction, BlockchainBackend, TxEndpoint
from hdengine.errors import NetworkError, SendTxError
from hdengine.wallet.address import address_to_scriptpubkey
from hdengine.wallet.models import FeeEstimates

DEFAULT_TIMEOUT = 30.0

# Esplora returns confirmed history in pages of this size
CHAIN_TXS_PAGE_SIZE = 25

# WARNING: Enabling this will log wallet addresses
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class MempoolBackend(BlockchainBackend):
    """
    Blockchain backend using the mempool.space (Esplora) HTTP API.

    Endpoints used:
    - GET  /address/{address}/utxo
    - GET  /address/{address}/txs and /address/{address}/txs/chain/{last_txid}
    - GET  /v1/fees/recommended
    - GET  /blocks/tip/height
    - POST /tx
    """

    def __init__(
        self,
        base_url: str = "https://mempool.space/api",
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _describe(self, address: str) -> str:
        return address if SENSITIVE_LOGGING else f"{address[:6]}..."

    async def _api_call(self, endpoint: str) -> Any:
        """GET an endpoint and decode JSON, translating transport failures."""
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"API call timed out: {endpoint.split('/')[0]} - {e}")
            raise NetworkError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"API call failed: {endpoint.split('/')[0]} - {e}")
            raise NetworkError(f"Request failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from provider: {e}") from e

    async def get_block_height(self) -> int:
        return int(await self._api_call("blocks/tip/height"))

    async def get_utxos(self, address: str) -> list[UTXO]:
        data = await self._api_call(f"address/{address}/utxo")
        if not data:
            return []

        tip = await self.get_block_height()
        scriptpubkey = address_to_scriptpubkey(address).hex()

        utxos = []
        for entry in data:
            status = entry.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            confirmations = tip - height + 1 if height is not None else 0
            utxos.append(
                UTXO(
                    txid=entry["txid"],
                    vout=entry["vout"],
                    value=entry["value"],
                    address=address,
                    confirmations=confirmations,
                    scriptpubkey=scriptpubkey,
                    height=height,
                )
            )

        logger.debug(f"Found {len(utxos)} UTXOs for {self._describe(address)}")
        return utxos

    @staticmethod
    def _parse_transaction(entry: dict[str, Any]) -> AddressTransaction:
        status = entry.get("status", {})
        inputs = [
            TxEndpoint(
                address=(vin.get("prevout") or {}).get("scriptpubkey_address"),
                value=(vin.get("prevout") or {}).get("value", 0),
            )
            for vin in entry.get("vin", [])
        ]
        outputs = [
            TxEndpoint(address=vout.get("scriptpubkey_address"), value=vout.get("value", 0))
            for vout in entry.get("vout", [])
        ]
        return AddressTransaction(
            txid=entry["txid"],
            inputs=inputs,
            outputs=outputs,
            fee=entry.get("fee", 0),
            confirmed=bool(status.get("confirmed")),
            block_height=status.get("block_height"),
        )

    async def get_address_history(self, address: str) -> list[AddressTransaction]:
        page = await self._api_call(f"address/{address}/txs")
        entries: list[dict[str, Any]] = list(page)

        # First page holds mempool txs plus the first confirmed page
        confirmed = [e for e in page if e.get("status", {}).get("confirmed")]
        while len(confirmed) >= CHAIN_TXS_PAGE_SIZE:
            last_txid = confirmed[-1]["txid"]
            confirmed = await self._api_call(f"address/{address}/txs/chain/{last_txid}")
            entries.extend(confirmed)

        try:
            history = [self._parse_transaction(e) for e in entries]
        except KeyError as e:
            raise NetworkError(f"Malformed transaction from provider: missing {e}") from e

        logger.debug(f"Found {len(history)} transactions for {self._describe(address)}")
        return history

    async def get_fee_estimates(self) -> FeeEstimates:
        data = await self._api_call("v1/fees/recommended")
        try:
            return FeeEstimates.model_validate(data)
        except ValidationError as e:
            raise NetworkError(f"Malformed fee estimates: {e}") from e

    async def broadcast(self, raw_tx: str) -> str:
        url = f"{self.base_url}/tx"
        try:
            response = await self.client.post(
                url, content=raw_tx, headers={"Content-Type": "text/plain"}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Broadcast rejected: {e.response.status_code} {e.response.text}")
            raise SendTxError(f"Broadcast rejected: {e.response.text}") from e
        except httpx.HTTPError as e:
            logger.error(f"Broadcast failed: {e}")
            raise SendTxError(f"Broadcast failed: {e}") from e

        txid = response.text.strip()
        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()
