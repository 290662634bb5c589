"""
HTTP clients for the external collaborators of the on-chain mirror.

Clients
-------
- ``LedgerClient``: submits signed state transitions, reports their status
- ``ProofIndexClient``: DAS-style JSON-RPC read index (proofs, asset search,
  signature history)
- ``LookupClient``: best-effort receipt -> asset id lookup (push-style index)
- ``ContentStoreClient``: durable blob store returning stable URIs

Every client is an async context manager around one ``httpx.AsyncClient``
and every call returns a tagged result (see ``results``). Transport errors,
timeouts, 429 and 5xx all become ``Transient``; nothing here raises for an
expected remote outcome.

Usage
-----
    async with LedgerClient(Config.LEDGER_API_URL) as ledger:
        result = await ledger.submit_update(body)
        if isinstance(result, Ok):
            ...
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import httpx

from skillmirror.core.logging.logger import get_logger
from skillmirror.modules.onchain.results import (
    Capabilities,
    MerkleProof,
    NotFound,
    Ok,
    Result,
    Stale,
    SubmitReceipt,
    TooLarge,
    TransactionStatus,
    Transient,
)

logger = get_logger(__name__)


# =============================================================================
# BASE CLIENT
# =============================================================================


class HttpCollaborator:
    """
    Shared plumbing: client lifecycle, transport error mapping and the
    ``GET /capabilities`` endpoint every collaborator exposes.
    """

    service_name: str = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> HttpCollaborator:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise RuntimeError(
                f"{type(self).__name__} must be opened before use. "
                f"Use 'async with {type(self).__name__}(url) as client:'"
            )
        return self._http_client

    # -------------------------------------------------------------------------
    # Request helpers
    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Union[httpx.Response, Transient]:
        try:
            return await self.http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning(
                f"{self.service_name} request timed out",
                extra={"service": self.service_name, "method": method, "path": path},
            )
            return Transient(f"timeout: {exc}")
        except httpx.HTTPError as exc:
            logger.warning(
                f"{self.service_name} request failed",
                extra={
                    "service": self.service_name,
                    "method": method,
                    "path": path,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return Transient(f"{type(exc).__name__}: {exc}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _unexpected(self, response: httpx.Response, body: Any = None) -> Transient:
        reason = body.get("reason") if isinstance(body, dict) else None
        logger.warning(
            f"{self.service_name} returned an unexpected response",
            extra={
                "service": self.service_name,
                "status_code": response.status_code,
                "reason": reason,
            },
        )
        return Transient(reason or f"HTTP {response.status_code}", status_code=response.status_code)

    async def get_capabilities(self) -> Result[Capabilities]:
        response = await self._request("GET", "/capabilities")
        if isinstance(response, Transient):
            return response
        if response.status_code == 404:
            return NotFound("capabilities endpoint not available")
        body = self._json(response)
        if response.status_code != 200:
            return self._unexpected(response, body)

        if not isinstance(body, dict) or not isinstance(body.get("version"), str):
            return Transient("malformed capabilities document", status_code=response.status_code)
        features = body.get("features") or []
        if not isinstance(features, list):
            return Transient("malformed capabilities features", status_code=response.status_code)
        return Ok(Capabilities(version=body["version"], features=frozenset(str(f) for f in features)))


# =============================================================================
# LEDGER
# =============================================================================


class LedgerClient(HttpCollaborator):
    """
    Ledger submission endpoint.

    ``POST /transactions``: 200/202 ``{signature}``; 409 ``{reason: "stale_root"}``;
    413 ``{reason: "oversized"}``. ``GET /transactions/{sig}``:
    ``{status: pending|confirmed|failed, reason}``.
    """

    service_name = "ledger"

    async def submit_update(self, body: Dict[str, Any]) -> Result[SubmitReceipt]:
        response = await self._request("POST", "/transactions", json=body)
        if isinstance(response, Transient):
            return response

        data = self._json(response)
        reason = data.get("reason") if isinstance(data, dict) else None

        if response.status_code in (200, 202):
            signature = data.get("signature") if isinstance(data, dict) else None
            if isinstance(signature, str) and signature:
                return Ok(SubmitReceipt(signature=signature))
            return Transient("submission accepted without a signature", response.status_code)

        if reason == "stale_root" or (response.status_code == 409 and reason is None):
            return Stale(reason or "stale_root")
        if reason == "oversized" or response.status_code == 413:
            return TooLarge(reason or "oversized")
        return self._unexpected(response, data)

    async def get_transaction_status(self, signature: str) -> Result[TransactionStatus]:
        response = await self._request("GET", f"/transactions/{signature}")
        if isinstance(response, Transient):
            return response
        if response.status_code == 404:
            return NotFound(f"transaction {signature} not seen yet")

        data = self._json(response)
        if response.status_code != 200:
            return self._unexpected(response, data)
        if not isinstance(data, dict) or data.get("status") not in ("pending", "confirmed", "failed"):
            return Transient("malformed transaction status", response.status_code)
        return Ok(TransactionStatus(status=data["status"], reason=data.get("reason")))


# =============================================================================
# PROOF / READ INDEX (DAS JSON-RPC)
# =============================================================================


class ProofIndexClient(HttpCollaborator):
    """DAS-style JSON-RPC read index."""

    service_name = "index"

    async def _rpc(self, method: str, params: Dict[str, Any]) -> Result[Any]:
        response = await self._request(
            "POST",
            self.base_url,
            json={"jsonrpc": "2.0", "id": "skillmirror", "method": method, "params": params},
        )
        if isinstance(response, Transient):
            return response

        data = self._json(response)
        if response.status_code != 200:
            return self._unexpected(response, data)
        if not isinstance(data, dict):
            return Transient(f"malformed {method} response", response.status_code)

        error = data.get("error")
        if error:
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            if "not found" in message.lower():
                return NotFound(message)
            logger.warning(
                "Index RPC error",
                extra={"service": self.service_name, "rpc_method": method, "error": message},
            )
            return Transient(message)

        result = data.get("result")
        if result is None:
            return NotFound(f"{method} returned no result")
        return Ok(result)

    async def get_asset_proof(self, asset_id: str) -> Result[MerkleProof]:
        """Current proof and leaf hashes for ``asset_id`` (``getAssetProof`` + ``getAsset``)."""
        proof_result = await self._rpc("getAssetProof", {"id": asset_id})
        if not isinstance(proof_result, Ok):
            return proof_result
        asset_result = await self._rpc("getAsset", {"id": asset_id})
        if not isinstance(asset_result, Ok):
            return asset_result

        try:
            proof = proof_result.value
            compression = asset_result.value["compression"]
            return Ok(
                MerkleProof(
                    asset_id=asset_id,
                    root=str(proof["root"]),
                    proof=tuple(str(node) for node in proof["proof"]),
                    data_hash=str(compression["data_hash"]),
                    creator_hash=str(compression["creator_hash"]),
                    leaf_index=int(compression.get("leaf_id", proof.get("node_index", 0))),
                    tree_id=str(proof.get("tree_id") or compression.get("tree", "")),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Malformed proof response",
                extra={"asset_id": asset_id, "error": str(exc), "error_type": type(exc).__name__},
            )
            return Transient(f"malformed proof response: {exc}")

    async def search_assets(
        self,
        owner_address: str,
        collection: Optional[str] = None,
        limit: int = 50,
    ) -> Result[List[str]]:
        """Asset ids owned by ``owner_address``, newest first."""
        params: Dict[str, Any] = {
            "ownerAddress": owner_address,
            "page": 1,
            "limit": limit,
            "sortBy": {"sortBy": "created", "sortDirection": "desc"},
        }
        if collection:
            params["grouping"] = ["collection", collection]

        result = await self._rpc("searchAssets", params)
        if not isinstance(result, Ok):
            return result
        items = result.value.get("items", []) if isinstance(result.value, dict) else []
        return Ok([str(item["id"]) for item in items if isinstance(item, dict) and item.get("id")])

    async def get_signatures_for_asset(self, asset_id: str) -> Result[List[str]]:
        """Transaction signatures that touched ``asset_id``."""
        result = await self._rpc("getSignaturesForAsset", {"id": asset_id, "page": 1, "limit": 100})
        if not isinstance(result, Ok):
            return result

        items = result.value.get("items", []) if isinstance(result.value, dict) else []
        signatures: List[str] = []
        for item in items:
            if isinstance(item, (list, tuple)) and item:
                signatures.append(str(item[0]))
            elif isinstance(item, dict) and item.get("signature"):
                signatures.append(str(item["signature"]))
        return Ok(signatures)


# =============================================================================
# FAST LOOKUP
# =============================================================================


class LookupClient(HttpCollaborator):
    """
    Push-style transaction parser: ``POST {transactions: [sig]}`` returns
    parsed transactions carrying ``events.compressed[].assetId``.
    """

    service_name = "lookup"

    async def lookup_asset_ids(self, signature: str) -> Result[List[str]]:
        response = await self._request("POST", self.base_url, json={"transactions": [signature]})
        if isinstance(response, Transient):
            return response

        data = self._json(response)
        if response.status_code == 404:
            return NotFound(f"transaction {signature} not indexed")
        if response.status_code != 200:
            return self._unexpected(response, data)
        if not isinstance(data, list):
            return Transient("malformed lookup response", response.status_code)

        asset_ids: List[str] = []
        for transaction in data:
            if not isinstance(transaction, dict):
                continue
            events = transaction.get("events") or {}
            for event in events.get("compressed") or []:
                if isinstance(event, dict) and event.get("assetId"):
                    asset_ids.append(str(event["assetId"]))

        if not asset_ids:
            return NotFound(f"no compressed asset events for {signature}")
        return Ok(asset_ids)


# =============================================================================
# CONTENT STORE
# =============================================================================


class ContentStoreClient(HttpCollaborator):
    """Durable blob store: ``POST /blobs`` returns ``{uri}``."""

    service_name = "content_store"

    async def upload(self, data: bytes, content_type: str = "application/json") -> Result[str]:
        response = await self._request(
            "POST",
            "/blobs",
            content=data,
            headers={"Content-Type": content_type},
        )
        if isinstance(response, Transient):
            return response

        body = self._json(response)
        if response.status_code == 413:
            return TooLarge("blob exceeds content store limit")
        if response.status_code not in (200, 201):
            return self._unexpected(response, body)

        uri = body.get("uri") if isinstance(body, dict) else None
        if not isinstance(uri, str) or not uri:
            return Transient("upload accepted without a uri", response.status_code)

        logger.debug(
            "Content uploaded",
            extra={"service": self.service_name, "uri": uri, "size_bytes": len(data)},
        )
        return Ok(uri)
