"""
Soroban JSON-RPC client.

Methods used:
- getEvents        - contract events from a start ledger (paginated)
- getLatestLedger  - current ledger sequence, used to seed never-indexed sources

Events are requested with `xdrFormat: "json"` so topics and values arrive as
SCVal JSON (`topicJson` / `valueJson`) instead of base64 XDR.

Every failure raises (httpx transport errors, httpx.HTTPStatusError for non-2xx,
RpcError for JSON-RPC error objects and malformed bodies) so the caller's
circuit breaker can count it.
"""

from dataclasses import dataclass, field
from itertools import count
from typing import Any, Dict, List, Optional

import httpx
import structlog

from indexer.core.errors import RpcError

logger = structlog.get_logger(__name__)

# Soroban RPC rejects getEvents limits above this
MAX_EVENTS_PAGE = 10_000


@dataclass
class EventPage:
    """One page of getEvents results."""

    events: List[Dict[str, Any]] = field(default_factory=list)
    latest_ledger: Optional[int] = None
    cursor: Optional[str] = None


def validate_events(events: Any, method: str = "getEvents") -> List[Dict[str, Any]]:
    """
    Check that every event carries the fields used for ordering and
    checkpointing: an integer `ledger` and a non-empty `id`.

    Raises:
        RpcError: the page is malformed. The offending event is logged whole.
    """
    if not isinstance(events, list):
        raise RpcError(f"{method}: events is not a list", method=method)

    for raw in events:
        problem = None
        if not isinstance(raw, dict):
            problem = "event is not an object"
        elif not raw.get("id") and not raw.get("pagingToken"):
            problem = "event has no id"
        else:
            ledger = raw.get("ledger")
            if isinstance(ledger, bool) or not isinstance(ledger, (int, str)):
                problem = "event has no ledger"
            else:
                try:
                    int(ledger)
                except ValueError:
                    problem = "event ledger is not an integer"
        if problem:
            logger.error("Malformed event in RPC response", method=method, problem=problem, raw=raw)
            raise RpcError(f"{method}: {problem}", method=method)
    return events


class SorobanRpcClient:
    def __init__(self, url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = count(1)

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON", method=method) from e

        if not isinstance(body, dict):
            raise RpcError(f"{method}: unexpected response body", method=method)

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RpcError(f"{method}: {message}", code=code, method=method)

        if "result" not in body:
            raise RpcError(f"{method}: response has no result", method=method)
        return body["result"]

    async def get_events(
        self,
        contract_id: str,
        start_ledger: Optional[int] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> EventPage:
        """
        Fetch contract events starting at `start_ledger` (inclusive), or
        strictly after the event id `cursor`. Exactly one must be given.

        Returned events are in chain order (ledger, then paging id).
        """
        if (start_ledger is None) == (cursor is None):
            raise ValueError("get_events needs exactly one of start_ledger or cursor")

        pagination: Dict[str, Any] = {"limit": min(int(limit), MAX_EVENTS_PAGE)}
        params: Dict[str, Any] = {
            "filters": [{"type": "contract", "contractIds": [contract_id]}],
            "pagination": pagination,
            "xdrFormat": "json",
        }
        if cursor is not None:
            pagination["cursor"] = cursor
        else:
            params["startLedger"] = int(start_ledger)
        result = await self._call("getEvents", params)

        if not isinstance(result, dict):
            raise RpcError("getEvents: result is not an object", method="getEvents")
        events = validate_events(result.get("events") or [])

        latest = result.get("latestLedger")
        try:
            latest_ledger = int(latest) if latest is not None else None
        except (TypeError, ValueError) as e:
            raise RpcError("getEvents: latestLedger is not an integer", method="getEvents") from e
        page = EventPage(
            events=events,
            latest_ledger=latest_ledger,
            cursor=result.get("cursor"),
        )
        logger.debug(
            "Fetched events",
            contract_id=contract_id,
            start_ledger=start_ledger,
            cursor=cursor,
            count=len(events),
            latest_ledger=page.latest_ledger,
        )
        return page

    async def get_latest_ledger(self) -> int:
        result = await self._call("getLatestLedger")
        try:
            return int(result["sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError("getLatestLedger: missing sequence", method="getLatestLedger") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
