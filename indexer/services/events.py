"""
Decoding of raw Soroban contract events into domain events.

A raw event is one entry of the getEvents `events` list:

    {
        "id": "0000000450971029504-0000000001",   # paging id, lexicographically ordered
        "ledger": 105000,
        "ledgerClosedAt": "2024-05-01T12:00:00Z",
        "contractId": "CC...",
        "txHash": "ab12...",
        "topicJson": [{"symbol": "buy"}, {"address": "GA..."}, {"address": "CB..."}],
        "valueJson": {"vec": [{"i128": "50000000"}, {"i128": "1000000000"}]},
    }

Topic 0 is a symbol naming the variant. The payload fields are the remaining
topics followed by the value (a vec is flattened, a map is read by field name).
Each variant belongs to exactly one source kind; anything else is an
EventDecodeError carrying the raw payload so it can be replayed by hand.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from indexer.core.errors import EventDecodeError, UnknownEventTypeError

_U64 = 1 << 64


class SourceKind(str, Enum):
    TOKEN_FACTORY = "token_factory"
    AMM = "amm"


# ============== SCVal JSON ==============


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"expected integer, got bool {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 10)
    raise ValueError(f"expected integer, got {type(value).__name__}")


def _parse_wide_int(value: Any, signed: bool) -> int:
    # Decimal string, plain int, or {"hi": ..., "lo": ...} parts
    if isinstance(value, dict):
        hi = _parse_int(value["hi"])
        lo = _parse_int(value["lo"])
        if not 0 <= lo < _U64:
            raise ValueError(f"lo part out of range: {lo}")
        if not signed and hi < 0:
            raise ValueError(f"unsigned value with negative hi part: {hi}")
        return hi * _U64 + lo
    return _parse_int(value)


def scval_to_native(value: Any) -> Any:
    """
    Convert an SCVal in JSON form into a Python value.

    symbol/string/address -> str, integers -> int, bool -> bool, void -> None,
    bytes -> bytes, vec -> list, map -> dict.

    Raises:
        ValueError: the value is not a recognised SCVal JSON shape.
    """
    if value == "void":
        return None
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError(f"not an SCVal: {value!r}")

    (kind, inner), = value.items()

    if kind in ("symbol", "string", "address"):
        if not isinstance(inner, str):
            raise ValueError(f"{kind} must be a string")
        return inner
    if kind == "bool":
        if not isinstance(inner, bool):
            raise ValueError("bool must be true or false")
        return inner
    if kind == "void":
        return None
    if kind in ("u32", "i32", "u64", "i64", "timepoint", "duration"):
        return _parse_int(inner)
    if kind in ("i128", "i256"):
        return _parse_wide_int(inner, signed=True)
    if kind in ("u128", "u256"):
        return _parse_wide_int(inner, signed=False)
    if kind == "bytes":
        return bytes.fromhex(inner)
    if kind == "vec":
        return [scval_to_native(item) for item in (inner or [])]
    if kind == "map":
        result = {}
        for entry in inner or []:
            key = scval_to_native(entry["key"])
            if isinstance(key, (list, dict)):
                raise ValueError("map keys must be scalars")
            result[key] = scval_to_native(entry["val"])
        return result

    raise ValueError(f"unsupported SCVal type: {kind}")


# ============== Domain events ==============


@dataclass(frozen=True, kw_only=True)
class EventBase:
    source_id: str
    position: str  # ledger sequence as a string
    event_id: str
    ledger: int
    contract_id: str
    tx_hash: Optional[str] = None
    closed_at: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class TokenCreated(EventBase):
    creator: str
    token: str
    name: str
    symbol: str


@dataclass(frozen=True, kw_only=True)
class TokenBought(EventBase):
    buyer: str
    token: str
    xlm_amount: int
    tokens_received: int


@dataclass(frozen=True, kw_only=True)
class TokenSold(EventBase):
    seller: str
    token: str
    tokens_sold: int
    xlm_received: int


@dataclass(frozen=True, kw_only=True)
class TokenGraduated(EventBase):
    token: str
    xlm_raised: int


@dataclass(frozen=True, kw_only=True)
class LiquidityAdded(EventBase):
    pool: str  # emitting pair contract
    provider: str
    amount0: int
    amount1: int
    liquidity: int


@dataclass(frozen=True, kw_only=True)
class LiquidityRemoved(EventBase):
    pool: str
    provider: str
    amount0: int
    amount1: int
    liquidity: int


@dataclass(frozen=True, kw_only=True)
class SwapExecuted(EventBase):
    pool: str
    sender: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int


DomainEvent = Union[
    TokenCreated,
    TokenBought,
    TokenSold,
    TokenGraduated,
    LiquidityAdded,
    LiquidityRemoved,
    SwapExecuted,
]

_STR = "str"
_AMOUNT = "amount"

# topic symbol -> (class, payload fields in order)
TOKEN_FACTORY_EVENTS: Dict[str, Tuple[type, Tuple[Tuple[str, str], ...]]] = {
    "created": (TokenCreated, (("creator", _STR), ("token", _STR), ("name", _STR), ("symbol", _STR))),
    "buy": (TokenBought, (("buyer", _STR), ("token", _STR), ("xlm_amount", _AMOUNT), ("tokens_received", _AMOUNT))),
    "sell": (TokenSold, (("seller", _STR), ("token", _STR), ("tokens_sold", _AMOUNT), ("xlm_received", _AMOUNT))),
    "graduate": (TokenGraduated, (("token", _STR), ("xlm_raised", _AMOUNT))),
}

_LIQUIDITY_FIELDS = (("provider", _STR), ("amount0", _AMOUNT), ("amount1", _AMOUNT), ("liquidity", _AMOUNT))

AMM_EVENTS: Dict[str, Tuple[type, Tuple[Tuple[str, str], ...]]] = {
    "liq_add": (LiquidityAdded, _LIQUIDITY_FIELDS),
    "liq_rm": (LiquidityRemoved, _LIQUIDITY_FIELDS),
    "swap": (
        SwapExecuted,
        (
            ("sender", _STR),
            ("token_in", _STR),
            ("token_out", _STR),
            ("amount_in", _AMOUNT),
            ("amount_out", _AMOUNT),
        ),
    ),
}

EVENTS_BY_KIND = {
    SourceKind.TOKEN_FACTORY: TOKEN_FACTORY_EVENTS,
    SourceKind.AMM: AMM_EVENTS,
}


def event_type_name(event: DomainEvent) -> str:
    """Topic symbol of a decoded event (used as a metrics label)."""
    for table in EVENTS_BY_KIND.values():
        for symbol, (cls, _) in table.items():
            if isinstance(event, cls):
                return symbol
    return type(event).__name__


# ============== Raw event helpers ==============


def raw_event_id(raw: Dict[str, Any]) -> str:
    return str(raw.get("id") or raw.get("pagingToken") or "")


def raw_ledger(raw: Dict[str, Any]) -> int:
    return int(raw["ledger"])


def raw_event_type(raw: Dict[str, Any]) -> Optional[str]:
    """Best-effort topic symbol for logging; never raises."""
    try:
        topics = _raw_topics(raw)
        symbol = scval_to_native(topics[0]) if topics else None
    except (ValueError, KeyError, TypeError, IndexError):
        return None
    return symbol if isinstance(symbol, str) else None


def parse_closed_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _raw_topics(raw: Dict[str, Any]) -> List[Any]:
    topics = raw.get("topicJson")
    if topics is None:
        topics = raw.get("topic")
    if not isinstance(topics, list):
        raise ValueError("event has no topic list")
    return topics


def _raw_value(raw: Dict[str, Any]) -> Any:
    if "valueJson" in raw:
        return raw["valueJson"]
    return raw.get("value", "void")


def select_new_events(
    events: Iterable[Dict[str, Any]],
    position: int,
    last_event_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Keep the events strictly after checkpoint (`position`, `last_event_id`).

    Without an event id every event at `position` is considered processed.
    Events emitted by failed contract calls are dropped.
    """
    selected = []
    for raw in events:
        if raw.get("inSuccessfulContractCall") is False:
            continue
        ledger = raw_ledger(raw)
        if ledger < position:
            continue
        if ledger == position:
            if last_event_id is None or raw_event_id(raw) <= last_event_id:
                continue
        selected.append(raw)
    selected.sort(key=lambda r: (raw_ledger(r), raw_event_id(r)))
    return selected


def page_frontier(events: Iterable[Dict[str, Any]]) -> Optional[Tuple[int, str, Optional[datetime]]]:
    """(ledger, event id, close time) of the last event in a page, kept or dropped."""
    last = max(events, key=lambda r: (raw_ledger(r), raw_event_id(r)), default=None)
    if last is None:
        return None
    return raw_ledger(last), raw_event_id(last), parse_closed_at(last.get("ledgerClosedAt"))


# ============== Decoding ==============


def _coerce(field_name: str, kind: str, value: Any) -> Any:
    if kind == _STR:
        if not isinstance(value, str) or not value:
            raise ValueError(f"{field_name} must be a non-empty string")
        return value
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer amount")
    if value < 0:
        raise ValueError(f"{field_name} must not be negative")
    return value


def _payload(symbol: str, topics: List[Any], value: Any, fields: Tuple[Tuple[str, str], ...]) -> Dict[str, Any]:
    names = [name for name, _ in fields]
    topic_values = [scval_to_native(t) for t in topics[1:]]
    body = scval_to_native(value)

    if isinstance(body, dict):
        # Named fields in the value, positional ones in the topics
        values = dict(zip(names, topic_values))
        for name in names[len(topic_values):]:
            if name not in body:
                raise ValueError(f"{symbol}: missing field {name}")
            values[name] = body[name]
        return values

    if body is None:
        items = topic_values
    elif isinstance(body, list):
        items = topic_values + body
    else:
        items = topic_values + [body]

    if len(items) != len(names):
        raise ValueError(f"{symbol}: expected {len(names)} fields, got {len(items)}")
    return dict(zip(names, items))


def decode_event(raw: Dict[str, Any], source_id: str, kind: SourceKind) -> DomainEvent:
    """
    Decode one raw chain event emitted by a source of the given kind.

    Raises:
        UnknownEventTypeError: topic symbol is not a variant of this source kind.
        EventDecodeError: any other malformed topic, value or field.
    """
    event_id = raw_event_id(raw)
    position = str(raw.get("ledger", ""))
    error_context = dict(source_id=source_id, position=position, event_id=event_id, raw=raw)

    try:
        topics = _raw_topics(raw)
        if not topics:
            raise ValueError("event has no topics")
        symbol = scval_to_native(topics[0])
    except (ValueError, KeyError, TypeError) as e:
        raise EventDecodeError(f"Undecodable topics: {e}", **error_context) from e

    known = EVENTS_BY_KIND[kind]
    if not isinstance(symbol, str) or symbol not in known:
        raise UnknownEventTypeError(
            f"Unknown {kind.value} event type: {symbol!r}",
            event_type=symbol if isinstance(symbol, str) else None,
            **error_context,
        )

    cls, fields = known[symbol]
    try:
        if not event_id:
            raise ValueError("event has no id")
        ledger = raw_ledger(raw)
        contract_id = raw.get("contractId")
        if not contract_id:
            raise ValueError("event has no contractId")
        values = _payload(symbol, topics, _raw_value(raw), fields)
        values = {name: _coerce(name, field_kind, values[name]) for name, field_kind in fields}
    except (ValueError, KeyError, TypeError) as e:
        raise EventDecodeError(f"Malformed {symbol} event: {e}", event_type=symbol, **error_context) from e

    if kind == SourceKind.AMM:
        values["pool"] = contract_id

    return cls(
        source_id=source_id,
        position=str(ledger),
        event_id=event_id,
        ledger=ledger,
        contract_id=contract_id,
        tx_hash=raw.get("txHash"),
        closed_at=parse_closed_at(raw.get("ledgerClosedAt")),
        **values,
    )
