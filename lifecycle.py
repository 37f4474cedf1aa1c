"""
Auction lifecycle evaluation: ingestion normalization, end-time resolution,
status classification and winner selection.

Everything in this module is pure. Callers pass "now" in explicitly.
"""

import json
import logging
import math
import operator
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

log = logging.getLogger(__name__)


class ContractViolation(ValueError):
    """A caller broke the evaluator's contract (as opposed to sending bad data)."""


# =============================================
# ENUMS
# =============================================

class Status(str, Enum):
    LIVE = 'Live'
    UPCOMING = 'Upcoming'
    CLOSED = 'Closed'
    PENDING = 'Pending'
    UNKNOWN = 'Unknown'


class Direction(str, Enum):
    FORWARD = 'forward'
    REVERSE = 'reverse'


class SaleType(IntEnum):
    FORWARD = 1
    BUY_NOW = 2
    REVERSE = 3


SALE_TYPE_DIRECTIONS = {
    SaleType.FORWARD: Direction.FORWARD,
    SaleType.REVERSE: Direction.REVERSE,
}

TRUE_STRINGS = {'true', '1', 'yes'}


def status_counts():
    """Zeroed count map holding every lifecycle status."""
    return {status.value: 0 for status in Status}


# =============================================
# VALUE PARSING
# =============================================

def parse_instant(value):
    """Return an aware UTC datetime, or None when the value can't be read as one.

    Accepts datetimes (naive ones are taken as UTC) and ISO-8601 strings,
    including a trailing 'Z'.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        try:
            return value.astimezone(timezone.utc)
        except OverflowError:
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text[-1] in 'Zz':
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parse_instant(parsed)


def to_number(value):
    """Finite float or None. Booleans are not amounts."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _to_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


def _opt_str(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(raw, *keys):
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


# =============================================
# RECORDS
# =============================================

class Duration(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: float = 0
    hours: float = 0
    minutes: float = 0

    @field_validator('days', 'hours', 'minutes', mode='before')
    @classmethod
    def _lenient_number(cls, value):
        number = to_number(value)
        return 0 if number is None else number

    @classmethod
    def coerce(cls, value):
        """Build from a mapping, a JSON string (as stored in SQLite) or nothing."""
        if isinstance(value, Duration):
            return value
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return cls()
        if not isinstance(value, Mapping):
            return cls()
        return cls(days=value.get('days'), hours=value.get('hours'),
                   minutes=value.get('minutes'))

    def as_timedelta(self):
        return timedelta(days=self.days, hours=self.hours, minutes=self.minutes)


class AuctionRecord(BaseModel):
    """One auction snapshot with a single canonical direction."""

    model_config = ConfigDict(frozen=True)

    id: str = ''
    direction: Optional[Direction] = None
    sale_type: Optional[SaleType] = None
    subtype: str = ''
    approved: bool = False
    scheduled_start: Optional[datetime] = None
    duration: Duration = Field(default_factory=Duration)
    category_id: Optional[str] = None
    purchaser: Optional[str] = None
    title: Optional[str] = None
    currency: str = 'USD'
    seller: Optional[str] = None
    buy_now_price: Optional[float] = None
    start_price: Optional[float] = None

    @property
    def is_buy_now(self):
        return self.direction is None and self.sale_type is SaleType.BUY_NOW


class BidRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ''
    auction_id: Optional[str] = None
    bidder_id: Optional[str] = None
    amount: Optional[float] = None
    created_at: Optional[datetime] = None


class WinnerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    awarded: ClassVar[bool] = True

    auction_id: str
    winner_bid_id: str
    winner_bidder_id: Optional[str] = None
    winning_amount: float


class NotAwarded(BaseModel):
    model_config = ConfigDict(frozen=True)

    awarded: ClassVar[bool] = False

    auction_id: str


# =============================================
# INGESTION
# =============================================

def _resolve_direction(label, sale_type, auction_id):
    text = str(label or '').strip().lower()
    named = Direction(text) if text in (Direction.FORWARD.value, Direction.REVERSE.value) else None
    coded = SALE_TYPE_DIRECTIONS.get(sale_type)

    if named is not None and sale_type is not None and coded is not named:
        log.warning('Auction %s: auction type %r disagrees with sale_type %s; using %r',
                    auction_id, text, int(sale_type), named.value)
    return named or coded


def _sale_type(value):
    number = to_number(value)
    if number is None or not number.is_integer():
        return None
    try:
        return SaleType(int(number))
    except ValueError:
        return None


def normalize_auction(raw):
    """Turn a raw auction document (storage row or JSON dict) into an AuctionRecord.

    Both the camelCase API names and the snake/lowercase storage column names
    are understood. Bad values degrade to None/defaults; only a non-mapping
    input is rejected.
    """
    if isinstance(raw, AuctionRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise ContractViolation(f'Auction record must be a mapping, got {type(raw).__name__}')

    auction_id = _opt_str(raw.get('id')) or ''
    sale_type = _sale_type(_pick(raw, 'saleType', 'sale_type'))
    direction = _resolve_direction(
        _pick(raw, 'auctionDirection', 'auctiontype', 'auction_type'), sale_type, auction_id)

    return AuctionRecord(
        id=auction_id,
        direction=direction,
        sale_type=sale_type,
        subtype=str(_pick(raw, 'auctionSubtype', 'auctionsubtype') or '').strip().lower(),
        approved=_to_bool(raw.get('approved')),
        scheduled_start=parse_instant(_pick(raw, 'scheduledStart', 'scheduledstart')),
        duration=Duration.coerce(_pick(raw, 'duration', 'auctionduration')),
        category_id=_opt_str(_pick(raw, 'categoryId', 'categoryid')),
        purchaser=_opt_str(raw.get('purchaser')),
        title=_opt_str(_pick(raw, 'auction_name', 'productname', 'title')),
        currency=_opt_str(raw.get('currency')) or 'USD',
        seller=_opt_str(_pick(raw, 'seller', 'createdby')),
        buy_now_price=to_number(raw.get('buy_now_price')),
        start_price=to_number(raw.get('startprice')),
    )


def normalize_bid(raw):
    if isinstance(raw, BidRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise ContractViolation(f'Bid record must be a mapping, got {type(raw).__name__}')
    return BidRecord(
        id=_opt_str(raw.get('id')) or '',
        auction_id=_opt_str(_pick(raw, 'auctionId', 'auction_id')),
        bidder_id=_opt_str(_pick(raw, 'bidderId', 'bidder_id', 'user_id')),
        amount=to_number(raw.get('amount')),
        created_at=parse_instant(_pick(raw, 'createdAt', 'created_at')),
    )


def require_now(now):
    if not isinstance(now, datetime):
        raise ContractViolation(f'"now" must be a datetime, got {type(now).__name__}')
    return parse_instant(now)


# =============================================
# DURATION / STATUS / WINNER
# =============================================

def resolve_end(start, duration=None):
    """End instant of an auction window, or None if the start can't be read."""
    start = parse_instant(start)
    if start is None:
        return None
    try:
        return start + Duration.coerce(duration).as_timedelta()
    except OverflowError:
        return None


def classify(auction, now):
    """Lifecycle status of one auction at `now`.

    Approval is checked before timing, so an unapproved auction is Pending
    even while its window is open.
    """
    now = require_now(now)
    auction = normalize_auction(auction)

    start = auction.scheduled_start
    if start is None:
        return Status.UNKNOWN
    if not auction.approved:
        return Status.PENDING

    end = resolve_end(start, auction.duration)
    if end is not None and start <= now <= end:
        return Status.LIVE
    if start > now:
        return Status.UPCOMING
    if end is not None and end < now:
        return Status.CLOSED
    return Status.UNKNOWN


def select_winner(auction, bids):
    """Settle an auction: highest qualifying bid for forward, lowest for reverse.

    Ties keep the first qualifying bid in input order. Bids without a finite
    amount, and entries that aren't bid records at all, are skipped.
    """
    auction = normalize_auction(auction)
    if bids is None:
        raise ContractViolation(f'select_winner({auction.id!r}) needs a bid collection, got None')
    if auction.direction is None:
        raise ContractViolation(f'Auction {auction.id!r} is neither forward nor reverse')

    better = operator.gt if auction.direction is Direction.FORWARD else operator.lt
    best = None
    for bid in bids:
        if not isinstance(bid, (BidRecord, Mapping)):
            continue
        bid = normalize_bid(bid)
        if bid.amount is None:
            continue
        if best is None or better(bid.amount, best.amount):
            best = bid

    if best is None:
        return NotAwarded(auction_id=auction.id)
    return WinnerResult(
        auction_id=auction.id,
        winner_bid_id=best.id,
        winner_bidder_id=best.bidder_id,
        winning_amount=best.amount,
    )
