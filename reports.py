"""
Dashboard reports built on one evaluation pass over normalized auctions and bids.

Every function takes the request's single `now` and returns plain,
JSON-serializable structures for the admin views.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from lifecycle import (
    AuctionRecord,
    BidRecord,
    ContractViolation,
    Direction,
    NotAwarded,
    Status,
    WinnerResult,
    classify,
    normalize_auction,
    normalize_bid,
    parse_instant,
    require_now,
    resolve_end,
    select_winner,
    status_counts,
)

COMMISSION_RATE = 0.05
UNCATEGORIZED = 'Uncategorized'
UNSPECIFIED = 'unspecified'

KNOWN_SUBTYPES = {
    Direction.FORWARD: ('english', 'sealed', 'silent'),
    Direction.REVERSE: ('standard', 'ranked', 'sealed'),
}
SUBTYPE_ALIASES = {
    Direction.FORWARD: {'standard': 'english'},
    Direction.REVERSE: {},
}


class EvaluatedAuction(BaseModel):
    """An auction tagged with its window, status, bids and settlement at one `now`."""

    model_config = ConfigDict(frozen=True)

    auction: AuctionRecord
    end: Optional[datetime] = None
    status: Status
    bids: Tuple[BidRecord, ...] = ()
    settlement: Union[WinnerResult, NotAwarded]


# =============================================
# HELPERS
# =============================================

def _money(value):
    return round(value, 2)


def _iso(value):
    return value.isoformat() if value is not None else None


def _directions(direction=None):
    if direction is None:
        return tuple(Direction)
    try:
        return (Direction(direction),)
    except ValueError:
        raise ContractViolation(f'Unknown auction direction {direction!r}') from None


def subtype_key(direction, subtype):
    subtype = (subtype or '').strip().lower()
    if not subtype:
        return UNSPECIFIED
    return SUBTYPE_ALIASES[direction].get(subtype, subtype)


def category_label(category_id, category_names=None):
    if not category_id:
        return UNCATEGORIZED
    if category_names is None:
        return category_id
    return category_names.get(category_id) or UNCATEGORIZED


def display_name(profile, default='-'):
    if not profile:
        return default
    name = f"{profile.get('fname') or ''} {profile.get('lname') or ''}".strip()
    return name or default


def index_profiles(rows):
    """Map profiles by id and by lowercased email; auctions reference sellers by either."""
    profiles = {}
    for row in rows:
        profile = dict(row)
        if profile.get('email'):
            profiles[str(profile['email']).lower()] = profile
        if profile.get('id') is not None:
            profiles[str(profile['id'])] = profile
    return profiles


def lookup_profile(profiles, key):
    if not profiles or not key:
        return None
    return profiles.get(key) or profiles.get(key.lower())


def group_bids(bids):
    """Bucket bids by auction id, keeping input order. Bids with no auction are dropped."""
    if bids is None:
        raise ContractViolation('Bid collection is required, got None')
    grouped = {}
    for bid in bids:
        bid = normalize_bid(bid)
        if bid.auction_id is None:
            continue
        grouped.setdefault(bid.auction_id, []).append(bid)
    return grouped


def _best_amount(direction, bids):
    amounts = [bid.amount for bid in bids if bid.amount is not None]
    if not amounts:
        return 0
    return max(amounts) if direction is Direction.FORWARD else min(amounts)


# =============================================
# EVALUATION PASS
# =============================================

def evaluate(auctions, bids, now):
    """Classify and settle every auction against the same `now`.

    Only Closed forward/reverse auctions are settled; everything else carries
    NotAwarded. Bids whose auction isn't in `auctions` are ignored.
    """
    if auctions is None:
        raise ContractViolation('Auction collection is required, got None')
    now = require_now(now)
    by_auction = group_bids(bids)

    evaluated = []
    for auction in auctions:
        auction = normalize_auction(auction)
        status = classify(auction, now)
        auction_bids = tuple(by_auction.get(auction.id, ()))
        if status is Status.CLOSED and auction.direction is not None:
            settlement = select_winner(auction, auction_bids)
        else:
            settlement = NotAwarded(auction_id=auction.id)
        evaluated.append(EvaluatedAuction(
            auction=auction,
            end=resolve_end(auction.scheduled_start, auction.duration),
            status=status,
            bids=auction_bids,
            settlement=settlement,
        ))
    return evaluated


# =============================================
# AGGREGATION
# =============================================

def _direction_breakdown(direction):
    return {
        'total': 0,
        'status': status_counts(),
        'subtypes': {
            name: {'total': 0, 'status': status_counts()}
            for name in KNOWN_SUBTYPES[direction]
        },
    }


def _month_bucket(start, subtype_names):
    month_start = datetime(start.year, start.month, 1, tzinfo=timezone.utc)
    return {
        'month': month_start.strftime('%b %Y'),
        'month_start': month_start.isoformat(),
        'total': 0,
        'subtypes': dict.fromkeys(subtype_names, 0),
    }


def summarize(evaluated, directions=tuple(Direction), category_names=None):
    """Fold already-evaluated auctions into the dashboard summary report."""
    directions = tuple(directions)
    subtype_names = []
    for direction in directions:
        for name in KNOWN_SUBTYPES[direction]:
            if name not in subtype_names:
                subtype_names.append(name)

    summary = status_counts()
    summary['total'] = 0
    breakdown = {direction.value: _direction_breakdown(direction) for direction in directions}
    months = {}
    categories = {}
    total_awarded = 0.0
    awarded = 0
    successful = 0
    unsold = 0

    for item in evaluated:
        auction, status = item.auction, item.status
        if auction.direction not in directions:
            continue

        summary[status.value] += 1
        summary['total'] += 1

        side = breakdown[auction.direction.value]
        side['total'] += 1
        side['status'][status.value] += 1
        bucket = side['subtypes'].setdefault(
            subtype_key(auction.direction, auction.subtype),
            {'total': 0, 'status': status_counts()})
        bucket['total'] += 1
        bucket['status'][status.value] += 1

        if status is Status.CLOSED:
            if item.bids:
                successful += 1
            else:
                unsold += 1
            if item.settlement.awarded:
                awarded += 1
                total_awarded += item.settlement.winning_amount

        start = auction.scheduled_start
        if start is not None:
            month = months.get((start.year, start.month))
            if month is None:
                month = months[(start.year, start.month)] = _month_bucket(start, subtype_names)
            month['total'] += 1
            key = subtype_key(auction.direction, auction.subtype)
            month['subtypes'][key] = month['subtypes'].get(key, 0) + 1

        name = category_label(auction.category_id, category_names)
        categories[name] = categories.get(name, 0) + 1

    return {
        'summary': summary,
        'directions': breakdown,
        'financials': {
            'total_awarded_value': _money(total_awarded),
            'average_awarded_value': _money(total_awarded / awarded) if awarded else 0,
            'commission': _money(total_awarded * COMMISSION_RATE),
            'awarded_count': awarded,
        },
        'outcomes': {'successful': successful, 'unsold': unsold},
        'over_time': [months[key] for key in sorted(months)],
        'categories': [{'name': name, 'count': count} for name, count in categories.items()],
    }


def aggregate(auctions, bids, now, direction=None, category_names=None):
    """Summary report over forward/reverse auctions (buy-now listings are excluded)."""
    directions = _directions(direction)
    return summarize(evaluate(auctions, bids, now), directions, category_names)


def empty_report(direction=None):
    return summarize([], _directions(direction))


# =============================================
# WINNERS
# =============================================

def settle_winners(auctions, bids, now, direction=None, profiles=None):
    """Winners report over Closed auctions, most recently closed first."""
    directions = _directions(direction)
    summary = {
        'total_closed': 0,
        'Awarded': 0,
        'Not awarded': 0,
        'total_awarded_value': 0,
        'average_awarded_value': 0,
    }
    closed = []
    total = 0.0

    for item in evaluate(auctions, bids, now):
        if item.status is not Status.CLOSED or item.auction.direction not in directions:
            continue
        summary['total_closed'] += 1
        settlement = item.settlement
        if not settlement.awarded:
            summary['Not awarded'] += 1
            continue

        summary['Awarded'] += 1
        total += settlement.winning_amount
        winner = lookup_profile(profiles, settlement.winner_bidder_id)
        closed.append((item.end, {
            'auction_id': item.auction.id,
            'auction_name': item.auction.title,
            'auction_type': item.auction.direction.value.title(),
            'winner_id': settlement.winner_bidder_id,
            'winner_bid_id': settlement.winner_bid_id,
            'winner_name': display_name(winner, default='Unknown'),
            'winner_location': (winner or {}).get('location'),
            'winning_bid': settlement.winning_amount,
            'currency': item.auction.currency,
            'closed_at': _iso(item.end),
        }))

    summary['total_awarded_value'] = _money(total)
    if summary['Awarded']:
        summary['average_awarded_value'] = _money(total / summary['Awarded'])

    closed.sort(key=lambda pair: pair[0], reverse=True)
    return {'summary': summary, 'winners': [row for _, row in closed]}


# =============================================
# CALENDAR / LISTINGS
# =============================================

def calendar(auctions, bids, now):
    """Approved forward/reverse auctions with a known window, ordered by start."""
    entries = []
    for item in evaluate(auctions, bids, now):
        auction = item.auction
        if auction.direction is None or not auction.approved or item.end is None:
            continue
        entries.append({
            'auction_id': auction.id,
            'name': auction.title,
            'type': auction.direction.value,
            'start': _iso(auction.scheduled_start),
            'end': _iso(item.end),
            'bid_count': len(item.bids),
            'status': item.status.value,
        })
    entries.sort(key=lambda entry: parse_instant(entry['start']))
    return entries


def enrich_auctions(evaluated, category_names=None, profiles=None):
    """Rows for the forward/reverse listing views."""
    rows = []
    for item in evaluated:
        auction = item.auction
        qualifying = [bid for bid in item.bids if bid.amount is not None]
        stamps = [bid.created_at for bid in qualifying if bid.created_at is not None]
        rows.append({
            'id': auction.id,
            'title': auction.title,
            'direction': auction.direction.value if auction.direction else None,
            'subtype': auction.subtype,
            'scheduled_start': _iso(auction.scheduled_start),
            'end': _iso(item.end),
            'duration': auction.duration.model_dump(),
            'approved': auction.approved,
            'category_id': auction.category_id,
            'category_name': category_label(auction.category_id, category_names),
            'currency': auction.currency,
            'start_price': auction.start_price,
            'seller': auction.seller,
            'seller_name': display_name(lookup_profile(profiles, auction.seller)),
            'status': item.status.value,
            'total_bids': len(qualifying),
            'best_bid': _best_amount(auction.direction, qualifying),
            'last_bid_time': _iso(max(stamps)) if stamps else None,
            'winner': item.settlement.model_dump() if item.settlement.awarded else None,
        })
    return rows


# =============================================
# BUY NOW
# =============================================

def buy_now_summary(auctions, profiles=None):
    """Fixed-price listings: approval, sales and gross merchandise value."""
    listings = [auction for auction in map(normalize_auction, auctions) if auction.is_buy_now]
    approved = [auction for auction in listings if auction.approved]
    purchases = [auction for auction in approved if auction.purchaser]
    gmv = sum(auction.buy_now_price or 0 for auction in purchases)

    return {
        'listings': len(listings),
        'approved': len(approved),
        'pending': len(listings) - len(approved),
        'sold': len(purchases),
        'active': len(approved) - len(purchases),
        'gmv': _money(gmv),
        'purchases': [{
            'auction_id': auction.id,
            'title': auction.title,
            'price': auction.buy_now_price,
            'currency': auction.currency,
            'purchaser': auction.purchaser,
            'purchaser_name': display_name(lookup_profile(profiles, auction.purchaser)),
            'seller_name': display_name(lookup_profile(profiles, auction.seller)),
        } for auction in purchases],
    }


# =============================================
# PROFILE STATS
# =============================================

def _first_categories(auctions, limit=2):
    seen = []
    for auction in auctions:
        if auction.category_id and auction.category_id not in seen:
            seen.append(auction.category_id)
    return seen[:limit]


def profile_stats(profile, auctions, bids, now):
    """Buyer, seller and combined statistics for one profile.

    A profile is matched by id, and also by email for sellers since listings
    may record their creator by email.
    """
    identities = {str(profile.get('id'))}
    if profile.get('email'):
        identities.add(str(profile['email']).lower())
    user_id = str(profile.get('id'))

    def is_self(value):
        return value is not None and (value in identities or value.lower() in identities)

    evaluated = evaluate(auctions, bids, now)

    own_amounts = []
    engaged = []
    wins = []
    for item in evaluated:
        placed = [bid for bid in item.bids if bid.bidder_id == user_id]
        own_amounts.extend(bid.amount for bid in placed if bid.amount is not None)
        if placed or is_self(item.auction.purchaser) or is_self(item.auction.seller):
            engaged.append(item.auction)
        if item.settlement.awarded and item.settlement.winner_bidder_id == user_id:
            wins.append(item.settlement)

    buys = [item.auction for item in evaluated
            if item.auction.is_buy_now and is_self(item.auction.purchaser)]
    spend = sum(win.winning_amount for win in wins)

    listings = [item for item in evaluated if is_self(item.auction.seller)]
    sales = []
    for item in listings:
        if item.auction.purchaser:
            sales.append(item.auction.buy_now_price or 0)
        elif item.settlement.awarded:
            sales.append(item.settlement.winning_amount)
    gmv_sold = sum(sales)
    active = [item for item in listings
              if item.auction.approved and not item.auction.purchaser
              and item.status is not Status.CLOSED]

    buyer = {
        'auctions': len(engaged),
        'wins': len(wins),
        'buys': len(buys),
        'spend': _money(spend),
        'avg_bid': _money(sum(own_amounts) / len(own_amounts)) if own_amounts else 0,
        'high_bid': max(own_amounts) if own_amounts else 0,
        'win_rate': round(len(wins) / len(engaged) * 100) if engaged else 0,
        'categories': _first_categories(engaged),
    }
    seller = {
        'listings': len(listings),
        'active': len(active),
        'sold': len(sales),
        'gmv_sold': _money(gmv_sold),
        'avg_sale': _money(gmv_sold / len(sales)) if sales else 0,
        'pending': sum(1 for item in listings if not item.auction.approved),
        'categories': _first_categories(item.auction for item in listings),
    }

    joined = parse_instant(profile.get('created_at'))
    return {
        'profile': dict(profile),
        'buyer_stats': buyer,
        'seller_stats': seller,
        'combined': {
            'net_gmv': _money(spend - gmv_sold),
            'transactions': len(buys) + len(sales),
            'member_since': joined.strftime('%b %Y') if joined else None,
        },
        'total_auctions': len(evaluated),
    }


# =============================================
# BID FEED
# =============================================

def rank_bids(bids, auctions):
    """Order bids best-first for their own auction's direction.

    Forward bids sort highest first, reverse bids lowest first; bids with no
    usable amount go last.
    """
    directions = {auction.id: auction.direction for auction in map(normalize_auction, auctions)}

    def sort_key(bid):
        if bid.amount is None:
            return (1, 0)
        if directions.get(bid.auction_id) is Direction.REVERSE:
            return (0, bid.amount)
        return (0, -bid.amount)

    return sorted(map(normalize_bid, bids), key=sort_key)
