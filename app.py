"""
Auction Admin: reporting API for the marketplace admin dashboard
Lifecycle stats, winners, calendar, buy-now sales, bid feed and profile stats
"""

import os
import json
import sqlite3
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from flask import Flask, jsonify, request, abort
from werkzeug.exceptions import HTTPException

import reports
from lifecycle import Direction, normalize_auction, normalize_bid, parse_instant

load_dotenv()

# =============================================
# APP CONFIGURATION
# =============================================

app = Flask(__name__)
app.config['DATABASE'] = os.environ.get('DATABASE', 'auction_admin.db')
app.config['SEED_DEMO_DATA'] = os.environ.get('SEED_DEMO_DATA', '1').lower() not in ('0', 'false', 'no')
app.json.sort_keys = False

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
DIRECTION_FILTERS = {'': None, 'all': None, 'forward': Direction.FORWARD, 'reverse': Direction.REVERSE}


def to_timestamp(value):
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


# =============================================
# DATABASE
# =============================================

def get_db():
    conn = sqlite3.connect(app.config['DATABASE'], timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db():
    """Create tables, and seed demo data if the database doesn't exist yet."""
    fresh = not os.path.exists(app.config['DATABASE'])
    conn = get_db()

    conn.executescript('''
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE,
            fname TEXT,
            lname TEXT,
            role TEXT NOT NULL DEFAULT 'buyer',
            location TEXT,
            created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );

        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS auctions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            productname TEXT,
            auctiontype TEXT,
            auctionsubtype TEXT,
            sale_type INTEGER,
            approved INTEGER DEFAULT 0,
            scheduledstart TEXT,
            auctionduration TEXT,
            categoryid TEXT,
            createdby TEXT,
            purchaser TEXT,
            buy_now_price REAL,
            startprice REAL,
            currency TEXT DEFAULT 'USD',
            created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );

        CREATE TABLE IF NOT EXISTS bids (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            auction_id INTEGER,
            user_id TEXT,
            amount REAL,
            created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );

        CREATE INDEX IF NOT EXISTS idx_bids_auction ON bids(auction_id);
        CREATE INDEX IF NOT EXISTS idx_bids_user ON bids(user_id);
    ''')

    if fresh and app.config['SEED_DEMO_DATA']:
        _seed_data(conn)

    conn.commit()
    conn.close()


def _seed_data(conn):
    """Seed profiles, categories, auctions across every lifecycle state, and bids."""
    profiles = [
        ('u-admin', 'admin@auction.local', 'Site', 'Admin', 'admin', 'Berlin'),
        ('u-buyer-1', 'ana@example.com', 'Ana', 'Lopez', 'buyer', 'Madrid'),
        ('u-buyer-2', 'ben@example.com', 'Ben', 'Okafor', 'buyer', 'Lagos'),
        ('u-seller-1', 'sam@example.com', 'Sam', 'Reyes', 'seller', 'Austin'),
        ('u-seller-2', 'kim@example.com', 'Kim', 'Park', 'seller', 'Seoul'),
    ]
    conn.executemany(
        'INSERT INTO profiles (id, email, fname, lname, role, location) VALUES (?, ?, ?, ?, ?, ?)',
        profiles
    )
    conn.executemany('INSERT INTO categories (id, title) VALUES (?, ?)', [
        ('c-art', 'Art'), ('c-ind', 'Industrial Supplies'), ('c-watch', 'Watches'),
    ])

    now = datetime.now(timezone.utc)
    auctions = [
        # title, type, subtype, sale_type, approved, start, duration, category, seller, purchaser, buy now
        ('Oil Painting, 1920s', 'forward', 'english', 1, 1, now - timedelta(hours=1),
         {'hours': 4}, 'c-art', 'sam@example.com', None, None),
        ('Vintage Chronograph', 'forward', 'sealed', 1, 1, now - timedelta(days=3),
         {'days': 1}, 'c-watch', 'sam@example.com', None, None),
        ('Bronze Sculpture', 'forward', 'silent', 1, 1, now + timedelta(days=2),
         {'days': 2}, 'c-art', 'kim@example.com', None, None),
        ('Steel Pipe, 40t', 'reverse', 'ranked', 3, 1, now - timedelta(days=5),
         {'days': 2, 'hours': 12}, 'c-ind', 'u-buyer-1', None, None),
        ('Packaging Film', 'reverse', 'standard', 3, 1, now - timedelta(days=10),
         {'days': 1}, 'c-ind', 'u-buyer-2', None, None),
        ('Pocket Watch', 'forward', 'english', 1, 0, now + timedelta(hours=6),
         {'hours': 8}, 'c-watch', 'kim@example.com', None, None),
        ('Framed Print', None, None, 2, 1, None, None, 'c-art', 'kim@example.com', 'u-buyer-1', 120.0),
        ('Desk Clock', None, None, 2, 1, None, None, 'c-watch', 'sam@example.com', None, 85.0),
    ]
    for title, kind, subtype, sale_type, approved, start, duration, category, seller, purchaser, price in auctions:
        conn.execute('''
            INSERT INTO auctions
            (productname, auctiontype, auctionsubtype, sale_type, approved, scheduledstart,
             auctionduration, categoryid, createdby, purchaser, buy_now_price, startprice)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (title, kind, subtype, sale_type, approved,
              to_timestamp(start) if start else None,
              json.dumps(duration) if duration else None,
              category, seller, purchaser, price, 50.0 if kind else None))

    bids = [
        (1, 'u-buyer-1', 150.0, now - timedelta(minutes=40)),
        (1, 'u-buyer-2', 175.0, now - timedelta(minutes=20)),
        (2, 'u-buyer-1', 900.0, now - timedelta(days=2, hours=20)),
        (2, 'u-buyer-2', 1250.0, now - timedelta(days=2, hours=10)),
        (4, 'u-seller-1', 31000.0, now - timedelta(days=4)),
        (4, 'u-seller-2', 29500.0, now - timedelta(days=3, hours=6)),
    ]
    conn.executemany(
        'INSERT INTO bids (auction_id, user_id, amount, created_at) VALUES (?, ?, ?, ?)',
        [(auction_id, user_id, amount, to_timestamp(at)) for auction_id, user_id, amount, at in bids]
    )

    app.logger.info("Database initialized with seed data.")


# =============================================
# STORAGE READER
# =============================================

def fetch_auctions(conn, approved=None):
    sql = 'SELECT * FROM auctions'
    params = []
    if approved is not None:
        sql += ' WHERE approved = ?'
        params.append(1 if approved else 0)
    return [dict(row) for row in conn.execute(sql + ' ORDER BY id', params).fetchall()]


def fetch_bids(conn, auction_id=None, user_id=None, start=None, end=None):
    """Bids in placement order, filtered by equality on ids and a created_at range."""
    clauses = []
    params = []
    if auction_id is not None:
        clauses.append('auction_id = ?')
        params.append(auction_id)
    if user_id is not None:
        clauses.append('user_id = ?')
        params.append(user_id)
    if start is not None:
        clauses.append('created_at >= ?')
        params.append(to_timestamp(start))
    if end is not None:
        clauses.append('created_at <= ?')
        params.append(to_timestamp(end))

    sql = 'SELECT * FROM bids'
    if clauses:
        sql += ' WHERE ' + ' AND '.join(clauses)
    return [dict(row) for row in conn.execute(sql + ' ORDER BY created_at, id', params).fetchall()]


def fetch_profiles(conn, role=None):
    if role is None:
        rows = conn.execute('SELECT * FROM profiles ORDER BY created_at, id').fetchall()
    else:
        rows = conn.execute('SELECT * FROM profiles WHERE role = ? ORDER BY created_at, id',
                            (role,)).fetchall()
    return [dict(row) for row in rows]


def fetch_category_names(conn):
    return {row['id']: row['title'] for row in conn.execute('SELECT id, title FROM categories')}


def read_snapshot(approved=None):
    """Everything a report needs, read over one connection and normalized."""
    conn = get_db()
    try:
        return {
            'auctions': [normalize_auction(row) for row in fetch_auctions(conn, approved)],
            'bids': [normalize_bid(row) for row in fetch_bids(conn)],
            'profiles': reports.index_profiles(fetch_profiles(conn)),
            'categories': fetch_category_names(conn),
        }
    finally:
        conn.close()


# =============================================
# REQUEST HELPERS
# =============================================

def request_now():
    """The one clock reading for this request. `?now=` overrides it."""
    raw = request.args.get('now')
    if raw is None:
        return datetime.now(timezone.utc)
    now = parse_instant(raw)
    if now is None:
        abort(400, description='Invalid "now" timestamp.')
    return now


def request_instant(name):
    raw = request.args.get(name)
    if not raw:
        return None
    value = parse_instant(raw)
    if value is None:
        abort(400, description=f'Invalid "{name}" timestamp.')
    return value


def request_direction(name='type'):
    raw = request.args.get(name, '').strip().lower()
    if raw not in DIRECTION_FILTERS:
        abort(400, description=f'Unknown auction type "{raw}".')
    return DIRECTION_FILTERS[raw]


def storage_unavailable(exc, empty):
    """Answer with a zeroed payload so the dashboard still renders."""
    app.logger.exception('Storage read failed: %s', exc)
    return jsonify({'success': False, 'error': 'Storage unavailable', 'data': empty}), 503


# =============================================
# AUCTION REPORTS
# =============================================

@app.route('/api/auction-stats')
def auction_stats():
    now = request_now()
    try:
        snapshot = read_snapshot()
    except sqlite3.Error as exc:
        return storage_unavailable(exc, reports.empty_report())

    data = reports.aggregate(snapshot['auctions'], snapshot['bids'], now,
                             category_names=snapshot['categories'])
    return jsonify({'success': True, 'data': data})


def direction_report(direction):
    now = request_now()
    try:
        snapshot = read_snapshot()
    except sqlite3.Error as exc:
        empty = reports.empty_report(direction)
        empty['auctions'] = []
        return storage_unavailable(exc, empty)

    evaluated = [item for item in reports.evaluate(snapshot['auctions'], snapshot['bids'], now)
                 if item.auction.direction is direction]
    data = reports.summarize(evaluated, (direction,), snapshot['categories'])
    data['auctions'] = reports.enrich_auctions(evaluated, snapshot['categories'], snapshot['profiles'])
    return jsonify({'success': True, 'data': data})


@app.route('/api/forward-auctions')
def forward_auctions():
    return direction_report(Direction.FORWARD)


@app.route('/api/reverse-auctions')
def reverse_auctions():
    return direction_report(Direction.REVERSE)


@app.route('/api/all-winners')
def all_winners():
    direction = request_direction()
    now = request_now()
    label = direction.value if direction else 'all'
    try:
        snapshot = read_snapshot()
    except sqlite3.Error as exc:
        empty = reports.settle_winners([], [], now)
        empty['filter'] = label
        return storage_unavailable(exc, empty)

    data = reports.settle_winners(snapshot['auctions'], snapshot['bids'], now,
                                  direction=direction, profiles=snapshot['profiles'])
    data['filter'] = label
    return jsonify({'success': True, 'data': data})


@app.route('/api/calendar')
def auction_calendar():
    now = request_now()
    try:
        snapshot = read_snapshot(approved=True)
    except sqlite3.Error as exc:
        return storage_unavailable(exc, [])
    return jsonify({'success': True, 'data': reports.calendar(snapshot['auctions'], snapshot['bids'], now)})


@app.route('/api/buynow-sales')
def buynow_sales():
    try:
        snapshot = read_snapshot()
    except sqlite3.Error as exc:
        return storage_unavailable(exc, reports.buy_now_summary([]))
    return jsonify({'success': True, 'data': reports.buy_now_summary(snapshot['auctions'], snapshot['profiles'])})


# =============================================
# BIDS & PROFILES
# =============================================

@app.route('/api/bids')
def bid_feed():
    auction_id = request.args.get('auctionId') or None
    user_id = request.args.get('userId') or None
    start = request_instant('start')
    end = request_instant('end')
    role = (request.args.get('role') or '').strip().lower() or None

    try:
        conn = get_db()
        try:
            rows = fetch_bids(conn, auction_id=auction_id, user_id=user_id, start=start, end=end)
            auctions = [normalize_auction(row) for row in fetch_auctions(conn)]
            profiles = reports.index_profiles(fetch_profiles(conn))
        finally:
            conn.close()
    except sqlite3.Error as exc:
        return storage_unavailable(exc, {'bids': [], 'meta': {'total': 0}})

    by_id = {auction.id: auction for auction in auctions}
    feed = []
    for bid in reports.rank_bids(rows, auctions):
        auction = by_id.get(bid.auction_id)
        bidder = profiles.get(bid.bidder_id) or {}
        bidder_role = (bidder.get('role') or '').lower() or None
        if role and bidder_role != role:
            continue
        creator = reports.lookup_profile(profiles, auction.seller) if auction else None
        feed.append({
            'id': bid.id,
            'auction_id': bid.auction_id,
            'user_id': bid.bidder_id,
            'amount': bid.amount,
            'created_at': bid.created_at.isoformat() if bid.created_at else None,
            'user_name': reports.display_name(bidder, default=None),
            'location': bidder.get('location'),
            'role': bidder_role,
            'auction_title': auction.title if auction else None,
            'auction_type': auction.direction.value if auction and auction.direction else None,
            'auction_subtype': auction.subtype if auction else None,
            'creator_name': reports.display_name(creator, default=None),
        })

    return jsonify({'success': True, 'data': {'bids': feed, 'meta': {'total': len(feed)}}})


@app.route('/api/profile-stats')
def profile_stats():
    user_id = request.args.get('id')
    if not user_id:
        abort(400, description='User ID required.')
    now = request_now()

    try:
        snapshot = read_snapshot()
    except sqlite3.Error as exc:
        return storage_unavailable(exc, None)

    profile = snapshot['profiles'].get(user_id)
    if profile is None or str(profile.get('id')) != user_id:
        abort(404, description='Profile not found.')

    data = reports.profile_stats(profile, snapshot['auctions'], snapshot['bids'], now)
    return jsonify({'success': True, 'data': data})


def profiles_by_role(role):
    try:
        conn = get_db()
        try:
            rows = fetch_profiles(conn, role=role)
        finally:
            conn.close()
    except sqlite3.Error as exc:
        return storage_unavailable(exc, {'profiles': []})
    return jsonify({'success': True, 'data': {'profiles': rows}})


@app.route('/api/bidders')
def bidders():
    return profiles_by_role('buyer')


@app.route('/api/sellers')
def sellers():
    return profiles_by_role('seller')


# =============================================
# ERRORS & HEADERS
# =============================================

@app.errorhandler(HTTPException)
def json_http_error(exc):
    return jsonify({'success': False, 'error': exc.description}), exc.code


@app.after_request
def add_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Cache-Control'] = 'no-store'
    return response


# =============================================
# INIT & RUN
# =============================================

init_db()

if __name__ == '__main__':
    debug = os.environ.get('FLASK_DEBUG', '0').lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 8005)), debug=debug)
