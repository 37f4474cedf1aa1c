"""Aggregation engine and the dashboard reports built on it."""

import json
from datetime import datetime, timezone

import pytest

import reports
from lifecycle import ContractViolation, NotAwarded, Status

UTC = timezone.utc
NOW = datetime(2024, 3, 10, 12, tzinfo=UTC)


def closed(id, kind='forward', subtype='english', **extra):
    raw = {
        'id': id,
        'auctiontype': kind,
        'auctionsubtype': subtype,
        'approved': True,
        'scheduledstart': '2024-02-01T00:00:00Z',
        'auctionduration': {'days': 1},
    }
    raw.update(extra)
    return raw


def bid(id, auction_id, amount, user_id='u-1', created_at='2024-02-01T06:00:00Z'):
    return {'id': id, 'auction_id': auction_id, 'user_id': user_id,
            'amount': amount, 'created_at': created_at}


@pytest.fixture
def market():
    auctions = [
        closed('f1', categoryid='c-art'),
        closed('f2', subtype='sealed', categoryid='c-art'),
        closed('f3', subtype='standard'),
        closed('r1', kind='reverse', subtype='ranked', categoryid='c-ind'),
        closed('live', scheduledstart='2024-03-10T11:00:00Z', auctionduration={'hours': 4}),
        closed('soon', kind='reverse', subtype='sealed', scheduledstart='2024-04-02T00:00:00Z'),
        closed('draft', approved=False, scheduledstart='2024-03-01T00:00:00Z'),
        closed('broken', scheduledstart='garbage'),
        {'id': 'bn', 'sale_type': 2, 'approved': True, 'purchaser': 'u-2', 'buy_now_price': 40},
    ]
    bids = [
        bid('b1', 'f1', 60), bid('b2', 'f1', 100),
        bid('b3', 'f2', 'n/a'),
        bid('b4', 'r1', 450, user_id='u-2'), bid('b5', 'r1', 300, user_id='u-3'),
        bid('b6', 'live', 20),
        bid('orphan', 'missing', 9999),
    ]
    return auctions, bids


def test_status_summary_counts_every_status(market):
    report = reports.aggregate(*market, NOW)
    assert report['summary'] == {
        'Live': 1, 'Upcoming': 1, 'Closed': 4, 'Pending': 1, 'Unknown': 1, 'total': 8,
    }


def test_buy_now_listings_are_not_aggregated(market):
    report = reports.aggregate(*market, NOW)
    assert report['directions']['forward']['total'] + report['directions']['reverse']['total'] == 8


def test_direction_and_subtype_breakdowns_are_prepopulated(market):
    report = reports.aggregate(*market, NOW)
    forward = report['directions']['forward']
    reverse = report['directions']['reverse']

    assert forward['total'] == 6
    assert forward['status']['Closed'] == 3
    assert set(forward['subtypes']) == {'english', 'sealed', 'silent'}
    # forward "standard" auctions count as english
    assert forward['subtypes']['english']['total'] == 5
    assert forward['subtypes']['silent'] == {'total': 0, 'status': {
        'Live': 0, 'Upcoming': 0, 'Closed': 0, 'Pending': 0, 'Unknown': 0}}

    assert reverse['status'] == {'Live': 0, 'Upcoming': 1, 'Closed': 1, 'Pending': 0, 'Unknown': 0}
    assert list(reverse['subtypes']) == ['standard', 'ranked', 'sealed']
    assert reverse['subtypes']['ranked']['status']['Closed'] == 1


def test_unknown_subtypes_get_their_own_bucket():
    auctions = [closed('x', subtype='dutch'), closed('y', subtype='')]
    subtypes = reports.aggregate(auctions, [], NOW)['directions']['forward']['subtypes']
    assert subtypes['dutch']['total'] == 1
    assert subtypes['unspecified']['status']['Closed'] == 1


def test_financials_over_awarded_closed_auctions(market):
    financials = reports.aggregate(*market, NOW)['financials']
    # f1 won at 100, r1 won at 300; f2 only has a malformed bid, f3 none
    assert financials == {
        'total_awarded_value': 400,
        'average_awarded_value': 200,
        'commission': 20,
        'awarded_count': 2,
    }


def test_financials_are_zero_without_winners():
    financials = reports.aggregate([closed('f1')], [], NOW)['financials']
    assert financials['total_awarded_value'] == 0
    assert financials['average_awarded_value'] == 0
    assert financials['commission'] == 0


def test_outcomes_count_any_bid_as_successful(market):
    # f2's unusable bid still makes it "successful"; f3 is the only unsold one
    assert reports.aggregate(*market, NOW)['outcomes'] == {'successful': 3, 'unsold': 1}


def test_over_time_buckets_by_month_ascending(market):
    over_time = reports.aggregate(*market, NOW)['over_time']
    assert [bucket['month'] for bucket in over_time] == ['Feb 2024', 'Mar 2024', 'Apr 2024']
    feb = over_time[0]
    assert feb['month_start'] == '2024-02-01T00:00:00+00:00'
    assert feb['total'] == 4
    assert feb['subtypes'] == {'english': 2, 'sealed': 1, 'silent': 0, 'standard': 0, 'ranked': 1}
    assert over_time[2]['subtypes']['sealed'] == 1


def test_over_time_skips_unreadable_starts():
    over_time = reports.aggregate([closed('x', scheduledstart=None)], [], NOW)['over_time']
    assert over_time == []


def test_categories_with_uncategorized_bucket(market):
    categories = reports.aggregate(*market, NOW)['categories']
    assert categories == [
        {'name': 'c-art', 'count': 2},
        {'name': 'Uncategorized', 'count': 5},
        {'name': 'c-ind', 'count': 1},
    ]


def test_category_names_are_translated(market):
    names = {'c-art': 'Art', 'c-ind': 'Industrial'}
    categories = reports.aggregate(*market, NOW, category_names=names)['categories']
    assert {'name': 'Art', 'count': 2} in categories


def test_single_direction_report(market):
    report = reports.aggregate(*market, NOW, direction='reverse')
    assert list(report['directions']) == ['reverse']
    assert report['summary']['total'] == 2
    assert report['financials']['total_awarded_value'] == 300
    with pytest.raises(ContractViolation):
        reports.aggregate(*market, NOW, direction='sideways')


def test_aggregate_is_repeatable(market):
    first = json.dumps(reports.aggregate(*market, NOW))
    assert json.dumps(reports.aggregate(*market, NOW)) == first


def test_empty_report_has_every_key():
    report = reports.empty_report()
    assert report['summary']['total'] == 0
    assert report['summary']['Unknown'] == 0
    assert set(report['directions']) == {'forward', 'reverse'}
    assert report['over_time'] == []


def test_evaluate_settles_only_closed_auctions(market):
    evaluated = {item.auction.id: item for item in reports.evaluate(*market, NOW)}
    assert evaluated['live'].status is Status.LIVE
    assert isinstance(evaluated['live'].settlement, NotAwarded)
    assert evaluated['f1'].settlement.winning_amount == 100
    assert evaluated['r1'].settlement.winner_bidder_id == 'u-3'
    assert evaluated['f1'].end == datetime(2024, 2, 2, tzinfo=UTC)


def test_evaluate_contract():
    with pytest.raises(ContractViolation):
        reports.evaluate(None, [], NOW)
    with pytest.raises(ContractViolation):
        reports.evaluate([], None, NOW)


def test_settle_winners(market):
    profiles = reports.index_profiles([
        {'id': 'u-1', 'fname': 'Ana', 'lname': 'Lopez', 'location': 'Madrid'},
    ])
    data = reports.settle_winners(*market, NOW, profiles=profiles)
    assert data['summary'] == {
        'total_closed': 4,
        'Awarded': 2,
        'Not awarded': 2,
        'total_awarded_value': 400,
        'average_awarded_value': 200,
    }
    by_auction = {row['auction_id']: row for row in data['winners']}
    assert by_auction['f1']['winner_name'] == 'Ana Lopez'
    assert by_auction['f1']['winner_location'] == 'Madrid'
    assert by_auction['r1']['auction_type'] == 'Reverse'
    assert by_auction['r1']['winner_name'] == 'Unknown'


def test_settle_winners_sorted_by_close_desc_and_filtered():
    auctions = [
        closed('early', scheduledstart='2024-01-01T00:00:00Z'),
        closed('late', kind='reverse', scheduledstart='2024-02-20T00:00:00Z'),
    ]
    bids = [bid('1', 'early', 10), bid('2', 'late', 20)]
    winners = reports.settle_winners(auctions, bids, NOW)['winners']
    assert [row['auction_id'] for row in winners] == ['late', 'early']
    forward_only = reports.settle_winners(auctions, bids, NOW, direction='forward')
    assert [row['auction_id'] for row in forward_only['winners']] == ['early']
    assert forward_only['summary']['total_closed'] == 1


def test_calendar_lists_approved_auctions_with_windows(market):
    entries = reports.calendar(*market, NOW)
    assert [entry['auction_id'] for entry in entries] == ['f1', 'f2', 'f3', 'r1', 'live', 'soon']
    live = entries[4]
    assert live['status'] == 'Live'
    assert live['end'] == '2024-03-10T15:00:00+00:00'
    assert live['bid_count'] == 1


def test_enrich_auctions_rows(market):
    evaluated = reports.evaluate(*market, NOW)
    rows = {row['id']: row for row in reports.enrich_auctions(evaluated)}
    assert rows['f1']['best_bid'] == 100
    assert rows['f1']['total_bids'] == 2
    assert rows['f1']['last_bid_time'] == '2024-02-01T06:00:00+00:00'
    assert rows['f1']['winner']['winning_amount'] == 100
    assert rows['r1']['best_bid'] == 300
    assert rows['f2']['total_bids'] == 0
    assert rows['f3']['category_name'] == 'Uncategorized'
    assert rows['live']['winner'] is None


def test_buy_now_summary():
    auctions = [
        {'id': 1, 'sale_type': 2, 'approved': True, 'purchaser': 'u-1', 'buy_now_price': 40},
        {'id': 2, 'sale_type': 2, 'approved': True, 'purchaser': '  ', 'buy_now_price': 15},
        {'id': 3, 'sale_type': 2, 'approved': False, 'buy_now_price': 70},
        {'id': 4, 'sale_type': 1, 'approved': True, 'purchaser': 'u-1'},
    ]
    profiles = reports.index_profiles([{'id': 'u-1', 'fname': 'Ana', 'lname': 'Lopez'}])
    summary = reports.buy_now_summary(auctions, profiles)
    assert {key: summary[key] for key in ('listings', 'approved', 'pending', 'sold', 'active', 'gmv')} == {
        'listings': 3, 'approved': 2, 'pending': 1, 'sold': 1, 'active': 1, 'gmv': 40,
    }
    assert summary['purchases'][0]['purchaser_name'] == 'Ana Lopez'


def test_profile_stats():
    auctions = [
        closed('won', categoryid='c-art'),
        closed('lost', categoryid='c-watch'),
        closed('mine', createdby='SELLER@example.com', categoryid='c-art'),
        {'id': 'bn', 'sale_type': 2, 'approved': True, 'purchaser': 'u-1', 'buy_now_price': 50},
    ]
    bids = [
        bid('1', 'won', 80, user_id='u-1'),
        bid('2', 'lost', 40, user_id='u-1'), bid('3', 'lost', 90, user_id='u-2'),
        bid('4', 'mine', 30, user_id='u-2'),
    ]
    buyer = {'id': 'u-1', 'email': 'ana@example.com', 'created_at': '2023-05-02T00:00:00Z'}
    data = reports.profile_stats(buyer, auctions, bids, NOW)
    stats = data['buyer_stats']
    assert stats['auctions'] == 3
    assert stats['wins'] == 1
    assert stats['buys'] == 1
    assert stats['spend'] == 80
    assert stats['avg_bid'] == 60
    assert stats['high_bid'] == 80
    assert stats['win_rate'] == 33
    assert stats['categories'] == ['c-art', 'c-watch']
    assert data['combined']['member_since'] == 'May 2023'
    assert data['total_auctions'] == 4

    seller = {'id': 'u-9', 'email': 'seller@example.com'}
    seller_stats = reports.profile_stats(seller, auctions, bids, NOW)['seller_stats']
    assert seller_stats['listings'] == 1
    assert seller_stats['sold'] == 1
    assert seller_stats['gmv_sold'] == 30
    assert seller_stats['active'] == 0


def test_rank_bids_by_direction():
    auctions = [closed('f'), closed('r', kind='reverse')]
    bids = [bid('f-low', 'f', 10), bid('f-high', 'f', 30), bid('bad', 'f', 'x'),
            bid('r-high', 'r', 25), bid('r-low', 'r', 5)]
    ranked = [b.id for b in reports.rank_bids(bids, auctions)]
    assert ranked.index('f-high') < ranked.index('f-low')
    assert ranked.index('r-low') < ranked.index('r-high')
    assert ranked[-1] == 'bad'


def test_out_of_range_values_do_not_abort_the_report(market):
    auctions, bids = market
    auctions = auctions + [
        closed('huge-dur', auctionduration={'days': 10 ** 400}),
        closed('edge', scheduledstart='9999-12-31T23:59:59-05:00'),
    ]
    bids = bids + [bid('huge', 'f1', 10 ** 400)]
    report = reports.aggregate(auctions, bids, NOW)
    assert report['summary'] == {
        'Live': 1, 'Upcoming': 1, 'Closed': 5, 'Pending': 1, 'Unknown': 2, 'total': 10,
    }
    assert report['financials']['total_awarded_value'] == 400
    assert report['financials']['awarded_count'] == 2
    assert report['outcomes'] == {'successful': 3, 'unsold': 2}
    assert json.loads(json.dumps(report)) == report
