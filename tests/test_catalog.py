import random

import pytest

from catalog import build_random_candidates, get_number_window, pick_random_available_numbers, sanitize_page_size
from database import db
from shared import CallRequest, CallableError, now_ms


def window(**payload):
    return get_number_window(CallRequest(None, None, payload))


def pick(quantity, exclude=None, seed=42):
    payload = {'quantity': quantity}
    if exclude is not None:
        payload['excludeNumbers'] = exclude
    return pick_random_available_numbers(CallRequest(None, None, payload), rng=random.Random(seed))


def shrink_range(campaign, end):
    campaign.number_end = end
    db.session.commit()


def test_sanitize_page_size():
    assert sanitize_page_size(None) == 100
    assert sanitize_page_size(0) == 100
    assert sanitize_page_size(1000) == 240
    assert sanitize_page_size(50) == 50


def test_default_window_starts_at_smallest_available(campaign):
    result = window()

    assert result['campaignId'] == 'campanha-teste'
    assert result['pageStart'] == 1
    assert result['pageEnd'] == 100
    assert result['rangeStart'] == 1
    assert result['rangeEnd'] == 1000
    assert result['totalNumbers'] == 1000
    assert result['smallestAvailableNumber'] == 1
    assert result['availableInPage'] == 100
    assert result['hasPreviousPage'] is False
    assert result['previousPageStart'] is None
    assert result['nextPageStart'] == 101
    assert len(result['numbers']) == 100
    assert result['numbers'][0] == {'number': 1, 'status': 'disponivel', 'reservationExpiresAtMs': None}


def test_window_skips_taken_numbers_for_smallest(campaign, number_state):
    number_state(1, 'pago', owner_uid='u1')
    number_state(2, 'reservado', reserved_by='u2', expires_at_ms=now_ms() + 60000)
    number_state(3, 'reservado', reserved_by='u3', expires_at_ms=now_ms() - 1)

    result = window()

    assert result['smallestAvailableNumber'] == 3
    assert result['pageStart'] == 3
    statuses = {item['number']: item['status'] for item in result['numbers']}
    assert statuses[3] == 'disponivel'
    assert statuses[4] == 'disponivel'


def test_window_page_size_is_clamped(campaign):
    assert window(pageSize=1000)['pageSize'] == 240
    assert window(pageSize=0)['pageSize'] == 100


def test_last_page_has_no_next(campaign):
    result = window(pageStart=990, pageSize=100)

    assert result['pageEnd'] == 1000
    assert result['hasNextPage'] is False
    assert result['nextPageStart'] is None
    assert result['previousPageStart'] == 890
    assert len(result['numbers']) == 11


def test_page_start_beyond_range_is_clamped(campaign):
    result = window(pageStart=5000, pageSize=10)
    assert result['pageStart'] == 1000
    assert result['pageEnd'] == 1000


def test_invalid_page_start(campaign):
    with pytest.raises(CallableError) as exc:
        window(pageStart=-3)
    assert exc.value.kind == 'invalid-argument'

    with pytest.raises(CallableError):
        window(pageStart='abc')


def test_build_random_candidates_respects_exclusions():
    candidates = build_random_candidates(1, 10, 20, {1, 2, 3}, random.Random(1))
    assert sorted(candidates) == [4, 5, 6, 7, 8, 9, 10]


def test_pick_random_returns_distinct_available_numbers(campaign, number_state):
    number_state(4, 'pago', owner_uid='u1')

    result = pick(5)

    assert result['quantityRequested'] == 5
    assert len(result['numbers']) == 5
    assert len(set(result['numbers'])) == 5
    assert result['numbers'] == sorted(result['numbers'])
    assert all(1 <= number <= 1000 for number in result['numbers'])
    assert 4 not in result['numbers']
    assert result['exhausted'] is False


def test_pick_random_honors_exclusions(campaign):
    shrink_range(campaign, 5)

    result = pick(3, exclude=[1, 2])

    assert result['numbers'] == [3, 4, 5]
    assert result['exhausted'] is False


def test_pick_random_reports_exhaustion(campaign, number_state):
    shrink_range(campaign, 5)
    number_state(1, 'pago', owner_uid='u1')
    number_state(2, 'reservado', reserved_by='u2', expires_at_ms=now_ms() + 60000)

    result = pick(5)

    assert result['numbers'] == [3, 4, 5]
    assert result['exhausted'] is True


def test_pick_random_validates_input(campaign):
    with pytest.raises(CallableError, match='quantity'):
        pick(0)
    with pytest.raises(CallableError, match='quantity'):
        pick(301)
    with pytest.raises(CallableError, match='fora da faixa'):
        pick(1, exclude=[5000])


def test_page_start_below_range_is_clamped(campaign):
    campaign.number_start = 100
    db.session.commit()

    result = window(pageStart=1, pageSize=10)

    assert result['pageStart'] == 100
    assert result['pageEnd'] == 109
    assert result['numbers'][0]['number'] == 100
    assert result['previousPageStart'] is None
