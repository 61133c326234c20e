from types import SimpleNamespace

from number_state import (
    DISPONIVEL, PAGO, RAFFLE_NUMBER_END, RESERVADO, derive_state, is_held_by_other, normalize_stored_status,
    resolve_range,
)


def test_resolve_range_defaults_without_campaign():
    number_range = resolve_range(None, 'c1')
    assert number_range.start == 1
    assert number_range.end == RAFFLE_NUMBER_END
    assert number_range.total == RAFFLE_NUMBER_END


def test_resolve_range_from_total_numbers():
    campaign = SimpleNamespace(number_start=101, number_end=None, total_numbers=100)
    number_range = resolve_range(campaign, 'c1')
    assert (number_range.start, number_range.end, number_range.total) == (101, 200, 100)


def test_resolve_range_ignores_end_before_start():
    campaign = SimpleNamespace(number_start=10, number_end=5, total_numbers=None)
    number_range = resolve_range(campaign, 'c1')
    assert number_range.start == 10
    assert number_range.end == RAFFLE_NUMBER_END


def test_normalize_stored_status():
    assert normalize_stored_status('PAID') == PAGO
    assert normalize_stored_status('reservado') == RESERVADO
    assert normalize_stored_status('whatever') == DISPONIVEL
    assert normalize_stored_status(None) == DISPONIVEL


def test_missing_record_is_available():
    assert derive_state(7, None, 1000).status == DISPONIVEL


def test_reservation_expires_lazily():
    record = SimpleNamespace(status='reserved', reserved_by='u1', reservation_expires_at_ms=1000)
    assert derive_state(1, record, 999).status == RESERVADO
    # expira exatamente no instante registrado
    assert derive_state(1, record, 1000).status == DISPONIVEL


def test_paid_never_expires():
    record = SimpleNamespace(status='pago', reserved_by=None, reservation_expires_at_ms=1)
    assert derive_state(1, record, 10 ** 13).status == PAGO


def test_is_held_by_other():
    record = SimpleNamespace(status='reservado', reserved_by='u1', reservation_expires_at_ms=5000)
    view = derive_state(1, record, 1000)
    assert is_held_by_other(view, 'u2')
    assert not is_held_by_other(view, 'u1')
    assert not is_held_by_other(derive_state(1, record, 6000), 'u2')
