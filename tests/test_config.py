import pytest
from pydantic import ValidationError
from esadapter.config import Settings, parse_duration, parse_size


def test_parse_duration_units():
    assert parse_duration("7d") == 7 * 86400
    assert parse_duration("90s") == 90
    assert parse_duration("2h") == 7200
    assert parse_duration("500ms") == 0.5
    assert parse_duration("15") == 15
    assert parse_duration("") is None


def test_parse_size_units():
    assert parse_size("5gb") == 5 * 1024 ** 3
    assert parse_size("512kb") == 512 * 1024
    assert parse_size("100") == 100
    assert parse_size("  ") is None


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings(es_index_max_age="seven days")
    with pytest.raises(ValidationError):
        Settings(es_index_max_size="5 parsecs")
    with pytest.raises(ValidationError):
        Settings(trigger_order="size,count")
    with pytest.raises(ValidationError):
        Settings(es_workers=0)


def test_trigger_order_is_normalized():
    assert Settings(trigger_order=" Count, age ,SIZE").trigger_order == "count,age,size"
