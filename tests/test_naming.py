from datetime import datetime, timedelta, timezone

from file_upgrader.utils.naming import (
    disambiguate_name,
    file_extension,
    normalize_extensions,
    split_extension,
    timestamp_token,
)

MOMENT = datetime(2024, 1, 31, 10, 15, 0, tzinfo=timezone.utc)


def test_split_extension_uses_last_dot():
    assert split_extension("Model.v2.rvt") == ("Model.v2", ".rvt")
    assert split_extension("README") == ("README", "")
    assert split_extension(".hidden") == (".hidden", "")


def test_file_extension_is_lowercase_without_dot():
    assert file_extension("Tower.RVT") == "rvt"
    assert file_extension("door.Rfa") == "rfa"
    assert file_extension("notes") == ""


def test_timestamp_token_is_utc():
    copenhagen = MOMENT.astimezone(timezone(timedelta(hours=1)))
    assert timestamp_token(copenhagen) == "_20240131T101500Z"


def test_disambiguate_inserts_timestamp_before_extension():
    assert disambiguate_name("Model.rvt", MOMENT) == "Model_20240131T101500Z.rvt"
    assert disambiguate_name("Model.v2.rfa", MOMENT) == "Model.v2_20240131T101500Z.rfa"
    assert disambiguate_name("NoExtension", MOMENT) == "NoExtension_20240131T101500Z"


def test_normalize_extensions():
    assert normalize_extensions([".RVT", "rfa", " rte ", "rvt", ""]) == ["rvt", "rfa", "rte"]
