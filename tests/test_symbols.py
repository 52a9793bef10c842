from infra.symbols import lookup_candidates, normalize_asset_id, strip_invisible


def test_strip_invisible_removes_bom_zero_width_and_newlines():
    assert strip_invisible("\ufeffAb\u200bC\r\n") == "AbC"
    assert strip_invisible("\u00a0XYZ\u2060") == "XYZ"


def test_strip_invisible_keeps_visible_characters():
    assert strip_invisible("So1ana-Mint_42") == "So1ana-Mint_42"


def test_normalize_handles_none_and_numbers():
    assert normalize_asset_id(None) == ""
    assert normalize_asset_id(123) == "123"


def test_lookup_candidates_for_plain_id():
    assert lookup_candidates("ABC") == ["ABC"]


def test_lookup_candidates_strip_pump_suffix_second():
    assert lookup_candidates("ABCpump") == ["ABCpump", "ABC"]
    assert lookup_candidates("ABCPUMP") == ["ABCPUMP", "ABC"]


def test_lookup_candidates_bare_suffix_and_empty():
    assert lookup_candidates("pump") == ["pump"]
    assert lookup_candidates("\u200b") == []
