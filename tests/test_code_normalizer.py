"""Tests for tool code normalization and the matrix definitions table."""

import json

import pytest

from code_normalizer import (
    CATEGORIES,
    CATEGORY_ECUT,
    CATEGORY_MFC,
    CATEGORY_OTHER,
    CATEGORY_XF,
    CATEGORY_XFEED,
    CODE_RULES,
    CodeRule,
    LengthRule,
    MatrixDefinitions,
    clean_code,
    extract_operational_family,
    image_url_for,
    normalize,
)


class TestNormalize:
    """Matrix code -> family code / category."""

    def test_ecut_code(self):
        result = normalize("RT-8400300")
        assert result.family_code == "8400"
        assert result.diameter_code == "300"
        assert result.category == CATEGORY_ECUT

    def test_feed_marker_letter_is_stripped(self):
        result = normalize("RT-X7620300")
        assert result.family_code == "7620"
        assert result.category == CATEGORY_XFEED

    def test_five_digit_family(self):
        result = normalize("RT-15250391")
        assert result.family_code == "15250"
        assert result.diameter_code == "391"
        assert result.category == CATEGORY_XF

    def test_variant_suffix_is_stripped(self):
        result = normalize("RT-8201300_2")
        assert result.family_code == "8201"
        assert result.variant == "2"
        assert result.category == CATEGORY_MFC

    def test_short_code_uses_first_four_digits(self):
        result = normalize("RT-84001")
        assert result.family_code == "8400"
        assert result.diameter_code == ""

    def test_unprefixed_code(self):
        assert normalize("8410600").family_code == "8410"

    def test_lowercase_input(self):
        assert normalize("rt-x7620300").family_code == "7620"

    def test_unknown_family_is_other(self):
        result = normalize("RT-9999123")
        assert result.family_code == "9999"
        assert result.category == CATEGORY_OTHER
        assert result.is_matrix is False

    @pytest.mark.parametrize("code", [None, "", "   "])
    def test_empty_input_yields_neutral_record(self, code):
        result = normalize(code)
        assert result.family_code == ""
        assert result.category == CATEGORY_OTHER
        assert result.diameter == 0
        assert result.tool_life == 0

    @pytest.mark.parametrize("code", ["RT-", "RT-X", "___", "RT-ABC_DEF", "💥", 12345, "RT-8400300_1_2"])
    def test_total_over_odd_input(self, code):
        result = normalize(code)
        assert result.category in CATEGORIES

    def test_deterministic(self):
        assert normalize("RT-8400300_1") == normalize("RT-8400300_1")


class TestRuleTable:
    """The declarative rule table in isolation."""

    def test_length_rule_long(self):
        assert LengthRule().split("15250391") == ("15250", "391")

    def test_length_rule_short(self):
        assert LengthRule().split("84001") == ("8400", "")

    def test_first_matching_prefix_wins(self):
        cleaned, variant, rule = clean_code("RT-X7620300_1")
        assert rule.prefix_strip == "RT-"
        assert cleaned == "7620300"
        assert variant == "1"

    def test_fallback_rule_matches_anything(self):
        _, _, rule = clean_code("8400300")
        assert rule is CODE_RULES[-1]

    def test_custom_rule(self):
        rules = (CodeRule(prefix_strip="HT-", strip_marker_letter=False, length_rule=LengthRule(short_family_length=3)),)
        cleaned, variant, _ = clean_code("HT-12345", rules)
        assert cleaned == "12345"
        assert variant == ""


class TestOperationalIdentifiers:
    """Family extraction from machine-control identifiers."""

    def test_extracts_marked_family(self):
        assert extract_operational_family("FRA-P8201-S15.2R0_H100W16L100X") == "8201"

    def test_five_digit_family(self):
        assert extract_operational_family("FRA-P15250-S3.91") == "15250"

    def test_no_marker_means_no_family(self):
        assert extract_operational_family("DRILL-8201-S15") == ""

    @pytest.mark.parametrize("identifier", [None, ""])
    def test_empty(self, identifier):
        assert extract_operational_family(identifier) == ""

    def test_custom_marker(self):
        assert extract_operational_family("FRA-Q8400-S3", marker="Q") == "8400"


class TestMatrixDefinitions:
    """Definitions table loading and fallback."""

    def test_missing_file_falls_back_to_builtin(self, tmp_path):
        defs = MatrixDefinitions.load(tmp_path / "missing.json")
        assert defs.classify("8400") == CATEGORY_ECUT
        assert "7624" in defs.known_patterns

    def test_invalid_file_falls_back_to_builtin(self, tmp_path):
        path = tmp_path / "defs.json"
        path.write_text("{not json", encoding="utf-8")
        defs = MatrixDefinitions.load(path)
        assert defs.classify("8201") == CATEGORY_MFC

    def test_loaded_table_supplies_tool_data(self, tmp_path):
        path = tmp_path / "defs.json"
        path.write_text(json.dumps({
            "categories": {
                "ECUT": {
                    "codePatterns": ["8400"],
                    "tools": [{"toolCode": "RT-8400300", "diameter": 3, "toolLife": 120, "codePrefix": "8400"}],
                },
            }
        }), encoding="utf-8")
        defs = MatrixDefinitions.load(path)

        result = normalize("RT-8400300_1", defs)
        assert result.diameter == 3
        assert result.tool_life == 120
        assert result.code_prefix == "8400"
        # Only the patterns from the table apply once it is loaded
        assert defs.classify("8201") == CATEGORY_OTHER

    def test_exact_variant_entry_wins_over_base(self):
        defs = MatrixDefinitions.from_dict({
            "categories": {
                "MFC": {
                    "codePatterns": ["8201"],
                    "tools": [
                        {"toolCode": "RT-8201300", "diameter": 3},
                        {"toolCode": "RT-8201300_1", "diameter": 3.2},
                    ],
                }
            }
        })
        assert defs.tool_data("RT-8201300_1").diameter == 3.2
        assert defs.tool_data("RT-8201300_2").diameter == 3

    def test_empty_patterns_use_builtin(self):
        defs = MatrixDefinitions.from_dict({"categories": {}})
        assert defs.classify("7620") == CATEGORY_XFEED

    def test_unknown_category_ignored(self):
        defs = MatrixDefinitions.from_dict({"categories": {"LASER": {"codePatterns": ["5555"]}}})
        assert defs.classify("5555") == CATEGORY_OTHER

    def test_shipped_definitions_file_loads(self):
        from path_utils import get_base_dir

        defs = MatrixDefinitions.load(get_base_dir() / "config" / "matrix-tool-definitions.json")
        assert defs.source is not None
        assert normalize("RT-X7620300", defs).category == CATEGORY_XFEED


def test_image_url():
    assert image_url_for("8400") == "/api/images/tools/8400.png"
    assert image_url_for("") == ""
