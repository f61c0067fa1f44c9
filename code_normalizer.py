#!/usr/bin/env python3
"""
Tool Code Normalization
Maps manufacturer matrix codes (RT-8400300) and operational identifiers
(FRA-P8201-S15.2R0_H100W16L100X) onto a shared family code and category.

Matrix codes are cleaned by an ordered rule table (first matching prefix wins):
  1. strip the manufacturer prefix and the variant suffix (_1, _2, ...)
  2. strip one leading feed-type marker letter (RT-X7620300 -> 7620300)
  3. length rule on the digit run: >= 6 digits keeps all but the last 3
     (diameter code), otherwise the first 4 digits are the family

Categories come from the matrix definitions table when one is configured,
otherwise from the built-in pattern list.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

CATEGORY_ECUT = "ECUT"
CATEGORY_MFC = "MFC"
CATEGORY_XF = "XF"
CATEGORY_XFEED = "XFEED"
CATEGORY_OTHER = "OTHER"

CATEGORIES = (CATEGORY_ECUT, CATEGORY_MFC, CATEGORY_XF, CATEGORY_XFEED, CATEGORY_OTHER)

# Ordered: first match wins.
DEFAULT_CATEGORY_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (CATEGORY_ECUT, ("8400", "8410", "8420")),
    (CATEGORY_MFC, ("8201", "8211", "8221")),
    (CATEGORY_XF, ("1525", "8521")),
    (CATEGORY_XFEED, ("7620", "7624")),
)

OPERATIONAL_MARKER = "P"

IMAGE_URL_TEMPLATE = "/api/images/tools/{family}.png"


@dataclass(frozen=True)
class LengthRule:
    long_threshold: int = 6
    diameter_digits: int = 3
    short_family_length: int = 4

    def split(self, digits: str) -> Tuple[str, str]:
        """Split a digit run into (family_code, diameter_code)."""
        if len(digits) >= self.long_threshold:
            return digits[:-self.diameter_digits], digits[-self.diameter_digits:]
        return digits[:self.short_family_length], ""


@dataclass(frozen=True)
class CodeRule:
    prefix_strip: str
    suffix_separator: str = "_"
    strip_marker_letter: bool = True
    length_rule: LengthRule = LengthRule()

    def matches(self, code: str) -> bool:
        return code.startswith(self.prefix_strip)


CODE_RULES: Tuple[CodeRule, ...] = (
    CodeRule(prefix_strip="RT-"),
    CodeRule(prefix_strip=""),
)


@dataclass(frozen=True)
class ToolData:
    diameter: float = 0
    tool_life: float = 0
    code_prefix: str = ""


@dataclass(frozen=True)
class NormalizedCode:
    code: str
    family_code: str = ""
    category: str = CATEGORY_OTHER
    diameter_code: str = ""
    variant: str = ""
    diameter: float = 0
    tool_life: float = 0
    code_prefix: str = ""

    @property
    def is_matrix(self) -> bool:
        return self.category != CATEGORY_OTHER


class MatrixDefinitions:
    """Category patterns and per-tool data from the hand-authored definitions table.

    Built explicitly and passed to whoever needs it; falls back to the built-in
    pattern list when no table is available.
    """

    def __init__(
        self,
        category_patterns: Optional[Sequence[Tuple[str, Sequence[str]]]] = None,
        tools: Optional[Dict[str, ToolData]] = None,
        source: Optional[str] = None,
    ):
        patterns = category_patterns if category_patterns else DEFAULT_CATEGORY_PATTERNS
        self.category_patterns: Tuple[Tuple[str, Tuple[str, ...]], ...] = tuple(
            (category, tuple(codes)) for category, codes in patterns
        )
        self.tools: Dict[str, ToolData] = dict(tools or {})
        self.source = source

    @classmethod
    def builtin(cls) -> "MatrixDefinitions":
        return cls()

    @classmethod
    def load(cls, path: Optional[Union[str, Path]]) -> "MatrixDefinitions":
        """Load definitions JSON; any problem falls back to the built-in patterns."""
        if not path:
            return cls.builtin()
        definitions_path = Path(path)
        if not definitions_path.exists():
            logging.info(f"📋 No matrix definitions at {definitions_path} - using built-in patterns")
            return cls.builtin()
        try:
            with open(definitions_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return cls.from_dict(raw, source=str(definitions_path))
        except Exception as e:
            logging.warning(f"Could not load matrix definitions: {e}")
            return cls.builtin()

    @classmethod
    def from_dict(cls, raw: dict, source: Optional[str] = None) -> "MatrixDefinitions":
        categories = raw.get("categories") if isinstance(raw, dict) else None
        if not isinstance(categories, dict):
            raise ValueError("definitions must contain a 'categories' object")

        patterns: List[Tuple[str, Tuple[str, ...]]] = []
        tools: Dict[str, ToolData] = {}
        for name, category in categories.items():
            if not isinstance(category, dict):
                continue
            category_name = str(name).strip().upper()
            if category_name not in CATEGORIES or category_name == CATEGORY_OTHER:
                logging.warning(f"Ignoring unknown matrix category '{name}' in definitions")
                continue
            codes = tuple(str(c).strip() for c in (category.get("codePatterns") or []) if str(c).strip())
            if codes:
                patterns.append((category_name, codes))
            for tool in category.get("tools") or []:
                if not isinstance(tool, dict) or not tool.get("toolCode"):
                    continue
                tools[str(tool["toolCode"]).strip().upper()] = ToolData(
                    diameter=tool.get("diameter") or 0,
                    tool_life=tool.get("toolLife") or 0,
                    code_prefix=str(tool.get("codePrefix") or ""),
                )

        return cls(category_patterns=patterns, tools=tools, source=source)

    @property
    def known_patterns(self) -> List[str]:
        return [code for _, codes in self.category_patterns for code in codes]

    def classify(self, family_code: str) -> str:
        if not family_code:
            return CATEGORY_OTHER
        for category, codes in self.category_patterns:
            for pattern in codes:
                if pattern in family_code:
                    return category
        return CATEGORY_OTHER

    def tool_data(self, code: str) -> ToolData:
        """Exact code first (keeps _1/_2 variants apart), then the base code."""
        if not code:
            return ToolData()
        key = code.strip().upper()
        if key in self.tools:
            return self.tools[key]
        base = key.split("_")[0]
        return self.tools.get(base, ToolData())


_BUILTIN_DEFINITIONS = MatrixDefinitions.builtin()


def _select_rule(code: str, rules: Sequence[CodeRule]) -> CodeRule:
    for rule in rules:
        if rule.matches(code):
            return rule
    return rules[-1]


def clean_code(code: str, rules: Sequence[CodeRule] = CODE_RULES) -> Tuple[str, str, CodeRule]:
    """Return (cleaned, variant, rule) for a matrix code."""
    text = (code or "").strip().upper()
    rule = _select_rule(text, rules)
    cleaned = text[len(rule.prefix_strip):]

    variant = ""
    if rule.suffix_separator and rule.suffix_separator in cleaned:
        cleaned, _, variant = cleaned.partition(rule.suffix_separator)

    if rule.strip_marker_letter and cleaned[:1].isalpha():
        cleaned = cleaned[1:]
    return cleaned, variant, rule


def _leading_digits(text: str) -> str:
    end = 0
    while end < len(text) and text[end].isdigit():
        end += 1
    return text[:end]


def normalize(code: Optional[str], definitions: Optional[MatrixDefinitions] = None) -> NormalizedCode:
    """Normalize a matrix code. Total: bad input yields the neutral record."""
    defs = definitions or _BUILTIN_DEFINITIONS
    if code is None:
        return NormalizedCode(code="")
    try:
        text = str(code).strip()
        if not text:
            return NormalizedCode(code="")

        cleaned, variant, rule = clean_code(text)
        family_code, diameter_code = rule.length_rule.split(_leading_digits(cleaned))
        data = defs.tool_data(text)
        return NormalizedCode(
            code=text,
            family_code=family_code,
            category=defs.classify(family_code),
            diameter_code=diameter_code,
            variant=variant,
            diameter=data.diameter,
            tool_life=data.tool_life,
            code_prefix=data.code_prefix,
        )
    except Exception as e:
        logging.debug(f"Normalization fell back to neutral record for {code!r}: {e}")
        return NormalizedCode(code="")


def family_code_for(code: Optional[str]) -> str:
    return normalize(code).family_code


@lru_cache(maxsize=8)
def _operational_pattern(marker: str):
    return re.compile(re.escape(marker) + r"(\d{4,5})")


def extract_operational_family(identifier: Optional[str], marker: str = OPERATIONAL_MARKER) -> str:
    """Family code embedded in an operational identifier ('' when there is none)."""
    if not identifier:
        return ""
    match = _operational_pattern(marker).search(str(identifier))
    return match.group(1) if match else ""


def image_url_for(family_code: str) -> str:
    if not family_code:
        return ""
    return IMAGE_URL_TEMPLATE.format(family=family_code)
