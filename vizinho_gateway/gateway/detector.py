"""
Vizinho Virtual Gateway - Attack Signature Detector

Pure, stateless heuristics over request text. Each check runs a fixed list
of case-insensitive regular expressions covering common payload shapes.

This is a defense-in-depth layer, not a parser: it has false positives
and false negatives by construction.
"""

import re
from enum import Enum
from typing import List, Optional, Pattern


class AttackCategory(str, Enum):
    """Detected payload family; also used as the blacklist reason."""
    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"


def _compile(patterns: List[str]) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


SQL_INJECTION_PATTERNS = _compile([
    r"(%27)|(')|(--)|(%23)|(#)",
    r"((%3D)|(=))[^\n]*((%27)|(')|(--)|(%3B)|(;))",
    r"\w*((%27)|('))((%6F)|o|(%4F))((%72)|r|(%52))",
    r"((%27)|('))union",
    r"exec(\s|\+)+(s|x)p\w+",
    r"union([^a-z]|\s)+select",
    r"select.*from.*where",
    r"insert.*into.*values",
    r"delete.*from.*where",
    r"update.*set.*where",
    r"drop.*table",
    r"create.*table",
    r"alter.*table",
])

XSS_PATTERNS = _compile([
    r"<script[^>]*>.*?</script>",
    r"<iframe[^>]*>.*?</iframe>",
    r"<object[^>]*>.*?</object>",
    r"<embed[^>]*>.*?</embed>",
    r"javascript:",
    r"vbscript:",
    r"onload\s*=",
    r"onerror\s*=",
    r"onclick\s*=",
    r"onmouseover\s*=",
    r"<img[^>]*src[^>]*>",
    r"eval\s*\(",
    r"expression\s*\(",
])

PATH_TRAVERSAL_PATTERNS = _compile([
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e%2f",
    r"%2e%2e%5c",
    r"\.\.%2f",
    r"\.\.%5c",
    r"%2e%2e/",
    r"%2e%2e\\",
])


def _matches_any(patterns: List[Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def looks_like_sql_injection(text: str) -> bool:
    return _matches_any(SQL_INJECTION_PATTERNS, text)


def looks_like_xss(text: str) -> bool:
    return _matches_any(XSS_PATTERNS, text)


def looks_like_path_traversal(text: str) -> bool:
    return _matches_any(PATH_TRAVERSAL_PATTERNS, text)


def classify(text: str) -> Optional[AttackCategory]:
    """First matching category, checked in pipeline order, or None."""
    if looks_like_sql_injection(text):
        return AttackCategory.SQL_INJECTION
    if looks_like_xss(text):
        return AttackCategory.XSS
    if looks_like_path_traversal(text):
        return AttackCategory.PATH_TRAVERSAL
    return None
