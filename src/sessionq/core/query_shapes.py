"""
Expression shape rules for jq queries over logs.

A log is a sequence of records. Clients write expressions either against the
whole collection of records (``.[] | select(...)``, ``group_by(.type)``) or
against a single record (``select(.type == "user")``). These helpers decide
which evaluation strategy applies and rewrite collection-shaped expressions
into their per-record form.

Rewrite rules for ``per_record_expression``:

1. ``.[]`` or ``.[]?`` alone becomes ``.``
2. A leading ``.[] |`` or ``.[]? |`` wrapper is stripped once. An update
   assignment (``.[] |= ...``) is not a wrapper.
3. Anything else is returned unchanged.

Rule 2 is exact: ``.[] | f`` over an array emits ``f`` applied to each
element in order, which is what per-record streaming produces.
"""

import re
from typing import List, Optional, Tuple

MAX_EXPRESSION_LENGTH = 10_000

_WRAPPER = re.compile(r'^\s*\.\[\]\??\s*\|(?!=)\s*(.+?)\s*$', re.DOTALL)
_BARE_ITERATOR = re.compile(r'^\s*\.\[\]\??\s*$')

AGGREGATION_KEYWORDS = (
    "group_by", "sort_by", "sort", "unique_by", "unique", "min_by", "max_by",
    "min", "max", "map", "add", "reduce", "foreach", "length", "limit",
    "first", "last", "nth", "to_entries", "keys", "transpose", "flatten",
    "any", "all", "range",
)

# Keywords only count when used as builtins, not as ``.field`` names or ``$variables``.
_AGGREGATION = re.compile(
    r'(?<![.\w$])(?:' + "|".join(AGGREGATION_KEYWORDS) + r')\b'
)

# (pattern, description) pairs checked before any compilation.
DENYLIST: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'\.\.'), "recursive descent or path traversal '..'"),
    (re.compile(r'/'), "path separator '/'"),
    (re.compile(r'\\'), "backslash"),
    (re.compile(r'\bsystem\s*\('), "system()"),
    (re.compile(r'\bexec\s*\('), "exec()"),
    (re.compile(r'(?<![.\w$])import\b'), "import"),
    (re.compile(r'(?<![.\w$])include\b'), "include"),
    (re.compile(r'@sh\b'), "@sh"),
    (re.compile(r'@base64d\b'), "@base64d"),
    (re.compile(r'\$ENV\b'), "$ENV"),
    (re.compile(r'(?<![.\w$])env\b'), "env"),
    (re.compile(r'(?<![.\w$])input_filename\b'), "input_filename"),
    (re.compile(r'(?<![.\w$])inputs?\b'), "input/inputs"),
    (re.compile(r'(?<![.\w$])debug\b'), "debug"),
    (re.compile(r'(?<![.\w$])stderr\b'), "stderr"),
    (re.compile(r'(?<![.\w$])halt(?:_error)?\b'), "halt"),
    (re.compile(r'\$__loc__'), "$__loc__"),
    (re.compile(r'(?<![.\w$])modulemeta\b'), "modulemeta"),
    (re.compile(r'(?<![.\w$])get_search_list\b'), "get_search_list"),
]


def find_forbidden(expression: str) -> Optional[str]:
    """Return a description of the first denylisted construct, or None."""
    for pattern, description in DENYLIST:
        if pattern.search(expression):
            return description
    return None


def is_wrapper_form(expression: str) -> bool:
    """True for ``.[]``, ``.[]?`` and expressions that start with ``.[] |``."""
    return bool(_BARE_ITERATOR.match(expression) or _WRAPPER.match(expression))


def per_record_expression(expression: str) -> str:
    """Rewrite a collection-shaped expression to run against one record."""
    if _BARE_ITERATOR.match(expression):
        return "."

    match = _WRAPPER.match(expression)
    if match:
        return match.group(1)

    return expression


def is_aggregating(expression: str) -> bool:
    """
    Decide whether an expression needs every record at once.

    Wrapper-form expressions are per-record. Otherwise any aggregation
    keyword, any indexing/iteration of the input (``.[``), or a leading
    array constructor marks the expression aggregating. Ambiguous
    expressions are treated as aggregating.
    """
    if is_wrapper_form(expression):
        return False

    if _AGGREGATION.search(expression):
        return True

    if ".[" in expression:
        return True

    return expression.lstrip().startswith("[")
