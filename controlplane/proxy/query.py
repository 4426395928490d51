"""
Query-language rewriting for tenant-scoped backends.

Both rewriters only ever narrow a query: the caller's expression is kept, and a
label equality matcher on the scoping label is added so the result can only contain
series/streams carrying that label value. String literals and `#` comments are
skipped while scanning so braces or parentheses inside them are never mistaken for
syntax.
"""

from __future__ import annotations

from typing import List, Tuple

from controlplane.errors import InvalidInput

_QUOTES = ('"', "'", "`")


def escape_label_value(value: str) -> str:
    return (value or "").replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def label_matcher(label: str, value: str) -> str:
    return f'{label}="{escape_label_value(value)}"'


def _scan(query: str) -> Tuple[List[int], bool]:
    """
    Return (offsets of syntax characters, has_comment).

    Offsets cover every character that is neither inside a string literal nor inside
    a `#` comment. Raises InvalidInput on an unterminated literal.
    """
    code: List[int] = []
    has_comment = False
    i = 0
    n = len(query)
    while i < n:
        ch = query[i]
        if ch in _QUOTES:
            j = i + 1
            while j < n and query[j] != ch:
                # Backtick strings are raw; the others allow escapes.
                if query[j] == "\\" and ch != "`":
                    j += 1
                j += 1
            if j >= n:
                raise InvalidInput("query has an unterminated string literal")
            i = j + 1
            continue
        if ch == "#":
            has_comment = True
            nl = query.find("\n", i)
            i = n if nl < 0 else nl
            continue
        code.append(i)
        i += 1
    return code, has_comment


def inject_logql_selector(query: str, label: str, value: str) -> str:
    """
    Add `label="value"` to every stream selector in a LogQL expression.

    `{app="api"} |= "err"` -> `{resource_id="r1", app="api"} |= "err"`. An expression
    without any selector (e.g. a bare `|= "err"` pipeline) gets one prefixed.
    """
    q = (query or "").strip()
    matcher = label_matcher(label, value)
    if not q:
        return "{" + matcher + "}"

    code, _ = _scan(q)
    out: List[str] = []
    last = 0
    in_selector = False
    for i in code:
        ch = q[i]
        if ch == "{":
            if in_selector:
                raise InvalidInput("query has a nested stream selector")
            in_selector = True
            out.append(q[last : i + 1])
            # An empty selector takes the matcher alone.
            empty = q[i + 1 :].lstrip().startswith("}")
            out.append(matcher if empty else matcher + ", ")
            last = i + 1
        elif ch == "}":
            if not in_selector:
                raise InvalidInput("query has an unbalanced '}'")
            in_selector = False
    if in_selector:
        raise InvalidInput("query has an unterminated stream selector")
    if out:
        out.append(q[last:])
        return "".join(out)

    sel = "{" + matcher + "}"
    if q.startswith("|"):
        return f"{sel} {q}"
    return f"{sel} | {q}"


def wrap_promql_and(query: str, label: str, value: str) -> str:
    """
    Intersect a PromQL expression with the scoping selector:
    `rate(x[5m])` -> `(rate(x[5m])) and {resource_id="r1"}`. The caller's values are
    kept; only series carrying the scoping label survive the `and`.

    Parentheses must balance outside literals so the caller's expression cannot
    close the wrapping group and attach an unscoped `or` branch.
    """
    q = (query or "").strip()
    sel = "{" + label_matcher(label, value) + "}"
    if not q:
        return sel

    code, has_comment = _scan(q)
    depth = 0
    for i in code:
        ch = q[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise InvalidInput("query has an unbalanced ')'")
    if depth:
        raise InvalidInput("query has an unbalanced '('")
    if has_comment:
        # Keep the closing parenthesis off the commented line.
        q = q + "\n"
    return f"({q}) and {sel}"
