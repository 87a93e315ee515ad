"""
Text heuristics for failure forensics.

Pure functions over raw error and stack text. Each guess returns ``None``
when nothing recognisable is found; none of them raise on odd input.
"""

import re
from typing import List, Optional, Tuple

from .models import AssertionFailure, FailedLocator, LocatorType, SourceLocation

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
STACK_LOCATION = re.compile(r"at .+ \((.+):(\d+):(\d+)\)")
STACK_LOCATION_BARE = re.compile(r"at (\S+?):(\d+):(\d+)\s*$", re.MULTILINE)

# Argument list allowing one level of nested parentheses
_ARGS = r"\((?:[^()]|\([^()]*\))*\)"

LOCATOR_PATTERNS: List[Tuple[str, Optional[LocatorType]]] = [
    (r"getByRole" + _ARGS, LocatorType.ROLE),
    (r"getByLabel" + _ARGS, LocatorType.LABEL),
    (r"getByText" + _ARGS, LocatorType.TEXT),
    (r"getByPlaceholder" + _ARGS, LocatorType.PLACEHOLDER),
    (r"getByTestId" + _ARGS, LocatorType.TESTID),
    # Generic selectors are typed by the selector's own shape
    (r"locator" + _ARGS, None),
]

ASSERTION_MATCHERS = (
    "toHaveText",
    "toContainText",
    "toHaveValue",
    "toBeVisible",
    "toBeHidden",
    "toBeEnabled",
    "toHaveCount",
    "toHaveURL",
    "toHaveTitle",
    "toHaveAttribute",
    "toBe",
    "toEqual",
)

ASSERTION_CALL = re.compile(
    r"expect\((?P<target>(?:[^()]|\([^()]*\))*)\)\s*\.\s*"
    r"(?P<negated>not\s*\.\s*)?"
    r"(?P<matcher>" + "|".join(ASSERTION_MATCHERS) + r")\b"
    r"\((?P<arg>(?:[^()]|\([^()]*\))*)\)"
)
EXPECTED_LINE = re.compile(
    r"^\s*Expected(?: string| pattern| value| substring| count)?\s*:\s*(.+?)\s*$",
    re.MULTILINE,
)
RECEIVED_LINE = re.compile(
    r"^\s*Received(?: string| value| count)?\s*:\s*(.+?)\s*$",
    re.MULTILINE,
)
LOCATOR_LINE = re.compile(r"^\s*Locator\s*:\s*(.+?)\s*$", re.MULTILINE)

# Names the engine prints in place of the real expression
PLACEHOLDER_TARGETS = ("locator", "received", "page", "actual", "value")

_QUOTED = re.compile(r"""^(['"`])(.*)\1$""", re.DOTALL)


def strip_ansi(text: Optional[str]) -> str:
    """Remove terminal color escape sequences."""
    if not text:
        return ""
    return ANSI_ESCAPE.sub("", text)


def parse_stack_location(stack: Optional[str]) -> Optional[SourceLocation]:
    """First ``at ... (file:line:col)`` frame in a stack trace."""
    if not stack:
        return None
    match = STACK_LOCATION.search(stack) or STACK_LOCATION_BARE.search(stack)
    if not match:
        return None
    return SourceLocation(
        file=match.group(1),
        line=int(match.group(2)),
        column=int(match.group(3)),
    )


def title_slug(title: str, max_tokens: int = 5) -> str:
    """
    Identity derived from a human-readable test title.

    Lowercased, non-alphanumerics dropped, first five words joined by ``-``.
    """
    cleaned = re.sub(r"[^a-z0-9\s]", "", (title or "").lower())
    tokens = cleaned.split()[:max_tokens]
    return "-".join(tokens) or "unnamed-test"


def normalize_expression(expression: str) -> str:
    """Drop whitespace outside string literals and qualify with ``page.``."""
    out = []
    quote = None
    for ch in expression.strip():
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
            out.append(ch)
        elif not ch.isspace():
            out.append(ch)
    normalized = "".join(out)
    if not normalized.startswith("page."):
        normalized = "page." + normalized
    return normalized


def unquote(value: str) -> str:
    value = value.strip()
    match = _QUOTED.match(value)
    return match.group(2) if match else value


def classify_selector(selector: str) -> LocatorType:
    """Fallback type of a generic ``locator(...)`` selector."""
    value = unquote(selector)
    lowered = value.lower()
    if value.startswith(("//", "(//", "xpath=")) or lowered.startswith("xpath="):
        return LocatorType.XPATH
    if "data-dyn-controlname" in lowered:
        return LocatorType.D365_CONTROLNAME
    if "data-testid" in lowered or "data-test-id" in lowered:
        return LocatorType.TESTID
    return LocatorType.CSS


def _locator_from_match(expression: str, locator_type: Optional[LocatorType]) -> FailedLocator:
    if locator_type is None:
        inner = expression[expression.index("(") + 1 : expression.rindex(")")]
        # locator('sel', { hasText }) carries options after the selector
        selector = re.split(r",\s*\{", inner, maxsplit=1)[0]
        locator_type = classify_selector(selector)
    normalized = normalize_expression(expression)
    return FailedLocator(
        locator=normalized,
        type=locator_type,
        locator_key=f"{locator_type.value}:{normalized}",
    )


def _search(text: str, prefix: str) -> Optional[FailedLocator]:
    best = None
    for pattern, locator_type in LOCATOR_PATTERNS:
        match = re.search(prefix + r"(" + pattern + r")", text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), match.group(1), locator_type)
    if best is None:
        return None
    return _locator_from_match(best[1], best[2])


def guess_failed_locator(message: Optional[str], stack: Optional[str] = None) -> Optional[FailedLocator]:
    """
    Best single guess at the locator a failed test was using.

    Looks for an explicit "waiting for <expr>" phrase first, then a bare
    expression in the message, then a ``page.``-qualified expression
    anywhere in the message or stack.
    """
    message = strip_ansi(message)
    stack = strip_ansi(stack)

    guess = _search(message, r"waiting for\s+(?:page\.)?")
    if guess:
        return guess

    guess = _search(message, r"(?<![\w.])")
    if guess:
        return guess

    return _search(message + "\n" + stack, r"page\.")


def _pick_call(text: str) -> Optional[re.Match]:
    matches = list(ASSERTION_CALL.finditer(text))
    if not matches:
        return None
    for match in matches:
        if match.group("target").strip().lower() not in PLACEHOLDER_TARGETS:
            return match
    return matches[0]


def _literal(arg: str) -> Optional[str]:
    arg = arg.strip()
    if not arg or arg.lower() in ("expected", "received"):
        return None
    return unquote(arg)


def guess_assertion_failure(message: Optional[str], stack: Optional[str] = None) -> Optional[AssertionFailure]:
    """
    Best single guess at the failed assertion.

    Values come from the ``Expected:``/``Received:`` lines the engine
    prints when present, otherwise from the assertion's literal argument.
    """
    message = strip_ansi(message)
    stack = strip_ansi(stack)
    combined = message + "\n" + stack

    call = _pick_call(message) or _pick_call(combined)
    if call is None:
        return None

    assertion_type = call.group("matcher")
    if call.group("negated"):
        assertion_type = "not." + assertion_type

    locator_line = LOCATOR_LINE.search(message)
    if locator_line:
        target = locator_line.group(1)
    else:
        target = call.group("target").strip()
        if target.lower() in PLACEHOLDER_TARGETS:
            literal_call = next(
                (
                    m
                    for m in ASSERTION_CALL.finditer(stack)
                    if m.group("target").strip().lower() not in PLACEHOLDER_TARGETS
                ),
                None,
            )
            if literal_call:
                target = literal_call.group("target").strip()

    expected_line = EXPECTED_LINE.search(message)
    received_line = RECEIVED_LINE.search(message)

    expected = unquote(expected_line.group(1)) if expected_line else _literal(call.group("arg"))
    actual = unquote(received_line.group(1)) if received_line else None

    return AssertionFailure(
        assertion_type=assertion_type,
        target=target,
        expected=expected,
        actual=actual,
    )
