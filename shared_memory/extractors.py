"""
Tag and context extraction.

Heuristic, table-driven pattern matching over raw conversation text. Each
entry in the tables is evaluated on its own, so adding a vocabulary is a
one-line change. Results favour recall over precision.
"""

import re

TAG_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("orchestration", re.compile(r"\b(kubernetes|k8s|openshift|docker|container)\b", re.IGNORECASE)),
    ("resource_kind", re.compile(r"\b(pod|deployment|service|ingress|configmap|secret)\b", re.IGNORECASE)),
    ("resource_dimension", re.compile(r"\b(cpu|memory|storage|network|dns)\b", re.IGNORECASE)),
    # prefix match: "CrashLoopBackOff" -> crash, "timeouts" -> timeout
    ("failure", re.compile(r"\b(error|warning|failure|timeout|crash)", re.IGNORECASE)),
    ("lifecycle", re.compile(r"\b(scale|restart|apply|delete|create)\b", re.IGNORECASE)),
    ("environment", re.compile(r"\b(dev|test|staging|prod|production)\b", re.IGNORECASE)),
)

CONTEXT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("path", re.compile(r"/[\w\-/.]+")),
    ("url", re.compile(r"https?://[\w\-./]+")),
    ("dotted_name", re.compile(r"\b[\w\-]+\.[\w\-]+\.[\w\-]+\b")),
    ("constant", re.compile(r"\b[A-Z][A-Z0-9_]*\b")),
)

CONTEXT_MIN_LENGTH = 4
CONTEXT_MAX_LENGTH = 99


def extract_tags(text: str) -> list[str]:
    """
    Return the lowercase vocabulary tokens found in text.

    Args:
        text: Free-form text, typically "user message + assistant response"

    Returns:
        De-duplicated tags in first-seen order
    """
    tags: dict[str, None] = {}
    for _label, pattern in TAG_PATTERNS:
        for match in pattern.finditer(text):
            tags[match.group(1).lower()] = None
    return list(tags)


def extract_context(user_message: str, assistant_response: str) -> list[str]:
    """
    Pull paths, URLs, dotted resource names and constants out of an exchange.

    Matches shorter than 4 or longer than 99 characters are dropped.
    """
    text = f"{user_message} {assistant_response}"
    context: dict[str, None] = {}
    for _label, pattern in CONTEXT_PATTERNS:
        for match in pattern.findall(text):
            if CONTEXT_MIN_LENGTH <= len(match) <= CONTEXT_MAX_LENGTH:
                context[match] = None
    return list(context)
