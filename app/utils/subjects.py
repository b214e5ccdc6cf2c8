import re

# "Re:", "RE[2]:", "Fwd:", "FW:", "AW:", "SV:" and "[tag]" prefixes, repeated in any order.
_PREFIX_RE = re.compile(r"^\s*(?:(?:re|fwd?|aw|sv)\s*(?:\[\d+\])?\s*:|\[[^\]]*\])\s*", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_subject(subject: str | None) -> str:
    """Strip reply/forward/tag prefixes, collapse whitespace and case-fold."""
    if not subject:
        return ""

    value = subject
    while True:
        stripped = _PREFIX_RE.sub("", value, count=1)
        if stripped == value:
            break
        value = stripped

    return _WHITESPACE_RE.sub(" ", value).strip().casefold()
