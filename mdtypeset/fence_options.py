"""Parse TikZ fence info strings such as ``tikz scale=0.75 format='svg'``."""

from __future__ import annotations

from dataclasses import dataclass

DIAGRAM_MARKER = "tikz"
RECOGNIZED_OPTION_KEYS = ("scale", "preamble", "format")

_MARKER_TRIM_CHARS = ",{}[]();"
_VALUE_TRIM_CHARS = ",;"
_SEPARATORS = {",", ";"}
_UNESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "\\": "\\",
    '"': '"',
    "'": "'",
}


@dataclass(frozen=True)
class DiagramOptions:
    scale: str | None = None
    preamble: str | None = None
    format: str | None = None


def tokenize_fence_info(info: str) -> list[str]:
    """Split on whitespace, commas, and semicolons outside of quotes.

    Quote characters and backslash escapes are kept in the tokens; value
    normalization strips them later.
    """
    tokens: list[str] = []
    current: list[str] = []
    quote_char = ""
    chars = iter(info)

    def flush() -> None:
        if current:
            token = "".join(current).strip()
            if token:
                tokens.append(token)
            current.clear()

    for ch in chars:
        if ch in {"'", '"'}:
            current.append(ch)
            if not quote_char:
                quote_char = ch
            elif ch == quote_char:
                quote_char = ""
        elif ch == "\\":
            current.append(ch)
            next_ch = next(chars, None)
            if next_ch is not None:
                current.append(next_ch)
        elif not quote_char and (ch.isspace() or ch in _SEPARATORS):
            flush()
        else:
            current.append(ch)
    flush()
    return tokens


def unescape_quoted(value: str) -> str:
    result: list[str] = []
    index = 0
    while index < len(value):
        ch = value[index]
        if ch != "\\":
            result.append(ch)
            index += 1
            continue
        if index + 1 >= len(value):
            # Dangling backslash stays literal.
            result.append("\\")
            break
        next_ch = value[index + 1]
        replacement = _UNESCAPES.get(next_ch)
        if replacement is None:
            result.append("\\")
            result.append(next_ch)
        else:
            result.append(replacement)
        index += 2
    return "".join(result)


def normalize_option_value(raw: str) -> str:
    trimmed = raw.strip().strip(_VALUE_TRIM_CHARS)
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in {'"', "'"}:
        return unescape_quoted(trimmed[1:-1])
    return trimmed


def parse_fence_info(info: str | None) -> tuple[str, DiagramOptions] | None:
    """Return ``(marker, options)`` when ``info`` names a TikZ fence, else ``None``.

    Unknown keys and tokens without ``=`` are ignored. A later occurrence of a
    key overrides an earlier one.
    """
    raw = (info or "").strip()
    if not raw:
        return None

    tokens = tokenize_fence_info(raw)
    if not tokens:
        return None

    marker = tokens[0].strip(_MARKER_TRIM_CHARS).lower()
    if marker != DIAGRAM_MARKER:
        return None

    values: dict[str, str] = {}
    for token in tokens[1:]:
        key, sep, value = token.partition("=")
        if not sep:
            continue
        key = key.strip().strip(_MARKER_TRIM_CHARS).lower()
        if key in RECOGNIZED_OPTION_KEYS:
            values[key] = normalize_option_value(value)

    return marker, DiagramOptions(
        scale=values.get("scale"),
        preamble=values.get("preamble"),
        format=values.get("format"),
    )
