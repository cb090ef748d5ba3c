"""
Numbering Engine - compile and render invoice-number patterns.

A pattern such as ``{PREFIX}-{YEAR}{MONTH}-{NUMBER}`` is compiled once into
an ordered tuple of tokens.  Each token is either literal text or one of the
placeholders below; rendering walks the tokens, so every occurrence of a
placeholder is substituted.

    {PREFIX}  the scope's prefix, verbatim
    {NUMBER}  the sequence value, zero-padded (8 digits by default)
    {YEAR}    four-digit year of the issue time
    {MONTH}   two-digit month of the issue time
    {CLIENT}  client code, or a short identifier derived from the client name

Brace groups that are not one of these placeholders are kept as literal
text.  A blank pattern means ``{PREFIX}-{NUMBER}``.

The engine never allocates: it renders whatever sequence value it is given.
Allocation lives in billing_kernel.services.sequence_service.

Usage:
    engine = NumberingEngine()
    engine.render(
        pattern="{PREFIX}-{NUMBER}-{CLIENT}",
        prefix="FAC",
        sequence_value=7,
        now=datetime(2024, 3, 1, tzinfo=timezone.utc),
        client_name="Distribuidora ABC",
    )
    # 'FAC-00000007-DAB'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache

from billing_engines.tracer import traced_engine
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.numbering")

DEFAULT_PATTERN = "{PREFIX}-{NUMBER}"
DEFAULT_PADDING = 8
CLIENT_FALLBACK = "CLI"

_PLACEHOLDER_RE = re.compile(r"\{([^{}]*)\}")
_CLIENT_STRIP_RE = re.compile(r"[^A-Z0-9 ]")


class TokenKind(str, Enum):
    """Kind of a compiled pattern token."""

    LITERAL = "literal"
    PREFIX = "PREFIX"
    NUMBER = "NUMBER"
    YEAR = "YEAR"
    MONTH = "MONTH"
    CLIENT = "CLIENT"


_PLACEHOLDERS = {
    kind.value: kind for kind in TokenKind if kind is not TokenKind.LITERAL
}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str = ""


@dataclass(frozen=True)
class NumberPattern:
    """A compiled pattern: the source text and its token sequence."""

    source: str
    tokens: tuple[Token, ...]

    def uses(self, kind: TokenKind) -> bool:
        return any(t.kind is kind for t in self.tokens)

    @property
    def has_number(self) -> bool:
        return self.uses(TokenKind.NUMBER)


@lru_cache(maxsize=256)
def compile_pattern(pattern: str | None) -> NumberPattern:
    """
    Compile ``pattern`` into tokens.

    Adjacent literal text (including unrecognised ``{...}`` groups) is merged
    into a single literal token.  Placeholder names are case-sensitive.
    """
    source = pattern if pattern and pattern.strip() else DEFAULT_PATTERN

    tokens: list[Token] = []
    literal: list[str] = []
    pos = 0
    for match in _PLACEHOLDER_RE.finditer(source):
        kind = _PLACEHOLDERS.get(match.group(1))
        if kind is None:
            continue
        literal.append(source[pos:match.start()])
        if any(literal):
            tokens.append(Token(TokenKind.LITERAL, "".join(literal)))
        literal = []
        tokens.append(Token(kind))
        pos = match.end()
    literal.append(source[pos:])
    if any(literal):
        tokens.append(Token(TokenKind.LITERAL, "".join(literal)))

    return NumberPattern(source=source, tokens=tuple(tokens))


def require_unique_pattern(pattern: str | None) -> NumberPattern:
    """
    Compile ``pattern`` and reject it unless it contains ``{NUMBER}``.

    Without the sequence value a pattern renders the same text for every
    invoice of the month, so it can never be used to configure a sequence.
    """
    compiled = compile_pattern(pattern)
    if not compiled.has_number:
        raise ValidationError(
            f"Invoice number pattern '{compiled.source}' must contain {{NUMBER}}",
            field="pattern",
        )
    return compiled


def client_identifier(client_name: str | None, client_code: str | None = None) -> str:
    """
    Short client tag for ``{CLIENT}``.

    A non-blank ``client_code`` wins verbatim.  Otherwise the name is
    uppercased and reduced to ``[A-Z0-9 ]``, then the initials of the first
    three words are taken.  When that yields fewer than three characters,
    the tag is filled from the letters following the last initial, so a
    single word gives its first three characters and ``Distribuidora ABC``
    gives ``DAB``.  Nothing usable gives ``CLI``.
    """
    if client_code and client_code.strip():
        return client_code.strip()

    cleaned = _CLIENT_STRIP_RE.sub("", (client_name or "").upper())
    words = cleaned.split()[:3]
    if not words:
        return CLIENT_FALLBACK
    tag = "".join(word[0] for word in words)
    missing = 3 - len(tag)
    if missing > 0:
        tag += words[-1][1 : 1 + missing]
    return tag


class NumberingEngine:
    """Render compiled patterns into invoice numbers.  Pure; no allocation."""

    def __init__(self, padding: int = DEFAULT_PADDING):
        if padding < 1:
            raise ValueError(f"padding must be >= 1, got {padding}")
        self._padding = padding

    @property
    def padding(self) -> int:
        return self._padding

    @traced_engine("numbering", "1.0", fingerprint_fields=("pattern", "prefix", "sequence_value"))
    def render(
        self,
        *,
        pattern: str | NumberPattern | None,
        prefix: str,
        sequence_value: int,
        now: datetime,
        client_name: str | None = None,
        client_code: str | None = None,
    ) -> str:
        """
        Render one invoice number.

        Raises:
            ValidationError: If ``sequence_value`` is not a positive integer.
        """
        if isinstance(sequence_value, bool) or not isinstance(sequence_value, int) or sequence_value < 1:
            raise ValidationError(
                f"Sequence value must be a positive integer, got {sequence_value!r}",
                field="sequence_value",
            )

        compiled = pattern if isinstance(pattern, NumberPattern) else compile_pattern(pattern)

        client: str | None = None
        parts: list[str] = []
        for token in compiled.tokens:
            if token.kind is TokenKind.LITERAL:
                parts.append(token.text)
            elif token.kind is TokenKind.PREFIX:
                parts.append(prefix or "")
            elif token.kind is TokenKind.NUMBER:
                parts.append(f"{sequence_value:0{self._padding}d}")
            elif token.kind is TokenKind.YEAR:
                parts.append(f"{now.year:04d}")
            elif token.kind is TokenKind.MONTH:
                parts.append(f"{now.month:02d}")
            elif token.kind is TokenKind.CLIENT:
                if client is None:
                    client = client_identifier(client_name, client_code)
                parts.append(client)

        number = "".join(parts)
        logger.debug(
            "invoice_number_rendered",
            extra={
                "pattern": compiled.source,
                "sequence_value": sequence_value,
                "invoice_number": number,
            },
        )
        return number
