"""Quoting of identifiers and literals for dynamically built T-SQL.

Every name or string value that ends up inside generated SQL text goes through
this module. Statements are built by concatenation, so this is the only
injection defense: anything that cannot be quoted safely is rejected with a
ValidationError rather than passed through or truncated.
"""

import re
from collections.abc import Iterable

from mssql_sync.errors import ValidationError

# sysname
MAX_IDENTIFIER_LENGTH = 128

_CONTROL_CHARACTERS = re.compile(r'[\x00-\x1f\x7f]')


def quote(identifier: str) -> str:
    """Bracket-quote an identifier, doubling any embedded closing bracket.

    Args:
        identifier (str): The raw identifier, e.g. ``'my]role'``.

    Returns:
        str: The quoted identifier, e.g. ``'[my]]role]'``.

    Raises:
        ValidationError: If the identifier is empty, longer than 128 characters
            or contains control characters.
    """
    if not isinstance(identifier, str) or not identifier:
        raise ValidationError(f'Identifier must be a non-empty string, got {identifier!r}')
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f'Identifier {identifier[:20]!r}... is longer than {MAX_IDENTIFIER_LENGTH} characters',
        )
    if _CONTROL_CHARACTERS.search(identifier):
        raise ValidationError(f'Identifier {identifier!r} contains control characters')
    return '[' + identifier.replace(']', ']]') + ']'


def quote_literal(value: str) -> str:
    """Single-quote a string literal, doubling any embedded single quote.

    Raises:
        ValidationError: If the value is not a string or contains NUL.
    """
    if not isinstance(value, str):
        raise ValidationError(f'Literal must be a string, got {value!r}')
    if '\x00' in value:
        raise ValidationError('Literal contains a NUL character')
    return "'" + value.replace("'", "''") + "'"


def unquote(quoted: str) -> str:
    """Inverse of `quote`.

    Raises:
        ValidationError: If the text is not bracket-quoted or contains an
            unescaped closing bracket.
    """
    if len(quoted) < 3 or quoted[0] != '[' or quoted[-1] != ']':
        raise ValidationError(f'Not a bracket-quoted identifier: {quoted!r}')
    name, end = _read_bracketed(quoted, 0)
    if end != len(quoted):
        raise ValidationError(f'Unescaped closing bracket in {quoted!r}')
    return name


def split_quoted_list(text: str | None) -> tuple[str, ...]:
    """Split a comma-separated list of bracket-quoted names.

    This is the client side of a server-side ``STRING_AGG(QUOTENAME(name), ',')``
    aggregate. Quoting the names keeps commas inside names unambiguous. An empty
    or NULL aggregate yields an empty tuple.

    Example:
        >>> split_quoted_list('[readers],[a,b]],c]')
        ('readers', 'a,b],c')
    """
    if not text:
        return ()
    names = []
    position = 0
    while True:
        if text[position] != '[':
            raise ValidationError(f'Malformed quoted list {text!r} at position {position}')
        name, position = _read_bracketed(text, position)
        names.append(name)
        if position == len(text):
            return tuple(names)
        if text[position] != ',' or position + 1 == len(text):
            raise ValidationError(f'Malformed quoted list {text!r} at position {position}')
        position += 1


def keyword(value: str, allowed: Iterable[str]) -> str:
    """Validate a bare SQL keyword that cannot be quoted.

    Args:
        value (str): The keyword, case-insensitive.
        allowed (Iterable[str]): Upper-case keywords that are accepted.

    Returns:
        str: The normalized upper-case keyword.
    """
    normalized = ' '.join(value.split()).upper() if isinstance(value, str) else value
    allowed = frozenset(allowed)
    if normalized not in allowed:
        raise ValidationError(f'Unsupported keyword {value!r}. Expected one of: {", ".join(sorted(allowed))}')
    return normalized


def _read_bracketed(text: str, start: int) -> tuple[str, int]:
    """Read one bracket-quoted name starting at `start`, returning it and the index after it."""
    chars = []
    position = start + 1
    while position < len(text):
        char = text[position]
        if char == ']':
            if text[position + 1 : position + 2] == ']':
                chars.append(']')
                position += 2
                continue
            return ''.join(chars), position + 1
        chars.append(char)
        position += 1
    raise ValidationError(f'Unterminated quoted identifier in {text!r}')
