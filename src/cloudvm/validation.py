# Made by trex099
# https://github.com/Trex099/Glint
"""
Input validation for VM fields

A single pure entry point, validate(kind, value), used by every front end
that collects VM fields. It returns the normalized value or raises
ValidationError; it never prompts and never substitutes a default.
"""

import re
from typing import Any, Callable, Dict, List, Tuple

from .error_handling import ValidationError

NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
USERNAME_PATTERN = re.compile(r'^[a-z_][a-z0-9_-]*$')
SIZE_PATTERN = re.compile(r'^([0-9]+)([GM])$')
DIGITS_PATTERN = re.compile(r'^[0-9]+$')

MIN_PORT = 23
MAX_PORT = 65535

TRUE_WORDS = ('y', 'yes', 'true', '1')
FALSE_WORDS = ('n', 'no', 'false', '0')


def _as_text(kind, value) -> str:
    if value is None:
        raise ValidationError(f"A value is required for {kind}", kind=kind, value=value)
    return str(value).strip()


def _validate_name(value, kind='name'):
    text = _as_text(kind, value)
    if not NAME_PATTERN.match(text):
        raise ValidationError(
            f"Invalid {kind} '{text}'",
            kind=kind, value=value,
            suggestions=["Use only letters, digits, '-' and '_'"]
        )
    return text


def _validate_username(value):
    text = _as_text('username', value)
    if not USERNAME_PATTERN.match(text):
        raise ValidationError(
            f"Invalid username '{text}'",
            kind='username', value=value,
            suggestions=["Start with a lowercase letter or '_', then use lowercase letters, digits, '-' or '_'"]
        )
    return text


def _validate_size(value):
    text = _as_text('size', value)
    match = SIZE_PATTERN.match(text)
    if not match or int(match.group(1)) <= 0:
        raise ValidationError(
            f"Invalid size '{text}'",
            kind='size', value=value,
            suggestions=["Use a positive whole number followed by G or M, e.g. 20G or 512M"]
        )
    return f"{int(match.group(1))}{match.group(2)}"


def _parse_positive_int(kind, value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {kind} '{value}'", kind=kind, value=value)
    if isinstance(value, int):
        number = value
    else:
        text = _as_text(kind, value)
        if not DIGITS_PATTERN.match(text):
            raise ValidationError(
                f"Invalid {kind} '{text}'",
                kind=kind, value=value,
                suggestions=["Enter a positive whole number"]
            )
        number = int(text)
    if number <= 0:
        raise ValidationError(
            f"{kind.capitalize()} must be a positive number, got {number}",
            kind=kind, value=value
        )
    return number


def _validate_port(value, kind='port'):
    port = _parse_positive_int(kind, value)
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(
            f"Port {port} is out of range",
            kind=kind, value=value,
            suggestions=[f"Choose a port between {MIN_PORT} and {MAX_PORT}"]
        )
    return port


def _validate_password(value):
    if value is None or str(value) == '':
        raise ValidationError("Password cannot be empty", kind='password', value=value)
    if any(c in str(value) for c in '\r\n'):
        raise ValidationError("Password cannot contain line breaks", kind='password', value=value)
    # Passwords are opaque, surrounding whitespace is significant
    return str(value)


def _validate_port_forwards(value) -> List[Tuple[int, int]]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        pairs = [f"{item[0]}:{item[1]}" if isinstance(item, (list, tuple)) else str(item)
                 for item in value]
    else:
        text = str(value).strip()
        if not text:
            return []
        pairs = text.split(',')

    forwards = []
    for pair in pairs:
        pair = pair.strip()
        host, sep, guest = pair.partition(':')
        if not sep:
            raise ValidationError(
                f"Invalid port forward '{pair}'",
                kind='port_forwards', value=value,
                suggestions=["Use host:guest pairs separated by commas, e.g. 8080:80,8443:443"]
            )
        forwards.append((_validate_port(host, 'port_forwards'), _validate_port(guest, 'port_forwards')))

    hosts = [host for host, _ in forwards]
    duplicates = sorted({h for h in hosts if hosts.count(h) > 1})
    if duplicates:
        raise ValidationError(
            f"Host port(s) {', '.join(map(str, duplicates))} forwarded more than once",
            kind='port_forwards', value=value
        )
    return forwards


def _validate_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    text = _as_text('bool', value).lower()
    if text in TRUE_WORDS:
        return True
    if text in FALSE_WORDS:
        return False
    raise ValidationError(
        f"Expected yes or no, got '{text}'",
        kind='bool', value=value,
        suggestions=["Answer y/yes/true/1 or n/no/false/0"]
    )


VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    'name': _validate_name,
    'hostname': lambda v: _validate_name(v, 'hostname'),
    'username': _validate_username,
    'size': _validate_size,
    'port': _validate_port,
    'memory': lambda v: _parse_positive_int('memory', v),
    'cpus': lambda v: _parse_positive_int('cpus', v),
    'numeric': lambda v: _parse_positive_int('number', v),
    'password': _validate_password,
    'port_forwards': _validate_port_forwards,
    'bool': _validate_bool,
}


def validate(kind: str, value: Any) -> Any:
    """
    Validate and normalize a single field value

    Args:
        kind: One of the keys of VALIDATORS
        value: Raw input, usually a string from a prompt or a flag

    Returns:
        The normalized value (str, int, bool or list of (host, guest) tuples)

    Raises:
        ValidationError: if the value is not acceptable for the kind
    """
    try:
        validator = VALIDATORS[kind]
    except KeyError:
        raise ValueError(f"Unknown validation kind: {kind}") from None
    return validator(value)
