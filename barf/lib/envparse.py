"""
.barfrc reader.

A .barfrc holds KEY=value lines. It is never sourced by a shell: values are
taken literally, except that one pair of surrounding quotes is removed.
Values may contain shell operators (TEST_COMMAND later runs under `sh -c`),
but not text a shell would expand while reading the file.
"""

import re
from pathlib import Path

_LINE_PATTERN = re.compile(r'^(?:export\s+)?(?P<key>[^=\s]+)\s*=\s*(?P<value>.*)$')
_KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

# Backticks, $( ) and ${ }
_EXPANSION_PATTERN = re.compile(r'`|\$\(|\$\{')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_env(text: str) -> dict[str, str]:
    """Parse .barfrc text into KEY -> raw string value.

    A later assignment to the same key wins.

    Raises:
        ValueError: naming the line, for a malformed line, a key that is not
            UPPER_SNAKE_CASE, or a shell expansion inside a value
    """
    env: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        match = _LINE_PATTERN.match(line)
        if match is None:
            raise ValueError(f"Line {lineno}: expected KEY=value, got '{line}'")

        key = match["key"]
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Line {lineno}: Invalid key '{key}' (use UPPER_SNAKE_CASE)")

        value = _unquote(match["value"].strip())
        if _EXPANSION_PATTERN.search(value):
            raise ValueError(f"Line {lineno}: Forbidden shell expansion in {key}")
        env[key] = value
    return env


def load_env(filepath: str | Path) -> dict[str, str]:
    """Read and parse a .barfrc file.

    Raises:
        FileNotFoundError: if the file does not exist
        ValueError: see parse_env
    """
    return parse_env(Path(filepath).read_text())
