"""
Safe .env file parser.

Parses KEY=value files without shell execution. Used for loop.env, which
holds the scalar runtime settings of the loop (thresholds, timeouts, limits).
Rejects patterns that suggest someone expects shell semantics.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|\|',        # OR chaining
    r'\|',          # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_env(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Parse env-formatted text, return dict.

    Raises:
        ValueError: if syntax invalid or forbidden pattern found
    """
    result = {}

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()

        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            raise ValueError(f"{source}:{lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = _unquote(value.strip())

        if not KEY_PATTERN.match(key):
            raise ValueError(f"{source}:{lineno}: Invalid key '{key}'")

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"{source}:{lineno}: Forbidden pattern in value for {key}")

        result[key] = value

    return result


def load_env(filepath: Path, missing_ok: bool = False) -> dict[str, str]:
    """
    Parse env file safely, return dict.

    Raises:
        FileNotFoundError: if file doesn't exist and missing_ok is False
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)

    if not path.exists():
        if missing_ok:
            return {}
        raise FileNotFoundError(f"Env file not found: {filepath}")

    return parse_env(path.read_text(), source=str(path))


def format_env(values: dict[str, str]) -> str:
    """Render a dict as KEY="value" lines (sorted keys)."""
    lines = [f'{key}="{values[key]}"' for key in sorted(values)]
    return "\n".join(lines) + "\n"
