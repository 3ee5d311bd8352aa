"""
Prompt templates for agent turns.

Built-in templates ship as barf/prompts/<mode>.md. When PROMPT_DIR is set, a
file of the same name there replaces the built-in one. Custom files are read
on every turn so they can be edited during a long run; built-ins are read
once.

Templates are rendered with str.format(): {BARF_ISSUE_ID}. Literal braces
are written {{ and }}. <!-- HTML comments --> document a template for its
author and never reach the agent.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from barf.errors import BarfError

logger = logging.getLogger(__name__)

__all__ = ["PromptError", "load_prompt", "render_prompt", "clear_cache", "PROMPTS_DIR", "PROMPT_MODES"]

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

PROMPT_MODES = ("plan", "build", "split", "triage")

_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)


class PromptError(BarfError):
    """No template for a mode, or a template variable without a value."""
    pass


def _strip_comments(text: str) -> str:
    return _COMMENT_PATTERN.sub("", text).lstrip()


@lru_cache(maxsize=None)
def _builtin(name: str) -> str:
    path = PROMPTS_DIR / f"{name}.md"
    try:
        return _strip_comments(path.read_text())
    except FileNotFoundError:
        raise PromptError(f"Prompt template '{name}' not found (looked for {path})") from None


def load_prompt(name: str, prompt_dir: Path | None = None) -> str:
    """Template text for a mode, custom file first."""
    if prompt_dir is not None:
        custom = Path(prompt_dir) / f"{name}.md"
        if custom.is_file():
            logger.debug(f"[PROMPT] {name}: using {custom}")
            return _strip_comments(custom.read_text())
    return _builtin(name)


def render_prompt(name: str, prompt_dir: Path | None = None, **variables) -> str:
    """
    Load and fill a template.

    Raises:
        PromptError: if the template is missing or uses a variable not given
    """
    template = load_prompt(name, prompt_dir)
    try:
        return template.format(**variables)
    except KeyError as e:
        raise PromptError(
            f"Prompt '{name}' uses {{{e.args[0]}}} but no value was given "
            f"(have: {', '.join(sorted(variables))})"
        ) from None
    except (IndexError, ValueError) as e:
        raise PromptError(f"Prompt '{name}' is not a valid template: {e}") from None


def clear_cache() -> None:
    """Forget the built-in templates read so far."""
    _builtin.cache_clear()
