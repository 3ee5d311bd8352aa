"""
Configuration loader for barf.

Loads project configuration from a KEY=value `.barfrc` at the project root.
Every key has a default, so a missing file yields a working configuration.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from barf.errors import ConfigError
from . import envparse
from . import validate

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".barfrc"

ISSUE_PROVIDER_LOCAL = "local"
ISSUE_PROVIDER_GITHUB = "github"
VALID_ISSUE_PROVIDERS = {ISSUE_PROVIDER_LOCAL, ISSUE_PROVIDER_GITHUB}

INT_KEYS = {
    "CONTEXT_USAGE_PERCENT",
    "MAX_AUTO_SPLITS",
    "MAX_VERIFY_RETRIES",
    "MAX_ITERATIONS",
    "CLAUDE_TIMEOUT",
    "CONCURRENCY",
}
LIST_KEYS = {"FIX_COMMANDS"}


@dataclass
class Config:
    """Runtime configuration from .barfrc"""
    project_root: Path = field(default_factory=Path.cwd)
    issues_dir: Path = Path("issues")
    plan_dir: Path = Path("plans")
    barf_dir: Path = Path(".barf")
    context_usage_percent: int = 75
    max_auto_splits: int = 3
    max_verify_retries: int = 3
    max_iterations: int = 0  # 0 = unlimited
    claude_timeout: int = 3600  # seconds per turn, 0 disables the timer
    concurrency: int = 1
    test_command: str = ""
    fix_commands: list[str] = field(default_factory=list)
    plan_model: str = "claude-opus-4-6"
    build_model: str = "claude-sonnet-4-6"
    split_model: str = "claude-sonnet-4-6"
    extended_context_model: str = "claude-opus-4-6"
    triage_model: str = "claude-haiku-4-5-20251001"
    issue_provider: str = ISSUE_PROVIDER_LOCAL
    github_repo: str = ""
    stream_log_dir: Path | None = None
    prompt_dir: Path | None = None
    log_file: Path | None = Path(".barf/barf.log")
    log_level: str = "INFO"

    def model_for(self, mode: str) -> str:
        """Initial model for a loop mode."""
        if mode == "plan":
            return self.plan_model
        if mode == "split":
            return self.split_model
        return self.build_model

    def plan_file(self, issue_id: str) -> Path:
        """Path of the plan artifact a plan turn is expected to write."""
        return self.plan_dir / f"{issue_id}.md"


def _coerce(env: dict[str, str]) -> dict:
    """Convert raw string values to the types the schema expects."""
    data: dict = {}
    for key, value in env.items():
        if key in INT_KEYS:
            try:
                data[key] = int(value)
            except ValueError:
                raise ConfigError(f"{key} must be an integer, got '{value}'") from None
        elif key in LIST_KEYS:
            data[key] = [v.strip() for v in value.split(",") if v.strip()]
        else:
            data[key] = value
    return data


def config_from_env(env: dict[str, str], project_root: Path) -> Config:
    """Build a Config from parsed KEY=value pairs.

    Raises:
        ConfigError: if a value fails coercion or schema validation
    """
    data = _coerce(env)
    if "LOG_LEVEL" in data:
        data["LOG_LEVEL"] = data["LOG_LEVEL"].upper()

    try:
        validate.validate(data, "config")
    except validate.ValidationError as e:
        raise ConfigError(f"Invalid {CONFIG_FILENAME}: {e}") from None

    provider = data.get("ISSUE_PROVIDER", ISSUE_PROVIDER_LOCAL)
    if provider not in VALID_ISSUE_PROVIDERS:
        logger.warning(
            f"Unknown ISSUE_PROVIDER '{provider}', using '{ISSUE_PROVIDER_LOCAL}'. "
            f"Valid values: {', '.join(sorted(VALID_ISSUE_PROVIDERS))}"
        )
        provider = ISSUE_PROVIDER_LOCAL

    def path(key: str, default: str) -> Path:
        return project_root / data.get(key, default)

    def optional_path(key: str, default: str = "") -> Path | None:
        value = data.get(key, default)
        return project_root / value if value else None

    defaults = Config(project_root=project_root)
    return Config(
        project_root=project_root,
        issues_dir=path("ISSUES_DIR", "issues"),
        plan_dir=path("PLAN_DIR", "plans"),
        barf_dir=path("BARF_DIR", ".barf"),
        context_usage_percent=data.get("CONTEXT_USAGE_PERCENT", defaults.context_usage_percent),
        max_auto_splits=data.get("MAX_AUTO_SPLITS", defaults.max_auto_splits),
        max_verify_retries=data.get("MAX_VERIFY_RETRIES", defaults.max_verify_retries),
        max_iterations=data.get("MAX_ITERATIONS", defaults.max_iterations),
        claude_timeout=data.get("CLAUDE_TIMEOUT", defaults.claude_timeout),
        concurrency=data.get("CONCURRENCY", defaults.concurrency),
        test_command=data.get("TEST_COMMAND", ""),
        fix_commands=data.get("FIX_COMMANDS", []),
        plan_model=data.get("PLAN_MODEL", defaults.plan_model),
        build_model=data.get("BUILD_MODEL", defaults.build_model),
        split_model=data.get("SPLIT_MODEL", defaults.split_model),
        extended_context_model=data.get("EXTENDED_CONTEXT_MODEL", defaults.extended_context_model),
        triage_model=data.get("TRIAGE_MODEL", defaults.triage_model),
        issue_provider=provider,
        github_repo=data.get("GITHUB_REPO", ""),
        stream_log_dir=optional_path("STREAM_LOG_DIR"),
        prompt_dir=optional_path("PROMPT_DIR"),
        log_file=optional_path("LOG_FILE", ".barf/barf.log"),
        log_level=data.get("LOG_LEVEL", defaults.log_level),
    )


def load_config(project_root: Path | None = None) -> Config:
    """Load .barfrc from project_root (cwd by default) and return Config."""
    project_root = (project_root or Path.cwd()).resolve()
    rc_path = project_root / CONFIG_FILENAME

    if not rc_path.exists():
        logger.debug(f"No {CONFIG_FILENAME} in {project_root}, using defaults")
        return config_from_env({}, project_root)

    try:
        env = envparse.load_env(rc_path)
    except ValueError as e:
        raise ConfigError(f"{rc_path}: {e}") from None
    return config_from_env(env, project_root)
