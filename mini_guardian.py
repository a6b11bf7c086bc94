#!/usr/bin/env python3
"""
===================================================================
MINI GUARDIAN - SECRET SCANNER FOR GITHUB REPOSITORIES
===================================================================

PURPOSE:
    Detect hard-coded secrets (API keys, tokens, credentials) in the
    source files of your GitHub repositories, across every branch.

FEATURES:
    ✓ 22 built-in detection patterns (AWS, GitHub, Slack, Stripe, Google,
      Discord, SendGrid, Twilio, npm, Supabase, JWTs, private keys,
      passwords in URLs and assignments)
    ✓ Custom regex patterns loaded from JSON
    ✓ Traversal filtering: only source/config/secret-shaped files are
      fetched, vendored and build directories are pruned
    ✓ Bounded async worker pool for parallel fetch + scan
    ✓ Rate limiting & exponential backoff for the GitHub API
    ✓ Partial results on timeout or Ctrl+C
    ✓ Local working-tree scanning (no GitHub access needed)
    ✓ Masked console output, raw structured JSON output
    ✓ Structured JSON logging for observability

SECURITY NOTICE:
    This scanner NEVER attempts to use discovered credentials.
    Console output is masked; the JSON output contains the raw matched
    text so treat report files as sensitive.

REQUIREMENTS:
    pip install PyGithub aiofiles tqdm python-dotenv

USAGE:
    export GITHUB_TOKEN="ghp_your_token_here"

    mini-guardian repos                      # list your repositories
    mini-guardian scan my-repo               # scan every branch of a repo
    mini-guardian scan owner/repo --json     # raw JSON findings
    mini-guardian scan-all --private-only    # scan all private repos
    mini-guardian scan-local ./checkout      # scan a local directory
    mini-guardian patterns                   # list detectors

CONFIGURATION:
    Set via environment variables (a .env file is honoured):
    - GITHUB_TOKEN: GitHub personal access token (required for GitHub commands)
    - MAX_CONCURRENT_FILES: Parallel file fetch+scan workers (default: 4)
    - SCAN_TIMEOUT_SECONDS: Abort the scan after N seconds, 0 = never (default: 0)
    - MAX_FILE_SIZE_MB: Skip files larger than this (default: 10)
    - CUSTOM_PATTERNS_FILE: Path to custom regex patterns JSON
    - LOG_FORMAT: text|json (default: text)
    - GITHUB_API_RATE_LIMIT: Requests per hour (default: 5000)
    - GITHUB_API_BACKOFF_BASE: Exponential backoff base (default: 2.0)
    - GITHUB_API_MAX_RETRIES: Retries per API call (default: 5)

===================================================================
"""
import argparse
import asyncio
import binascii
import inspect
import json
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from tqdm import tqdm

# Third-party imports with error handling
try:
    from github import Auth, Github, GithubException, RateLimitExceededException
    from dotenv import load_dotenv
    import aiofiles
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install PyGithub aiofiles tqdm python-dotenv")
    sys.exit(1)

__version__ = "0.1.0"

logger = logging.getLogger("mini_guardian")

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

DEFAULT_MAX_CONCURRENT_FILES = 4
DEFAULT_MAX_FILE_SIZE_MB = 10
DEFAULT_GITHUB_API_RATE_LIMIT = 5000  # requests per hour
DEFAULT_GITHUB_API_BACKOFF_BASE = 2.0
DEFAULT_GITHUB_API_MAX_RETRIES = 5

# Width of the line excerpt in console output
LINE_PREVIEW_LENGTH = 80

# Branch name reported by LocalProvider
LOCAL_REF = "working-tree"
LOCAL_OWNER = "local"


class SecretScanError(Exception):
    """Base class for every error raised by the scanner."""


class ConfigError(SecretScanError):
    """Raised when environment configuration is missing or invalid."""


class PatternSourceError(SecretScanError):
    """Raised when a pattern source cannot be read or parsed."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)

    def __str__(self):
        msg = super().__str__()
        if self.source:
            msg += f" (source: {self.source})"
        return msg


class InvalidPatternError(SecretScanError):
    """A single pattern entry that could not be compiled."""

    def __init__(self, name: str, regex: Optional[str], reason: str):
        self.name = name
        self.regex = regex
        self.reason = reason
        super().__init__(f"Invalid regex for pattern {name}: {reason}")


class FetchError(SecretScanError):
    """Raised when a listing or file fetch fails for one item."""

    def __init__(self, message: str, path: Optional[str] = None, ref: Optional[str] = None):
        self.path = path
        self.ref = ref
        super().__init__(message)


def _env_int(environ, name: str, default: int) -> int:
    raw = environ.get(name, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(environ, name: str, default: float) -> float:
    raw = environ.get(name, "")
    if raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class ScanConfig:
    """Immutable runtime configuration, read once at startup."""
    github_token: Optional[str] = None
    max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES
    scan_timeout_seconds: float = 0
    max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB
    custom_patterns_file: str = ""
    log_format: str = "text"
    github_api_rate_limit: int = DEFAULT_GITHUB_API_RATE_LIMIT
    github_api_backoff_base: float = DEFAULT_GITHUB_API_BACKOFF_BASE
    github_api_max_retries: int = DEFAULT_GITHUB_API_MAX_RETRIES

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def timeout(self) -> Optional[float]:
        return self.scan_timeout_seconds if self.scan_timeout_seconds > 0 else None

    @classmethod
    def from_env(cls, environ=None) -> "ScanConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            ScanConfig instance

        Raises:
            ConfigError: If a numeric variable cannot be parsed or is out of range
        """
        env = os.environ if environ is None else environ

        log_format = env.get("LOG_FORMAT", "text") or "text"
        if log_format not in ("text", "json"):
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {log_format!r}")

        config = cls(
            github_token=env.get("GITHUB_TOKEN") or None,
            max_concurrent_files=_env_int(env, "MAX_CONCURRENT_FILES", DEFAULT_MAX_CONCURRENT_FILES),
            scan_timeout_seconds=_env_float(env, "SCAN_TIMEOUT_SECONDS", 0),
            max_file_size_mb=_env_int(env, "MAX_FILE_SIZE_MB", DEFAULT_MAX_FILE_SIZE_MB),
            custom_patterns_file=env.get("CUSTOM_PATTERNS_FILE", ""),
            log_format=log_format,
            github_api_rate_limit=_env_int(env, "GITHUB_API_RATE_LIMIT", DEFAULT_GITHUB_API_RATE_LIMIT),
            github_api_backoff_base=_env_float(env, "GITHUB_API_BACKOFF_BASE", DEFAULT_GITHUB_API_BACKOFF_BASE),
            github_api_max_retries=_env_int(env, "GITHUB_API_MAX_RETRIES", DEFAULT_GITHUB_API_MAX_RETRIES),
        )

        if config.max_concurrent_files < 1:
            raise ConfigError("MAX_CONCURRENT_FILES must be at least 1")
        if config.github_api_rate_limit < 1:
            raise ConfigError("GITHUB_API_RATE_LIMIT must be at least 1")
        if config.github_api_max_retries < 1:
            raise ConfigError("GITHUB_API_MAX_RETRIES must be at least 1")
        return config


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'repo'):
            log_data["repo"] = record.repo
        if hasattr(record, 'ref'):
            log_data["ref"] = record.ref
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text", verbose: bool = False) -> logging.Logger:
    """
    Setup logging with either text or JSON format.

    Logs go to stderr so that --json findings on stdout stay parseable.
    """
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()
    logger.propagate = False

    handler = logging.StreamHandler(sys.stderr)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


# ===================================================================
# DETECTION PATTERNS
# ===================================================================

# Built-in rules, in the same shape as a pattern source file entry.
# Order matters: findings on one line are reported in this order.
DEFAULT_PATTERN_ENTRIES: Tuple[Dict[str, str], ...] = (
    {
        "name": "AWS Access Key ID",
        "regex": r"AKIA[0-9A-Z]{16}",
        "description": "Amazon Web Services access key",
    },
    {
        "name": "AWS Secret Key",
        "regex": r"""(?i)aws(.{0,20})?['"][0-9a-zA-Z/+]{40}['"]""",
        "description": "Amazon Web Services secret key",
    },
    {
        "name": "GitHub Token",
        "regex": r"gh[pousr]_[A-Za-z0-9_]{36,255}",
        "description": "GitHub Personal Access Token",
    },
    {
        "name": "GitHub OAuth",
        "regex": r"gho_[A-Za-z0-9_]{36,255}",
        "description": "GitHub OAuth Access Token",
    },
    {
        "name": "Private Key",
        "regex": r"-----BEGIN\s+(RSA|EC|DSA|OPENSSH|PGP)?\s*PRIVATE KEY-----",
        "description": "Private key file",
    },
    {
        "name": "Generic API Key",
        "regex": r"""(?i)(api[_-]?key|apikey)\s*[:=]\s*['"]?[a-zA-Z0-9_\-]{20,}['"]?""",
        "description": "Generic API key pattern",
    },
    {
        "name": "JWT Token",
        "regex": r"eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+",
        "description": "JSON Web Token",
    },
    {
        "name": "Slack Token",
        "regex": r"xox[baprs]-[0-9]{10,13}-[0-9]{10,13}[a-zA-Z0-9-]*",
        "description": "Slack API Token",
    },
    {
        "name": "Slack Webhook",
        "regex": r"https://hooks\.slack\.com/services/T[A-Z0-9]+/B[A-Z0-9]+/[a-zA-Z0-9]+",
        "description": "Slack Webhook URL",
    },
    {
        "name": "Google API Key",
        "regex": r"AIza[0-9A-Za-z\-_]{35}",
        "description": "Google API Key",
    },
    {
        "name": "Stripe Secret Key",
        "regex": r"sk_live_[0-9a-zA-Z]{24,}",
        "description": "Stripe Secret API Key",
    },
    {
        "name": "Stripe Publishable Key",
        "regex": r"pk_live_[0-9a-zA-Z]{24,}",
        "description": "Stripe Publishable API Key",
    },
    {
        "name": "Discord Token",
        "regex": r"[MN][A-Za-z\d]{23,}\.[\w-]{6}\.[\w-]{27}",
        "description": "Discord Bot Token",
    },
    {
        "name": "Password in URL",
        "regex": r"[a-zA-Z]{3,10}://[^/\s:@]{1,100}:[^/\s:@]{1,100}@[^\s/]+",
        "description": "Password embedded in URL",
    },
    {
        "name": "Generic Password",
        "regex": r"""(?i)(password|passwd|pwd)\s*[:=]\s*['"][^'"]{8,}['"]""",
        "description": "Hardcoded password",
    },
    {
        "name": "Heroku API Key",
        "regex": r"[h|H][e|E][r|R][o|O][k|K][u|U].{0,30}[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}",
        "description": "Heroku API Key",
    },
    {
        "name": "SendGrid API Key",
        "regex": r"SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}",
        "description": "SendGrid API Key",
    },
    {
        "name": "Twilio API Key",
        "regex": r"SK[a-f0-9]{32}",
        "description": "Twilio API Key",
    },
    {
        "name": "npm Token",
        "regex": r"npm_[A-Za-z0-9]{36}",
        "description": "npm Access Token",
    },
    {
        "name": "Vite Token",
        "regex": r"vite_[a-zA-Z0-9]{32,}",
        "description": "Vite API Token",
    },
    {
        "name": "Supabase Anon Key",
        "regex": r"eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+",
        "description": "Supabase Anonymous/Public Key (JWT)",
    },
    {
        "name": "Supabase Service Key",
        "regex": r"sbp_[a-f0-9]{40}",
        "description": "Supabase Service Role Key",
    },
)


@dataclass(frozen=True)
class SecretPattern:
    """A named, described, compiled rule for one class of secret."""
    name: str
    description: str
    pattern: "re.Pattern[str]"


class PatternCatalog:
    """
    Ordered, read-only collection of SecretPatterns.

    Built once per scan session. Entries whose regex does not compile are
    dropped and kept in ``skipped`` as InvalidPatternError instances.
    """

    def __init__(
        self,
        patterns: Iterable[SecretPattern] = (),
        skipped: Iterable[InvalidPatternError] = ()
    ):
        self._patterns = tuple(patterns)
        self._skipped = tuple(skipped)

    def patterns(self) -> Tuple[SecretPattern, ...]:
        return self._patterns

    @property
    def skipped(self) -> Tuple[InvalidPatternError, ...]:
        return self._skipped

    def __len__(self) -> int:
        return len(self._patterns)

    def __iter__(self) -> Iterator[SecretPattern]:
        return iter(self._patterns)

    def __repr__(self) -> str:
        return f"PatternCatalog({len(self._patterns)} patterns, {len(self._skipped)} skipped)"

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "PatternCatalog":
        """
        Compile pattern entries of the form {"name", "regex", "description"}.

        Unknown keys are ignored. A missing name defaults to CUSTOM_PATTERN.

        Args:
            entries: Parsed pattern source entries

        Returns:
            PatternCatalog with every compilable entry, in source order
        """
        patterns = []
        skipped = []

        for entry in entries:
            if not isinstance(entry, dict):
                error = InvalidPatternError("CUSTOM_PATTERN", None, "entry is not an object")
                logger.warning(str(error))
                skipped.append(error)
                continue

            name = entry.get('name') or 'CUSTOM_PATTERN'
            regex = entry.get('regex')
            description = entry.get('description') or ''

            if not regex or not isinstance(regex, str):
                error = InvalidPatternError(name, None, "no regex provided")
                logger.warning(f"Skipping pattern {name}: no regex provided")
                skipped.append(error)
                continue

            try:
                compiled = re.compile(regex)
            except (re.error, OverflowError, RecursionError) as e:
                error = InvalidPatternError(name, regex, str(e))
                logger.warning(str(error))
                skipped.append(error)
                continue

            patterns.append(SecretPattern(name=name, description=str(description), pattern=compiled))
            logger.debug(f"Loaded pattern: {name}")

        return cls(patterns, skipped)

    @classmethod
    def load(cls, source) -> "PatternCatalog":
        """
        Load a pattern catalog from a JSON file.

        Expected format:
        {
          "patterns": [
            {
              "name": "CUSTOM_API_KEY",
              "regex": "myapi_[A-Za-z0-9]{32}",
              "description": "My custom API key format"
            }
          ]
        }

        Args:
            source: Path to the pattern source file

        Returns:
            PatternCatalog

        Raises:
            PatternSourceError: If the file is missing, unreadable or malformed
        """
        path = Path(source)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise PatternSourceError("Pattern source not found", source=str(path)) from e
        except json.JSONDecodeError as e:
            raise PatternSourceError(f"Invalid JSON in pattern source: {e}", source=str(path)) from e
        except (OSError, UnicodeDecodeError) as e:
            raise PatternSourceError(f"Cannot read pattern source: {e}", source=str(path)) from e

        if not isinstance(data, dict) or not isinstance(data.get('patterns'), list):
            raise PatternSourceError(
                "Pattern source must be an object with a 'patterns' array",
                source=str(path)
            )

        catalog = cls.from_entries(data['patterns'])
        logger.info(f"Loaded {len(catalog)} patterns from {path}")
        if catalog.skipped:
            logger.warning(f"Skipped {len(catalog.skipped)} invalid patterns from {path}")
        return catalog

    @classmethod
    def default(cls) -> "PatternCatalog":
        """Catalog of the built-in detection patterns."""
        return cls.from_entries(DEFAULT_PATTERN_ENTRIES)

    def extended(self, other: "PatternCatalog") -> "PatternCatalog":
        """Return a new catalog with ``other``'s patterns appended."""
        return PatternCatalog(
            self._patterns + other.patterns(),
            self._skipped + other.skipped
        )


# ===================================================================
# TRAVERSAL FILTER
# ===================================================================

DEFAULT_SCANNABLE_EXTENSIONS = (
    ".rs", ".py", ".js", ".ts", ".jsx", ".tsx", ".go", ".java", ".rb", ".php",
    ".cs", ".cpp", ".c", ".h", ".hpp", ".swift", ".kt", ".scala", ".sh", ".bash",
    ".env", ".yml", ".yaml", ".json", ".toml", ".xml", ".ini", ".cfg", ".conf",
    ".properties", ".md", ".txt", ".sql", ".dockerfile", ".tf", ".tfvars",
)

# Matched as suffixes, so "prod.credentials" and "app/config" both qualify
DEFAULT_SECRET_FILENAMES = (
    ".env", ".env.local", ".env.development", ".env.production",
    "credentials", "secrets", "config", ".npmrc", ".pypirc",
)

# Matched as substrings of the whole path, not as path components
DEFAULT_SKIP_DIRS = (
    "node_modules", ".git", "vendor", "target", "dist", "build",
    "__pycache__", ".venv", "venv", ".idea", ".vscode", "coverage",
    ".next", ".nuxt", "out", "bin", "obj", "packages",
)


@dataclass(frozen=True)
class TraversalRules:
    """Which files are worth fetching and which directories to descend into."""
    scannable_extensions: Tuple[str, ...] = DEFAULT_SCANNABLE_EXTENSIONS
    secret_filenames: Tuple[str, ...] = DEFAULT_SECRET_FILENAMES
    skip_dirs: Tuple[str, ...] = DEFAULT_SKIP_DIRS

    def is_scannable(self, path: str) -> bool:
        """
        Determine if a file path should be fetched and scanned.

        Args:
            path: Repository-relative file path

        Returns:
            True if the path ends with a secret-bearing filename or an
            allowlisted extension (case-insensitive)
        """
        path_lower = path.lower()

        if any(path_lower.endswith(name.lower()) for name in self.secret_filenames):
            return True

        return any(path_lower.endswith(ext.lower()) for ext in self.scannable_extensions)

    def should_skip_dir(self, path: str) -> bool:
        """
        Determine if a directory should be pruned from traversal.

        Args:
            path: Repository-relative directory path

        Returns:
            True if the path contains any denylisted directory name
        """
        return any(dir_name in path for dir_name in self.skip_dirs)


DEFAULT_TRAVERSAL_RULES = TraversalRules()


def is_scannable(path: str) -> bool:
    return DEFAULT_TRAVERSAL_RULES.is_scannable(path)


def should_skip_dir(path: str) -> bool:
    return DEFAULT_TRAVERSAL_RULES.should_skip_dir(path)


# ===================================================================
# FINDINGS & MASKING
# ===================================================================

def masked_text(matched_text: str) -> str:
    """
    Redact a matched secret for display.

    Short matches (8 characters or fewer) are fully starred; longer ones
    keep the first and last 4 characters.

    Args:
        matched_text: Raw matched substring

    Returns:
        Display-safe string
    """
    length = len(matched_text)
    if length <= 8:
        return "*" * length
    return f"{matched_text[:4]}...{matched_text[-4:]}"


@dataclass(frozen=True)
class Finding:
    """One pattern matching one line of scanned content."""
    file_path: str
    line_number: int  # 1-based
    line_content: str  # raw, unredacted
    secret_type: str  # name of the matching SecretPattern
    matched_text: str  # raw, unredacted

    def masked_text(self) -> str:
        return masked_text(self.matched_text)

    def with_origin(self, branch: str, repo: Optional[str] = None) -> "Finding":
        """
        Prefix file_path with the branch, and the repository when given.

        "[main] src/app.py" or "owner/repo/[main] src/app.py"
        """
        prefix = f"[{branch}] " if repo is None else f"{repo}/[{branch}] "
        return replace(self, file_path=prefix + self.file_path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    """Order findings by file path, then line number."""
    return sorted(findings, key=lambda f: (f.file_path, f.line_number))


# ===================================================================
# SCAN ENGINE
# ===================================================================

class ScanEngine:
    """Applies a PatternCatalog to file content, line by line."""

    def __init__(self, catalog: PatternCatalog):
        self.catalog = catalog

    def patterns(self) -> Tuple[SecretPattern, ...]:
        return self.catalog.patterns()

    def scan(self, file_path: str, content: str) -> List[Finding]:
        """
        Scan file content for secrets.

        Each line is tested against every pattern in catalog order; only
        the leftmost match of a pattern on a line is reported.

        Args:
            file_path: Path recorded on the findings
            content: Decoded file text

        Returns:
            Findings in (line, catalog) order
        """
        findings = []
        patterns = self.catalog.patterns()

        for line_number, line in enumerate(content.splitlines(), start=1):
            for secret_pattern in patterns:
                match = secret_pattern.pattern.search(line)
                if match is None:
                    continue
                findings.append(Finding(
                    file_path=file_path,
                    line_number=line_number,
                    line_content=line,
                    secret_type=secret_pattern.name,
                    matched_text=match.group(0),
                ))

        return findings


# ===================================================================
# REPOSITORY PROVIDERS
# ===================================================================

@dataclass(frozen=True)
class Repository:
    name: str
    full_name: str
    is_private: bool
    default_branch: str


@dataclass(frozen=True)
class Branch:
    name: str


class RepositoryProvider(ABC):
    """Supplies repository/branch listings and file content to the scanner."""

    @abstractmethod
    async def list_repositories(self) -> List[Repository]:
        """Repositories visible to the caller."""

    @abstractmethod
    async def list_branches(self, owner: str, repo: str) -> List[Branch]:
        """Branches of one repository."""

    @abstractmethod
    async def list_files(
        self, owner: str, repo: str, path: str = "", ref: Optional[str] = None
    ) -> List[str]:
        """Scannable file paths under ``path``, recursively, already filtered."""

    @abstractmethod
    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> str:
        """Decoded text of one file. Raises FetchError on any failure."""

    def close(self) -> None:
        """Release client resources."""


# ===================================================================
# RATE LIMITING & BACKOFF
# ===================================================================

@dataclass
class RateLimitState:
    """Track rate limit state for GitHub API."""
    tokens: float
    total_requests: int = 0
    total_waits: int = 0


class GitHubRateLimiter:
    """
    Token bucket over the hourly GitHub API budget.

    The bucket starts full and refills at ``requests_per_hour / 3600``
    tokens per second. Callers only wait once it runs dry; exhausting the
    server-side quota anyway is handled by github_api_call_with_backoff.
    """

    def __init__(
        self,
        requests_per_hour: int = DEFAULT_GITHUB_API_RATE_LIMIT,
        capacity: Optional[int] = None
    ):
        self.requests_per_hour = requests_per_hour
        self.capacity = float(capacity or requests_per_hour)
        self.refill_rate = requests_per_hour / 3600.0  # tokens per second
        self.state = RateLimitState(tokens=self.capacity)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self.state.tokens = min(
            self.capacity, self.state.tokens + (now - self.last_refill) * self.refill_rate
        )
        self.last_refill = now

    async def acquire(self):
        """Take one token, waiting only if the bucket is empty."""
        async with self.lock:
            self._refill()

            if self.state.tokens < 1:
                wait_time = (1 - self.state.tokens) / self.refill_rate
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                self.state.total_waits += 1
                await asyncio.sleep(wait_time)
                self._refill()

            self.state.tokens -= 1
            self.state.total_requests += 1

    async def handle_rate_limit_error(self, reset_timestamp: Optional[int] = None):
        """Sleep until the API rate limit resets."""
        if reset_timestamp:
            wait_seconds = reset_timestamp - time.time()
        else:
            wait_seconds = 60  # Default 1 minute

        wait_seconds = max(wait_seconds, 1)
        logger.warning(f"Rate limit exceeded. Waiting {wait_seconds:.0f}s until reset")
        await asyncio.sleep(wait_seconds)

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            "total_requests": self.state.total_requests,
            "total_waits": self.state.total_waits,
            "tokens_remaining": int(self.state.tokens),
        }


def _rate_limit_reset(error: GithubException) -> Optional[int]:
    headers = getattr(error, 'headers', None) or {}
    reset = headers.get('x-ratelimit-reset')
    if reset is not None and str(reset).isdigit():
        return int(reset)
    return None


async def github_api_call_with_backoff(
    func,
    *args,
    rate_limiter: Optional[GitHubRateLimiter] = None,
    max_retries: int = DEFAULT_GITHUB_API_MAX_RETRIES,
    backoff_base: float = DEFAULT_GITHUB_API_BACKOFF_BASE,
    **kwargs
):
    """
    Execute GitHub API call with exponential backoff on rate limit errors.

    Blocking (PyGithub) callables run in the default executor so the
    event loop keeps serving other workers.

    Args:
        func: Function to call (can be sync or async)
        *args: Positional arguments for func
        rate_limiter: Limiter to acquire before every attempt
        max_retries: Maximum number of attempts
        backoff_base: Base of the exponential backoff in seconds
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call

    Raises:
        GithubException: Non rate-limit API errors, or rate-limit errors
            once retries are exhausted
    """
    for attempt in range(max_retries):
        try:
            if rate_limiter is not None:
                await rate_limiter.acquire()

            if inspect.iscoroutinefunction(func):
                return await func(*args, **kwargs)

            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))

        except RateLimitExceededException as e:
            if attempt == max_retries - 1:
                raise

            if rate_limiter is not None:
                await rate_limiter.handle_rate_limit_error(_rate_limit_reset(e))
            else:
                await asyncio.sleep(backoff_base ** attempt)

        except GithubException as e:
            if e.status == 403 and 'rate limit' in str(e).lower():
                if attempt == max_retries - 1:
                    raise

                wait_time = backoff_base ** attempt
                logger.warning(f"GitHub API error (attempt {attempt + 1}/{max_retries}): {e}")
                logger.info(f"Backing off for {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
            else:
                raise

        except OSError as e:
            if attempt == max_retries - 1:
                raise

            wait_time = backoff_base ** attempt
            logger.warning(f"API call failed (attempt {attempt + 1}/{max_retries}): {e}")
            await asyncio.sleep(wait_time)

    raise FetchError(f"Failed after {max_retries} attempts")


# ===================================================================
# GITHUB PROVIDER
# ===================================================================

class GitHubProvider(RepositoryProvider):
    """RepositoryProvider backed by the GitHub REST API (PyGithub)."""

    def __init__(
        self,
        token: Optional[str] = None,
        rules: TraversalRules = DEFAULT_TRAVERSAL_RULES,
        config: Optional[ScanConfig] = None,
        client: Optional[Github] = None
    ):
        self.config = config or ScanConfig()
        self.rules = rules
        self.client = client if client is not None else Github(auth=Auth.Token(token))
        self.rate_limiter = GitHubRateLimiter(self.config.github_api_rate_limit)
        self._repos: Dict[str, Any] = {}

    async def _call(self, func, *args, **kwargs):
        return await github_api_call_with_backoff(
            func,
            *args,
            rate_limiter=self.rate_limiter,
            max_retries=self.config.github_api_max_retries,
            backoff_base=self.config.github_api_backoff_base,
            **kwargs
        )

    async def _get_repo(self, owner: str, repo: str):
        full_name = f"{owner}/{repo}"
        if full_name not in self._repos:
            try:
                self._repos[full_name] = await self._call(self.client.get_repo, full_name)
            except (GithubException, OSError) as e:
                raise FetchError(f"Failed to open repository {full_name}: {e}") from e
        return self._repos[full_name]

    async def _get_contents(self, repository, path: str, ref: Optional[str]):
        # PyGithub rejects ref=None, so only pass it when set
        if ref is None:
            return await self._call(repository.get_contents, path)
        return await self._call(repository.get_contents, path, ref=ref)

    async def list_repositories(self) -> List[Repository]:
        def _fetch():
            return list(self.client.get_user().get_repos())

        try:
            repos = await self._call(_fetch)
        except (GithubException, OSError) as e:
            raise FetchError(f"Failed to list repositories: {e}") from e

        return [
            Repository(
                name=repo.name,
                full_name=repo.full_name or repo.name,
                is_private=bool(repo.private),
                default_branch=repo.default_branch or "main",
            )
            for repo in repos
        ]

    async def list_branches(self, owner: str, repo: str) -> List[Branch]:
        repository = await self._get_repo(owner, repo)

        try:
            branches = await self._call(lambda: list(repository.get_branches()))
        except (GithubException, OSError) as e:
            raise FetchError(f"Failed to list branches of {owner}/{repo}: {e}") from e

        return [Branch(name=branch.name) for branch in branches]

    async def list_files(
        self, owner: str, repo: str, path: str = "", ref: Optional[str] = None
    ) -> List[str]:
        """
        List scannable files under a path, descending into non-skipped dirs.

        Uses an explicit stack instead of recursion, so deep trees do not
        grow the call stack.
        """
        repository = await self._get_repo(owner, repo)
        files = []
        pending = [path]

        while pending:
            current = pending.pop()
            try:
                contents = await self._get_contents(repository, current, ref)
            except (GithubException, OSError) as e:
                raise FetchError(f"Failed to list {current or '/'}: {e}", path=current, ref=ref) from e

            # A file path was requested directly
            if not isinstance(contents, list):
                files.append(contents.path)
                continue

            subdirs = []
            for item in contents:
                if item.type == "file":
                    if self.rules.is_scannable(item.path):
                        files.append(item.path)
                elif item.type == "dir":
                    if not self.rules.should_skip_dir(item.path):
                        subdirs.append(item.path)

            # Reversed so directories are visited in listing order
            pending.extend(reversed(subdirs))

        return files

    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> str:
        repository = await self._get_repo(owner, repo)

        try:
            content_file = await self._get_contents(repository, path, ref)
        except (GithubException, OSError) as e:
            raise FetchError(f"Failed to fetch {path}: {e}", path=path, ref=ref) from e

        if isinstance(content_file, list):
            raise FetchError(f"{path} is a directory", path=path, ref=ref)

        if content_file.size and content_file.size > self.config.max_file_size_bytes:
            raise FetchError(
                f"{path} is too large ({content_file.size} bytes)", path=path, ref=ref
            )

        # Files over 1 MB come back without inline content
        if content_file.encoding != "base64":
            raise FetchError(
                f"Unsupported content encoding for {path}: {content_file.encoding}",
                path=path, ref=ref
            )

        try:
            raw = content_file.decoded_content
        except (binascii.Error, ValueError) as e:
            raise FetchError(f"Cannot decode {path}: {e}", path=path, ref=ref) from e

        return raw.decode('utf-8', errors='replace')

    def close(self) -> None:
        logger.debug(f"GitHub API usage: {self.rate_limiter.get_stats()}")
        self.client.close()


# ===================================================================
# LOCAL FILESYSTEM PROVIDER
# ===================================================================

class LocalProvider(RepositoryProvider):
    """Serves a local directory as a single repository with one branch."""

    def __init__(
        self,
        root,
        rules: TraversalRules = DEFAULT_TRAVERSAL_RULES,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE_MB * 1024 * 1024
    ):
        self.root = Path(root).expanduser().resolve()
        self.rules = rules
        self.max_file_size = max_file_size

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    async def list_repositories(self) -> List[Repository]:
        return [Repository(
            name=self.root.name,
            full_name=self.root.name,
            is_private=True,
            default_branch=LOCAL_REF,
        )]

    async def list_branches(self, owner: str, repo: str) -> List[Branch]:
        return [Branch(name=LOCAL_REF)]

    async def list_files(
        self, owner: str, repo: str, path: str = "", ref: Optional[str] = None
    ) -> List[str]:
        start = self.root / path if path else self.root
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._collect, start)

    def _collect(self, start: Path) -> List[str]:
        """Walk the tree with an explicit stack, applying the traversal rules."""
        if start.is_file():
            return [self._relative(start)]
        if not start.is_dir():
            raise FetchError(f"Path does not exist: {start}", path=str(start))

        files = []
        pending = [start]

        while pending:
            directory = pending.pop()
            try:
                entries = sorted(directory.iterdir())
            except OSError as e:
                if directory == start:
                    raise FetchError(f"Cannot list {directory}: {e}", path=str(directory)) from e
                logger.warning(f"Cannot access {directory}: {e}")
                continue

            subdirs = []
            for entry in entries:
                if entry.is_symlink():
                    continue

                relative_path = self._relative(entry)
                if entry.is_dir():
                    if not self.rules.should_skip_dir(relative_path):
                        subdirs.append(entry)
                elif entry.is_file() and self.rules.is_scannable(relative_path):
                    files.append(relative_path)

            pending.extend(reversed(subdirs))

        return files

    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> str:
        file_path = self.root / path

        try:
            file_size = file_path.stat().st_size
            if file_size > self.max_file_size:
                raise FetchError(f"{path} is too large ({file_size} bytes)", path=path, ref=ref)

            async with aiofiles.open(file_path, 'rb') as f:
                data = await f.read()
        except OSError as e:
            raise FetchError(f"Failed to read {path}: {e}", path=path, ref=ref) from e

        return data.decode('utf-8', errors='replace')


# ===================================================================
# SCAN SESSION (WORKER POOL)
# ===================================================================

@dataclass(frozen=True)
class WorkItem:
    owner: str
    repo: str
    path: str
    ref: Optional[str]
    multi_repo: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class SkippedItem:
    repo: str
    path: Optional[str]
    ref: Optional[str]
    reason: str


@dataclass
class ScanResult:
    """Single sink for everything one scan session produced."""
    findings: List[Finding] = field(default_factory=list)
    skipped: List[SkippedItem] = field(default_factory=list)
    files_scanned: int = 0
    repositories_scanned: int = 0
    branches_scanned: int = 0
    cancelled: bool = False

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def record_skip(self, repo: str, path: Optional[str], ref: Optional[str], reason: str) -> None:
        self.skipped.append(SkippedItem(repo=repo, path=path, ref=ref, reason=reason))

    def sorted_findings(self) -> List[Finding]:
        return sort_findings(self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.sorted_findings()],
            "skipped": [asdict(item) for item in self.skipped],
            "files_scanned": self.files_scanned,
            "repositories_scanned": self.repositories_scanned,
            "branches_scanned": self.branches_scanned,
            "skipped_count": self.skipped_count,
            "cancelled": self.cancelled,
        }


class ScanSession:
    """
    Runs fetch+scan work through a bounded pool of asyncio workers.

    Findings from every worker land in ``self.result``; a per-item
    FetchError is logged and counted there instead of aborting the run.
    The result object survives cancellation, so whatever was gathered
    before a timeout or interrupt can still be reported.
    """

    def __init__(
        self,
        provider: RepositoryProvider,
        engine: ScanEngine,
        concurrency: int = DEFAULT_MAX_CONCURRENT_FILES,
        timeout: Optional[float] = None,
        show_progress: bool = True
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.provider = provider
        self.engine = engine
        self.concurrency = concurrency
        self.timeout = timeout
        self.show_progress = show_progress
        self.result = ScanResult()
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Stop handing out new work; in-flight items finish."""
        self._stopping = True

    async def run(self, coro) -> ScanResult:
        """
        Await a scan coroutine under the session timeout.

        Args:
            coro: One of scan_files / scan_repository / scan_repositories

        Returns:
            The session result, marked cancelled if the timeout expired
        """
        try:
            if self.timeout:
                await asyncio.wait_for(coro, timeout=self.timeout)
            else:
                await coro
        except asyncio.TimeoutError:
            self.stop()
            self.result.cancelled = True
            logger.error(
                f"Scan timed out after {self.timeout}s; "
                f"returning {len(self.result.findings)} findings gathered so far"
            )
        return self.result

    async def _worker(self, queue: "asyncio.Queue[WorkItem]", pbar: tqdm) -> None:
        while not self._stopping:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                content = await self.provider.get_file_content(
                    item.owner, item.repo, item.path, item.ref
                )
            except FetchError as e:
                logger.warning(f"Skipping {item.full_name}:{item.path} ({item.ref}): {e}")
                self.result.record_skip(item.full_name, item.path, item.ref, str(e))
            else:
                # Regex backtracking can be slow; keep the loop free for fetches and the timeout
                loop = asyncio.get_running_loop()
                findings = await loop.run_in_executor(None, self.engine.scan, item.path, content)
                origin = item.full_name if item.multi_repo else None
                self.result.findings.extend(
                    finding.with_origin(item.ref or "", origin) for finding in findings
                )
                self.result.files_scanned += 1
            finally:
                queue.task_done()
                pbar.update(1)

    async def scan_files(
        self,
        owner: str,
        repo: str,
        ref: Optional[str],
        paths: Sequence[str],
        multi_repo: bool = False
    ) -> None:
        """
        Fetch and scan a list of files with at most ``concurrency`` in flight.

        Args:
            owner: Repository owner
            repo: Repository name
            ref: Branch the paths were listed from
            paths: Already-filtered file paths
            multi_repo: Prefix findings with owner/repo as well as branch
        """
        if not paths or self._stopping:
            return

        queue: asyncio.Queue = asyncio.Queue()
        for path in paths:
            queue.put_nowait(WorkItem(owner, repo, path, ref, multi_repo))

        worker_count = min(self.concurrency, len(paths))
        with tqdm(
            total=len(paths),
            desc=f"{owner}/{repo} [{ref}]",
            unit="file",
            disable=not self.show_progress
        ) as pbar:
            workers = [
                asyncio.create_task(self._worker(queue, pbar))
                for _ in range(worker_count)
            ]
            await asyncio.gather(*workers)

    async def scan_repository(self, owner: str, repo: str, multi_repo: bool = False) -> None:
        """
        Scan every branch of one repository.

        A branch listing failure skips the repository; a file listing
        failure skips that branch. Both are recorded as skipped items.
        """
        full_name = f"{owner}/{repo}"

        try:
            branches = await self.provider.list_branches(owner, repo)
        except FetchError as e:
            logger.warning(f"Could not list branches of {full_name}: {e}", extra={"repo": full_name})
            self.result.record_skip(full_name, None, None, str(e))
            return

        self.result.repositories_scanned += 1
        branch_names = ", ".join(branch.name for branch in branches)
        logger.info(f"{full_name} branches ({len(branches)}): {branch_names}", extra={"repo": full_name})

        for branch in branches:
            if self._stopping:
                break

            try:
                paths = await self.provider.list_files(owner, repo, "", branch.name)
            except FetchError as e:
                logger.warning(
                    f"Could not list files of {full_name} [{branch.name}]: {e}",
                    extra={"repo": full_name, "ref": branch.name}
                )
                self.result.record_skip(full_name, None, branch.name, str(e))
                continue

            self.result.branches_scanned += 1
            before = len(self.result.findings)
            await self.scan_files(owner, repo, branch.name, paths, multi_repo)
            logger.debug(
                f"{full_name} [{branch.name}]: {len(paths)} files, "
                f"{len(self.result.findings) - before} findings",
                extra={"repo": full_name, "ref": branch.name,
                       "finding_count": len(self.result.findings) - before}
            )

    async def scan_repositories(self, repositories: Iterable[Repository]) -> None:
        """Scan repositories one after another; one failure never stops the rest."""
        for repository in repositories:
            if self._stopping:
                break

            parts = repository.full_name.split('/')
            if len(parts) != 2:
                logger.warning(f"Skipping repository with unexpected name: {repository.full_name}")
                continue

            logger.info(f"Scanning {repository.full_name}...")
            await self.scan_repository(parts[0], parts[1], multi_repo=True)


async def resolve_repository(provider: RepositoryProvider, name: str) -> Tuple[str, str]:
    """
    Resolve "owner/repo" or a bare repository name to (owner, repo).

    Raises:
        FetchError: If a bare name matches none of the caller's repositories
    """
    if '/' in name:
        parts = name.split('/')
        return parts[0], parts[1]

    for repository in await provider.list_repositories():
        if repository.name == name:
            parts = repository.full_name.split('/')
            return parts[0], parts[1]

    raise FetchError(f"Repository '{name}' not found")


# ===================================================================
# REPORTING
# ===================================================================

def truncate_line(line: str, max_len: int = LINE_PREVIEW_LENGTH) -> str:
    trimmed = line.strip()
    if len(trimmed) > max_len:
        return f"{trimmed[:max_len]}..."
    return trimmed


def print_findings(findings: Sequence[Finding], target: str) -> None:
    """Print findings for humans, with the matched text masked."""
    if not findings:
        print(f"✓ No secrets found in {target}")
        return

    print(f"\nFound {len(findings)} potential secret(s) in {target}:\n")

    for i, finding in enumerate(findings, start=1):
        print(f"{i}. {finding.secret_type} [{finding.file_path}]")
        print(f"   Line {finding.line_number}: {truncate_line(finding.line_content)}")
        print(f"   Match: {finding.masked_text()}")
        print()


def print_findings_json(findings: Sequence[Finding]) -> None:
    """Print findings as a JSON array (raw matched text)."""
    print(json.dumps([f.to_dict() for f in findings], indent=2, ensure_ascii=False))


def print_scan_summary(result: ScanResult) -> None:
    print("SCAN SUMMARY")
    print(f"  Repositories scanned: {result.repositories_scanned}")
    print(f"  Branches scanned:     {result.branches_scanned}")
    print(f"  Files scanned:        {result.files_scanned}")
    print(f"  Secrets found:        {len(result.findings)}")
    if result.skipped_count:
        print(f"  Skipped items:        {result.skipped_count}")
    if result.cancelled:
        print("  (scan was cancelled; results are partial)")


def print_patterns(catalog: PatternCatalog) -> None:
    print("\nAvailable Secret Patterns:")

    for i, pattern in enumerate(catalog.patterns(), start=1):
        print(f"{i}. {pattern.name} - {pattern.description}")

    print(f"\n{len(catalog)} patterns available\n")


def write_json_report(result: ScanResult, output_path: Path, target: str) -> None:
    """Write the scan result with metadata and a per-type summary to a JSON file."""
    findings = result.sorted_findings()
    by_type = Counter(f.secret_type for f in findings)

    report = {
        "scan_metadata": {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "target": target,
            "scanner_version": __version__,
            "cancelled": result.cancelled,
        },
        "summary": {
            "total_findings": len(findings),
            "repositories_scanned": result.repositories_scanned,
            "branches_scanned": result.branches_scanned,
            "files_scanned": result.files_scanned,
            "skipped_items": result.skipped_count,
            "by_secret_type": dict(by_type.most_common()),
        },
        "skipped": [asdict(item) for item in result.skipped],
        "findings": [f.to_dict() for f in findings],
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(report, f, indent=2, ensure_ascii=False)

    logger.info(f"JSON report written to {output_path}")


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='mini-guardian',
        description='Scan your GitHub repositories for hard-coded secrets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  GITHUB_TOKEN          GitHub personal access token (not needed for
                        'patterns' and 'scan-local')
  MAX_CONCURRENT_FILES  Parallel fetch+scan workers (default: 4)
  SCAN_TIMEOUT_SECONDS  Stop after N seconds and report partial results
  MAX_FILE_SIZE_MB      Skip files larger than this in MB (default: 10)
  CUSTOM_PATTERNS_FILE  Extra patterns appended to the built-in set

EXIT CODES:
  0   Success
  1   Error (missing config, bad pattern source, API failure)
  130 Interrupted by user (Ctrl+C), partial results reported
        '''
    )

    parser.add_argument(
        '-j', '--json',
        action='store_true',
        help='Output findings as JSON (unmasked)'
    )
    parser.add_argument(
        '--log-format',
        choices=['text', 'json'],
        default=None,
        help='Logging format (default: $LOG_FORMAT or text)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )
    parser.add_argument(
        '--patterns',
        metavar='FILE',
        dest='patterns_file',
        help='Load the pattern catalog from FILE instead of the built-in set'
    )
    parser.add_argument(
        '--custom-patterns',
        metavar='FILE',
        help='Append patterns from FILE to the catalog'
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        metavar='N',
        help='Parallel fetch+scan workers (default: $MAX_CONCURRENT_FILES or 4)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        metavar='SECONDS',
        help='Stop scanning after SECONDS and report partial results'
    )
    parser.add_argument(
        '--output',
        metavar='FILE',
        help='Also write a JSON report to FILE'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('repos', help='List all your GitHub repositories')

    scan_parser = subparsers.add_parser('scan', help='Scan a specific repository for secrets')
    scan_parser.add_argument('repo', help='Repository name (owner/repo or just repo name)')

    scan_all_parser = subparsers.add_parser('scan-all', help='Scan all your repositories for secrets')
    scan_all_parser.add_argument(
        '--private-only',
        action='store_true',
        help='Scan only private repositories'
    )

    local_parser = subparsers.add_parser('scan-local', help='Scan a local directory for secrets')
    local_parser.add_argument('path', help='Directory (or file) to scan')

    subparsers.add_parser('patterns', help='Show available secret detection patterns')

    return parser.parse_args(argv)


def build_catalog(
    patterns_file: Optional[str] = None,
    custom_patterns_file: Optional[str] = None
) -> PatternCatalog:
    """
    Build the session catalog: a pattern file or the built-ins, plus custom patterns.

    Raises:
        PatternSourceError: If either file cannot be loaded
    """
    catalog = PatternCatalog.load(patterns_file) if patterns_file else PatternCatalog.default()
    if custom_patterns_file:
        catalog = catalog.extended(PatternCatalog.load(custom_patterns_file))
    return catalog


async def _list_repositories(provider: RepositoryProvider) -> List[Repository]:
    return await provider.list_repositories()


async def _scan_named_repository(session: ScanSession, name: str) -> str:
    owner, repo = await resolve_repository(session.provider, name)
    full_name = f"{owner}/{repo}"
    logger.info(f"Scanning {full_name}...")
    await session.run(session.scan_repository(owner, repo))
    return full_name


async def _scan_all_repositories(session: ScanSession, private_only: bool) -> None:
    repositories = await session.provider.list_repositories()
    if private_only:
        repositories = [r for r in repositories if r.is_private]
    logger.info(f"Scanning {len(repositories)} repositories...")
    await session.run(session.scan_repositories(repositories))


def _report(args: argparse.Namespace, result: ScanResult, target: str) -> None:
    findings = result.sorted_findings()
    if args.json:
        print_findings_json(findings)
    else:
        print_findings(findings, target)
        print_scan_summary(result)

    if args.output:
        write_json_report(result, Path(args.output), target)


def _missing_token_error() -> int:
    logger.error("=" * 70)
    logger.error("ERROR: GITHUB_TOKEN environment variable not set")
    logger.error("=" * 70)
    logger.error("Set it in .env or the environment:")
    logger.error("  export GITHUB_TOKEN=\"ghp_your_token_here\"")
    logger.error("Create a token at: https://github.com/settings/tokens")
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    load_dotenv()
    args = parse_arguments(argv)

    setup_logging(args.log_format or os.environ.get("LOG_FORMAT") or "text", args.verbose)

    try:
        config = ScanConfig.from_env()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.log_format:
        config = replace(config, log_format=args.log_format)
    if args.concurrency is not None:
        if args.concurrency < 1:
            logger.error("--concurrency must be at least 1")
            return 1
        config = replace(config, max_concurrent_files=args.concurrency)
    if args.timeout is not None:
        config = replace(config, scan_timeout_seconds=args.timeout)
    if args.custom_patterns:
        config = replace(config, custom_patterns_file=args.custom_patterns)

    # A broken pattern source aborts the session; never scan with a silently empty catalog
    try:
        catalog = build_catalog(args.patterns_file, config.custom_patterns_file or None)
    except PatternSourceError as e:
        logger.error(f"Failed to load patterns: {e}")
        return 1

    if args.command == 'patterns':
        print_patterns(catalog)
        return 0

    if args.command == 'scan-local':
        provider: RepositoryProvider = LocalProvider(
            args.path, max_file_size=config.max_file_size_bytes
        )
        if not provider.root.exists():
            logger.error(f"Path does not exist: {provider.root}")
            return 1
    else:
        if not config.github_token:
            return _missing_token_error()
        provider = GitHubProvider(config.github_token, config=config)

    try:
        if args.command == 'repos':
            try:
                repositories = asyncio.run(_list_repositories(provider))
            except FetchError as e:
                logger.error(f"Failed to list repos: {e}")
                return 1

            print(f"\n✓ Found {len(repositories)} repositories:\n")
            for repository in repositories:
                visibility = "private" if repository.is_private else "public"
                print(f"  {repository.full_name} [{visibility}]")
            return 0

        if not len(catalog):
            logger.error("No valid patterns loaded; refusing to scan")
            return 1

        session = ScanSession(
            provider,
            ScanEngine(catalog),
            concurrency=config.max_concurrent_files,
            timeout=config.timeout,
            show_progress=not args.json
        )

        interrupted = False
        try:
            if args.command == 'scan':
                target = asyncio.run(_scan_named_repository(session, args.repo))
            elif args.command == 'scan-all':
                target = "all repositories"
                asyncio.run(_scan_all_repositories(session, args.private_only))
            else:
                target = str(provider.root)
                asyncio.run(session.run(session.scan_repository(LOCAL_OWNER, provider.root.name)))
        except KeyboardInterrupt:
            interrupted = True
            session.stop()
            session.result.cancelled = True
            target = getattr(args, 'repo', None) or getattr(args, 'path', None) or "all repositories"
            logger.warning("Scan interrupted by user; reporting partial results")
        except FetchError as e:
            logger.error(f"Scan failed: {e}")
            return 1

        # A single-repository scan where no branch could be listed is a failure, not a clean result
        result = session.result
        if args.command != 'scan-all' and not result.cancelled and not result.branches_scanned and result.skipped:
            logger.error(f"Could not scan {target}: {result.skipped[0].reason}")
            return 1

        try:
            _report(args, session.result, target)
        except OSError as e:
            logger.error(f"Failed to write report: {e}")
            return 1

        return 130 if interrupted else 0

    finally:
        provider.close()


if __name__ == "__main__":
    sys.exit(main())
