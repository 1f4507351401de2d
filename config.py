"""
Configuration management module for Bot Builder.
Loads values from environment and optional `.env` file.
"""
from pathlib import Path
from urllib.parse import urlparse
import os
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Load .env from project root if present
BASE_DIR = Path(__file__).parent.absolute()
DOTENV_PATH = BASE_DIR / ".env"
if DOTENV_PATH.exists():
    load_dotenv(DOTENV_PATH)
else:
    # Try to load from environment automatically if present
    load_dotenv()

# Directories
DATA_DIR = Path(os.getenv("BOT_BUILDER_DATA_DIR", str(BASE_DIR / "data")))
ACCOUNTS_FILE = DATA_DIR / "accounts.json"

# Hosting panel (secrets come from environment or .env only)
PTERODACTYL_API_URL: str = os.getenv("PTERODACTYL_API_URL", "").rstrip("/")
PTERODACTYL_API_KEY: Optional[str] = os.getenv("PTERODACTYL_API_KEY")
PTERODACTYL_CLIENT_API_KEY: Optional[str] = os.getenv("PTERODACTYL_CLIENT_API_KEY")
PTERODACTYL_EGG_ID: Optional[str] = os.getenv("PTERODACTYL_EGG_ID")
PTERODACTYL_NEST_ID: Optional[str] = os.getenv("PTERODACTYL_NEST_ID")
PTERODACTYL_LOCATION_ID: Optional[str] = os.getenv("PTERODACTYL_LOCATION_ID")
PTERODACTYL_DOCKER_IMAGE: str = os.getenv("PTERODACTYL_DOCKER_IMAGE", "ghcr.io/parkervcp/yolks:nodejs_21")

# Server resource limits for generated bots
SERVER_MEMORY_MB: int = int(os.getenv("SERVER_MEMORY_MB", "512"))
SERVER_DISK_MB: int = int(os.getenv("SERVER_DISK_MB", "1024"))
SERVER_CPU_PERCENT: int = int(os.getenv("SERVER_CPU_PERCENT", "100"))

# AI completion
OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
OPENAI_API_URL: str = os.getenv("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
DEFAULT_MODEL: str = os.getenv("DEFAULT_MODEL", "gpt-3.5-turbo")
ENHANCED_MODEL: str = os.getenv("ENHANCED_MODEL", "gpt-4")
CHAT_TIMEOUT: int = int(os.getenv("CHAT_TIMEOUT", "120"))

# Retry settings (seconds)
MAX_ATTEMPTS: int = 3
RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
PROVISION_TIMEOUT: float = float(os.getenv("PROVISION_TIMEOUT", "30"))
STATUS_TIMEOUT: float = float(os.getenv("STATUS_TIMEOUT", "15"))
UPLOAD_TIMEOUT: float = float(os.getenv("UPLOAD_TIMEOUT", "30"))
ACCOUNT_TIMEOUT: float = float(os.getenv("ACCOUNT_TIMEOUT", "30"))

# Installation polling (seconds)
INSTALLATION_CHECK_INTERVAL: float = float(os.getenv("INSTALLATION_CHECK_INTERVAL", "5"))
INSTALLATION_TIMEOUT: float = float(os.getenv("INSTALLATION_TIMEOUT", "300"))
INSTALLATION_MAX_BACKOFF: float = float(os.getenv("INSTALLATION_MAX_BACKOFF", "10"))
MAX_CONSECUTIVE_STATUS_ERRORS: int = int(os.getenv("MAX_CONSECUTIVE_STATUS_ERRORS", "10"))

# Upload readiness pre-check
READINESS_MAX_ATTEMPTS: int = 3
READINESS_RETRY_DELAY: float = float(os.getenv("READINESS_RETRY_DELAY", "30"))

# Deployments kept in memory for status lookups
DEPLOYMENT_HISTORY_LIMIT: int = int(os.getenv("DEPLOYMENT_HISTORY_LIMIT", "200"))

# Accounts
STARTING_TOKENS: int = int(os.getenv("STARTING_TOKENS", "500"))

# Relay server
RELAY_HOST: str = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT: int = int(os.getenv("RELAY_PORT", "8080"))
TRACE_MAX_ENTRIES: int = int(os.getenv("TRACE_MAX_ENTRIES", "100"))

# Logging configuration
LOG_DIR = BASE_DIR / "logs"
LOG_FILE = LOG_DIR / "bot_builder.log"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5


def validate_config() -> Tuple[bool, List[str]]:
    """
    Validate configuration settings. Do not accept missing secrets.

    Returns:
        tuple: (is_valid, list_of_issues)
    """
    issues = []
    required = {
        "PTERODACTYL_API_URL": PTERODACTYL_API_URL,
        "PTERODACTYL_API_KEY": PTERODACTYL_API_KEY,
        "PTERODACTYL_CLIENT_API_KEY": PTERODACTYL_CLIENT_API_KEY,
        "PTERODACTYL_EGG_ID": PTERODACTYL_EGG_ID,
        "PTERODACTYL_NEST_ID": PTERODACTYL_NEST_ID,
        "PTERODACTYL_LOCATION_ID": PTERODACTYL_LOCATION_ID,
        "OPENAI_API_KEY": OPENAI_API_KEY,
    }
    for key, value in required.items():
        if not value:
            issues.append(f"Missing {key}")

    if PTERODACTYL_API_URL:
        issues.extend(validate_panel_url(PTERODACTYL_API_URL))

    if PTERODACTYL_API_KEY and len(PTERODACTYL_API_KEY) < 32:
        issues.append("PTERODACTYL_API_KEY appears to be invalid (too short)")

    for key in ("PTERODACTYL_EGG_ID", "PTERODACTYL_NEST_ID", "PTERODACTYL_LOCATION_ID"):
        value = required[key]
        if value and not value.isdigit():
            issues.append(f"{key} must be a number")

    return not issues, issues


def validate_panel_url(url: str) -> List[str]:
    """Check that the panel API URL uses https and points at the /api root."""
    issues = []
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ["Invalid PTERODACTYL_API_URL format"]
    if parsed.scheme != "https":
        issues.append("Invalid API URL format - must use HTTPS")
    if "/api" not in parsed.path:
        issues.append("Invalid API URL format - must include /api in path")
    return issues


def secret_values() -> List[str]:
    """Return configured secrets so diagnostics can redact them."""
    return [s for s in (PTERODACTYL_API_KEY, PTERODACTYL_CLIENT_API_KEY, OPENAI_API_KEY) if s]
