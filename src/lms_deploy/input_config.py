"""Installer input: the ``initial.config`` file and the interactive fallback."""

from collections.abc import Callable
from pathlib import Path

from lms_deploy.credentials import parse_env
from lms_deploy.errors import ValidationError
from lms_deploy.logging_config import get_logger
from lms_deploy.models import DeployProfile, InstallationConfig

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path("initial.config")

CONFIG_KEYS = (
    "DOMAIN",
    "ADMIN_USERNAME",
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "SCHOOL_NAME",
    "SCHOOL_LEVEL",
    "DB_PASSWORD",
    "TIMEZONE",
)

SAMPLE_CONFIG = """\
# LMS Installation Configuration
# ==============================
# Save as 'initial.config' next to the installer, then run: lms-install run
#
# All fields are required unless marked as [optional]

# Domain name for the LMS (required)
DOMAIN=lms.yourschool.sch.id

# Admin credentials (required)
ADMIN_USERNAME=admin
ADMIN_EMAIL=admin@yourschool.sch.id
# [optional - auto-generated if empty]
ADMIN_PASSWORD=YourSecurePassword123

# School/Institution name (required)
SCHOOL_NAME=SMK Example School

# School Level (required)
# SD  = Elementary School (grades 1-6)
# SMP = Junior High School (grades 7-9)
# SMA = Senior High School (grades 10-12)
# SMK = Vocational High School (grades 10-12)
SCHOOL_LEVEL=SMK

# Database password [optional - auto-generated if empty]
DB_PASSWORD=

# Timezone [optional - defaults to Asia/Jakarta]
TIMEZONE=Asia/Jakarta
"""

LOCAL_SAMPLE_CONFIG = """\
# LMS Local Installation Configuration
# Any address works here: localhost, an IP or a LAN hostname.
DOMAIN=localhost
ADMIN_USERNAME=admin
ADMIN_EMAIL=admin@localhost
ADMIN_PASSWORD=admin123
SCHOOL_NAME=LMS Local
SCHOOL_LEVEL=SMK
DB_PASSWORD=
TIMEZONE=Asia/Jakarta
"""


def sample_config(profile: DeployProfile) -> str:
    return LOCAL_SAMPLE_CONFIG if profile is DeployProfile.LOCAL else SAMPLE_CONFIG


def parse_config_text(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, keeping only the recognized keys."""
    values = parse_env(text)
    unknown = sorted(set(values) - set(CONFIG_KEYS))
    if unknown:
        logger.warning("config_keys_ignored", keys=unknown)
    return {key: value for key, value in values.items() if key in CONFIG_KEYS}


def load_config_file(path: Path, profile: DeployProfile) -> InstallationConfig:
    """Read and validate an ``initial.config`` file.

    Raises:
        ValidationError: one entry per invalid or missing key
    """
    values = parse_config_text(path.read_text(encoding="utf-8"))
    logger.info("config_file_loaded", path=str(path), keys=sorted(values))
    return InstallationConfig.from_values(values, profile.validation)


# (key, question, default, hide input)
PROMPTS: tuple[tuple[str, str, str, bool], ...] = (
    ("DOMAIN", "Domain name (e.g. lms.school.sch.id)", "", False),
    ("ADMIN_EMAIL", "Admin email (for password reset)", "", False),
    ("ADMIN_USERNAME", "Admin username (for login)", "", False),
    ("SCHOOL_NAME", "School name", "LMS App", False),
    ("SCHOOL_LEVEL", "School level (SD, SMP, SMA, SMK)", "SMK", False),
    ("DB_PASSWORD", "Database password (empty to generate)", "", True),
    ("ADMIN_PASSWORD", "Admin password (empty to generate)", "", True),
    ("TIMEZONE", "Timezone", "Asia/Jakarta", False),
)

Ask = Callable[[str, str, bool], str]


def prompt_config(
    profile: DeployProfile,
    ask: Ask,
    on_error: Callable[[str, str], None] | None = None,
) -> InstallationConfig:
    """Collect the configuration interactively, re-asking only invalid fields.

    Empty passwords are left unset so the credential store generates them,
    the same way it does for a config file with blank password keys.
    """
    prompts = {key: (question, default, hide) for key, question, default, hide in PROMPTS}
    values = {key: ask(question, default, hide) for key, (question, default, hide) in prompts.items()}
    while True:
        try:
            return InstallationConfig.from_values(values, profile.validation)
        except ValidationError as e:
            for key, message in e.field_errors.items():
                if on_error is not None:
                    on_error(key, message)
                question, default, hide = prompts.get(key, (key, "", False))
                values[key] = ask(question, default, hide)
