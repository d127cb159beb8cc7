"""One-time secrets: generation, persistence and redaction.

Secrets are generated once per installation and written to a 0600
``CREDENTIALS.txt`` inside the app directory. Later runs read them back so
re-rendered configuration keeps the same database password and app key;
only an explicit reset produces new ones.
"""

import base64
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import secrets
import string

from lms_deploy.host import Host
from lms_deploy.logging_config import get_logger
from lms_deploy.models import InstallationConfig

logger = get_logger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 24
APP_KEY_BYTES = 32
APP_KEY_PREFIX = "base64:"
REDACT_PREFIX = 4

DB_NAME = "vajar_lms"
DB_USER = "vajar_lms"

_FIELD_LABELS = {
    "db_password": "Database Password",
    "admin_password": "Admin Password",
    "app_key": "App Key",
}


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Alphanumeric password, safe to place in shell commands and templates."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_app_key() -> str:
    return APP_KEY_PREFIX + base64.b64encode(secrets.token_bytes(APP_KEY_BYTES)).decode("ascii")


def redact(secret: str | None, prefix: int = REDACT_PREFIX) -> str:
    """Show only the first characters of a secret."""
    if not secret:
        return "****"
    return f"{secret[:prefix]}****"


@dataclass(frozen=True)
class Credentials:
    db_password: str
    admin_password: str
    app_key: str

    @property
    def db_root_password(self) -> str:
        return f"{self.db_password}_root"


class CredentialStore:
    """Reads and writes the credentials artifact through a :class:`Host`."""

    def __init__(self, host: Host, path: Path, env_path: Path | None = None):
        self.host = host
        self.path = path
        self.env_path = env_path

    def exists(self) -> bool:
        return self.host.file_exists(self.path)

    def load(self) -> Credentials | None:
        if not self.exists():
            return None
        values: dict[str, str] = {}
        labels = {label: name for name, label in _FIELD_LABELS.items()}
        for line in self.host.read_file(self.path).splitlines():
            label, sep, value = line.partition(": ")
            if sep and label in labels:
                values[labels[label]] = value.strip()
        if set(values) != set(_FIELD_LABELS):
            logger.warning("credentials_file_incomplete", path=str(self.path))
            return None
        return Credentials(**values)

    def load_from_env(self, config: InstallationConfig) -> Credentials | None:
        """Recover secrets from the rendered env file when the artifact was deleted."""
        if self.env_path is None or not self.host.file_exists(self.env_path):
            return None
        env = parse_env(self.host.read_file(self.env_path))
        if not env.get("DB_PASSWORD") or not env.get("APP_KEY"):
            return None
        logger.info("credentials_recovered_from_env", path=str(self.env_path))
        return Credentials(
            db_password=env["DB_PASSWORD"],
            admin_password=config.admin_password or "",
            app_key=env["APP_KEY"],
        )

    def resolve(self, config: InstallationConfig, reset: bool = False) -> tuple[Credentials, bool]:
        """Return the credentials for this run and whether they are new.

        Persisted secrets win over the config file: the database volume was
        initialised with them, so silently changing them would lock the app out.
        """
        existing = None if reset else (self.load() or self.load_from_env(config))
        if existing is not None:
            if config.db_password and config.db_password != existing.db_password:
                logger.warning(
                    "db_password_ignored",
                    reason="credentials already persisted",
                    persisted=redact(existing.db_password),
                )
            logger.info("credentials_reused", path=str(self.path))
            return existing, False

        credentials = Credentials(
            db_password=config.db_password or generate_password(),
            admin_password=config.admin_password or generate_password(),
            app_key=generate_app_key(),
        )
        logger.info(
            "credentials_generated",
            db_password=redact(credentials.db_password),
            app_key=redact(credentials.app_key),
        )
        return credentials, True

    def save(self, credentials: Credentials, config: InstallationConfig, url: str) -> None:
        content = render_credentials(credentials, config, url, generated_at=datetime.now())
        self.host.write_file(self.path, content, mode=0o600)
        logger.info("credentials_saved", path=str(self.path))


def parse_env(text: str) -> dict[str, str]:
    """Parse a dotenv file into a dict, stripping surrounding quotes."""
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


def render_credentials(
    credentials: Credentials,
    config: InstallationConfig,
    url: str,
    generated_at: datetime,
) -> str:
    lines = [
        "LMS Installation Credentials",
        "===================================",
        f"Generated: {generated_at:%Y-%m-%d %H:%M:%S}",
        "",
        f"URL: {url}",
        "",
        f"Admin Username: {config.admin_username}",
        f"Admin Email: {config.admin_email}",
        f"{_FIELD_LABELS['admin_password']}: {credentials.admin_password}",
        "",
        "Note: Use USERNAME to login, EMAIL for password reset.",
        "",
        f"Database Name: {DB_NAME}",
        f"Database User: {DB_USER}",
        f"{_FIELD_LABELS['db_password']}: {credentials.db_password}",
        f"Database Root Password: {credentials.db_root_password}",
        "",
        f"{_FIELD_LABELS['app_key']}: {credentials.app_key}",
        "",
        "IMPORTANT: Keep this file private. Re-runs read the secrets back from it.",
        "",
    ]
    return "\n".join(lines)
