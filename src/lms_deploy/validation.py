"""Character-class checks for values interpolated into scripts and config files.

Any user-supplied string that ends up inside a generated file, a shell
command or an artisan snippet has to pass one of these patterns first.
"""

import re

from lms_deploy.errors import ValidationError

STRICT_DOMAIN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
# Relaxed profile accepts IPs, bare hostnames and host:port, but nothing a shell would expand
RELAXED_DOMAIN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")
EMAIL = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
RELAXED_EMAIL = re.compile(r"^[A-Za-z0-9._%+@-]+$")
USERNAME = re.compile(r"^[a-zA-Z0-9_]+$")
SCHOOL_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 .,()&-]*$")
SECRET = re.compile(r"^[A-Za-z0-9!#%*+,.:;=?@^_~-]+$")
TIMEZONE = re.compile(r"^[A-Za-z0-9_+/-]+$")
LINUX_USER = re.compile(r"^[a-z_][a-z0-9_-]*$")


def is_safe(value: str, pattern: re.Pattern[str]) -> bool:
    return bool(pattern.fullmatch(value))


def ensure_safe(field: str, value: str, pattern: re.Pattern[str]) -> str:
    """Return ``value`` unchanged, or raise if it falls outside ``pattern``."""
    if not is_safe(value, pattern):
        raise ValidationError.single(field, f"contains characters outside {pattern.pattern}")
    return value
