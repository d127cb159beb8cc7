"""Domain models for a provisioning run."""

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from lms_deploy import validation
from lms_deploy.errors import ValidationError


class ValidationProfile(str, Enum):
    """How strictly input configuration is checked."""

    STRICT = "strict"
    RELAXED = "relaxed"


class DeployProfile(str, Enum):
    """Target environment of an installation."""

    PRODUCTION = "production"
    CLOUD = "cloud"
    LOCAL = "local"

    @property
    def validation(self) -> ValidationProfile:
        if self is DeployProfile.LOCAL:
            return ValidationProfile.RELAXED
        return ValidationProfile.STRICT

    @property
    def uses_tls(self) -> bool:
        return self is not DeployProfile.LOCAL


class SchoolLevel(str, Enum):
    SD = "SD"
    SMP = "SMP"
    SMA = "SMA"
    SMK = "SMK"


class PerformanceTier(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class DeploymentMode(str, Enum):
    """Which compose definition the stack runs under."""

    STANDARD = "standard"
    HIGHPERF = "highperf"


@dataclass(frozen=True)
class ResourceProfile:
    """Measured host resources."""

    ram_mb: int
    cpu_cores: int
    disk_free_gb: int


@dataclass(frozen=True)
class TierParameters:
    """Stack parameters derived from a performance tier."""

    workers: int
    db_buffer: str
    cache_memory: str


MIN_PASSWORD_LENGTH = {
    ValidationProfile.STRICT: 8,
    ValidationProfile.RELAXED: 6,
}


def _profile(info: ValidationInfo) -> ValidationProfile:
    context = info.context or {}
    return context.get("profile", ValidationProfile.STRICT)


class InstallationConfig(BaseModel):
    """Operator-supplied installation parameters.

    Field aliases match the keys of the ``initial.config`` file. Validation
    depends on the :class:`ValidationProfile` passed in the validation
    context; use :meth:`from_values` rather than calling the constructor.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, str_strip_whitespace=True)

    domain: str = Field(..., alias="DOMAIN", min_length=1)
    admin_username: str = Field(..., alias="ADMIN_USERNAME", min_length=4)
    admin_email: str = Field(..., alias="ADMIN_EMAIL", min_length=1)
    admin_password: str | None = Field(default=None, alias="ADMIN_PASSWORD")
    school_name: str = Field(..., alias="SCHOOL_NAME", min_length=1)
    school_level: SchoolLevel = Field(..., alias="SCHOOL_LEVEL")
    db_password: str | None = Field(default=None, alias="DB_PASSWORD")
    timezone: str = Field(default="Asia/Jakarta", alias="TIMEZONE")

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str, info: ValidationInfo) -> str:
        if _profile(info) is ValidationProfile.STRICT:
            if not validation.is_safe(v, validation.STRICT_DOMAIN):
                raise ValueError(f"Invalid domain format: {v}")
        elif not validation.is_safe(v, validation.RELAXED_DOMAIN):
            raise ValueError("may only contain letters, digits, '.', '_', ':' and '-'")
        return v

    @field_validator("admin_username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not validation.is_safe(v, validation.USERNAME):
            raise ValueError("can only contain letters, numbers, and underscores")
        return v

    @field_validator("admin_email")
    @classmethod
    def validate_email(cls, v: str, info: ValidationInfo) -> str:
        pattern = (
            validation.EMAIL
            if _profile(info) is ValidationProfile.STRICT
            else validation.RELAXED_EMAIL
        )
        if not validation.is_safe(v, pattern):
            raise ValueError(f"Invalid email format: {v}")
        return v

    @field_validator("admin_password", "db_password", mode="before")
    @classmethod
    def empty_secret_is_none(cls, v: str | None) -> str | None:
        if v is None or not str(v).strip():
            return None
        return v

    @field_validator("admin_password")
    @classmethod
    def validate_admin_password(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is None:
            return None
        minimum = MIN_PASSWORD_LENGTH[_profile(info)]
        if len(v) < minimum:
            raise ValueError(f"must be at least {minimum} characters")
        if not validation.is_safe(v, validation.SECRET):
            raise ValueError("contains characters that are unsafe for interpolation")
        return v

    @field_validator("db_password")
    @classmethod
    def validate_db_password(cls, v: str | None) -> str | None:
        if v is not None and not validation.is_safe(v, validation.SECRET):
            raise ValueError("contains characters that are unsafe for interpolation")
        return v

    @field_validator("school_name")
    @classmethod
    def validate_school_name(cls, v: str) -> str:
        if not validation.is_safe(v, validation.SCHOOL_NAME):
            raise ValueError("may only contain letters, digits, spaces and . , ( ) & -")
        return v

    @field_validator("school_level", mode="before")
    @classmethod
    def normalize_school_level(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("timezone", mode="before")
    @classmethod
    def default_timezone(cls, v: str | None) -> str:
        if v is None or not str(v).strip():
            return "Asia/Jakarta"
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if not validation.is_safe(v, validation.TIMEZONE):
            raise ValueError(f"Invalid timezone: {v}")
        return v

    @classmethod
    def from_values(
        cls,
        values: dict[str, str | None],
        profile: ValidationProfile = ValidationProfile.STRICT,
    ) -> "InstallationConfig":
        """Validate raw ``KEY=VALUE`` pairs.

        Raises:
            ValidationError: with one entry per offending config key
        """
        try:
            return cls.model_validate(values, context={"profile": profile})
        except PydanticValidationError as e:
            raise ValidationError(_field_errors(e)) from e


def _field_errors(error: PydanticValidationError) -> dict[str, str]:
    aliases = {name: field.alias or name for name, field in InstallationConfig.model_fields.items()}
    problems: dict[str, str] = {}
    for err in error.errors():
        loc = err["loc"][0] if err["loc"] else "config"
        key = aliases.get(str(loc), str(loc))
        message = err["msg"].removeprefix("Value error, ")
        if err["type"] == "missing":
            message = f"{key} is required"
        problems.setdefault(key, message)
    return problems
