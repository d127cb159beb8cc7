"""Render every per-installation artifact from one immutable context.

Rendering is pure: the same :class:`RenderContext` always yields the same
bytes. Secrets are referenced from the env file by the compose definitions,
so only ``.env`` (written 0600) carries them.
"""

from dataclasses import dataclass
from importlib import resources
from pathlib import Path
import string

import yaml

from lms_deploy import validation
from lms_deploy.compose import (
    COMPOSE_FILES,
    NETWORK,
    VOLUMES,
    container_name,
)
from lms_deploy.credentials import DB_NAME, DB_USER, Credentials
from lms_deploy.models import (
    DeploymentMode,
    DeployProfile,
    InstallationConfig,
    PerformanceTier,
    TierParameters,
    ValidationProfile,
)

PHP_POOL_FILES = {
    DeploymentMode.STANDARD: "docker/php/php-fpm-pool.conf",
    DeploymentMode.HIGHPERF: "docker/php/php-fpm-pool-highperf.conf",
}
NGINX_MAIN_FILE = "docker/nginx/nginx-highperf.conf"
NGINX_APP_FILE = "docker/nginx/default-highperf.conf"
ENV_FILE = ".env"

MYSQL_IMAGE = "mysql:8.0"
REDIS_IMAGE = "redis:7-alpine"


class ConfigTemplate(string.Template):
    """``@{name}`` placeholders, leaving nginx ``$variables`` untouched."""

    delimiter = "@"


def load_template(name: str) -> ConfigTemplate:
    text = (resources.files("lms_deploy") / "templates" / name).read_text(encoding="utf-8")
    return ConfigTemplate(text)


@dataclass(frozen=True)
class ModeLimits:
    """Resource declaration of one deployment mode."""

    php_workers: int
    nginx_worker_connections: int
    db_max_connections: int
    listen_backlog: int

    @property
    def pool_sizes(self) -> dict[str, int]:
        workers = self.php_workers
        start = max(2, workers // 5)
        return {
            "max_children": workers,
            "start_servers": start,
            "min_spare_servers": max(1, workers // 10),
            "max_spare_servers": max(start, workers // 3),
        }


HIGHPERF_LIMITS = ModeLimits(
    php_workers=150,
    nginx_worker_connections=4096,
    db_max_connections=1000,
    listen_backlog=65535,
)


@dataclass(frozen=True)
class RenderContext:
    """Everything a render depends on. Two equal contexts render identically."""

    config: InstallationConfig
    profile: DeployProfile
    tier: PerformanceTier
    params: TierParameters
    credentials: Credentials
    docker_image: str
    app_port: int = 8080
    letsencrypt_dir: Path = Path("/etc/letsencrypt/live")

    @property
    def url(self) -> str:
        if self.profile.uses_tls:
            return f"https://{self.config.domain}"
        return f"http://{self.config.domain}:{self.app_port}"

    @property
    def cert_dir(self) -> Path:
        return self.letsencrypt_dir / self.config.domain

    def limits(self, mode: DeploymentMode) -> ModeLimits:
        if mode is DeploymentMode.HIGHPERF:
            return HIGHPERF_LIMITS
        return ModeLimits(
            php_workers=self.params.workers,
            nginx_worker_connections=1024,
            db_max_connections=100 if self.profile is DeployProfile.LOCAL else 500,
            listen_backlog=511,
        )


class ConfigComposer:
    """Renders the env file, both compose definitions and the proxy/pool configs."""

    def __init__(self, context: RenderContext):
        self.context = context
        self._check_interpolated_fields()

    def _check_interpolated_fields(self) -> None:
        config = self.context.config
        domain_pattern = (
            validation.STRICT_DOMAIN
            if self.context.profile.validation is ValidationProfile.STRICT
            else validation.RELAXED_DOMAIN
        )
        validation.ensure_safe("DOMAIN", config.domain, domain_pattern)
        validation.ensure_safe("SCHOOL_NAME", config.school_name, validation.SCHOOL_NAME)
        email_pattern = (
            validation.EMAIL
            if self.context.profile.validation is ValidationProfile.STRICT
            else validation.RELAXED_EMAIL
        )
        validation.ensure_safe("ADMIN_EMAIL", config.admin_email, email_pattern)
        validation.ensure_safe("TIMEZONE", config.timezone, validation.TIMEZONE)
        validation.ensure_safe("DB_PASSWORD", self.context.credentials.db_password, validation.SECRET)

    # === Env file ===

    def env_values(self) -> dict[str, str]:
        ctx = self.context
        local = ctx.profile is DeployProfile.LOCAL
        creds = ctx.credentials
        return {
            "APP_NAME": f'"{ctx.config.school_name}"',
            "APP_ENV": "local" if local else "production",
            "APP_KEY": creds.app_key,
            "APP_DEBUG": "true" if local else "false",
            "APP_URL": ctx.url,
            "APP_TIMEZONE": ctx.config.timezone,
            "APP_PORT": str(ctx.app_port),
            "DB_CONNECTION": "mysql",
            "DB_HOST": "mysql",
            "DB_PORT": "3306",
            "DB_DATABASE": DB_NAME,
            "DB_USERNAME": DB_USER,
            "DB_PASSWORD": creds.db_password,
            "DB_ROOT_PASSWORD": creds.db_root_password,
            "CACHE_DRIVER": "redis",
            "SESSION_DRIVER": "redis",
            "SESSION_LIFETIME": "120",
            "QUEUE_CONNECTION": "sync" if local else "redis",
            "REDIS_CLIENT": "predis",
            "REDIS_HOST": "redis",
            "REDIS_PASSWORD": "null",
            "REDIS_PORT": "6379",
            "LOG_CHANNEL": "daily",
            "LOG_LEVEL": "debug" if local else "error",
            "MAIL_MAILER": "smtp",
            "MAIL_FROM_ADDRESS": f'"{ctx.config.admin_email}"',
            "MAIL_FROM_NAME": '"${APP_NAME}"',
            "FILESYSTEM_DRIVER": "local",
            "SCHOOL_LEVEL": ctx.config.school_level.value,
            "MYSQL_BUFFER": ctx.params.db_buffer,
            "REDIS_MEMORY": ctx.params.cache_memory,
            "DOCKER_IMAGE": ctx.docker_image,
        }

    def render_env(self) -> str:
        lines = [f"# Generated by lms-install ({self.context.profile.value}, tier {self.context.tier.value})"]
        lines.extend(f"{key}={value}" for key, value in self.env_values().items())
        return "\n".join(lines) + "\n"

    # === Compose definitions ===

    def compose_definition(self, mode: DeploymentMode) -> dict:
        ctx = self.context
        limits = ctx.limits(mode)
        local = ctx.profile is DeployProfile.LOCAL
        image = "${DOCKER_IMAGE}"

        services: dict[str, dict] = {
            "mysql": self._mysql_service(mode, limits, expose=local),
            "redis": self._redis_service(mode, expose=local),
            "app": self._app_service(mode, image),
        }
        if not local:
            services["queue"] = self._worker_service(
                mode,
                "queue",
                image,
                "php artisan queue:work redis --sleep=3 --tries=3 --max-jobs=1000 --timeout=300",
            )
            services["scheduler"] = self._worker_service(
                mode,
                "scheduler",
                image,
                'sh -c "while true; do php artisan schedule:run --verbose --no-interaction & sleep 60; done"',
            )

        return {
            "services": services,
            "volumes": {logical: {"name": name} for logical, name in VOLUMES.items()},
            "networks": {NETWORK: {"name": NETWORK, "driver": "bridge"}},
        }

    def _mysql_service(self, mode: DeploymentMode, limits: ModeLimits, *, expose: bool) -> dict:
        service: dict = {
            "image": MYSQL_IMAGE,
            "container_name": container_name("mysql", mode),
            "restart": "unless-stopped",
            "command": [
                "--innodb-buffer-pool-size=${MYSQL_BUFFER}",
                "--innodb-log-file-size=256M",
                "--innodb-flush-log-at-trx-commit=2",
                f"--max-connections={limits.db_max_connections}",
            ],
            "environment": {
                "MYSQL_ROOT_PASSWORD": "${DB_ROOT_PASSWORD}",
                "MYSQL_DATABASE": "${DB_DATABASE}",
                "MYSQL_USER": "${DB_USERNAME}",
                "MYSQL_PASSWORD": "${DB_PASSWORD}",
            },
            "volumes": ["mysql_data:/var/lib/mysql"],
            "networks": [NETWORK],
            "healthcheck": {
                "test": [
                    "CMD-SHELL",
                    'mysqladmin ping -h localhost -u root -p"$$MYSQL_ROOT_PASSWORD" --silent',
                ],
                "interval": "10s",
                "timeout": "5s",
                "retries": 10,
                "start_period": "30s",
            },
        }
        if mode is DeploymentMode.HIGHPERF:
            service["command"].extend(["--thread-cache-size=50", "--performance-schema=OFF"])
        if expose:
            service["ports"] = ["3306:3306"]
        return service

    def _redis_service(self, mode: DeploymentMode, *, expose: bool) -> dict:
        service: dict = {
            "image": REDIS_IMAGE,
            "container_name": container_name("redis", mode),
            "restart": "unless-stopped",
            "command": (
                "redis-server --appendonly yes --maxmemory ${REDIS_MEMORY} "
                "--maxmemory-policy allkeys-lru"
            ),
            "volumes": ["redis_data:/data"],
            "networks": [NETWORK],
            "healthcheck": {
                "test": ["CMD", "redis-cli", "ping"],
                "interval": "10s",
                "timeout": "5s",
                "retries": 5,
            },
        }
        if expose:
            service["ports"] = ["6379:6379"]
        return service

    def _app_service(self, mode: DeploymentMode, image: str) -> dict:
        volumes = [
            "app_storage:/var/www/html/storage",
            "app_public:/var/www/html/public/storages",
            f"./{PHP_POOL_FILES[mode]}:/usr/local/etc/php-fpm.d/www.conf:ro",
        ]
        if mode is DeploymentMode.HIGHPERF:
            volumes.extend(
                [
                    f"./{NGINX_MAIN_FILE}:/etc/nginx/nginx.conf:ro",
                    f"./{NGINX_APP_FILE}:/etc/nginx/http.d/default.conf:ro",
                ]
            )
        service: dict = {
            "image": image,
            "container_name": container_name("app", mode),
            "restart": "unless-stopped",
            "env_file": [ENV_FILE],
            "ports": [f"{self.context.app_port}:80"],
            "volumes": volumes,
            "networks": [NETWORK],
            "depends_on": {
                "mysql": {"condition": "service_healthy"},
                "redis": {"condition": "service_healthy"},
            },
            "healthcheck": {
                "test": ["CMD", "curl", "-f", "http://localhost/health"],
                "interval": "30s",
                "timeout": "10s",
                "retries": 3,
                "start_period": "60s",
            },
        }
        if mode is DeploymentMode.HIGHPERF:
            service["ulimits"] = {"nofile": {"soft": 65535, "hard": 65535}}
        return service

    def _worker_service(self, mode: DeploymentMode, name: str, image: str, command: str) -> dict:
        return {
            "image": image,
            "container_name": container_name(name, mode),
            "restart": "unless-stopped",
            "command": command,
            "env_file": [ENV_FILE],
            "volumes": ["app_storage:/var/www/html/storage"],
            "networks": [NETWORK],
            "depends_on": ["app"],
        }

    def render_compose(self, mode: DeploymentMode) -> str:
        header = f"# Compose definition for {mode.value} mode. Both modes share the same named volumes.\n"
        body = yaml.safe_dump(self.compose_definition(mode), sort_keys=False, default_flow_style=False)
        return header + body

    # === Pool and proxy configs ===

    def render_php_pool(self, mode: DeploymentMode) -> str:
        limits = self.context.limits(mode)
        return load_template("php-fpm-pool.conf").substitute(
            mode=mode.value,
            listen_backlog=limits.listen_backlog,
            **limits.pool_sizes,
        )

    def render_nginx_main(self) -> str:
        return load_template("nginx-main.conf").substitute(
            worker_connections=HIGHPERF_LIMITS.nginx_worker_connections,
        )

    def render_nginx_app(self) -> str:
        return load_template("nginx-app.conf").substitute()

    def render_site(self) -> str:
        """Full HTTPS reverse-proxy site for the host's nginx."""
        return load_template("nginx-site.conf").substitute(
            domain=self.context.config.domain,
            app_port=self.context.app_port,
            cert_dir=self.context.cert_dir,
        )

    def render_site_temp(self) -> str:
        """HTTP-only site used while the first certificate is issued."""
        return load_template("nginx-site-temp.conf").substitute(
            domain=self.context.config.domain,
            app_port=self.context.app_port,
        )

    def render_all(self) -> dict[str, str]:
        """All app-directory artifacts keyed by path relative to the app dir."""
        artifacts = {ENV_FILE: self.render_env()}
        for mode in DeploymentMode:
            artifacts[COMPOSE_FILES[mode]] = self.render_compose(mode)
            artifacts[PHP_POOL_FILES[mode]] = self.render_php_pool(mode)
        artifacts[NGINX_MAIN_FILE] = self.render_nginx_main()
        artifacts[NGINX_APP_FILE] = self.render_nginx_app()
        return artifacts
