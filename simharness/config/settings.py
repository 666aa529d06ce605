"""
Harness configuration loaded from ``SIMHARNESS_*`` environment variables.

Values may come from the process environment or a ``.env`` file discovered
with python-dotenv; variables already present in the environment win. Engines
never read configuration themselves: the CLI turns :class:`HarnessSettings`
into a :class:`~simharness.orchestration.models.RetryPolicy` or a
:class:`~simharness.loadgen.generator.LoadProfile`.
"""

import os
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import structlog
from dotenv import find_dotenv, load_dotenv

from ..integrations.http_client import DEFAULT_SERVICE_URLS
from ..loadgen.generator import LoadProfile
from ..orchestration.exceptions import ConfigurationError, LoadProfileError
from ..orchestration.models import RetryPolicy

logger = structlog.get_logger(__name__)

ENV_PREFIX = "SIMHARNESS_"
SIMULATION_MODES = ("random", "market")
LOG_FORMATS = ("json", "console")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EnvironmentManager:
    """
    Typed access to environment variables backed by an optional ``.env`` file.

    Args:
        env_file: Path to a ``.env`` file; discovered from the working
            directory upwards when omitted
        environ: Mapping to read from (``os.environ`` by default)
    """

    def __init__(self, env_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.env_file = env_file if env_file is not None else find_dotenv(usecwd=True)
        if environ is None:
            self._load_environment_variables()

    def _load_environment_variables(self) -> None:
        if self.env_file and not os.path.exists(self.env_file):
            raise ConfigurationError(f"Environment file not found: {self.env_file}", key="env_file")
        if self.env_file:
            load_dotenv(self.env_file, override=False)
            logger.debug("Environment file loaded", env_file=self.env_file)

    def _convert(self, key: str, value: str, var_type: type) -> Any:
        try:
            if var_type == bool:
                return value.strip().lower() in ('true', '1', 'yes', 'on')
            elif var_type == int:
                return int(value)
            elif var_type == float:
                return float(value)
            return var_type(value)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Environment variable '{key}' has invalid type: {e}", key=key) from e

    def get_required_env(self, key: str, var_type: type = str) -> Any:
        value = self.environ.get(key)
        if value is None:
            raise ConfigurationError(f"Required environment variable '{key}' not found", key=key)
        return self._convert(key, value, var_type)

    def get_optional_env(self, key: str, default: Any = None, var_type: type = str) -> Any:
        """
        Read an optional variable; empty strings count as unset.

        Raises:
            ConfigurationError: When the value cannot be converted to ``var_type``
        """
        value = self.environ.get(key)
        if value is None or value.strip() == "":
            return default
        return self._convert(key, value, var_type)


def service_env_key(service_name: str) -> str:
    return f"{ENV_PREFIX}{service_name.upper().replace('-', '_')}_URL"


@dataclass
class HarnessSettings:
    """All tunables for unit and stress runs."""

    service_urls: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SERVICE_URLS))
    request_timeout: float = 30.0
    test_timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    virtual_users: int = 10
    orders_per_user: Optional[int] = 10
    duration_seconds: Optional[float] = None
    concurrency: Optional[int] = None
    delay_min_ms: float = 0.0
    delay_max_ms: float = 50.0
    simulation_mode: str = "random"
    refresh_interval: float = 0.25
    seed: Optional[int] = None
    log_level: str = "INFO"
    log_format: str = "console"
    log_dir: str = "logs"
    log_file_enabled: bool = True
    pushgateway_url: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_environment(
        cls,
        env_file: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "HarnessSettings":
        env = EnvironmentManager(env_file, environ=environ)
        defaults = cls()

        def get(name: str, default: Any, var_type: type = str) -> Any:
            return env.get_optional_env(f"{ENV_PREFIX}{name}", default, var_type)

        service_urls = {
            name: env.get_optional_env(service_env_key(name), url)
            for name, url in defaults.service_urls.items()
        }

        settings = cls(
            service_urls=service_urls,
            request_timeout=get("REQUEST_TIMEOUT", defaults.request_timeout, float),
            test_timeout_seconds=get("TEST_TIMEOUT", defaults.test_timeout_seconds, float),
            max_attempts=get("RETRY_COUNT", defaults.max_attempts, int),
            retry_backoff_seconds=get("RETRY_BACKOFF", defaults.retry_backoff_seconds, float),
            virtual_users=get("VIRTUAL_USERS", defaults.virtual_users, int),
            orders_per_user=get("ORDERS_PER_USER", defaults.orders_per_user, int),
            duration_seconds=get("DURATION", defaults.duration_seconds, float),
            concurrency=get("CONCURRENCY", defaults.concurrency, int),
            delay_min_ms=get("DELAY_MIN_MS", defaults.delay_min_ms, float),
            delay_max_ms=get("DELAY_MAX_MS", defaults.delay_max_ms, float),
            simulation_mode=get("MODE", defaults.simulation_mode),
            refresh_interval=get("REFRESH_INTERVAL", defaults.refresh_interval, float),
            seed=get("SEED", defaults.seed, int),
            log_level=get("LOG_LEVEL", defaults.log_level).upper(),
            log_format=get("LOG_FORMAT", defaults.log_format).lower(),
            log_dir=get("LOG_DIR", defaults.log_dir),
            log_file_enabled=get("LOG_FILE_ENABLED", defaults.log_file_enabled, bool),
            pushgateway_url=get("PUSHGATEWAY_URL", defaults.pushgateway_url),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Check value ranges and enumerations.

        Raises:
            ConfigurationError: For the first invalid setting found
        """
        if self.simulation_mode not in SIMULATION_MODES:
            raise ConfigurationError(
                f"Unknown simulation mode '{self.simulation_mode}' (expected one of {SIMULATION_MODES})",
                key="simulation_mode",
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"Unknown log format '{self.log_format}'", key="log_format")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level '{self.log_level}'", key="log_level")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive", key="request_timeout")

        try:
            self.retry_policy()
        except ValueError as e:
            raise ConfigurationError(str(e), key="retry_policy") from e
        try:
            self.load_profile()
        except LoadProfileError as e:
            raise ConfigurationError(str(e), key="load_profile") from e

        missing = [name for name, url in self.service_urls.items() if not url]
        if missing:
            raise ConfigurationError(f"Missing service URLs: {', '.join(missing)}", key="service_urls")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_seconds=self.test_timeout_seconds,
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.retry_backoff_seconds,
        )

    def load_profile(self) -> LoadProfile:
        return LoadProfile(
            virtual_users=self.virtual_users,
            operations_per_user=None if self.duration_seconds else self.orders_per_user,
            duration_seconds=self.duration_seconds,
            concurrency=self.concurrency,
            delay_range_ms=(self.delay_min_ms, self.delay_max_ms),
            refresh_interval=self.refresh_interval,
            seed=self.seed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
