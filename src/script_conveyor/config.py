"""Configuration loader for provider credentials and conveyor tuning."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlparse

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for older Python
    import tomli as tomllib  # type: ignore

import os


class ConfigurationError(RuntimeError):
    """Raised when service configuration is invalid."""


SUPPORTED_PROVIDERS = ("openai", "deepseek")
AGENT_BACKENDS = ("llm", "dummy")


@dataclass
class OpenAISettings:
    api_key: str
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    temperature: float = 0.7
    proxy: Optional[str] = None
    trust_env: bool = False
    timeout_seconds: Optional[float] = None
    verify: Optional[Union[str, bool]] = None
    input_cost_per_million: float = 0.15
    output_cost_per_million: float = 0.60

    _ALLOWED_PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}

    def __post_init__(self) -> None:
        self.api_key = (self.api_key or "").strip()
        if not self.api_key:
            raise ConfigurationError("OpenAI api_key must not be empty")

        self.model = (self.model or "").strip()
        if not self.model:
            raise ConfigurationError("OpenAI model must not be empty")

        self.base_url = _coalesce(self.base_url)
        if self.base_url:
            parsed_base = urlparse(self.base_url)
            if not parsed_base.scheme or not parsed_base.netloc:
                raise ConfigurationError(
                    "OpenAI base_url must include scheme and hostname"
                )

        self.temperature = _parse_temperature("OpenAI", self.temperature)

        if not isinstance(self.trust_env, bool):
            raise ConfigurationError("OpenAI trust_env must be a boolean value")

        if isinstance(self.verify, str):
            self.verify = _coalesce(self.verify)
        elif self.verify is not None and not isinstance(self.verify, bool):
            raise ConfigurationError(
                "OpenAI verify must be true/false or a certificate path string"
            )

        normalized_proxy = _coalesce(self.proxy)
        if normalized_proxy:
            parsed = urlparse(normalized_proxy)
            if parsed.scheme not in self._ALLOWED_PROXY_SCHEMES:
                raise ConfigurationError(
                    "OpenAI proxy must start with http(s) or socks5(s) scheme"
                )
            if not parsed.hostname:
                raise ConfigurationError(
                    "OpenAI proxy is missing a hostname or IP address"
                )
            self.proxy = normalized_proxy
        else:
            self.proxy = None

        if self.timeout_seconds is not None:
            self.timeout_seconds = _parse_positive("OpenAI timeout_seconds", self.timeout_seconds)

        self.input_cost_per_million = _parse_non_negative(
            "OpenAI input_cost_per_million", self.input_cost_per_million
        )
        self.output_cost_per_million = _parse_non_negative(
            "OpenAI output_cost_per_million", self.output_cost_per_million
        )


@dataclass
class DeepSeekSettings:
    api_key: str
    model: str = "deepseek-chat"
    base_url: Optional[str] = None
    temperature: float = 0.7
    timeout_seconds: float = 120.0
    trust_env: bool = True
    verify: Optional[Union[str, bool]] = None
    input_cost_per_million: float = 0.27
    output_cost_per_million: float = 1.10

    def __post_init__(self) -> None:
        self.api_key = (self.api_key or "").strip()
        if not self.api_key:
            raise ConfigurationError("DeepSeek api_key must not be empty")
        self.model = (self.model or "").strip() or "deepseek-chat"
        self.base_url = _coalesce(self.base_url)
        self.temperature = _parse_temperature("DeepSeek", self.temperature)
        self.timeout_seconds = _parse_positive("DeepSeek timeout_seconds", self.timeout_seconds)
        self.input_cost_per_million = _parse_non_negative(
            "DeepSeek input_cost_per_million", self.input_cost_per_million
        )
        self.output_cost_per_million = _parse_non_negative(
            "DeepSeek output_cost_per_million", self.output_cost_per_million
        )


@dataclass
class TextGenerationSettings:
    provider: str = "openai"

    def __post_init__(self) -> None:
        self.provider = (self.provider or "").strip().lower()
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported text generation provider: {self.provider!r}"
            )


@dataclass
class AgentSettings:
    backend: str = "llm"

    def __post_init__(self) -> None:
        self.backend = (self.backend or "").strip().lower()
        if self.backend not in AGENT_BACKENDS:
            raise ConfigurationError(f"Unsupported agent backend: {self.backend!r}")


@dataclass
class RetrySettings:
    transport_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        try:
            self.transport_attempts = int(self.transport_attempts)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("retry transport_attempts must be an integer") from exc
        if self.transport_attempts < 1:
            raise ConfigurationError("retry transport_attempts must be at least 1")
        self.backoff_seconds = _parse_non_negative("retry backoff_seconds", self.backoff_seconds)
        self.max_backoff_seconds = _parse_non_negative(
            "retry max_backoff_seconds", self.max_backoff_seconds
        )

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff delay after the given zero-based attempt."""

        return min(self.backoff_seconds * (2 ** attempt), self.max_backoff_seconds)


@dataclass
class EventSettings:
    replay_buffer_size: int = 100
    history_limit: int = 50
    subscriber_queue_size: int = 256
    keepalive_seconds: float = 15.0
    max_tracked_items: int = 500
    max_tracked_tenants: int = 1000

    def __post_init__(self) -> None:
        for name in (
            "replay_buffer_size",
            "history_limit",
            "subscriber_queue_size",
            "max_tracked_items",
            "max_tracked_tenants",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"events {name} must be a positive integer")
        self.keepalive_seconds = _parse_positive("events keepalive_seconds", self.keepalive_seconds)


@dataclass
class SchedulerSettings:
    interval_seconds: float = 900.0

    def __post_init__(self) -> None:
        self.interval_seconds = _parse_positive("scheduler interval_seconds", self.interval_seconds)


@dataclass
class ServiceConfig:
    openai: Optional[OpenAISettings] = None
    deepseek: Optional[DeepSeekSettings] = None
    text_generation: TextGenerationSettings = field(default_factory=TextGenerationSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    events: EventSettings = field(default_factory=EventSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)


def _coalesce(value: Any) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in {"true", "1", "yes", "on"}:
        return True
    if normalized in {"false", "0", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def _parse_temperature(label: str, value: Any) -> float:
    try:
        temperature = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} temperature must be numeric") from exc
    if not 0 <= temperature <= 2:
        raise ConfigurationError(f"{label} temperature must be between 0 and 2")
    return temperature


def _parse_positive(label: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} must be numeric") from exc
    if number <= 0:
        raise ConfigurationError(f"{label} must be greater than zero")
    return number


def _parse_non_negative(label: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} must be numeric") from exc
    if number < 0:
        raise ConfigurationError(f"{label} must not be negative")
    return number


def _parse_section(data: dict[str, Any], cls: type[Any]) -> Any:
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid configuration for {cls.__name__}: {exc}") from exc


def _verify_from_env(raw: Optional[str]) -> Optional[Union[str, bool]]:
    normalized = _coalesce(raw)
    if normalized is None:
        return None
    try:
        return _parse_bool(normalized)
    except ConfigurationError:
        return normalized


def _provider_section_from_env(prefix: str, default_model: str) -> Optional[dict[str, Any]]:
    api_key = _coalesce(os.environ.get(f"{prefix}_API_KEY"))
    if not api_key:
        return None
    section: dict[str, Any] = {
        "api_key": api_key,
        "base_url": _coalesce(os.environ.get(f"{prefix}_BASE_URL")),
        "model": _coalesce(os.environ.get(f"{prefix}_MODEL")) or default_model,
    }
    temperature = _coalesce(os.environ.get(f"{prefix}_TEMPERATURE"))
    if temperature:
        section["temperature"] = temperature
    timeout_value = _coalesce(os.environ.get(f"{prefix}_TIMEOUT_SECONDS"))
    if timeout_value:
        section["timeout_seconds"] = timeout_value
    trust_env = _parse_bool(_coalesce(os.environ.get(f"{prefix}_TRUST_ENV")))
    if trust_env is not None:
        section["trust_env"] = trust_env
    if f"{prefix}_VERIFY" in os.environ:
        section["verify"] = _verify_from_env(os.environ.get(f"{prefix}_VERIFY"))
    return section


def _int_from_env(name: str) -> Optional[int]:
    raw = _coalesce(os.environ.get(name))
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc


def load_service_config(path: Optional[Union[str, Path]] = None) -> ServiceConfig:
    """Load service configuration from a TOML file or environment."""

    explicit_path = Path(path) if path else None
    env_path = os.environ.get("SCRIPT_CONVEYOR_CONFIG")

    config_path: Optional[Path] = None
    if explicit_path:
        config_path = explicit_path
    elif env_path:
        config_path = Path(env_path)
    else:
        default_candidate = Path("config/services.toml")
        if default_candidate.exists():
            config_path = default_candidate

    data: dict[str, Any] = {}
    if config_path and config_path.exists():
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    else:
        # Allow configuration purely via environment variables.
        openai_section = _provider_section_from_env("OPENAI", "gpt-4o-mini")
        if openai_section:
            proxy = _coalesce(os.environ.get("OPENAI_PROXY"))
            if proxy:
                openai_section["proxy"] = proxy
            data["openai"] = openai_section

        deepseek_section = _provider_section_from_env("DEEPSEEK", "deepseek-chat")
        if deepseek_section:
            data["deepseek"] = deepseek_section

        data["text_generation"] = {
            "provider": _coalesce(os.environ.get("TEXT_GENERATION_PROVIDER")) or "openai",
        }
        data["agents"] = {
            "backend": _coalesce(os.environ.get("SCRIPT_CONVEYOR_AGENT_BACKEND")) or "llm",
        }

        retry_section: dict[str, Any] = {}
        attempts = _int_from_env("SCRIPT_CONVEYOR_TRANSPORT_ATTEMPTS")
        if attempts is not None:
            retry_section["transport_attempts"] = attempts
        backoff = _coalesce(os.environ.get("SCRIPT_CONVEYOR_BACKOFF_SECONDS"))
        if backoff:
            retry_section["backoff_seconds"] = backoff
        data["retry"] = retry_section

        events_section: dict[str, Any] = {}
        replay = _int_from_env("SCRIPT_CONVEYOR_REPLAY_BUFFER")
        if replay is not None:
            events_section["replay_buffer_size"] = replay
        history = _int_from_env("SCRIPT_CONVEYOR_HISTORY_LIMIT")
        if history is not None:
            events_section["history_limit"] = history
        data["events"] = events_section

        interval = _coalesce(os.environ.get("SCRIPT_CONVEYOR_INTERVAL_SECONDS"))
        data["scheduler"] = {"interval_seconds": interval} if interval else {}

    openai_settings = (
        _parse_section(data["openai"], OpenAISettings)
        if "openai" in data
        else None
    )
    deepseek_settings = (
        _parse_section(data["deepseek"], DeepSeekSettings)
        if "deepseek" in data
        else None
    )

    return ServiceConfig(
        openai=openai_settings,
        deepseek=deepseek_settings,
        text_generation=_parse_section(data.get("text_generation", {}), TextGenerationSettings),
        agents=_parse_section(data.get("agents", {}), AgentSettings),
        retry=_parse_section(data.get("retry", {}), RetrySettings),
        events=_parse_section(data.get("events", {}), EventSettings),
        scheduler=_parse_section(data.get("scheduler", {}), SchedulerSettings),
    )


__all__ = [
    "AGENT_BACKENDS",
    "AgentSettings",
    "ConfigurationError",
    "DeepSeekSettings",
    "EventSettings",
    "OpenAISettings",
    "RetrySettings",
    "SUPPORTED_PROVIDERS",
    "SchedulerSettings",
    "ServiceConfig",
    "TextGenerationSettings",
    "load_service_config",
]
