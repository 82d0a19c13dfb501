"""
Controller Configuration

Defaults, environment variables and an optional YAML file, merged in that
order into a typed configuration tree.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

FAILBACK_POLICIES = ("automatic", "sticky")
PLATFORMS = ("ecs", "kubernetes")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


@dataclass
class RegionConfig:
    """Static description of one region"""
    id: str
    label: str = ""
    endpoint: str = ""  # resolved from load_balancer_name when empty
    aws_region: str = ""
    load_balancer_name: str = ""
    target_group_name: str = ""
    alias_hosted_zone_id: Optional[str] = None

    def __post_init__(self):
        if not self.aws_region:
            self.aws_region = self.id


@dataclass
class HealthCheckConfig:
    """Readiness probe and post-deploy verification settings"""
    path: str = "/health/readiness"
    timeout_seconds: float = 10.0
    expected_status_code: int = 200
    failure_threshold: int = 1
    retries: int = 10
    interval_seconds: float = 30.0
    verify_tls: bool = True


@dataclass
class DNSConfig:
    """Authoritative DNS settings"""
    domain_name: str = "api.example.com"
    hosted_zone_id: Optional[str] = None
    record_type: str = "CNAME"
    ttl: int = 60
    propagation_timeout_seconds: float = 300.0
    propagation_poll_seconds: float = 5.0
    submit_attempts: int = 5
    backoff_multiplier: float = 1.0
    backoff_max_seconds: float = 30.0


@dataclass
class DeploymentConfig:
    """Rolling update settings for the compute platform"""
    platform: str = "ecs"
    cluster_name: str = ""
    service_name: str = "api-service"
    namespace: str = "default"
    container_name: Optional[str] = None
    image_tag: str = "latest"
    ecr_repository: str = ""
    region: str = ""  # region hosting the service; defaults to the primary
    timeout_seconds: float = 600.0
    rollback_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 10.0
    max_percent: int = 200
    min_healthy_percent: int = 50
    rollback_enabled: bool = True


@dataclass
class DrillConfig:
    """Disaster-recovery drill settings"""
    table_name: str = ""
    replication_wait_seconds: float = 30.0
    consistency_wait_seconds: float = 10.0
    failure_wait_seconds: float = 60.0
    recovery_wait_seconds: float = 90.0
    settle_seconds: float = 30.0
    routing_samples: int = 5
    routing_sample_interval_seconds: float = 2.0
    routing_success_threshold: float = 0.8
    pass_threshold: float = 0.9
    failure_health_path: str = "/health/fail"


@dataclass
class ControllerConfig:
    """Complete controller configuration"""
    primary: RegionConfig
    secondary: RegionConfig
    environment: str = "staging"
    dry_run: bool = False
    failback_policy: str = "automatic"
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    dns: DNSConfig = field(default_factory=DNSConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    drill: DrillConfig = field(default_factory=DrillConfig)
    alertmanager_url: Optional[str] = None
    pushgateway_url: Optional[str] = None

    def __post_init__(self):
        env = self.environment
        for region in (self.primary, self.secondary):
            if not region.load_balancer_name:
                region.load_balancer_name = f"api-alb-{env}"
            if not region.target_group_name:
                region.target_group_name = f"api-tg-{env}"
        if not self.primary.label:
            self.primary.label = "primary"
        if not self.secondary.label:
            self.secondary.label = "secondary"
        if not self.deployment.cluster_name:
            self.deployment.cluster_name = f"api-cluster-{env}"
        if not self.deployment.region:
            self.deployment.region = self.primary.aws_region
        if not self.drill.table_name:
            self.drill.table_name = f"users-{env}"

    def validate(self) -> bool:
        """Validate configuration"""
        if self.primary.id == self.secondary.id:
            raise ConfigurationError("primary and secondary regions must differ")
        if self.failback_policy not in FAILBACK_POLICIES:
            raise ConfigurationError(
                f"failback_policy must be one of {FAILBACK_POLICIES}"
            )
        if self.deployment.platform not in PLATFORMS:
            raise ConfigurationError(f"deployment.platform must be one of {PLATFORMS}")
        if not self.dns.domain_name:
            raise ConfigurationError("dns.domain_name is required")

        positive = {
            'health_check.timeout_seconds': self.health_check.timeout_seconds,
            'health_check.retries': self.health_check.retries,
            'health_check.failure_threshold': self.health_check.failure_threshold,
            'dns.ttl': self.dns.ttl,
            'dns.submit_attempts': self.dns.submit_attempts,
            'dns.propagation_timeout_seconds': self.dns.propagation_timeout_seconds,
            'deployment.timeout_seconds': self.deployment.timeout_seconds,
            'deployment.rollback_timeout_seconds': self.deployment.rollback_timeout_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        if not (0 <= self.deployment.min_healthy_percent <= 100 <= self.deployment.max_percent):
            raise ConfigurationError(
                "deployment bounds must satisfy min_healthy_percent <= 100 <= max_percent"
            )
        return True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _defaults_from_env() -> Dict[str, Any]:
    """Configuration values recognised from the environment"""
    return {
        'environment': os.getenv('ENVIRONMENT', 'staging'),
        'dry_run': _env_bool('DRY_RUN', False),
        'failback_policy': os.getenv('FAILBACK_POLICY', 'automatic'),
        'alertmanager_url': os.getenv('ALERTMANAGER_URL') or None,
        'pushgateway_url': os.getenv('PUSHGATEWAY_URL') or None,
        'primary': {
            'id': os.getenv('PRIMARY_REGION', 'us-east-1'),
            'endpoint': os.getenv('PRIMARY_ENDPOINT', ''),
        },
        'secondary': {
            'id': os.getenv('SECONDARY_REGION', 'us-west-2'),
            'endpoint': os.getenv('SECONDARY_ENDPOINT', ''),
        },
        'health_check': {
            'retries': _env_int('HEALTH_CHECK_RETRIES', 10),
            'interval_seconds': _env_float('HEALTH_CHECK_INTERVAL', 30.0),
            'timeout_seconds': _env_float('HEALTH_CHECK_TIMEOUT', 10.0),
            'failure_threshold': _env_int('HEALTH_FAILURE_THRESHOLD', 1),
        },
        'dns': {
            'domain_name': os.getenv('DOMAIN_NAME', 'api.example.com'),
            'hosted_zone_id': os.getenv('HOSTED_ZONE_ID') or None,
        },
        'deployment': {
            'platform': os.getenv('COMPUTE_PLATFORM', 'ecs'),
            'service_name': os.getenv('SERVICE_NAME', 'api-service'),
            'cluster_name': os.getenv('CLUSTER_NAME', ''),
            'namespace': os.getenv('K8S_NAMESPACE', 'default'),
            'image_tag': os.getenv('IMAGE_TAG', 'latest'),
            'ecr_repository': os.getenv('ECR_REPOSITORY', ''),
            'region': os.getenv('AWS_REGION', ''),
            'timeout_seconds': _env_float('DEPLOYMENT_TIMEOUT', 600.0),
            'rollback_enabled': _env_bool('ENABLE_ROLLBACK', True),
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build(cls, values: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}"
        )
    return cls(**values)


def config_from_dict(values: Dict[str, Any]) -> ControllerConfig:
    """Build a ControllerConfig from a nested mapping"""
    values = dict(values)
    try:
        primary = _build(RegionConfig, values.pop('primary'))
        secondary = _build(RegionConfig, values.pop('secondary'))
    except KeyError as e:
        raise ConfigurationError(f"Missing region section: {e}")
    except TypeError as e:
        raise ConfigurationError(f"Invalid region section: {e}")

    sections = {
        'health_check': HealthCheckConfig,
        'dns': DNSConfig,
        'deployment': DeploymentConfig,
        'drill': DrillConfig,
    }
    for name, cls in sections.items():
        if name in values:
            values[name] = _build(cls, values[name] or {})

    return _build(ControllerConfig, {'primary': primary, 'secondary': secondary, **values})


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> ControllerConfig:
    """Load configuration from environment, YAML file and explicit overrides"""
    values = _defaults_from_env()

    if config_path:
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse config file {config_path}: {e}")
        if file_config:
            if not isinstance(file_config, dict):
                raise ConfigurationError("Config file must contain a mapping")
            values = _deep_merge(values, file_config)
            logger.info(f"Loaded configuration from {config_path}")

    if overrides:
        values = _deep_merge(values, overrides)

    config = config_from_dict(values)
    config.validate()
    return config
