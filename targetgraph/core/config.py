"""
Configuration Management for the TargetGraph Pipeline

Environment-based settings for source endpoints, phase budgets, STRING
limits, caching, the optional LLM endpoint and logging.
"""

import os
import json
from typing import Dict, Any, Optional, Mapping
from enum import Enum
import logging

from .exceptions import ConfigurationError, MissingConfigurationError

logger = logging.getLogger(__name__)


TRANSPORT_MODES = ("auto", "prefer_mcp", "fallback_only")

# Effective run budget is always kept inside this window
RUN_BUDGET_FLOOR_MS = 180_000
RUN_BUDGET_CEILING_MS = 600_000


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Config:
    """
    Configuration manager with environment-based settings.

    Supports configuration via:
    1. Environment variables
    2. Explicit overrides (tests, embedding applications)
    3. Default values
    """

    def __init__(self, env: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            env: Environment name (development, staging, production, testing)
            overrides: Keys that win over environment variables and defaults
        """
        try:
            self.env = Environment(env or os.getenv('TARGETGRAPH_ENV', 'development'))
        except ValueError as e:
            raise ConfigurationError('environment', str(e)) from e
        self._config = self._load_config()
        if overrides:
            self._config.update(overrides)
        self._validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config = {
            'environment': self.env.value,

            # MCP endpoints
            'opentargets_mcp_url': os.getenv('OPENTARGETS_MCP_URL', 'http://localhost:7010/mcp'),
            'reactome_mcp_url': os.getenv('REACTOME_MCP_URL', 'http://localhost:7020/mcp'),
            'string_mcp_url': os.getenv('STRING_MCP_URL', 'http://localhost:7030/mcp'),
            'chembl_mcp_url': os.getenv('CHEMBL_MCP_URL', 'http://localhost:7040/mcp'),
            'biomcp_url': os.getenv('BIOMCP_URL', 'http://localhost:8000/mcp'),
            'mcp_transport_mode': os.getenv('MCP_TRANSPORT_MODE', 'auto').strip().lower(),
            'http_timeout': float(os.getenv('HTTP_TIMEOUT', '30')),

            # REST fallbacks
            'opentargets_graphql_url': os.getenv(
                'OPENTARGETS_GRAPHQL_URL',
                'https://api.platform.opentargets.org/api/v4/graphql'
            ),
            'reactome_content_url': os.getenv(
                'REACTOME_CONTENT_URL',
                'https://reactome.org/ContentService'
            ),
            'string_api_url': os.getenv('STRING_API_URL', 'https://string-db.org/api'),
            'chembl_api_url': os.getenv(
                'CHEMBL_API_URL',
                'https://www.ebi.ac.uk/chembl/api/data'
            ),
            'europepmc_url': os.getenv(
                'EUROPEPMC_URL',
                'https://www.ebi.ac.uk/europepmc/webservices/rest/search'
            ),
            'clinicaltrials_url': os.getenv(
                'CLINICALTRIALS_URL',
                'https://clinicaltrials.gov/api/v2/studies'
            ),

            # Stream phases
            'phase_timeout_ms': int(os.getenv('STREAM_PHASE_TIMEOUT_MS', '600000')),
            'batch_min_delay_ms': int(os.getenv('STREAM_BATCH_MIN_DELAY_MS', '120')),
            'batch_max_delay_ms': int(os.getenv('STREAM_BATCH_MAX_DELAY_MS', '320')),
            'ranking_timeout_ms': int(os.getenv('STREAM_RANKING_TIMEOUT_MS', '180000')),
            'p5_budget_ms': int(os.getenv('STREAM_P5_BUDGET_MS', '480000')),
            'p5_per_target_timeout_ms': int(os.getenv('STREAM_P5_PER_TARGET_TIMEOUT_MS', '45000')),
            'max_literature_targets': int(os.getenv('STREAM_MAX_LITERATURE_TARGETS', '5')),

            # Run lifecycle
            'run_hard_budget_ms': int(os.getenv('RUN_HARD_BUDGET_MS', '1200000')),
            'session_run_stale_ms': int(os.getenv('SESSION_RUN_STALE_MS', '900000')),

            # STRING interaction overlay
            'string_confidence': float(os.getenv('STRING_CONFIDENCE_DEFAULT', '0.7')),
            'string_max_added_nodes': int(os.getenv('STRING_MAX_ADDED_NODES', '180')),
            'string_max_added_edges': int(os.getenv('STRING_MAX_ADDED_EDGES', '500')),
            'string_max_neighbors_per_seed': int(os.getenv('STRING_MAX_NEIGHBORS_PER_SEED', '15')),

            # Caching
            'cache_enabled': _env_bool('CACHE_ENABLED', 'true'),
            'cache_ttl_ms': int(os.getenv('CACHE_TTL_MS', '300000')),
            'cache_max_entries': int(os.getenv('CACHE_MAX_ENTRIES', '500')),

            # LLM
            'openai_api_key': os.getenv('OPENAI_API_KEY') or None,
            'openai_model': os.getenv('OPENAI_MODEL', 'gpt-4.1'),
            'openai_small_model': os.getenv('OPENAI_SMALL_MODEL', 'gpt-4.1-mini'),
            'hypothesis_timeout_ms': int(os.getenv('OPENAI_HYPOTHESIS_TIMEOUT_MS', '10000')),
            'llm_cooldown_ms': int(os.getenv('OPENAI_RATE_LIMIT_COOLDOWN_MS', '25000')),

            # Resolver
            'disease_over_target_confidence': float(
                os.getenv('DISEASE_OVER_TARGET_CONFIDENCE', '0.82')
            ),

            # Circuit breaker
            'breaker_failure_threshold': int(os.getenv('BREAKER_FAILURE_THRESHOLD', '5')),
            'breaker_timeout': float(os.getenv('BREAKER_TIMEOUT', '60')),

            # Logging
            'log_level': os.getenv('LOG_LEVEL', 'INFO'),
            'log_file': os.getenv('LOG_FILE') or None,
        }

        if self.env == Environment.PRODUCTION:
            config.update(self._get_production_overrides())
        elif self.env == Environment.TESTING:
            config.update(self._get_testing_overrides())

        return config

    def _get_production_overrides(self) -> Dict[str, Any]:
        """Quieter logs; caching is always on."""
        return {
            'log_level': 'WARNING',
            'cache_enabled': True,
        }

    def _get_testing_overrides(self) -> Dict[str, Any]:
        """No batch pauses, short timeouts, no cache, no LLM."""
        return {
            'log_level': 'DEBUG',
            'batch_min_delay_ms': 0,
            'batch_max_delay_ms': 0,
            'phase_timeout_ms': 2000,
            'ranking_timeout_ms': 1000,
            'p5_budget_ms': 5000,
            'p5_per_target_timeout_ms': 1000,
            'hypothesis_timeout_ms': 1000,
            'cache_enabled': False,
            'openai_api_key': None,
        }

    def _validate(self):
        """Collect every invalid value and raise one ConfigurationError."""
        errors = []
        cfg = self._config

        if cfg['mcp_transport_mode'] not in TRANSPORT_MODES:
            errors.append(
                f"mcp_transport_mode must be one of {', '.join(TRANSPORT_MODES)}"
            )

        if not 0 < cfg['string_confidence'] <= 1:
            errors.append("string_confidence must be between 0 and 1")

        if not 0 < cfg['disease_over_target_confidence'] <= 1:
            errors.append("disease_over_target_confidence must be between 0 and 1")

        if cfg['batch_min_delay_ms'] < 0 or cfg['batch_max_delay_ms'] < cfg['batch_min_delay_ms']:
            errors.append("batch delays must satisfy 0 <= batch_min_delay_ms <= batch_max_delay_ms")

        for key in ('phase_timeout_ms', 'ranking_timeout_ms', 'p5_budget_ms',
                    'p5_per_target_timeout_ms', 'hypothesis_timeout_ms', 'run_hard_budget_ms'):
            if cfg[key] <= 0:
                errors.append(f"{key} must be positive")

        if cfg['http_timeout'] <= 0:
            errors.append("http_timeout must be positive")

        if cfg['cache_max_entries'] < 1:
            errors.append("cache_max_entries must be at least 1")

        if errors:
            message = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ConfigurationError(errors[0].split()[0], message)

        logger.debug(f"Configuration validated for {self.env.value} environment")

    @property
    def effective_run_budget_ms(self) -> int:
        """Run hard budget clamped to the supported window."""
        return max(RUN_BUDGET_FLOOR_MS, min(RUN_BUDGET_CEILING_MS, int(self._config['run_hard_budget_ms'])))

    def get(self, key: str, default: Any = None) -> Any:
        """Value for ``key`` or ``default``."""
        return self._config.get(key, default)

    def __getitem__(self, key: str) -> Any:
        """Dict-like access; unknown keys raise MissingConfigurationError."""
        try:
            return self._config[key]
        except KeyError:
            raise MissingConfigurationError(key) from None

    def __getattr__(self, key: str) -> Any:
        """Attribute access; unknown keys read as None."""
        if key.startswith('_'):
            return object.__getattribute__(self, key)
        return self._config.get(key)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary, with the API key masked."""
        exported = self._config.copy()
        if exported.get('openai_api_key'):
            exported['openai_api_key'] = '***'
        return exported

    def save_to_file(self, filepath: str):
        """Write the masked configuration as JSON."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Configuration saved to {filepath}")

    @classmethod
    def from_file(cls, filepath: str, env: Optional[str] = None) -> 'Config':
        """Load configuration overrides from a JSON file."""
        try:
            with open(filepath, 'r') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError('config_file', f"Cannot read configuration: {e}", filepath) from e

        config_data.pop('environment', None)
        if config_data.get('openai_api_key') == '***':
            config_data.pop('openai_api_key')
        return cls(env=env, overrides=config_data)


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide Config, created from the environment on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config():
    """Drop the process-wide Config so the next get_config() reloads it."""
    global _config
    _config = None
