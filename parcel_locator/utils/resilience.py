"""
Resilience Patterns Module
Circuit breakers, retry policy and fallback chains for external API calls.

The pipeline has a hard overall deadline, so the default retry policy is a
single attempt. MAX_RETRY_ATTEMPTS can raise it per deployment.
"""

import os
import logging
import functools
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, TypeVar

from circuitbreaker import circuit
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_log,
    after_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Configuration settings (can be overridden via environment variables)
CIRCUIT_BREAKER_FAILURE_THRESHOLD = int(os.environ.get('CIRCUIT_BREAKER_FAILURE_THRESHOLD', 5))
CIRCUIT_BREAKER_RECOVERY_TIMEOUT = int(os.environ.get('CIRCUIT_BREAKER_RECOVERY_TIMEOUT', 60))

MAX_RETRY_ATTEMPTS = int(os.environ.get('MAX_RETRY_ATTEMPTS', 1))
MIN_RETRY_WAIT = int(os.environ.get('MIN_RETRY_WAIT', 1))
MAX_RETRY_WAIT = int(os.environ.get('MAX_RETRY_WAIT', 4))

# Circuit breaker configurations for the external services
CIRCUIT_CONFIGS = {
    'google_vision': {
        'failure_threshold': 5,
        'recovery_timeout': 60,
        'name': 'google_vision_circuit'
    },
    'google_maps': {
        'failure_threshold': 10,
        'recovery_timeout': 30,
        'name': 'google_maps_circuit'
    },
    'openai': {
        'failure_threshold': 5,
        'recovery_timeout': 60,
        'name': 'openai_circuit'
    },
    'cadastre': {
        'failure_threshold': 5,
        'recovery_timeout': 120,
        'name': 'cadastre_circuit'
    },
    'geo_api': {
        'failure_threshold': 5,
        'recovery_timeout': 120,
        'name': 'geo_api_circuit'
    },
}

# Store circuit breaker instances
circuit_breakers = {}


def get_circuit_breaker(service_name: str) -> Callable:
    """
    Get or create a circuit breaker for a specific service.

    Args:
        service_name: Name of the service (e.g., 'google_maps', 'cadastre')

    Returns:
        Circuit breaker decorator for the service
    """
    if service_name not in circuit_breakers:
        config = CIRCUIT_CONFIGS.get(service_name, {
            'failure_threshold': CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            'recovery_timeout': CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
            'name': f'{service_name}_circuit'
        })

        circuit_breakers[service_name] = circuit(
            failure_threshold=config['failure_threshold'],
            recovery_timeout=config['recovery_timeout'],
            expected_exception=Exception,
            name=config['name']
        )

    return circuit_breakers[service_name]


def resilient_call(
    service_name: str,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
    min_wait: int = MIN_RETRY_WAIT,
    max_wait: int = MAX_RETRY_WAIT,
    fallback: Optional[Callable] = None,
    retry_exceptions: tuple = (Exception,)
):
    """
    Decorator that combines circuit breaker and retry patterns.

    Args:
        service_name: Name of the service for circuit breaker
        max_attempts: Maximum number of attempts (1 = no retry)
        min_wait: Minimum wait time between retries in seconds
        max_wait: Maximum wait time between retries in seconds
        fallback: Optional fallback function called with the same arguments
        retry_exceptions: Tuple of exceptions to retry on

    Returns:
        Decorated function with resilience patterns
    """
    def decorator(func: Callable) -> Callable:
        retry_decorator = retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(retry_exceptions),
            before=before_log(logger, logging.DEBUG),
            after=after_log(logger, logging.DEBUG),
            reraise=True
        )

        circuit_decorator = get_circuit_breaker(service_name)

        # Built once so the breaker state survives across calls
        @circuit_decorator
        @retry_decorator
        @functools.wraps(func)
        def resilient_func(*args, **kwargs):
            return func(*args, **kwargs)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                result = resilient_func(*args, **kwargs)
                resilience_manager.update_service_health(service_name, True)
                return result
            except Exception as e:
                resilience_manager.update_service_health(service_name, False, str(e))
                if fallback:
                    logger.warning(f"{service_name} call failed ({e}), using fallback")
                    return fallback(*args, **kwargs)
                raise

        return wrapper
    return decorator


def first_successful(attempts: Iterable[Tuple[str, Callable[[], Optional[T]]]], default: Callable[[], T],
                     default_name: str = "default") -> Tuple[T, str]:
    """
    Run named attempts in order and return the first non-empty result.

    Each attempt either returns a value, returns None (no data) or raises; failures
    are logged and the chain moves on. ``default`` is the last resort and must not
    fail. Returns ``(value, name_of_the_attempt_that_produced_it)``.
    """
    for name, attempt in attempts:
        try:
            value = attempt()
        except Exception as e:
            logger.warning(f"Attempt '{name}' failed: {e}")
            continue
        if value:
            return value, name
        logger.debug(f"Attempt '{name}' returned no data")
    return default(), default_name


class ResilienceManager:
    """Tracks the health of each external service for the /health endpoint."""

    def __init__(self):
        self.service_health: Dict[str, Dict] = {}

    def update_service_health(self, service_name: str, is_healthy: bool, error: Optional[str] = None):
        health = self.service_health.setdefault(service_name, {
            'is_healthy': True,
            'failures': 0,
            'last_failure': None,
            'last_success': None,
            'last_error': None
        })

        if is_healthy:
            health['is_healthy'] = True
            health['failures'] = 0
            health['last_success'] = datetime.now()
        else:
            health['is_healthy'] = False
            health['failures'] += 1
            health['last_failure'] = datetime.now()
            health['last_error'] = error
            logger.debug(f"Service {service_name} health updated: {health}")

    def is_service_healthy(self, service_name: str) -> bool:
        if service_name not in self.service_health:
            return True  # no history yet
        return self.service_health[service_name]['is_healthy']

    def get_service_status(self) -> Dict[str, Dict]:
        return {name: dict(health) for name, health in self.service_health.items()}


# Global resilience manager instance
resilience_manager = ResilienceManager()


def get_circuit_breaker_status(service_name: str) -> Dict[str, Any]:
    """Current state of a circuit breaker."""
    if service_name not in circuit_breakers:
        return {'exists': False, 'service': service_name}

    cb = circuit_breakers[service_name]
    return {
        'exists': True,
        'service': service_name,
        'state': str(cb.state),
        'failure_count': cb.failure_count,
    }


def get_all_circuit_breaker_statuses() -> Dict[str, Dict]:
    return {
        service: get_circuit_breaker_status(service)
        for service in CIRCUIT_CONFIGS.keys()
    }


def resilient_google_maps_call(func: Callable) -> Callable:
    """Decorator for Google Maps Platform calls (geocoding, static maps, street view)."""
    return resilient_call(service_name='google_maps')(func)


def resilient_google_vision_call(func: Callable) -> Callable:
    """Decorator for Google Cloud Vision calls. No fallback: annotation failures are fatal."""
    return resilient_call(service_name='google_vision')(func)


def resilient_openai_call(func: Callable) -> Callable:
    return resilient_call(service_name='openai')(func)


def resilient_cadastre_call(func: Callable) -> Callable:
    """Decorator for IGN cadastre, buildings and WMS calls."""
    return resilient_call(service_name='cadastre')(func)


def resilient_geo_api_call(func: Callable) -> Callable:
    return resilient_call(service_name='geo_api')(func)
