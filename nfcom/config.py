"""
Configuration for NFCom submission.

Configuration is an immutable value (EndpointConfig) handed to the
orchestrator and SOAP client. Environment variables are read once by
EndpointConfig.from_env(); nothing here is mutated at runtime.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from .errors import ConfigurationError


# ============================================================
# Authority constants
# ============================================================

class Environment(str, Enum):
    """Authority environment. `code` is the tpAmb value."""
    PRODUCTION = "production"
    HOMOLOGATION = "homologation"

    @property
    def code(self) -> int:
        return 1 if self is Environment.PRODUCTION else 2


class Service(str, Enum):
    RECEPTION = "reception"
    QUERY = "query"
    STATUS = "status"
    INUTILIZATION = "inutilization"


STATE_CODES: Dict[str, str] = {
    "AC": "12", "AL": "27", "AP": "16", "AM": "13",
    "BA": "29", "CE": "23", "DF": "53", "ES": "32",
    "GO": "52", "MA": "21", "MT": "51", "MS": "50",
    "MG": "31", "PA": "15", "PB": "25", "PR": "41",
    "PE": "26", "PI": "22", "RJ": "33", "RN": "24",
    "RS": "43", "RO": "11", "RR": "14", "SC": "42",
    "SP": "35", "SE": "28", "TO": "17",
}

_SVRS_HOMOLOGATION = "https://nfcom-homologacao.svrs.rs.gov.br/WS"
_SVRS_PRODUCTION = "https://nfcom.svrs.rs.gov.br/WS"


def _svrs_urls(base: str) -> Dict[Service, str]:
    return {
        Service.RECEPTION: f"{base}/NFComRecepcao/NFComRecepcao.asmx",
        Service.QUERY: f"{base}/NFComConsulta/NFComConsulta.asmx",
        Service.STATUS: f"{base}/NFComStatusServico/NFComStatusServico.asmx",
        Service.INUTILIZATION: f"{base}/NFComInutilizacao/NFComInutilizacao.asmx",
    }


# States served by the SVRS virtual authority
WEBSERVICES: Dict[Environment, Dict[str, Dict[Service, str]]] = {
    Environment.HOMOLOGATION: {"PE": _svrs_urls(_SVRS_HOMOLOGATION)},
    Environment.PRODUCTION: {"PE": _svrs_urls(_SVRS_PRODUCTION)},
}

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0


# ============================================================
# Endpoint configuration
# ============================================================

@dataclass(frozen=True)
class EndpointConfig:
    """
    Everything the pipeline needs to reach the authority.

    verify_tls is True (system CA store), False (no server validation) or a
    path to a CA bundle. Timeouts are per attempt, in seconds.
    """
    state: str = "PE"
    environment: Environment = Environment.HOMOLOGATION
    urls: Mapping[Service, str] = field(default_factory=dict)
    connect_timeout: float = DEFAULT_TIMEOUT
    read_timeout: float = DEFAULT_TIMEOUT
    verify_tls: Union[bool, str] = True
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE

    def __post_init__(self):
        if self.state not in STATE_CODES:
            raise ConfigurationError(f"Unknown state: {self.state!r}")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.backoff_base < 0:
            raise ConfigurationError("backoff_base must not be negative")

    @classmethod
    def for_state(
        cls,
        state: str = "PE",
        environment: Environment = Environment.HOMOLOGATION,
        **overrides,
    ) -> "EndpointConfig":
        """Build a config with the published URLs for a state."""
        state = state.upper()
        urls = dict(WEBSERVICES.get(environment, {}).get(state, {}))
        urls.update(overrides.pop("urls", {}) or {})
        return cls(state=state, environment=environment, urls=urls, **overrides)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EndpointConfig":
        """
        Build a config from NFCOM_* environment variables.

        NFCOM_ENV               production | homologation (default homologation)
        NFCOM_STATE             two-letter state (default PE)
        NFCOM_TIMEOUT           both timeouts, seconds (default 30)
        NFCOM_CONNECT_TIMEOUT   overrides NFCOM_TIMEOUT for connect
        NFCOM_READ_TIMEOUT      overrides NFCOM_TIMEOUT for read
        NFCOM_VERIFY_TLS        1/0 (default 1)
        NFCOM_CA_BUNDLE         CA bundle path, implies verification
        NFCOM_MAX_ATTEMPTS      default 3
        NFCOM_BACKOFF_BASE      default 2
        NFCOM_URL_<SERVICE>     explicit URL for RECEPTION, QUERY, STATUS, INUTILIZATION
        """
        env = os.environ if environ is None else environ

        try:
            environment = Environment(env.get("NFCOM_ENV", Environment.HOMOLOGATION.value).lower())
        except ValueError as e:
            raise ConfigurationError(f"Invalid NFCOM_ENV: {env.get('NFCOM_ENV')!r}") from e

        try:
            timeout = float(env.get("NFCOM_TIMEOUT", DEFAULT_TIMEOUT))
            connect_timeout = float(env.get("NFCOM_CONNECT_TIMEOUT", timeout))
            read_timeout = float(env.get("NFCOM_READ_TIMEOUT", timeout))
            max_attempts = int(env.get("NFCOM_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
            backoff_base = float(env.get("NFCOM_BACKOFF_BASE", DEFAULT_BACKOFF_BASE))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric NFCOM_* setting: {e}") from e

        verify_tls: Union[bool, str] = env.get("NFCOM_VERIFY_TLS", "1").lower() in ("1", "true", "yes")
        ca_bundle = env.get("NFCOM_CA_BUNDLE")
        if ca_bundle:
            verify_tls = ca_bundle

        urls = {
            service: env[f"NFCOM_URL_{service.name}"]
            for service in Service
            if env.get(f"NFCOM_URL_{service.name}")
        }

        return cls.for_state(
            state=env.get("NFCOM_STATE", "PE"),
            environment=environment,
            urls=urls,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            verify_tls=verify_tls,
            max_attempts=max_attempts,
            backoff_base=backoff_base,
        )

    @property
    def state_code(self) -> str:
        return STATE_CODES[self.state]

    @property
    def timeout(self):
        """(connect, read) tuple in the form requests expects."""
        return (self.connect_timeout, self.read_timeout)

    def url_for(self, service: Service) -> str:
        """URL of a service, or ConfigurationError if none is configured."""
        url = self.urls.get(service)
        if not url:
            raise ConfigurationError(
                f"No {service.value} URL configured for {self.state} ({self.environment.value})"
            )
        return url

    def with_overrides(self, **changes) -> "EndpointConfig":
        return replace(self, **changes)
