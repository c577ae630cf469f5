"""Target environment profiles: base URL, auth endpoint and credentials.

Resolved once per run from IMSLOAD_* environment variables. Secrets are never
part of the built-in table; they come only from the process environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .exceptions import ImsLoadConfigError
from .logging_config import get_logger

logger = get_logger("environments")

ENV_NAME_VAR = "IMSLOAD_ENV"
USERNAME_VAR = "IMSLOAD_USERNAME"
PASSWORD_VAR = "IMSLOAD_PASSWORD"
BASE_URL_VAR = "IMSLOAD_BASE_URL"
AUTH_URL_VAR = "IMSLOAD_AUTH_URL"
DEFAULT_ENVIRONMENT = "staging"
LOGIN_PATH = "/api/v1/auth/login"


@dataclass(slots=True, frozen=True)
class Environment:
    name: str
    base_url: str
    auth_url: str
    username: str = ""
    password: str = ""
    client_id: str = "performance_test_client"
    client_secret: str = ""
    requests_per_second_limit: int | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password) or bool(self.client_secret)


# Public endpoints only; credentials are layered on in resolve_environment.
ENVIRONMENTS: dict[str, Environment] = {
    "local": Environment(
        name="local",
        base_url="http://localhost:8080",
        auth_url="http://localhost:8080" + LOGIN_PATH,
    ),
    "dev": Environment(
        name="dev",
        base_url="https://dev-api.ims.example.com",
        auth_url="https://dev-auth.ims.example.com/token",
    ),
    "staging": Environment(
        name="staging",
        base_url="https://staging-api.ims.example.com",
        auth_url="https://staging-auth.ims.example.com/token",
        requests_per_second_limit=500,
    ),
    "production": Environment(
        name="production",
        base_url="https://api.ims.example.com",
        auth_url="https://auth.ims.example.com/token",
        requests_per_second_limit=1000,
    ),
}


def client_secret_var(name: str) -> str:
    """Environment variable holding the OAuth client secret for an environment, e.g. IMSLOAD_STAGING_CLIENT_SECRET."""
    return f"IMSLOAD_{name.upper()}_CLIENT_SECRET"


def resolve_environment(
    name: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Environment:
    """Build the run's Environment from the profile table and process environment.

    Args:
        name: Profile name; falls back to IMSLOAD_ENV, then "staging"
        environ: Mapping to read variables from (defaults to os.environ)

    Raises:
        ImsLoadConfigError: Unknown profile, or no credentials for a remote environment
    """
    environ = os.environ if environ is None else environ
    env_name = (name or environ.get(ENV_NAME_VAR) or DEFAULT_ENVIRONMENT).strip().lower()
    base = ENVIRONMENTS.get(env_name)
    if base is None:
        raise ImsLoadConfigError(
            f"Unknown environment: {env_name}",
            context={"known": sorted(ENVIRONMENTS)},
        )

    base_url = (environ.get(BASE_URL_VAR) or base.base_url).rstrip("/")
    auth_url = environ.get(AUTH_URL_VAR) or (
        base_url + LOGIN_PATH if environ.get(BASE_URL_VAR) else base.auth_url
    )
    env = Environment(
        name=base.name,
        base_url=base_url,
        auth_url=auth_url,
        username=environ.get(USERNAME_VAR, ""),
        password=environ.get(PASSWORD_VAR, ""),
        client_id=base.client_id,
        client_secret=environ.get(client_secret_var(base.name), ""),
        requests_per_second_limit=base.requests_per_second_limit,
    )
    if env.name != "local" and not env.has_credentials:
        raise ImsLoadConfigError(
            f"No credentials for environment {env.name}: set {USERNAME_VAR}/{PASSWORD_VAR} "
            f"or {client_secret_var(env.name)}",
            context={"environment": env.name},
        )
    logger.debug("Resolved environment %s -> %s", env.name, env.base_url)
    return env
