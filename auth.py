from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from loadgen import HttpTransport, ParseError, parse_body
from metrics import AUTH_DURATION, CONTAINS_TIME, MetricsCollector


LOG = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = "data.authenticateUser.token"

AUTH_MUTATION_TEMPLATE = """
mutation {{
  authenticateUser(input: {{
    email: {email},
    password: {password},
    projectId: {project_id},
    app: {app}
  }}) {{
    token
  }}
}}
"""


class AuthFailure(RuntimeError):
    """Authentication did not yield a token; the run cannot start."""


@dataclass
class AuthCredentials:
    email: str
    password: str
    project_id: str = "1"
    app: str = "MAIN"

    def __repr__(self) -> str:
        return f"AuthCredentials(email={self.email!r}, project_id={self.project_id!r}, app={self.app!r})"


@dataclass
class AuthSettings:
    url: str
    credentials: AuthCredentials
    timeout_s: float = 60.0
    token_path: str = DEFAULT_TOKEN_PATH
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthSession:
    token: str
    acquired_at: datetime

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("AuthSession requires a non-empty token")

    def __repr__(self) -> str:
        return f"AuthSession(acquired_at={self.acquired_at.isoformat()!r})"


def build_auth_mutation(credentials: AuthCredentials) -> str:
    # JSON string literals are valid GraphQL string literals
    return AUTH_MUTATION_TEMPLATE.format(
        email=json.dumps(credentials.email),
        password=json.dumps(credentials.password),
        project_id=json.dumps(credentials.project_id),
        app=json.dumps(credentials.app),
    )


def extract_token(data: Any, token_path: str) -> Optional[str]:
    value = data
    for key in token_path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    if isinstance(value, str) and value:
        return value
    return None


async def acquire(
    transport: HttpTransport,
    settings: AuthSettings,
    collector: MetricsCollector,
) -> AuthSession:
    """Run the one-shot authentication request that gates the whole run."""
    headers = {"Content-Type": "application/json"}
    headers.update(settings.extra_headers)
    response = await transport.send(
        settings.url,
        json.dumps({"query": build_auth_mutation(settings.credentials)}),
        headers,
        settings.timeout_s,
    )
    collector.trend(AUTH_DURATION, CONTAINS_TIME).add(response.timings.duration)

    if response.status != "ok":
        LOG.error("Auth request failed (%s): %s", response.status, response.error)
        raise AuthFailure("Authentication failed, could not retrieve token.")

    token: Optional[str] = None
    parsed = parse_body(response.text)
    if isinstance(parsed, ParseError):
        LOG.error("Auth response parse failed: %s", response.text)
    else:
        token = extract_token(parsed.data, settings.token_path)

    if response.http_status != 200 or not token:
        LOG.error(
            "Authentication failed with HTTP %s, body: %s",
            response.http_status,
            (response.text or "")[:2000],
        )
        raise AuthFailure("Authentication failed, could not retrieve token.")

    LOG.info("Successfully retrieved auth token.")
    return AuthSession(token=token, acquired_at=datetime.now(timezone.utc))
