# src/vigil/core/dsn.py
"""DSN parsing and endpoint derivation.

A DSN has the layout ``{protocol}://{public_key}[:{secret_key}]@{host}[:{port}][/{path}]/{project_id}``.
The envelope endpoint and the X-Sentry-Auth header are both derived from it.
"""

import re
from dataclasses import dataclass
from urllib.parse import quote

from vigil import SDK_NAME, __version__
from vigil.contracts.defaults import INTERNAL_DEFAULTS
from vigil.errors import DsnParseError

_DSN_PATTERN = re.compile(r"^(?:(\w+):)//(?:(\w+)(?::(\w+))?@)?([\w.-]+)(?::(\d+))?(/[\w./-]*)?/(\d+)$")


@dataclass(frozen=True, slots=True)
class Dsn:
    """Parsed DSN components.

    path is stored without leading/trailing slashes; empty when absent.
    """

    protocol: str
    public_key: str
    host: str
    project_id: str
    secret_key: str | None = None
    port: str | None = None
    path: str = ""

    @property
    def base_url(self) -> str:
        url = f"{self.protocol}://{self.host}"
        if self.port:
            url += f":{self.port}"
        if self.path:
            url += f"/{self.path}"
        return url

    @property
    def envelope_endpoint(self) -> str:
        return f"{self.base_url}/api/{self.project_id}/envelope/"

    @property
    def store_endpoint(self) -> str:
        return f"{self.base_url}/api/{self.project_id}/store/"

    def to_string(self, *, include_secret: bool = False) -> str:
        """Render the DSN back to its string form.

        The secret key is omitted unless include_secret is set, since DSNs
        end up in envelope headers.
        """
        auth = self.public_key
        if include_secret and self.secret_key:
            auth += f":{self.secret_key}"
        url = f"{self.protocol}://{auth}@{self.host}"
        if self.port:
            url += f":{self.port}"
        if self.path:
            url += f"/{self.path}"
        return f"{url}/{self.project_id}"

    def __str__(self) -> str:
        return self.to_string()


def parse_dsn(value: str) -> Dsn:
    """Parse a DSN string.

    Args:
        value: DSN such as ``https://abc@o1.ingest.example.com/42``

    Returns:
        Parsed Dsn

    Raises:
        DsnParseError: If the string is empty, malformed, uses a protocol
            other than http/https, or lacks a public key.
    """
    if not value:
        raise DsnParseError("DSN must be a non-empty string")

    match = _DSN_PATTERN.match(value)
    if match is None:
        raise DsnParseError(f"Invalid DSN format {value!r}. Expected: PROTOCOL://PUBLIC_KEY@HOST/PROJECT_ID")

    protocol, public_key, secret_key, host, port, path, project_id = match.groups()
    if protocol not in ("http", "https"):
        raise DsnParseError(f"DSN protocol must be 'http' or 'https', got {protocol!r}")
    if not public_key:
        raise DsnParseError("DSN public key is required")

    return Dsn(
        protocol=protocol,
        public_key=public_key,
        host=host,
        project_id=project_id,
        secret_key=secret_key or None,
        port=port or None,
        path=(path or "").strip("/"),
    )


def is_valid_dsn(value: str) -> bool:
    try:
        parse_dsn(value)
    except DsnParseError:
        return False
    return True


def auth_header(dsn: Dsn, client: str | None = None) -> str:
    """Build the X-Sentry-Auth header value for a DSN.

    Args:
        dsn: Parsed DSN
        client: ``name/version`` client identifier (defaults to this SDK)
    """
    parts = [
        f"sentry_version={INTERNAL_DEFAULTS['protocol']['sentry_version']}",
        f"sentry_client={client or f'{SDK_NAME}/{__version__}'}",
        f"sentry_key={dsn.public_key}",
    ]
    # Deprecated by the protocol but still honoured by older relays
    if dsn.secret_key:
        parts.append(f"sentry_secret={dsn.secret_key}")
    return "Sentry " + ", ".join(parts)


def report_dialog_url(dsn: Dsn, event_id: str) -> str:
    """URL of the user-feedback dialog for a captured event."""
    return f"{dsn.base_url}/api/embed/error-page/?dsn={quote(dsn.to_string(), safe='')}&eventId={quote(event_id, safe='')}"
