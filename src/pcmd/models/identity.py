"""Identity model for per-connection lock and log files.

An identity is the (remote user, remote host, remote port) triple ssh
hands to a ProxyCommand through the %r, %h and %p tokens. Two pcmd
processes with the same identity contend for the same lock file.
"""

from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from ..constants import BASE_NAME, DEFAULT_SSH_PORT


class Identity(BaseModel):
    """Logical identity of a proxied SSH connection.

    Attributes:
        user: Remote SSH user (%r).
        host: Remote SSH host (%h).
        port: Remote SSH port (%p).
    """

    model_config = ConfigDict(frozen=True)

    user: str = Field(default="", description="Remote SSH user")
    host: str = Field(default="", description="Remote SSH host")
    port: int = Field(default=DEFAULT_SSH_PORT, ge=0, le=65535, description="Remote SSH port")

    @property
    def user_at_host(self) -> str:
        return f"{self.user}@{self.host}"

    def is_complete(self) -> bool:
        """Return True if the identity can name a lock file unambiguously."""
        return bool(self.user) and bool(self.host) and self.port != 0

    def base_name(self) -> str:
        """Derive the file base name, e.g. ``pcmd.bob.h1`` or ``pcmd.bob.h1.2222``.

        Empty fields are omitted, as are the default port and port 0. User
        and host are percent-encoded, dots included, so the separator only
        ever appears between fields and complete identities map to distinct
        names: ``john.doe@h1`` becomes ``pcmd.john%2Edoe.h1``.
        """
        parts = [BASE_NAME]
        if self.user:
            parts.append(_encode_field(self.user))
        if self.host:
            parts.append(_encode_field(self.host))
        if self.port not in (DEFAULT_SSH_PORT, 0):
            parts.append(str(self.port))
        return ".".join(parts)


def _encode_field(value: str) -> str:
    # quote() leaves "." alone, and never produces "%2E" itself
    return quote(value, safe="").replace(".", "%2E")
